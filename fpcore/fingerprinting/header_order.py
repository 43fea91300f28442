"""
Request Header Order Fingerprint

Server-side enrichment used when no edge sensor reported header order:
the sequence of header names as received, a short stable hash of that
sequence, and a small masked sample for display.
"""

import hashlib
import re
from typing import Any, Dict, Iterable, List, Tuple

SENSITIVE_HEADERS = {
    "cookie", "authorization", "proxy-authorization",
    "x-forwarded-for", "cf-connecting-ip", "true-client-ip"
}

SAMPLE_LIMIT = 20

_IPV4_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")
_IPV6_RE = re.compile(r"\b(?:[a-f0-9]{0,4}:){2,}[a-f0-9]{0,4}\b", re.IGNORECASE)


def mask_ips(value: str) -> str:
    """Replace anything that looks like an IP address."""
    value = _IPV4_RE.sub("x.x.x.x", value)
    return _IPV6_RE.sub("v6::mask", value)


def header_order_and_hash(headers: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    """
    Compute header order, order hash and a masked sample.

    Args:
        headers: (name, value) pairs in received order

    Returns:
        {"order": [...], "hash": 32-hex or None, "sample": [[name, value], ...]}
    """
    order: List[str] = []
    sample: List[List[str]] = []

    for name, value in headers:
        name = str(name or "")
        order.append(name)
        if len(sample) < SAMPLE_LIMIT and name.lower() not in SENSITIVE_HEADERS:
            sample.append([name, mask_ips(str(value or "")[:256])])

    if not order:
        return {"order": [], "hash": None, "sample": []}

    digest = hashlib.sha256("\n".join(order).encode("utf-8")).hexdigest()[:32]
    return {"order": order, "hash": digest, "sample": sample}
