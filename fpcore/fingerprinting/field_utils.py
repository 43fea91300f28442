"""
Field clamping helpers shared by the ingest normalizers.

Sensors post loosely-typed JSON; these helpers coerce each field to the
expected type and size, returning None for anything unusable.
"""

import hashlib
import hmac
import json
import math
from typing import Any, Dict, List, Optional

from ..exceptions import InvalidArgument


def norm_str(value: Any, max_len: int = 256) -> Optional[str]:
    """Trimmed, length-capped string or None."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value[:max_len] if value else None


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def round_half_up(number: float) -> int:
    """Nearest integer, halves rounded towards +infinity."""
    return int(math.floor(number + 0.5))


def norm_int(value: Any, limit: float = 1e12) -> Optional[int]:
    """Rounded integer within [-limit, limit] or None."""
    number = _number(value)
    if number is None or abs(number) > limit:
        return None
    return round_half_up(number)


def norm_float(value: Any, places: int = 3) -> Optional[float]:
    """Float rounded to a fixed number of places or None."""
    number = _number(value)
    if number is None:
        return None
    return round(number, places)


def clamp_list(value: Any, max_len: int = 500) -> List[Any]:
    """First max_len items of a list, or an empty list."""
    return list(value[:max_len]) if isinstance(value, list) else []


def as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def require_corr_id(raw: Dict[str, Any], kind: str) -> str:
    corr_id = norm_str(raw.get("corrId") or raw.get("corr_id"), 128)
    if not corr_id:
        raise InvalidArgument(f"{kind}_ingest: corrId required")
    return corr_id


def verify_signature(body: Dict[str, Any], signature: Any, secret: Optional[str]) -> bool:
    """
    Check the HMAC-SHA256 signature a sensor attached to its payload.

    The signature covers the compact JSON of the body without the signature
    field. An empty secret disables the check.
    """
    if not secret:
        return True
    if not signature:
        return False
    message = json.dumps(body, separators=(",", ":"), ensure_ascii=False)
    expected = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, str(signature))


def strip_signature(body: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of the body without signature fields, as signed by the sensor."""
    return {k: v for k, v in body.items() if k not in ("_signature", "signature")}
