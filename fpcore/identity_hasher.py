"""
Identity Hasher

Derives two identifiers from a normalized snapshot:

- stable id: hardware / engine level fields that should survive reloads and
  new sessions on the same device and browser install
- content hash: a broader field set, still free of timestamps, IP-derived
  data and fine-grained behaviour

Both are computed over a curated subset of fields, never the whole
snapshot, through an order-independent canonical form: object keys sorted,
arrays sorted by the canonical encoding of their elements, long strings
truncated before hashing.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from .exceptions import InvalidArgument

UA_MAX_LENGTH = 256


def _encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _canonical(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        # Arrays are multisets: order must not matter, duplicates are kept
        return sorted((_canonical(v) for v in value), key=_encode)
    return value


def canonicalize(value: Any) -> str:
    """Canonical JSON text of a value."""
    return _encode(_canonical(value))


def digest(value: Any) -> str:
    """SHA-256 hex digest of the canonical form."""
    return hashlib.sha256(canonicalize(value).encode("utf-8")).hexdigest()


def _section(normalized: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = normalized.get(name)
    return section if isinstance(section, dict) else {}


def _truncate(value: Any, limit: int = UA_MAX_LENGTH) -> Any:
    return value[:limit] if isinstance(value, str) else value


def _graphics(normalized: Dict[str, Any], name: str) -> Any:
    # WebGL and WebGL2 collapse into one preferred source
    return _section(normalized, "webgl").get(name) or _section(normalized, "webgl2").get(name) or None


def _codecs(normalized: Dict[str, Any]) -> Dict[str, Any]:
    webcodecs = _section(normalized, "webcodecs")
    return {
        "video": webcodecs.get("video") or [],
        "audio": webcodecs.get("audio") or []
    }


def stable_fields(normalized: Dict[str, Any]) -> Dict[str, Any]:
    """Fields feeding the stable id."""
    env = _section(normalized, "env")
    webgpu = _section(normalized, "webgpu")

    return {
        "ua": _truncate(env.get("ua")),
        "hc": env.get("hardware_concurrency"),
        "dm": env.get("device_memory"),
        "dpr": _section(normalized, "screen").get("dpr"),
        "graphics": {
            "vendor": _graphics(normalized, "vendor"),
            "renderer": _graphics(normalized, "renderer"),
            "max_texture": _graphics(normalized, "max_texture")
        },
        "webgpu": {
            "features_hash": webgpu.get("features_hash"),
            "max_bind_groups": (webgpu.get("limits") or {}).get("max_bind_groups")
        } if webgpu.get("supported") else None,
        "codecs": _codecs(normalized),
        "canvas": _section(normalized, "canvas").get("hash"),
        "audio": _section(normalized, "audio").get("hash"),
        "fonts": _section(normalized, "fonts").get("present_count")
    }


def content_fields(normalized: Dict[str, Any]) -> Dict[str, Any]:
    """Fields feeding the content hash."""
    env = _section(normalized, "env")
    screen = _section(normalized, "screen")
    webgpu = _section(normalized, "webgpu")
    intl = _section(normalized, "intl")

    return {
        "env": {
            "ua": _truncate(env.get("ua")),
            "languages": env.get("languages") or [],
            "platform": env.get("platform")
        },
        "screen": {
            "color_depth": screen.get("color_depth"),
            "dpr": screen.get("dpr")
        },
        "graphics": {
            "vendor": _graphics(normalized, "vendor"),
            "renderer": _graphics(normalized, "renderer"),
            "max_texture": _graphics(normalized, "max_texture")
        },
        "webgpu": webgpu.get("features_hash") if webgpu.get("supported") else "no",
        "codecs": _codecs(normalized),
        "intl": {
            "locale": intl.get("locale"),
            "time_zone": intl.get("time_zone")
        },
        "canvas": _section(normalized, "canvas").get("hash"),
        "audio": _section(normalized, "audio").get("hash")
    }


def make_stable_id(normalized: Dict[str, Any]) -> str:
    return digest(stable_fields(normalized))


def make_content_hash(normalized: Dict[str, Any]) -> str:
    return digest(content_fields(normalized))


def hamming_distance(hex_a: str, hex_b: str) -> int:
    """
    Bit distance between two hex digests.

    Differing bits over the common length, plus 8 bits per byte of
    length difference.

    Raises:
        InvalidArgument: if either input is not valid hex
    """
    try:
        buf_a = bytes.fromhex(hex_a or "")
        buf_b = bytes.fromhex(hex_b or "")
    except (TypeError, ValueError):
        raise InvalidArgument("digest must be a hex string")

    dist = sum(bin(x ^ y).count("1") for x, y in zip(buf_a, buf_b))
    return dist + 8 * abs(len(buf_a) - len(buf_b))


def hmac_ip(ip: Optional[str], salt: str) -> str:
    """Irreversible 32-hex digest of a client IP."""
    return hmac.new(salt.encode("utf-8"), (ip or "unknown").encode("utf-8"),
                    hashlib.sha256).hexdigest()[:32]
