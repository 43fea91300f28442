"""
TLS/JA3/JA4 Handshake Ingest Module

Normalizes TLS handshake summaries reported by a TLS-terminating proxy or
sensor (JA3/JA3N/JA4/JA4T tokens, negotiated version and cipher, ALPN,
HTTP/2 SETTINGS shape) into a typed chunk.

JA3 Hash Formula:
MD5(SSLVersion,Ciphers,Extensions,EllipticCurves,EllipticCurvePointFormats)

Example:
771,4865-4866-4867,0-23-65281-10-11,29-23-24,0
-> hash computed here when a sensor reports only the JA3 string
"""

import hashlib
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from loguru import logger

from .field_utils import as_dict, norm_int, norm_str, require_corr_id


def compute_ja3_hash(ja3_string: str) -> str:
    """MD5 hex digest of a JA3 string."""
    return hashlib.md5(ja3_string.encode()).hexdigest()


def normalize_tls_params(raw: Any) -> Dict[str, Optional[str]]:
    """Negotiated TLS version and cipher."""
    raw = as_dict(raw)
    return {
        "version": norm_str(raw.get("version"), 32),
        "cipher": norm_str(raw.get("cipher"), 64)
    }


def normalize_h2(raw: Any) -> Optional[Dict[str, Any]]:
    """HTTP/2 SETTINGS / WINDOW_UPDATE / priority signature."""
    if not raw or not isinstance(raw, dict):
        return None
    settings = as_dict(raw.get("settings"))
    window_update = as_dict(raw.get("windowUpdate"))
    return {
        "settings": {
            "header_table_size": norm_int(settings.get("headerTableSize")),
            "enable_push": norm_int(settings.get("enablePush")),
            "initial_window_size": norm_int(settings.get("initialWindowSize")),
            "max_header_list_size": norm_int(settings.get("maxHeaderListSize"))
        },
        "window_update": {
            "size_increment": norm_int(window_update.get("sizeIncrement"))
        },
        "priority_sig": norm_str(raw.get("prioritySig"), 128)
    }


@dataclass
class TlsChunk:
    """TLS handshake shape for one client connection"""
    corr_id: str
    observed_at: int
    http_version: Optional[str] = None
    alpn: Optional[str] = None
    tls: Dict[str, Optional[str]] = field(default_factory=dict)
    ja3: Optional[str] = None
    ja3_string: Optional[str] = None
    ja3n: Optional[str] = None
    ja4: Optional[str] = None
    ja4t: Optional[str] = None
    h2: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, raw: Dict[str, Any], now_ms: Optional[int] = None) -> "TlsChunk":
        """
        Validate and clamp a sensor payload.

        Raises:
            InvalidArgument: if the correlation id is missing
        """
        corr_id = require_corr_id(raw, "tls")
        ja3 = norm_str(raw.get("ja3"), 128)
        ja3_string = norm_str(raw.get("ja3String"), 2048)

        if not ja3 and ja3_string:
            ja3 = compute_ja3_hash(ja3_string)
            logger.debug(f"TLS chunk {corr_id}: JA3 computed from string ({ja3})")

        return cls(
            corr_id=corr_id,
            observed_at=norm_int(raw.get("observedAt")) or now_ms or int(time.time() * 1000),
            http_version=norm_str(raw.get("httpVersion"), 16),
            alpn=norm_str(raw.get("alpn"), 16),
            tls=normalize_tls_params(raw.get("tls")),
            ja3=ja3,
            ja3_string=ja3_string,
            ja3n=norm_str(raw.get("ja3n"), 128),
            ja4=norm_str(raw.get("ja4"), 128),
            ja4t=norm_str(raw.get("ja4t"), 128),
            h2=normalize_h2(raw.get("h2"))
        )

    def to_dict(self) -> dict:
        return {
            'corr_id': self.corr_id,
            'observed_at': self.observed_at,
            'http_version': self.http_version,
            'alpn': self.alpn,
            'tls': self.tls,
            'ja3': self.ja3,
            'ja3_string': self.ja3_string,
            'ja3n': self.ja3n,
            'ja4': self.ja4,
            'ja4t': self.ja4t,
            'h2': self.h2
        }
