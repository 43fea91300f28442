"""
Edge Metadata Ingest Module

Normalizes what an edge worker / reverse proxy saw about the client:
client IP, HTTP version, TLS handshake tokens (JA3/JA4), HTTP/2 shape,
edge-side geo/ASN and the raw request header order.

Edge-provided headers and geo take precedence over server-side
enrichments when a snapshot is assembled.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .field_utils import as_dict, clamp_list, norm_int, norm_str, require_corr_id
from .tls_fingerprinter import normalize_h2, normalize_tls_params


def _normalize_geo(raw: Any) -> Optional[Dict[str, Optional[str]]]:
    if not raw or not isinstance(raw, dict):
        return None
    return {
        "asn": norm_str(raw.get("asn"), 32),
        "isp": norm_str(raw.get("isp"), 128),
        "country": norm_str(raw.get("country"), 64),
        "region": norm_str(raw.get("region"), 64),
        "city": norm_str(raw.get("city"), 64)
    }


def _normalize_headers(raw: Any) -> Optional[Dict[str, Any]]:
    if not raw or not isinstance(raw, dict):
        return None
    sample: List[List[Optional[str]]] = []
    for pair in clamp_list(raw.get("sample"), 20):
        if isinstance(pair, (list, tuple)) and len(pair) >= 2:
            sample.append([norm_str(pair[0], 64), norm_str(pair[1], 256)])
    return {
        "order": [norm_str(name, 128) for name in clamp_list(raw.get("order"), 256)],
        "hash": norm_str(raw.get("hash"), 64),
        "sample": sample
    }


@dataclass
class EdgeChunk:
    """Edge/proxy observation of one client request"""
    corr_id: str
    observed_at: int
    ip: Optional[str] = None
    http_version: Optional[str] = None
    alpn: Optional[str] = None
    tls: Dict[str, Optional[str]] = field(default_factory=dict)
    ja3: Optional[str] = None
    ja3n: Optional[str] = None
    ja4: Optional[str] = None
    ja4t: Optional[str] = None
    h2: Optional[Dict[str, Any]] = None
    geo: Optional[Dict[str, Optional[str]]] = None
    headers: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, raw: Dict[str, Any], now_ms: Optional[int] = None) -> "EdgeChunk":
        corr_id = require_corr_id(raw, "edge")
        return cls(
            corr_id=corr_id,
            observed_at=norm_int(raw.get("observedAt")) or now_ms or int(time.time() * 1000),
            ip=norm_str(raw.get("ip"), 64),
            http_version=norm_str(raw.get("httpVersion"), 16),
            alpn=norm_str(raw.get("alpn"), 16),
            tls=normalize_tls_params(raw.get("tls")),
            ja3=norm_str(raw.get("ja3"), 128),
            ja3n=norm_str(raw.get("ja3n"), 128),
            ja4=norm_str(raw.get("ja4"), 128),
            ja4t=norm_str(raw.get("ja4t"), 128),
            h2=normalize_h2(raw.get("h2")),
            geo=_normalize_geo(raw.get("geo")),
            headers=_normalize_headers(raw.get("headers"))
        )

    def to_dict(self) -> dict:
        return {
            'corr_id': self.corr_id,
            'observed_at': self.observed_at,
            'ip': self.ip,
            'http_version': self.http_version,
            'alpn': self.alpn,
            'tls': self.tls,
            'ja3': self.ja3,
            'ja3n': self.ja3n,
            'ja4': self.ja4,
            'ja4t': self.ja4t,
            'h2': self.h2,
            'geo': self.geo,
            'headers': self.headers
        }
