"""
DNS Resolver Correlation Module

Accepts the set of recursive resolvers observed by an authoritative DNS
server for a unique per-session probe hostname (DNS leak test). The
resolver set tells which network actually resolves names for the client,
independent of the HTTP egress IP.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .field_utils import as_dict, clamp_list, norm_int, norm_str, require_corr_id

MAX_RESOLVERS = 2000


@dataclass
class DnsChunk:
    """Resolvers seen for one correlation id"""
    corr_id: str
    method: str = "authoritative-logs"
    took_ms: Optional[int] = None
    resolvers: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "DnsChunk":
        corr_id = require_corr_id(raw, "dns")

        resolvers = []
        for item in clamp_list(raw.get("resolvers"), MAX_RESOLVERS):
            item = as_dict(item)
            ip = norm_str(item.get("ip"), 64)
            if not ip:
                continue
            resolvers.append({
                "ip": ip,
                "asn": norm_str(item.get("asn"), 32),
                "isp": norm_str(item.get("isp"), 128),
                "country": norm_str(item.get("country"), 64),
                "v": 6 if item.get("v") == 6 else 4
            })

        return cls(
            corr_id=corr_id,
            method=norm_str(raw.get("method"), 64) or "authoritative-logs",
            took_ms=norm_int(raw.get("tookMs")),
            resolvers=resolvers
        )

    def to_dict(self) -> dict:
        return {
            'corr_id': self.corr_id,
            'method': self.method,
            'took_ms': self.took_ms,
            'resolvers': self.resolvers
        }
