"""
TCP/IP Stack Ingest Module (p0f-style)

Accepts passive TCP SYN characteristics reported by a packet sensor or a
proxy (HAProxy / pcap). Stack characteristics are kernel-level and hard to
spoof from the browser:
- MSS / MTU estimate: tunnels and VPNs shrink the MSS
- Window scale, SACK, timestamps
- Observed TTL and estimated hop count
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .field_utils import norm_int, require_corr_id


@dataclass
class TcpChunk:
    """TCP/IP stack fingerprint for one client connection"""
    corr_id: str
    observed_at: int
    mss: Optional[int] = None
    ws: Optional[int] = None
    sack: bool = False
    ts_val: Optional[int] = None
    ttl_seen: Optional[int] = None
    hops_est: Optional[int] = None
    mtu_est: Optional[int] = None
    vpn_likely: bool = False

    @classmethod
    def from_payload(cls, raw: Dict[str, Any], now_ms: Optional[int] = None) -> "TcpChunk":
        corr_id = require_corr_id(raw, "tcp")
        return cls(
            corr_id=corr_id,
            observed_at=norm_int(raw.get("observedAt")) or now_ms or int(time.time() * 1000),
            mss=norm_int(raw.get("mss")),
            ws=norm_int(raw.get("ws")),
            sack=bool(raw.get("sack")),
            ts_val=norm_int(raw.get("tsVal")),
            ttl_seen=norm_int(raw.get("ttlSeen")),
            hops_est=norm_int(raw.get("hopsEst")),
            mtu_est=norm_int(raw.get("mtuEst")),
            vpn_likely=bool(raw.get("vpnLikely"))
        )

    def to_dict(self) -> dict:
        return {
            'corr_id': self.corr_id,
            'observed_at': self.observed_at,
            'mss': self.mss,
            'ws': self.ws,
            'sack': self.sack,
            'ts_val': self.ts_val,
            'ttl_seen': self.ttl_seen,
            'hops_est': self.hops_est,
            'mtu_est': self.mtu_est,
            'vpn_likely': self.vpn_likely
        }
