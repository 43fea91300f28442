"""
WebRTC ICE Candidate Ingest Module

Accepts ICE candidates gathered by the browser against our STUN server.
Server-reflexive and host candidates reveal addresses that may differ
from the HTTP egress IP (VPN / proxy leaks).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .field_utils import as_dict, clamp_list, norm_int, norm_str, require_corr_id

MAX_CANDIDATES = 2000


def summarize_candidates(candidates: List[Dict[str, Any]]) -> Dict[str, bool]:
    """Which candidate types were gathered and whether any is IPv6."""
    summary = {"host": False, "srflx": False, "relay": False, "v6": False}
    for cand in candidates:
        cand_type = (cand.get("type") or "").lower()
        if cand_type in ("host", "srflx", "relay"):
            summary[cand_type] = True
        if ":" in (cand.get("ip") or ""):
            summary["v6"] = True
    return summary


@dataclass
class WebRTCChunk:
    """ICE gathering result for one correlation id"""
    corr_id: str
    stun: Dict[str, Any] = field(default_factory=dict)
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)
    summary: Dict[str, bool] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, raw: Dict[str, Any]) -> "WebRTCChunk":
        corr_id = require_corr_id(raw, "webrtc")
        stun = as_dict(raw.get("stun"))
        stats = as_dict(raw.get("stats"))

        candidates = []
        for item in clamp_list(raw.get("candidates"), MAX_CANDIDATES):
            item = as_dict(item)
            cand = {
                "protocol": norm_str(item.get("protocol"), 8),
                "ip": norm_str(item.get("ip") or item.get("address"), 64),
                "port": norm_int(item.get("port")),
                "type": norm_str(item.get("type"), 16),
                "rel_addr": norm_str(item.get("relAddr"), 64),
                "rel_port": norm_int(item.get("relPort")),
                "foundation": norm_str(item.get("foundation"), 64),
                "priority": norm_int(item.get("priority"))
            }
            # Candidates without a type or any address carry no signal
            if cand["type"] and (cand["ip"] or cand["rel_addr"]):
                candidates.append(cand)

        return cls(
            corr_id=corr_id,
            stun={
                "uri": norm_str(stun.get("uri"), 256),
                "ok": bool(stun.get("ok"))
            },
            candidates=candidates,
            stats={
                "gather_time_ms": norm_int(stats.get("gatherTimeMs")),
                "ice_success": bool(stats.get("iceSuccess"))
            },
            summary=summarize_candidates(candidates)
        )

    def to_dict(self) -> dict:
        return {
            'corr_id': self.corr_id,
            'stun': self.stun,
            'candidates': self.candidates,
            'stats': self.stats,
            'summary': self.summary
        }
