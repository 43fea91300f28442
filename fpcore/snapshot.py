"""
Snapshot Record
===============

The assembled fingerprint snapshot. Created once by the submit path,
persisted by the repository and never mutated afterwards.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .normalizer import SECTION_NAMES

SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Snapshot:
    """
    One assembled fingerprint.

    Attributes:
        id: Repository-assigned identifier
        created_at: Creation time (epoch ms)
        client_ip_digest: HMAC of the client IP (never the raw IP)
        user_agent: User-Agent header of the submit request
        origin: Origin header of the submit request
        correlation_id: Session/correlation id the network chunks came from
        consent: Consent record posted by the client
        schema_version: Snapshot layout version
        collector_version: Version of the client collector script
        sections: Normalized sections (env, screen, webgl, ...)
        network: Merged network chunks and server enrichments
        stable_id: Hardware/engine-level digest
        content_hash: Volatility-filtered content digest
        derived: Consistency flags, anomalies and scores
    """
    id: Optional[str] = None
    created_at: Optional[int] = None
    client_ip_digest: str = ""
    user_agent: str = ""
    origin: Optional[str] = None
    correlation_id: Optional[str] = None
    consent: Optional[Any] = None
    schema_version: int = SCHEMA_VERSION
    collector_version: Optional[str] = None
    sections: Dict[str, Any] = field(default_factory=dict)
    network: Optional[Dict[str, Any]] = None
    stable_id: str = ""
    content_hash: str = ""
    derived: Dict[str, Any] = field(default_factory=dict)

    def section(self, name: str) -> Dict[str, Any]:
        """Normalized section by name (empty dict when absent)."""
        value = self.sections.get(name)
        return value if isinstance(value, dict) else {}

    @property
    def band(self) -> Optional[str]:
        return (self.derived.get("scores") or {}).get("band")

    @property
    def env_ua(self) -> str:
        return self.section("env").get("ua") or self.user_agent or ""

    def to_dict(self) -> Dict[str, Any]:
        """Flat JSON layout: sections sit at the top level."""
        data = {
            "id": self.id,
            "created_at": self.created_at,
            "client_ip_digest": self.client_ip_digest,
            "user_agent": self.user_agent,
            "origin": self.origin,
            "correlation_id": self.correlation_id,
            "consent": self.consent,
            "schema_version": self.schema_version,
            "collector_version": self.collector_version,
        }
        data.update(self.sections)
        data.update({
            "network": self.network,
            "stable_id": self.stable_id,
            "content_hash": self.content_hash,
            "derived": self.derived
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        """Create Snapshot from its flat dictionary layout."""
        return cls(
            id=data.get("id"),
            created_at=data.get("created_at"),
            client_ip_digest=data.get("client_ip_digest", ""),
            user_agent=data.get("user_agent", ""),
            origin=data.get("origin"),
            correlation_id=data.get("correlation_id"),
            consent=data.get("consent"),
            schema_version=data.get("schema_version", SCHEMA_VERSION),
            collector_version=data.get("collector_version"),
            sections={k: data[k] for k in SECTION_NAMES if k in data},
            network=data.get("network"),
            stable_id=data.get("stable_id", ""),
            content_hash=data.get("content_hash", ""),
            derived=data.get("derived") or {}
        )
