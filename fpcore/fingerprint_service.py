#!/usr/bin/env python3
"""
Fingerprint Service
===================

Orchestrates the submit and query paths over the correlation buffer:

    submit: [wait for chunks] -> assemble -> hash -> save
    query:  get / session / search / stats / compare
"""

import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from loguru import logger

from .comparison_engine import ComparisonEngine, ComparisonResult
from .correlation_store import ChunkReadiness, CorrelationStore
from .identity_hasher import hmac_ip, make_content_hash, make_stable_id
from .normalizer import dig
from .snapshot import Snapshot
from .snapshot_assembler import SnapshotAssembler
from .snapshot_repository import SnapshotRepository, create_snapshot_repository

VERSION = "1.4.0"
DEFAULT_IP_SALT = "dev-salt"


@dataclass
class SubmitResult:
    """Saved snapshot plus which network sources contributed"""
    snapshot: Snapshot
    network_found: Dict[str, bool] = field(default_factory=dict)
    readiness: Optional[ChunkReadiness] = None

    def to_dict(self) -> dict:
        data = self.snapshot.to_dict()
        data['network_found'] = self.network_found
        if self.readiness is not None:
            data['readiness'] = self.readiness.to_dict()
        return data


class FingerprintService:
    """
    Submit/compare orchestration.

    Features:
    - Correlation id from the caller or payload.meta.sessionId
    - Optional bounded wait for late network chunks before assembly
    - Client IP stored only as an HMAC digest
    """

    def __init__(self, store: CorrelationStore, repository: SnapshotRepository,
                 ip_salt: str = DEFAULT_IP_SALT,
                 max_wait_ms: int = 8000,
                 wait_step_ms: int = 120,
                 clock: Callable[[], float] = time.time):
        """
        Initialize fingerprint service.

        Args:
            store: Correlation store with buffered network chunks
            repository: Snapshot repository
            ip_salt: HMAC salt for client IP digests
            max_wait_ms: Upper bound for the pre-assembly chunk wait
            wait_step_ms: Poll interval of the chunk wait
            clock: Time source in seconds
        """
        self.store = store
        self.repository = repository
        self.assembler = SnapshotAssembler(store)
        self.comparison = ComparisonEngine(repository)
        self.ip_salt = ip_salt
        self.max_wait_ms = int(max_wait_ms)
        self.wait_step_ms = int(wait_step_ms)
        self.clock = clock

    def submit(self, ip: Optional[str], ua: Optional[str], origin: Optional[str],
               payload: Dict[str, Any],
               correlation_id: Optional[str] = None,
               headers_srv: Optional[Dict[str, Any]] = None,
               geo_srv: Optional[Dict[str, Any]] = None,
               rdap: Optional[Dict[str, Any]] = None,
               wait_for: Optional[Iterable[str]] = None,
               wait_timeout_ms: Optional[int] = None) -> SubmitResult:
        """
        Assemble, hash and save one snapshot.

        Args:
            ip: Client IP (only its HMAC is kept)
            ua: User-Agent header
            origin: Origin header
            payload: Raw collector payload
            correlation_id: Correlation id (falls back to payload.meta.sessionId)
            headers_srv: Server header order enrichment
            geo_srv: Server geo enrichment
            rdap: RDAP enrichment
            wait_for: Chunk kinds to wait for before assembling
            wait_timeout_ms: Wait timeout (capped at max_wait_ms)

        Returns:
            SubmitResult

        Raises:
            InvalidArgument: malformed payload
        """
        corr_id = correlation_id or dig(payload, "meta", "sessionId") or None
        if corr_id is not None:
            corr_id = str(corr_id)

        readiness = None
        kinds = [k for k in (wait_for or []) if k]
        if corr_id and kinds:
            timeout = self.max_wait_ms if wait_timeout_ms is None else min(int(wait_timeout_ms), self.max_wait_ms)
            readiness = self.store.wait_for_chunks(corr_id, kinds, timeout_ms=timeout,
                                                   step_ms=self.wait_step_ms)

        now_ms = int(self.clock() * 1000)
        assembled = self.assembler.assemble(
            payload, corr_id, ua=ua,
            headers_srv=headers_srv, geo_srv=geo_srv, rdap=rdap,
            now_ms=now_ms
        )

        sections = dict(assembled.normalized)
        derived = sections.pop("derived", {}) or {}

        snapshot = Snapshot(
            created_at=now_ms,
            client_ip_digest=hmac_ip(ip, self.ip_salt),
            user_agent=str(ua or ""),
            origin=origin,
            correlation_id=corr_id,
            consent=payload.get("consent"),
            collector_version=payload.get("collectorVersion"),
            sections=sections,
            network=assembled.network or None,
            stable_id=make_stable_id(sections),
            content_hash=make_content_hash(sections),
            derived=derived
        )
        saved = self.repository.save(snapshot)

        logger.info(f"Fingerprint saved: {saved.id} (corr={corr_id}, "
                    f"band={saved.band}, stable={saved.stable_id[:12]})")
        return SubmitResult(snapshot=saved, network_found=assembled.network_found,
                            readiness=readiness)

    def get(self, snapshot_id: str) -> Optional[Snapshot]:
        return self.repository.get_by_id(snapshot_id)

    def compare(self, id_a: str, id_b: str) -> ComparisonResult:
        return self.comparison.compare(id_a, id_b)

    def session(self, correlation_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot summaries for a correlation id, or None when none exist."""
        items = self.repository.get_by_correlation_id(correlation_id)
        if not items:
            return None
        return {
            "correlation_id": correlation_id,
            "total": len(items),
            "items": [
                {"id": s.id, "created_at": s.created_at, "scores": s.derived.get("scores")}
                for s in items
            ]
        }

    def search(self, **query) -> Dict[str, Any]:
        return self.repository.search(**query)

    def stats(self) -> Dict[str, Any]:
        return self.repository.stats()

    @staticmethod
    def version_info() -> Dict[str, str]:
        return {"api": "fp-correlator", "version": VERSION}

    def stop(self):
        self.repository.stop()


# =============================================================================
# Factory Function
# =============================================================================

def create_service(config: Dict[str, Any], store: CorrelationStore,
                   repository: Optional[SnapshotRepository] = None,
                   clock: Callable[[], float] = time.time) -> FingerprintService:
    """
    Build the fingerprint service from configuration.

    Args:
        config: Configuration dictionary (identity, collect, repository)
        store: Correlation store
        repository: Optional pre-built repository

    Returns:
        FingerprintService
    """
    salt = os.environ.get("IP_HMAC_SALT") or config.get("identity", {}).get("ip_hmac_salt") or DEFAULT_IP_SALT
    if salt == DEFAULT_IP_SALT:
        logger.warning("IP HMAC salt is the development default; set IP_HMAC_SALT in production")

    collect_config = config.get("collect", {})
    return FingerprintService(
        store=store,
        repository=repository or create_snapshot_repository(config, clock=clock),
        ip_salt=salt,
        max_wait_ms=collect_config.get("max_wait_ms", 8000),
        wait_step_ms=collect_config.get("wait_step_ms", 120),
        clock=clock
    )
