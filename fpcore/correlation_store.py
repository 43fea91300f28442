#!/usr/bin/env python3
"""
Correlation Store
=================

TTL-bounded buffer of partial network observations ("chunks") keyed by
correlation id. Sensors write chunks independently and in any order; the
submit path and diagnostics read them back with lease reads that never
consume the buffered data. Only the TTL (sliding, refreshed by every write)
or an explicit purge ends an entry's life.

Storage format (one JSON object per correlation id, key "chunks:<id>"):
    {last_touched_at, parts: {kind: payload}, per_kind_timestamp: {kind: ms},
     read_count}
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from loguru import logger

from .exceptions import BackendUnavailable, InvalidArgument
from .kv_backend import KeyValueBackend, MemoryBackend, chunk_ttl_ms

MAX_CORRELATION_ID_LENGTH = 128
DEBUG_SAMPLE_LIMIT = 100


class ChunkKind(str, Enum):
    """Chunk kinds produced by the ingest boundary."""
    EDGE = "edge"
    DNS = "dns"
    WEBRTC = "webrtc"
    TLS = "tls"
    TCP = "tcp"


@dataclass
class ChunkEntry:
    """All chunks buffered for one correlation id."""
    last_touched_at: int
    parts: Dict[str, Any] = field(default_factory=dict)
    per_kind_timestamp: Dict[str, int] = field(default_factory=dict)
    read_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_touched_at": self.last_touched_at,
            "parts": self.parts,
            "per_kind_timestamp": self.per_kind_timestamp,
            "read_count": self.read_count
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkEntry":
        return cls(
            last_touched_at=int(data.get("last_touched_at") or 0),
            parts=dict(data.get("parts") or {}),
            per_kind_timestamp=dict(data.get("per_kind_timestamp") or {}),
            read_count=int(data.get("read_count") or 0)
        )


@dataclass
class ChunkReadiness:
    """Outcome of waiting for a set of chunk kinds."""
    ok: bool
    ready: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    waited_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "ready": self.ready,
            "missing": self.missing,
            "waited_ms": self.waited_ms
        }


class CorrelationStore:
    """
    Keyed buffer of partial chunks per correlation id.

    Operations:
    - add_chunk: validated upsert, last write per kind wins, sliding TTL
    - get_chunks / take_chunks: non-destructive lease reads
    - purge: explicit administrative delete
    - wait_for_chunks: bounded polling until requested kinds arrive
    """

    KEY_PREFIX = "chunks:"

    def __init__(self, backend: KeyValueBackend, ttl_ms: int = 15000,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize correlation store.

        Args:
            backend: Key/value backend (fixed for process lifetime)
            ttl_ms: Chunk time-to-live in milliseconds
            clock: Time source in seconds
            sleep: Sleep function used by wait_for_chunks
        """
        self.backend = backend
        self.ttl_ms = int(ttl_ms)
        self.clock = clock
        self.sleep = sleep

        logger.info(f"CorrelationStore initialized "
                    f"(backend={backend.describe().get('backend')}, ttl={self.ttl_ms}ms)")

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _key(self, corr_id: str) -> str:
        return f"{self.KEY_PREFIX}{corr_id}"

    @staticmethod
    def _validate_corr_id(corr_id: Any) -> str:
        if not isinstance(corr_id, str) or not corr_id or len(corr_id) > MAX_CORRELATION_ID_LENGTH:
            raise InvalidArgument("invalid correlation id",
                                  context={"max_length": MAX_CORRELATION_ID_LENGTH})
        return corr_id

    @staticmethod
    def _validate_kind(kind: Any) -> str:
        if isinstance(kind, ChunkKind):
            return kind.value
        if not isinstance(kind, str) or not kind:
            raise InvalidArgument("invalid chunk kind")
        return kind

    def _is_stale(self, entry: ChunkEntry, now: int) -> bool:
        return now - entry.last_touched_at > self.ttl_ms

    def add_chunk(self, corr_id: str, kind: Union[str, ChunkKind], payload: Any) -> int:
        """
        Upsert a chunk for a correlation id.

        Args:
            corr_id: Correlation id (non-empty, at most 128 chars)
            kind: Chunk kind
            payload: JSON-serializable payload or typed chunk with to_dict()

        Returns:
            Number of distinct kinds buffered after the write
        """
        corr_id = self._validate_corr_id(corr_id)
        kind = self._validate_kind(kind)
        if hasattr(payload, "to_dict"):
            payload = payload.to_dict()

        touch = self._now_ms()

        def upsert(current: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            entry = ChunkEntry.from_dict(current) if current else ChunkEntry(last_touched_at=touch)
            if self._is_stale(entry, touch):
                # Expired but not yet swept: start over
                entry = ChunkEntry(last_touched_at=touch)
            entry.last_touched_at = touch
            entry.parts[kind] = payload
            entry.per_kind_timestamp[kind] = touch
            return entry.to_dict()

        written = self.backend.update(self._key(corr_id), upsert,
                                      ttl_seconds=self.ttl_ms / 1000.0)
        count = len(written["parts"])
        logger.debug(f"Chunk stored: {corr_id} kind={kind} (parts={count})")
        return count

    def get_chunks(self, corr_id: str) -> Optional[Dict[str, Any]]:
        """
        Lease read of the buffered chunks.

        Returns a copy of the parts map without consuming it; only the read
        counter changes and the expiry is left as is.

        Returns:
            Dict of kind -> payload, or None if absent or expired
        """
        if not isinstance(corr_id, str) or not corr_id:
            return None

        now = self._now_ms()

        def lease(current: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            if not current:
                return None
            entry = ChunkEntry.from_dict(current)
            if self._is_stale(entry, now):
                return None
            entry.read_count += 1
            return entry.to_dict()

        written = self.backend.update(self._key(corr_id), lease, ttl_seconds=None)
        if not written:
            return None
        return dict(written.get("parts") or {})

    def take_chunks(self, corr_id: str) -> Optional[Dict[str, Any]]:
        """Non-destructive alias of get_chunks. Use purge() to delete."""
        logger.debug(f"take_chunks({corr_id}) served as lease read")
        return self.get_chunks(corr_id)

    def purge(self, corr_id: str) -> bool:
        """Delete all chunks for a correlation id. Returns True if removed."""
        corr_id = self._validate_corr_id(corr_id)
        removed = self.backend.delete(self._key(corr_id)) > 0
        if removed:
            logger.info(f"Chunks purged for {corr_id}")
        return removed

    def debug_stats(self) -> Dict[str, Any]:
        """
        Operational view of the buffer.

        Memory backend: alive/expired counts and a bounded sample.
        Shared backend: static metadata only (no key scan).
        """
        stats = dict(self.backend.describe())
        stats["ttl_ms"] = self.ttl_ms

        if self.backend.is_shared() or not isinstance(self.backend, MemoryBackend):
            stats["shared"] = self.backend.is_shared()
            return stats

        now = self._now_ms()
        alive = 0
        expired = 0
        sample = []

        for key, value, backend_expired in self.backend.entries(self.KEY_PREFIX):
            entry = ChunkEntry.from_dict(value or {})
            if backend_expired or self._is_stale(entry, now):
                expired += 1
                continue
            alive += 1
            if len(sample) < DEBUG_SAMPLE_LIMIT:
                sample.append({
                    "correlation_id": key[len(self.KEY_PREFIX):],
                    "kinds": sorted(entry.parts.keys()),
                    "idle_ms": now - entry.last_touched_at,
                    "read_count": entry.read_count
                })

        sample.sort(key=lambda s: s["idle_ms"])
        stats.update({"alive": alive, "expired": expired, "sample": sample})
        return stats

    def wait_for_chunks(self, corr_id: str, kinds: Iterable[Union[str, ChunkKind]],
                        timeout_ms: int = 8000, step_ms: int = 120) -> ChunkReadiness:
        """
        Poll until all requested kinds are buffered or the timeout elapses.

        Never raises on timeout; the result lists what arrived and what
        is still missing.
        """
        wanted = []
        for kind in kinds:
            name = kind.value if isinstance(kind, ChunkKind) else str(kind).strip()
            if name and name not in wanted:
                wanted.append(name)

        if not corr_id or not wanted or timeout_ms <= 0:
            return ChunkReadiness(ok=False, missing=wanted)

        start = self._now_ms()
        ready: List[str] = []

        while True:
            try:
                parts = self.get_chunks(corr_id) or {}
            except BackendUnavailable as e:
                logger.warning(f"Chunk wait for {corr_id} aborted: {e}")
                break

            ready = [k for k in wanted if k in parts]
            elapsed = self._now_ms() - start
            if len(ready) == len(wanted):
                return ChunkReadiness(ok=True, ready=ready, waited_ms=elapsed)
            if elapsed >= timeout_ms:
                break
            self.sleep(min(step_ms, timeout_ms - elapsed) / 1000.0)

        missing = [k for k in wanted if k not in ready]
        waited = self._now_ms() - start
        logger.debug(f"Chunk wait for {corr_id} timed out after {waited}ms (missing={missing})")
        return ChunkReadiness(ok=False, ready=ready, missing=missing, waited_ms=waited)


# =============================================================================
# Factory Function
# =============================================================================

def create_correlation_store(config: Dict[str, Any], backend: KeyValueBackend,
                             clock: Callable[[], float] = time.time) -> CorrelationStore:
    """Build the correlation store from configuration."""
    return CorrelationStore(backend=backend, ttl_ms=chunk_ttl_ms(config), clock=clock)
