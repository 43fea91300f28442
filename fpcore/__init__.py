"""
Fingerprint Correlator Core Modules
===================================

Correlation buffer and identity pipeline for network client fingerprints.

Modules:
- kv_backend: Key/value backends (in-process memory, Redis)
- correlation_store: TTL buffer of partial chunks per correlation id
- fingerprinting: Typed sensor chunks and the ingest boundary
- normalizer: Raw collector payload -> normalized sections
- snapshot_assembler: Payload + buffered chunks -> one snapshot
- identity_hasher: Canonical hashing, stable id, content hash
- snapshot_repository: In-memory snapshot storage with TTL sweep
- comparison_engine: Same-device score and field diff
- fingerprint_service: Submit/compare orchestration
"""

from .exceptions import CorrelatorError, InvalidArgument, NotFound, BackendUnavailable
from .kv_backend import KeyValueBackend, MemoryBackend, RedisBackend, get_kv_backend
from .correlation_store import (
    ChunkKind, ChunkEntry, ChunkReadiness, CorrelationStore, create_correlation_store
)
from .snapshot import Snapshot
from .snapshot_assembler import AssembledSnapshot, SnapshotAssembler
from .snapshot_repository import SnapshotRepository, create_snapshot_repository
from .comparison_engine import ComparisonEngine, ComparisonResult
from .fingerprint_service import FingerprintService, SubmitResult, create_service

__all__ = [
    # Errors
    "CorrelatorError",
    "InvalidArgument",
    "NotFound",
    "BackendUnavailable",
    # Correlation buffer
    "KeyValueBackend",
    "MemoryBackend",
    "RedisBackend",
    "get_kv_backend",
    "ChunkKind",
    "ChunkEntry",
    "ChunkReadiness",
    "CorrelationStore",
    "create_correlation_store",
    # Identity pipeline
    "Snapshot",
    "AssembledSnapshot",
    "SnapshotAssembler",
    "SnapshotRepository",
    "create_snapshot_repository",
    "ComparisonEngine",
    "ComparisonResult",
    "FingerprintService",
    "SubmitResult",
    "create_service"
]

__version__ = "1.4.0"
