"""
Snapshot Assembler

Merges a freshly submitted client payload with whatever network chunks are
buffered for its correlation id, plus optional server-side enrichments.

Merge rules:
- every buffered chunk kind is attached under network[kind]
- server header order (headers_srv) only when the edge chunk has no headers
- server geo (geo_srv) only when the edge chunk has no geo
- rdap whenever provided

The network section is additive: a failed chunk read degrades to an empty
network section instead of failing the submission.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from loguru import logger

from .correlation_store import ChunkKind, CorrelationStore
from .exceptions import BackendUnavailable
from .normalizer import normalize_payload

NETWORK_SOURCES = [kind.value for kind in ChunkKind] + ["headers_srv", "geo_srv", "rdap"]


@dataclass
class AssembledSnapshot:
    """Normalized sections plus merged network data"""
    normalized: Dict[str, Any]
    network: Dict[str, Any] = field(default_factory=dict)
    network_found: Dict[str, bool] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'normalized': self.normalized,
            'network': self.network,
            'network_found': self.network_found,
            'correlation_id': self.correlation_id
        }


class SnapshotAssembler:
    """
    Fuses the client payload with buffered network chunks.

    Process:
    1. Normalize the raw payload
    2. Lease-read chunks for the correlation id (never consumes them)
    3. Attach present chunk kinds, then fallback server enrichments
    4. Record which sources contributed
    """

    def __init__(self, store: CorrelationStore,
                 normalize: Callable[..., Dict[str, Any]] = normalize_payload):
        """
        Initialize snapshot assembler.

        Args:
            store: Correlation store holding the network chunks
            normalize: Payload normalizer (raw, ua=..., now_ms=...) -> sections
        """
        self.store = store
        self.normalize = normalize

    def assemble(self, payload: Dict[str, Any], correlation_id: Optional[str],
                 ua: Optional[str] = None,
                 headers_srv: Optional[Dict[str, Any]] = None,
                 geo_srv: Optional[Dict[str, Any]] = None,
                 rdap: Optional[Dict[str, Any]] = None,
                 now_ms: Optional[int] = None) -> AssembledSnapshot:
        """
        Assemble one snapshot.

        Args:
            payload: Raw client payload
            correlation_id: Correlation id (None skips the chunk read)
            ua: User-Agent header
            headers_srv: Server-computed header order enrichment
            geo_srv: Server-side geo/ASN enrichment
            rdap: RDAP enrichment

        Returns:
            AssembledSnapshot with network_found flags

        Raises:
            InvalidArgument: malformed payload
        """
        normalized = self.normalize(payload, ua=ua, now_ms=now_ms)
        parts = self._read_chunks(correlation_id)

        network: Dict[str, Any] = {}
        for kind in ChunkKind:
            if kind.value in parts:
                network[kind.value] = parts[kind.value]

        edge = network.get(ChunkKind.EDGE.value) or {}
        if headers_srv and not edge.get("headers"):
            network["headers_srv"] = headers_srv
        if geo_srv and not edge.get("geo"):
            network["geo_srv"] = geo_srv
        if rdap:
            network["rdap"] = rdap

        network_found = {source: source in network for source in NETWORK_SOURCES}

        if correlation_id:
            found = [k for k, v in network_found.items() if v]
            logger.debug(f"Snapshot assembled for {correlation_id}: network={found or 'none'}")

        return AssembledSnapshot(
            normalized=normalized,
            network=network,
            network_found=network_found,
            correlation_id=correlation_id
        )

    def _read_chunks(self, correlation_id: Optional[str]) -> Dict[str, Any]:
        if not correlation_id:
            return {}
        try:
            return self.store.get_chunks(correlation_id) or {}
        except BackendUnavailable as e:
            logger.warning(f"Chunk read failed for {correlation_id}, "
                           f"assembling without network data: {e}")
            return {}
