"""
Chunk Ingestor

Single entry point for sensor payloads. Each payload is verified (edge and
TLS sensors may sign their bodies), validated into its typed chunk and
buffered in the correlation store under its correlation id.

Kinds:
- edge:   EdgeChunk   (edge worker / reverse proxy)
- tls:    TlsChunk    (TLS terminator)
- dns:    DnsChunk    (authoritative DNS logs)
- webrtc: WebRTCChunk (browser ICE gathering)
- tcp:    TcpChunk    (passive SYN sensor)
"""

import os
from typing import Any, Callable, Dict, Optional

from loguru import logger

from ..correlation_store import ChunkKind, CorrelationStore
from ..exceptions import InvalidArgument
from .dns_correlator import DnsChunk
from .edge_collector import EdgeChunk
from .field_utils import strip_signature, verify_signature
from .tcpip_fingerprinter import TcpChunk
from .tls_fingerprinter import TlsChunk
from .webrtc_collector import WebRTCChunk


class ChunkIngestor:
    """
    Validates sensor payloads and buffers them as typed chunks.

    Process:
    1. Verify signature (edge/tls, when a shared secret is configured)
    2. Clamp fields into the typed chunk for the kind
    3. Upsert into the correlation store
    """

    def __init__(self, store: CorrelationStore,
                 edge_secret: Optional[str] = None,
                 tls_secret: Optional[str] = None):
        """
        Initialize ingestor.

        Args:
            store: Correlation store receiving the chunks
            edge_secret: HMAC secret for edge payloads (None disables check)
            tls_secret: HMAC secret for TLS payloads (defaults to edge_secret)
        """
        self.store = store
        self.edge_secret = edge_secret or None
        self.tls_secret = tls_secret or self.edge_secret

        self._handlers: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            ChunkKind.EDGE.value: self._ingest_edge,
            ChunkKind.TLS.value: self._ingest_tls,
            ChunkKind.DNS.value: self._ingest_dns,
            ChunkKind.WEBRTC.value: self._ingest_webrtc,
            ChunkKind.TCP.value: self._ingest_tcp,
        }

    def ingest(self, kind: str, body: Any) -> Dict[str, Any]:
        """
        Ingest one sensor payload.

        Args:
            kind: Chunk kind (edge, tls, dns, webrtc, tcp)
            body: Raw JSON body from the sensor

        Returns:
            Small result dict for the sensor

        Raises:
            InvalidArgument: unknown kind, malformed body, bad signature,
                missing correlation id
        """
        kind = kind.value if isinstance(kind, ChunkKind) else str(kind or "")
        handler = self._handlers.get(kind)
        if handler is None:
            raise InvalidArgument(f"unknown chunk kind: {kind!r}")
        if not isinstance(body, dict):
            raise InvalidArgument(f"{kind}_ingest: JSON object expected")
        return handler(body)

    def _check_signature(self, kind: str, body: Dict[str, Any], secret: Optional[str]):
        signature = body.get("_signature") or body.get("signature")
        if not verify_signature(strip_signature(body), signature, secret):
            logger.warning(f"{kind} ingest rejected: signature invalid (corrId={body.get('corrId')})")
            raise InvalidArgument(f"{kind}_ingest: signature invalid")

    def _ingest_edge(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self._check_signature("edge", body, self.edge_secret)
        chunk = EdgeChunk.from_payload(body)
        parts = self.store.add_chunk(chunk.corr_id, ChunkKind.EDGE, chunk)
        return {"ok": True, "corr_id": chunk.corr_id, "parts": parts}

    def _ingest_tls(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self._check_signature("tls", body, self.tls_secret)
        chunk = TlsChunk.from_payload(body)
        parts = self.store.add_chunk(chunk.corr_id, ChunkKind.TLS, chunk)
        return {"ok": True, "corr_id": chunk.corr_id, "ja3": chunk.ja3, "parts": parts}

    def _ingest_dns(self, body: Dict[str, Any]) -> Dict[str, Any]:
        chunk = DnsChunk.from_payload(body)
        parts = self.store.add_chunk(chunk.corr_id, ChunkKind.DNS, chunk)
        logger.info(f"[INGEST DNS] sid={chunk.corr_id} method={chunk.method} "
                    f"resolvers={len(chunk.resolvers)}")
        return {"ok": True, "corr_id": chunk.corr_id, "count": len(chunk.resolvers), "parts": parts}

    def _ingest_webrtc(self, body: Dict[str, Any]) -> Dict[str, Any]:
        chunk = WebRTCChunk.from_payload(body)
        parts = self.store.add_chunk(chunk.corr_id, ChunkKind.WEBRTC, chunk)
        logger.info(f"[INGEST WebRTC] sid={chunk.corr_id} candidates={len(chunk.candidates)}")
        return {
            "ok": True,
            "corr_id": chunk.corr_id,
            "summary": chunk.summary,
            "total": len(chunk.candidates),
            "parts": parts
        }

    def _ingest_tcp(self, body: Dict[str, Any]) -> Dict[str, Any]:
        chunk = TcpChunk.from_payload(body)
        parts = self.store.add_chunk(chunk.corr_id, ChunkKind.TCP, chunk)
        return {"ok": True, "corr_id": chunk.corr_id, "vpn_likely": chunk.vpn_likely, "parts": parts}


def create_ingestor(config: Dict[str, Any], store: CorrelationStore) -> ChunkIngestor:
    """Build the ingestor with shared secrets from config/environment."""
    ingest_config = config.get("ingest", {})
    edge_secret = os.environ.get("EDGE_SHARED_SECRET") or ingest_config.get("edge_shared_secret")
    tls_secret = os.environ.get("TLS_SHARED_SECRET") or ingest_config.get("tls_shared_secret")
    return ChunkIngestor(store, edge_secret=edge_secret, tls_secret=tls_secret)
