"""
Network Signal Ingest Module

Typed chunks for the partial network observations that sensors report
asynchronously, keyed by correlation id:
- Edge: proxy/worker metadata (IP, JA3/JA4, HTTP/2, geo, header order)
- TLS: handshake shape from a TLS terminator
- DNS: recursive resolvers seen by the authoritative server
- WebRTC: ICE candidates gathered by the browser
- TCP: p0f-style passive SYN characteristics
"""

from .chunk_ingestor import ChunkIngestor, create_ingestor
from .dns_correlator import DnsChunk
from .edge_collector import EdgeChunk
from .header_order import header_order_and_hash
from .tcpip_fingerprinter import TcpChunk
from .tls_fingerprinter import TlsChunk, compute_ja3_hash
from .webrtc_collector import WebRTCChunk

__all__ = [
    'ChunkIngestor',
    'create_ingestor',
    'DnsChunk',
    'EdgeChunk',
    'TcpChunk',
    'TlsChunk',
    'WebRTCChunk',
    'compute_ja3_hash',
    'header_order_and_hash'
]
