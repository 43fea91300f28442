"""
Fingerprint Correlator Test Fixtures
====================================

Shared pytest fixtures for the correlation buffer, ingest boundary,
identity pipeline and the Flask API.
"""

import pytest
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


class FakeClock:
    """Manually advanced clock; sleep() advances time instead of blocking."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def advance_ms(self, ms: float):
        self.now += ms / 1000.0

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_config():
    """Basic test configuration."""
    return {
        "general": {
            "environment": "test",
            "debug": True,
            "log_level": "DEBUG"
        },
        "api": {
            "host": "127.0.0.1",
            "port": 3000,
            "trust_proxy": True,
            "cors_origins": "*"
        },
        "correlation": {
            "redis_url": "",
            "chunk_ttl_ms": 15000
        },
        "repository": {
            "snapshot_ttl_ms": 86400000,
            "sweep_interval": None,  # Sweeps run explicitly in tests
            "write_dir": ""
        },
        "identity": {
            "ip_hmac_salt": "test-salt"
        },
        "ingest": {
            "edge_shared_secret": "",
            "tls_shared_secret": "",
            "max_payload_bytes": {
                "tcp": 512
            }
        },
        "collect": {
            "timeout_ms": 1000,
            "max_wait_ms": 2000,
            "wait_step_ms": 120
        }
    }


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Environment overrides must not leak into tests."""
    for name in ("REDIS_URL", "CHUNKS_TTL_MS", "IP_HMAC_SALT",
                 "EDGE_SHARED_SECRET", "TLS_SHARED_SECRET", "WRITE_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def memory_backend(clock):
    from fpcore.kv_backend import MemoryBackend
    backend = MemoryBackend(sweep_interval=None, clock=clock)
    yield backend
    backend.close()


@pytest.fixture
def store(memory_backend, clock):
    from fpcore.correlation_store import CorrelationStore
    return CorrelationStore(memory_backend, ttl_ms=15000, clock=clock, sleep=clock.sleep)


@pytest.fixture
def repository(clock):
    from fpcore.snapshot_repository import SnapshotRepository
    repo = SnapshotRepository(ttl_ms=86400000, sweep_interval=None, clock=clock)
    yield repo
    repo.stop()


@pytest.fixture
def service(store, repository, clock):
    from fpcore.fingerprint_service import FingerprintService
    return FingerprintService(store, repository, ip_salt="test-salt",
                              max_wait_ms=2000, wait_step_ms=120, clock=clock)


@pytest.fixture
def ingestor(store):
    from fpcore.fingerprinting import ChunkIngestor
    return ChunkIngestor(store)


@pytest.fixture
def app(test_config, service, ingestor, store):
    from fpapi.app import create_app
    flask_app = create_app(test_config, service=service, ingestor=ingestor, store=store)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sample_payload():
    """Raw collector payload as posted by the browser script."""
    return {
        "collectorVersion": "2.3.1",
        "consent": {"analytics": True},
        "meta": {
            "when": "2023-11-14T22:13:20Z",
            "page": "/lab",
            "app": "fp-lab",
            "sessionId": "sess-001"
        },
        "env": {
            "ua": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                  "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
            "languages": ["en-US", "en"],
            "timezone": "Europe/Berlin",
            "platform": "Win32",
            "hardwareConcurrency": 8,
            "deviceMemory": 8,
            "cookiesEnabled": True
        },
        "screen": {
            "colorDepth": 24,
            "dpr": 1.25,
            "touchPoints": 0
        },
        "webgl": {
            "supported": True,
            "vendor": "Google Inc. (NVIDIA)",
            "renderer": "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)",
            "maxTexture": 16384,
            "extensionsFirst25": ["ANGLE_instanced_arrays", "EXT_blend_minmax"]
        },
        "webgl2": {
            "supported": True,
            "vendor": "Google Inc. (NVIDIA)",
            "renderer": "ANGLE (NVIDIA, NVIDIA GeForce RTX 3060 Direct3D11 vs_5_0 ps_5_0, D3D11)",
            "maxTexture": 16384,
            "extensions": ["EXT_color_buffer_float"]
        },
        "webgpu": {
            "supported": True,
            "adapter": {
                "features": ["texture-compression-bc", "depth-clip-control"],
                "limits": {"maxBindGroups": 4, "maxTextureDimension2D": 8192}
            }
        },
        "webcodecs": {
            "supported": True,
            "video": {"avc1.42E01E": True, "vp09.00.10.08": True},
            "audio": {"opus": True}
        },
        "timers": {
            "performanceNow": {"minDeltaNs": 100, "p95DeltaNs": 5000},
            "rAF": {"meanDeltaMs": 16.7, "p95DeltaMs": 17.2}
        },
        "canvas": {"hash": "c4a1f00d", "w": 280, "h": 60},
        "randomization": {"audio": {"hashes": ["a0d10c0de"]}},
        "intl": {"locale": "de-DE", "timeZone": "Europe/Berlin"},
        "rtc": {"types": ["srflx", "host", "host"]},
        "pro3": {"fontsDeep": {"present": ["Arial", "Calibri", "Segoe UI"]}}
    }
