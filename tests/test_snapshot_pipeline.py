"""
Snapshot Pipeline Tests
=======================

Tests for assembly, the snapshot repository, comparison and the
submit orchestration end to end.
"""

import copy
import json
import pytest
import sys
from pathlib import Path
from unittest.mock import Mock

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fpcore.comparison_engine import ComparisonEngine, compatibility_score
from fpcore.exceptions import BackendUnavailable, InvalidArgument, NotFound
from fpcore.snapshot import Snapshot
from fpcore.snapshot_assembler import NETWORK_SOURCES, SnapshotAssembler
from fpcore.snapshot_repository import SnapshotRepository, create_snapshot_repository


def make_snapshot(band="high", ua="Mozilla/5.0 Test", page="/lab", correlation_id=None,
                  created_at=None, **sections):
    base = {
        "meta": {"page": page},
        "env": {"ua": ua},
    }
    base.update(sections)
    return Snapshot(
        created_at=created_at,
        correlation_id=correlation_id,
        sections=base,
        stable_id="ab" * 32,
        content_hash="cd" * 32,
        derived={"scores": {"band": band, "total": 85}}
    )


class TestSnapshotAssembler:
    """Test merging of payload and buffered chunks."""

    def test_attaches_present_kinds(self, store, sample_payload):
        store.add_chunk("s1", "dns", {"resolvers": [{"ip": "8.8.8.8"}]})
        store.add_chunk("s1", "tcp", {"mss": 1460})

        assembled = SnapshotAssembler(store).assemble(sample_payload, "s1")
        assert set(assembled.network) == {"dns", "tcp"}
        assert assembled.network_found["dns"] is True
        assert assembled.network_found["webrtc"] is False
        assert set(assembled.network_found) == set(NETWORK_SOURCES)

    def test_empty_chunk_counts_as_present(self, store, sample_payload):
        store.add_chunk("sess-001", "webrtc", {})

        assembled = SnapshotAssembler(store).assemble(sample_payload, "sess-001")
        assert assembled.network["webrtc"] == {}
        assert assembled.network_found["webrtc"] is True

    def test_assembly_does_not_consume_chunks(self, store, sample_payload):
        store.add_chunk("s1", "dns", {"resolvers": []})
        assembler = SnapshotAssembler(store)
        assembler.assemble(sample_payload, "s1")
        assert assembler.assemble(sample_payload, "s1").network_found["dns"] is True

    def test_edge_headers_and_geo_win(self, store, sample_payload):
        store.add_chunk("s1", "edge", {"headers": {"order": ["host"]}, "geo": {"asn": "AS1"}})

        assembled = SnapshotAssembler(store).assemble(
            sample_payload, "s1",
            headers_srv={"order": ["Host"], "hash": "h"},
            geo_srv={"asn": "AS2"},
            rdap={"asn": "AS1", "org": "Example"}
        )
        assert "headers_srv" not in assembled.network
        assert "geo_srv" not in assembled.network
        assert assembled.network["rdap"]["org"] == "Example"
        assert assembled.network["edge"]["geo"] == {"asn": "AS1"}

    def test_server_enrichment_fallback(self, store, sample_payload):
        store.add_chunk("s1", "edge", {"ip": "1.2.3.4", "headers": None, "geo": None})

        assembled = SnapshotAssembler(store).assemble(
            sample_payload, "s1",
            headers_srv={"order": ["Host"], "hash": "h"},
            geo_srv={"asn": "AS2"}
        )
        assert assembled.network["headers_srv"]["hash"] == "h"
        assert assembled.network["geo_srv"] == {"asn": "AS2"}
        assert assembled.network_found["headers_srv"] is True

    def test_no_correlation_id(self, store, sample_payload):
        assembled = SnapshotAssembler(store).assemble(sample_payload, None)
        assert assembled.network == {}
        assert not any(assembled.network_found.values())

    def test_backend_failure_degrades(self, sample_payload):
        failing = Mock()
        failing.get_chunks.side_effect = BackendUnavailable("down", operation="update")

        assembled = SnapshotAssembler(failing).assemble(sample_payload, "s1")
        assert assembled.network == {}
        assert "env" in assembled.normalized

    def test_malformed_payload(self, store):
        with pytest.raises(InvalidArgument):
            SnapshotAssembler(store).assemble("not-a-dict", "s1")


class TestSnapshotRepository:
    """Test snapshot storage, search and eviction."""

    def test_save_assigns_id_and_time(self, repository, clock):
        saved = repository.save(make_snapshot())
        assert len(saved.id) == 12
        assert saved.created_at == int(clock() * 1000)
        assert repository.get_by_id(saved.id) == saved

    def test_duplicate_id_rejected(self, repository):
        saved = repository.save(make_snapshot())
        with pytest.raises(InvalidArgument):
            repository.save(saved)

    def test_by_correlation_oldest_first(self, repository, clock):
        first = repository.save(make_snapshot(correlation_id="sess"))
        clock.advance(1)
        second = repository.save(make_snapshot(correlation_id="sess"))
        repository.save(make_snapshot(correlation_id="other"))

        assert [s.id for s in repository.get_by_correlation_id("sess")] == [first.id, second.id]
        assert repository.get_by_correlation_id("missing") == []

    def test_search_filters_newest_first(self, repository, clock):
        ids = []
        for i, band in enumerate(["low", "high", "high", "medium"]):
            ids.append(repository.save(make_snapshot(band=band, ua=f"Agent{i}/1.0")).id)
            clock.advance(1)

        result = repository.search(band="high")
        assert result["total"] == 2
        assert [item["id"] for item in result["items"]] == [ids[2], ids[1]]

        by_ua = repository.search(ua="agent3")
        assert [item["id"] for item in by_ua["items"]] == [ids[3]]

    def test_search_time_window_and_page(self, repository, clock):
        start = int(clock() * 1000)
        repository.save(make_snapshot(page="/a"))
        clock.advance(10)
        repository.save(make_snapshot(page="/b"))

        assert repository.search(from_ts=start + 5000)["total"] == 1
        assert repository.search(to_ts=start + 5000)["total"] == 1
        assert repository.search(page="/b")["items"][0]["meta"]["page"] == "/b"

    def test_search_projection_is_pruned(self, repository):
        repository.save(make_snapshot(canvas={"hash": "c"}, timers={"raf_p95_ms": 16}))
        item = repository.search()["items"][0]
        assert "timers" not in item
        assert "network" not in item
        assert item["stable_id"] == "ab" * 32

    def test_search_limit_capped(self, repository):
        for _ in range(250):
            repository.save(make_snapshot())
        assert repository.search(limit=1000)["total"] == 200
        assert repository.search(limit=3)["total"] == 3

    def test_stats(self, repository, clock):
        assert repository.stats() == {"total": 0, "last": None,
                                      "bands": {"low": 0, "medium": 0, "high": 0}}
        repository.save(make_snapshot(band="low"))
        clock.advance(2)
        last = repository.save(make_snapshot(band="high"))

        stats = repository.stats()
        assert stats["total"] == 2
        assert stats["last"] == last.created_at
        assert stats["bands"] == {"low": 1, "medium": 0, "high": 1}

    def test_stats_ignore_expired_before_sweep(self, clock):
        repository = SnapshotRepository(ttl_ms=60000, sweep_interval=None, clock=clock)
        repository.save(make_snapshot(band="low"))
        clock.advance(45)
        fresh = repository.save(make_snapshot(band="high"))
        clock.advance(30)

        stats = repository.stats()
        assert stats["total"] == 1
        assert stats["last"] == fresh.created_at
        assert stats["bands"] == {"low": 0, "medium": 0, "high": 1}

    def test_stop_during_sweep_does_not_reschedule(self, clock, monkeypatch):
        timer = Mock()
        monkeypatch.setattr("fpcore.snapshot_repository.threading.Timer", timer)
        repository = SnapshotRepository(sweep_interval=60, clock=clock)
        sweep_task = timer.call_args[0][1]

        repository.stop()
        sweep_task()
        assert timer.call_count == 1

    def test_sweep_evicts_and_cleans_indexes(self, clock):
        repository = SnapshotRepository(ttl_ms=60000, sweep_interval=None, clock=clock)
        old = repository.save(make_snapshot(correlation_id="sess"))
        clock.advance(45)
        fresh = repository.save(make_snapshot(correlation_id="sess"))
        clock.advance(30)

        assert repository.get_by_id(old.id) is None
        assert repository.sweep() == 1
        assert old.id not in repository.by_id
        assert [sid for _, sid in repository.time_index] == [fresh.id]
        assert repository.by_correlation["sess"] == [fresh.id]
        assert repository.stats()["total"] == 1

    def test_jsonl_log(self, tmp_path, clock):
        repository = SnapshotRepository(write_dir=str(tmp_path), sweep_interval=None, clock=clock)
        saved = repository.save(make_snapshot())

        lines = (tmp_path / "snapshots.jsonl").read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["id"] == saved.id

    def test_factory_write_dir_env(self, test_config, tmp_path, monkeypatch):
        monkeypatch.setenv("WRITE_DIR", str(tmp_path))
        repository = create_snapshot_repository(test_config)
        try:
            assert repository.log_path == tmp_path / "snapshots.jsonl"
        finally:
            repository.stop()


class TestComparisonEngine:
    """Test snapshot comparison."""

    def test_identical_snapshots_score_high(self, repository):
        a = repository.save(make_snapshot(screen={"dpr": 2}, intl={"time_zone": "UTC"}))
        b = repository.save(make_snapshot(screen={"dpr": 2}, intl={"time_zone": "UTC"}))

        result = ComparisonEngine(repository).compare(a.id, b.id)
        assert result.same_stable_id is True
        assert result.hash_distance == 0
        assert result.score == 90
        assert result.factors[0] == {"kind": "pro", "message": "stable id matches"}
        assert all(f["kind"] == "pro" for f in result.factors)

    def test_score_without_ua_still_at_least_80(self, repository):
        a = repository.save(make_snapshot(ua=None))
        b = repository.save(make_snapshot(ua=None))
        assert ComparisonEngine(repository).compare(a.id, b.id).score >= 80

    def test_different_devices(self, repository):
        a = repository.save(Snapshot(
            sections={"env": {"ua": "Mozilla/5.0 A"}, "screen": {"dpr": 1},
                      "intl": {"time_zone": "UTC"}},
            stable_id="00" * 32, content_hash="00" * 32
        ))
        b = repository.save(Snapshot(
            sections={"env": {"ua": "Opera/9.80 B"}, "screen": {"dpr": 2},
                      "intl": {"time_zone": "Asia/Tokyo"}},
            stable_id="11" * 32, content_hash="ff" * 32
        ))

        result = ComparisonEngine(repository).compare(a.id, b.id)
        assert result.same_stable_id is False
        assert result.hash_distance == 256
        assert result.score == 20
        assert [f["kind"] for f in result.factors] == ["con", "con"]
        assert result.diff["screen"]["dpr"] == {"a": 1, "b": 2, "same": False}
        assert result.diff["locale"]["time_zone"]["same"] is False

    def test_factor_cap(self, repository):
        sections = {
            "env": {"ua": "Mozilla/5.0"},
            "webgl": {"renderer": "R"},
            "canvas": {"hash": "c"},
            "audio": {"hash": "a"},
            "screen": {"dpr": 1},
            "intl": {"time_zone": "UTC"},
        }
        other = copy.deepcopy(sections)
        other["screen"]["dpr"] = 2
        other["intl"]["time_zone"] = "Europe/Paris"
        a = repository.save(Snapshot(sections=sections, stable_id="aa", content_hash="aa"))
        b = repository.save(Snapshot(sections=other, stable_id="aa", content_hash="aa"))

        factors = ComparisonEngine(repository).compare(a.id, b.id).factors
        assert len(factors) == 6
        assert factors[-1] == {"kind": "con", "message": "different device pixel ratio"}

    def test_diff_groups(self, repository):
        a = repository.save(make_snapshot())
        b = repository.save(make_snapshot())
        diff = ComparisonEngine(repository).compare(a.id, b.id).diff

        assert set(diff) == {"environment", "screen", "graphics", "locale", "canvas", "audio"}
        assert diff["environment"]["ua"] == {"a": "Mozilla/5.0 Test", "b": "Mozilla/5.0 Test", "same": True}
        assert "webgl2.renderer" in diff["graphics"]

    @pytest.mark.parametrize("distance,expected", [(2, 49), (6, 48), (10, 47), (200, 20)])
    def test_distance_penalty_rounds_half_up(self, distance, expected):
        a = Snapshot(sections={}, stable_id="00", content_hash="00")
        b = Snapshot(sections={}, stable_id="11", content_hash="11")
        assert compatibility_score(a, b, distance) == expected

    def test_missing_snapshot(self, repository):
        a = repository.save(make_snapshot())
        with pytest.raises(NotFound):
            ComparisonEngine(repository).compare(a.id, "doesnotexist")


class TestFingerprintService:
    """End-to-end submit scenarios."""

    def test_submit_merges_network(self, service, store, sample_payload):
        store.add_chunk("sess-001", "dns", {"resolvers": [{"ip": "8.8.8.8"}]})

        result = service.submit("203.0.113.7", "UA", "https://example.org", sample_payload)
        snapshot = result.snapshot

        assert snapshot.correlation_id == "sess-001"
        assert snapshot.network == {"dns": {"resolvers": [{"ip": "8.8.8.8"}]}}
        assert result.network_found["dns"] is True
        assert snapshot.collector_version == "2.3.1"
        assert "derived" not in snapshot.sections
        assert snapshot.band == snapshot.derived["scores"]["band"]
        assert "203.0.113.7" not in json.dumps(snapshot.to_dict())

    def test_same_payload_twice_same_ids(self, service, clock, sample_payload):
        first = service.submit("203.0.113.7", "UA", None, sample_payload).snapshot
        clock.advance(60)
        later = copy.deepcopy(sample_payload)
        later["meta"]["when"] = "2023-11-14T22:14:20Z"
        second = service.submit("198.51.100.20", "UA", None, later).snapshot

        assert first.id != second.id
        assert first.stable_id == second.stable_id
        assert first.content_hash == second.content_hash
        assert first.client_ip_digest != second.client_ip_digest

        comparison = service.compare(first.id, second.id)
        assert comparison.same_stable_id is True
        assert comparison.score >= 80

    def test_explicit_correlation_id_wins(self, service, sample_payload):
        snapshot = service.submit(None, None, None, sample_payload, correlation_id="other").snapshot
        assert snapshot.correlation_id == "other"

    def test_submit_waits_for_chunks(self, service, store, clock, sample_payload):
        store.add_chunk("sess-001", "dns", {})
        result = service.submit("1.2.3.4", "UA", None, sample_payload,
                                wait_for=["dns", "webrtc"], wait_timeout_ms=500)

        assert result.readiness.ok is False
        assert result.readiness.missing == ["webrtc"]
        assert result.to_dict()["readiness"]["ready"] == ["dns"]

    def test_wait_timeout_capped(self, service, clock, sample_payload):
        service.submit("1.2.3.4", "UA", None, sample_payload,
                       wait_for=["tls"], wait_timeout_ms=60000)
        assert sum(clock.sleeps) <= 2.05

    def test_session_and_stats(self, service, sample_payload):
        service.submit("1.2.3.4", "UA", None, sample_payload)
        service.submit("1.2.3.4", "UA", None, sample_payload)

        session = service.session("sess-001")
        assert session["total"] == 2
        assert service.session("unknown") is None
        assert service.stats()["total"] == 2
        assert service.version_info()["api"] == "fp-correlator"

    def test_compare_missing(self, service, sample_payload):
        snapshot = service.submit("1.2.3.4", "UA", None, sample_payload).snapshot
        with pytest.raises(NotFound):
            service.compare(snapshot.id, "nope00")
