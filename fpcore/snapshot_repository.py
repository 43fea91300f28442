#!/usr/bin/env python3
"""
Snapshot Repository
===================

In-memory storage of assembled snapshots with TTL eviction.

Supports:
- Lookup by id and by correlation id
- Time-ordered index for range search over recent snapshots
- Best-effort JSON-lines append log (WRITE_DIR/snapshots.jsonl)
- Periodic sweep evicting snapshots older than the repository TTL
"""

import bisect
import json
import os
import threading
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .exceptions import InvalidArgument
from .normalizer import parse_when
from .snapshot import Snapshot

DEFAULT_TTL_MS = 24 * 60 * 60 * 1000
SEARCH_WINDOW = 5000
MAX_SEARCH_LIMIT = 200
BANDS = ("low", "medium", "high")


def new_snapshot_id() -> str:
    return uuid.uuid4().hex[:12]


def prune(snapshot: Snapshot) -> Dict[str, Any]:
    """Light projection used in search listings."""
    env = snapshot.section("env")
    screen = snapshot.section("screen")
    return {
        "id": snapshot.id,
        "created_at": snapshot.created_at,
        "user_agent": snapshot.user_agent,
        "origin": snapshot.origin,
        "meta": snapshot.section("meta"),
        "env": {
            "ua": env.get("ua"),
            "languages": env.get("languages"),
            "platform": env.get("platform")
        },
        "screen": {
            "dpr": screen.get("dpr"),
            "color_depth": screen.get("color_depth")
        },
        "webgl": {"renderer": snapshot.section("webgl").get("renderer")},
        "webgl2": {"renderer": snapshot.section("webgl2").get("renderer")},
        "webgpu": {"supported": snapshot.section("webgpu").get("supported")},
        "stable_id": snapshot.stable_id,
        "content_hash": snapshot.content_hash,
        "scores": snapshot.derived.get("scores")
    }


class SnapshotRepository:
    """
    Thread-safe in-memory snapshot repository.

    Features:
    - Snapshots saved once, never mutated
    - Per-correlation-id history (oldest first)
    - TTL sweep on a daemon timer
    """

    def __init__(self, ttl_ms: int = DEFAULT_TTL_MS,
                 write_dir: Optional[str] = None,
                 sweep_interval: Optional[float] = 60,
                 clock: Callable[[], float] = time.time):
        """
        Initialize snapshot repository.

        Args:
            ttl_ms: Snapshot time-to-live in milliseconds
            write_dir: Directory for the JSON-lines log (None to disable)
            sweep_interval: Seconds between TTL sweeps (None to disable)
            clock: Time source in seconds
        """
        self.ttl_ms = int(ttl_ms)
        self.clock = clock
        self.lock = threading.RLock()

        self.by_id: Dict[str, Snapshot] = {}
        self.by_correlation: Dict[str, List[str]] = {}
        self.time_index: List[Tuple[int, str]] = []

        self.log_path: Optional[Path] = None
        self._log_lock = threading.Lock()
        if write_dir:
            try:
                Path(write_dir).mkdir(parents=True, exist_ok=True)
                self.log_path = Path(write_dir) / "snapshots.jsonl"
            except OSError as e:
                logger.warning(f"WRITE_DIR unusable, keeping snapshots in memory only: {e}")

        self.sweep_interval = sweep_interval
        self._sweep_timer: Optional[threading.Timer] = None
        self._stopped = False
        if sweep_interval:
            self._start_sweeper()

        logger.info(f"SnapshotRepository initialized (ttl={self.ttl_ms}ms, log={self.log_path})")

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _alive(self, snapshot: Snapshot, now: int) -> bool:
        return now - (snapshot.created_at or 0) <= self.ttl_ms

    def save(self, snapshot: Snapshot) -> Snapshot:
        """
        Persist a snapshot.

        Assigns id and creation time when absent.

        Returns:
            The stored snapshot (with id and created_at)

        Raises:
            InvalidArgument: if a snapshot with the same id exists
        """
        snap = replace(
            snapshot,
            id=snapshot.id or new_snapshot_id(),
            created_at=snapshot.created_at or self._now_ms()
        )

        with self.lock:
            if snap.id in self.by_id:
                raise InvalidArgument(f"snapshot {snap.id} already saved")
            self.by_id[snap.id] = snap
            bisect.insort(self.time_index, (snap.created_at, snap.id))
            if snap.correlation_id:
                self.by_correlation.setdefault(snap.correlation_id, []).append(snap.id)

        self._append_log(snap)
        logger.debug(f"Snapshot saved: {snap.id} (corr={snap.correlation_id}, stable={snap.stable_id[:12]})")
        return snap

    def _append_log(self, snapshot: Snapshot):
        if not self.log_path:
            return
        try:
            line = json.dumps(snapshot.to_dict(), default=str)
            with self._log_lock:
                with open(self.log_path, "a") as f:
                    f.write(line + "\n")
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Snapshot log append failed for {snapshot.id}: {e}")

    def get_by_id(self, snapshot_id: str) -> Optional[Snapshot]:
        with self.lock:
            snap = self.by_id.get(str(snapshot_id))
        if snap is None or not self._alive(snap, self._now_ms()):
            return None
        return snap

    def get_by_correlation_id(self, correlation_id: str) -> List[Snapshot]:
        """All live snapshots for a correlation id, oldest first."""
        if not correlation_id:
            return []
        now = self._now_ms()
        with self.lock:
            ids = list(self.by_correlation.get(correlation_id, []))
            snaps = [self.by_id[i] for i in ids if i in self.by_id]
        return sorted((s for s in snaps if self._alive(s, now)), key=lambda s: s.created_at)

    def search(self, from_ts: Any = None, to_ts: Any = None, band: Optional[str] = None,
               ua: Optional[str] = None, page: Optional[str] = None,
               limit: Any = 50) -> Dict[str, Any]:
        """
        Filtered listing over the most recent snapshots, newest first.

        Args:
            from_ts: Lower bound (epoch ms or ISO string)
            to_ts: Upper bound (epoch ms or ISO string), default now
            band: Score band (low/medium/high)
            ua: Case-insensitive user agent substring
            page: Exact meta.page
            limit: Max items (capped at 200)

        Returns:
            {"total": n, "items": [pruned snapshots]}
        """
        lower = parse_when(from_ts) or 0
        upper = parse_when(to_ts) or self._now_ms()
        try:
            max_items = int(limit) if limit else 50
        except (TypeError, ValueError):
            max_items = 50
        max_items = max(1, min(max_items, MAX_SEARCH_LIMIT))
        needle = str(ua).lower() if ua else None

        with self.lock:
            window = [sid for ts, sid in self.time_index if lower <= ts <= upper][-SEARCH_WINDOW:]
            candidates = [self.by_id.get(sid) for sid in reversed(window)]

        items = []
        for snap in candidates:
            if len(items) >= max_items:
                break
            if snap is None:
                continue
            if band and snap.band != band:
                continue
            if needle and needle not in snap.env_ua.lower():
                continue
            if page and snap.section("meta").get("page") != page:
                continue
            items.append(prune(snap))

        return {"total": len(items), "items": items}

    def stats(self) -> Dict[str, Any]:
        """Total count, most recent timestamp and count per band."""
        bands = {b: 0 for b in BANDS}
        now = self._now_ms()
        with self.lock:
            alive = [snap for snap in self.by_id.values() if self._alive(snap, now)]
        total = len(alive)
        last = max((snap.created_at for snap in alive), default=None)
        for snap in alive:
            if snap.band in bands:
                bands[snap.band] += 1
        return {"total": total, "last": last, "bands": bands}

    def sweep(self) -> int:
        """Evict snapshots older than the TTL. Returns count removed."""
        now = self._now_ms()
        with self.lock:
            expired = {sid for sid, snap in self.by_id.items() if not self._alive(snap, now)}
            if not expired:
                return 0
            for sid in expired:
                del self.by_id[sid]
            self.time_index = [r for r in self.time_index if r[1] not in expired]
            for corr_id in list(self.by_correlation):
                ids = [i for i in self.by_correlation[corr_id] if i not in expired]
                if ids:
                    self.by_correlation[corr_id] = ids
                else:
                    del self.by_correlation[corr_id]

        logger.info(f"SnapshotRepository sweep evicted {len(expired)} snapshots")
        return len(expired)

    def _start_sweeper(self):
        """Start periodic TTL sweep timer."""
        def sweep_task():
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Snapshot sweep failed: {e}")
            if self._stopped:
                return
            # Reschedule
            self._sweep_timer = threading.Timer(self.sweep_interval, sweep_task)
            self._sweep_timer.daemon = True
            self._sweep_timer.start()

        self._sweep_timer = threading.Timer(self.sweep_interval, sweep_task)
        self._sweep_timer.daemon = True
        self._sweep_timer.start()

    def stop(self):
        """Stop sweep timer."""
        self._stopped = True
        if self._sweep_timer:
            self._sweep_timer.cancel()
            self._sweep_timer = None


# =============================================================================
# Factory Function
# =============================================================================

def create_snapshot_repository(config: Dict[str, Any],
                               clock: Callable[[], float] = time.time) -> SnapshotRepository:
    """Build the snapshot repository from configuration."""
    repo_config = config.get("repository", {})
    return SnapshotRepository(
        ttl_ms=repo_config.get("snapshot_ttl_ms", DEFAULT_TTL_MS),
        write_dir=os.environ.get("WRITE_DIR") or repo_config.get("write_dir"),
        sweep_interval=repo_config.get("sweep_interval", 60),
        clock=clock
    )
