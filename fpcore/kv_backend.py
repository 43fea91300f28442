#!/usr/bin/env python3
"""
Key/Value Backend
=================

Scoped get/set/delete-with-TTL storage for JSON blobs.

Supports:
- Process-local map with background expiry sweep (default)
- Redis (shared store, selected when a connection URL is configured)

The backend is chosen once at startup by get_kv_backend() and is fixed
for the lifetime of the process. A Redis outage surfaces to callers as
BackendUnavailable; there is no silent switch to local storage.
"""

import copy
import json
import os
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis
from loguru import logger

from .exceptions import BackendUnavailable

Mutator = Callable[[Optional[Any]], Optional[Any]]


class KeyValueBackend(ABC):
    """Abstract base class for correlation storage backends."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the stored JSON value or None if absent/expired."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[float]) -> bool:
        """Store a JSON value with a time-to-live."""
        pass

    @abstractmethod
    def delete(self, key: str) -> int:
        """Delete a key. Returns count of removed keys."""
        pass

    @abstractmethod
    def update(self, key: str, mutator: Mutator,
               ttl_seconds: Optional[float] = None) -> Optional[Any]:
        """
        Atomic read-modify-write of a single key.

        Args:
            key: Key to update
            mutator: Called with the current value (None if absent); returns
                the new value, or None to leave the key untouched
            ttl_seconds: New TTL for the written value. None keeps the
                existing expiry.

        Returns:
            The value written, or None if nothing was written
        """
        pass

    @abstractmethod
    def is_shared(self) -> bool:
        """True when the backend is visible to other processes."""
        pass

    def describe(self) -> Dict[str, Any]:
        """Static metadata for diagnostics."""
        return {"backend": "shared" if self.is_shared() else "memory"}

    def close(self) -> None:
        """Release resources."""
        pass


class MemoryBackend(KeyValueBackend):
    """
    Thread-safe in-memory key/value backend.

    Features:
    - Per-key expiry enforced on read
    - Periodic sweep removing expired keys (daemon timer)
    - Values deep-copied in and out so callers never share state
    """

    def __init__(self, sweep_interval: Optional[float] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize memory backend.

        Args:
            sweep_interval: Seconds between expiry sweeps (None to disable)
            clock: Time source in seconds
        """
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self.lock = threading.RLock()
        self.clock = clock

        self.sweep_interval = sweep_interval
        self._sweep_timer: Optional[threading.Timer] = None
        self._stopped = False

        if sweep_interval:
            self._start_sweeper()

        logger.info(f"MemoryBackend initialized (sweep_interval={sweep_interval})")

    def _expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and now >= expires_at

    def _expiry(self, ttl_seconds: Optional[float], now: float) -> Optional[float]:
        if ttl_seconds is None or ttl_seconds <= 0:
            return None
        return now + ttl_seconds

    def get(self, key: str) -> Optional[Any]:
        with self.lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at, self.clock()):
                return None
            return copy.deepcopy(value)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float]) -> bool:
        stored = copy.deepcopy(value)
        with self.lock:
            self._data[key] = (stored, self._expiry(ttl_seconds, self.clock()))
        return True

    def delete(self, key: str) -> int:
        with self.lock:
            return 1 if self._data.pop(key, None) is not None else 0

    def update(self, key: str, mutator: Mutator,
               ttl_seconds: Optional[float] = None) -> Optional[Any]:
        with self.lock:
            now = self.clock()
            entry = self._data.get(key)
            current = None
            expires_at = None
            if entry is not None and not self._expired(entry[1], now):
                current = copy.deepcopy(entry[0])
                expires_at = entry[1]

            new_value = mutator(current)
            if new_value is None:
                return None

            if ttl_seconds is not None:
                expires_at = self._expiry(ttl_seconds, now)
            self._data[key] = (copy.deepcopy(new_value), expires_at)
            return copy.deepcopy(new_value)

    def is_shared(self) -> bool:
        return False

    def describe(self) -> Dict[str, Any]:
        with self.lock:
            size = len(self._data)
        return {"backend": "memory", "size": size}

    def entries(self, prefix: str = "") -> List[Tuple[str, Any, bool]]:
        """
        Snapshot of stored entries for diagnostics.

        Returns:
            List of (key, value copy, expired) tuples, expired entries included
        """
        with self.lock:
            now = self.clock()
            items = [
                (k, v, self._expired(exp, now))
                for k, (v, exp) in self._data.items()
                if k.startswith(prefix)
            ]
        return [(k, copy.deepcopy(v), expired) for k, v, expired in items]

    def sweep(self) -> int:
        """Remove expired keys. Returns count removed."""
        with self.lock:
            now = self.clock()
            stale = [k for k, (_, exp) in self._data.items() if self._expired(exp, now)]
            for k in stale:
                del self._data[k]
        if stale:
            logger.debug(f"MemoryBackend sweep removed {len(stale)} expired keys")
        return len(stale)

    def _start_sweeper(self):
        """Start periodic expiry sweep timer."""
        def sweep_task():
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"MemoryBackend sweep failed: {e}")
            if self._stopped:
                return
            # Reschedule
            self._sweep_timer = threading.Timer(self.sweep_interval, sweep_task)
            self._sweep_timer.daemon = True
            self._sweep_timer.start()

        self._sweep_timer = threading.Timer(self.sweep_interval, sweep_task)
        self._sweep_timer.daemon = True
        self._sweep_timer.start()

    def close(self) -> None:
        """Stop sweep timer."""
        self._stopped = True
        if self._sweep_timer:
            self._sweep_timer.cancel()
            self._sweep_timer = None


class RedisBackend(KeyValueBackend):
    """
    Redis-backed key/value backend.

    Features:
    - One JSON blob per key with native PX expiry
    - WATCH/MULTI transactions for atomic per-key upserts
    - KEEPTTL writes for reads that must not extend life
    """

    def __init__(self, redis_url: str = "redis://localhost:6379",
                 socket_timeout: float = 2.0,
                 client: Optional[redis.Redis] = None):
        """
        Initialize Redis backend.

        Args:
            redis_url: Redis connection URL
            socket_timeout: Per-command socket timeout in seconds
            client: Pre-built client (tests)
        """
        self.redis_url = redis_url
        self.client = client or redis.from_url(
            redis_url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        logger.info(f"RedisBackend configured for {self._safe_url()}")

    def _safe_url(self) -> str:
        # Hide credentials in logs
        if "@" in self.redis_url:
            scheme, _, rest = self.redis_url.partition("://")
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.redis_url

    @staticmethod
    def _ttl_ms(ttl_seconds: float) -> int:
        return max(1, int(ttl_seconds * 1000))

    def _decode(self, key: str, raw: Optional[bytes]) -> Optional[Any]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding undecodable value at {key}: {e}")
            return None

    def ping(self) -> bool:
        """Check connectivity."""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            raise BackendUnavailable(f"Redis ping failed: {e}", operation="ping")

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.error(f"Redis get failed for {key}: {e}")
            raise BackendUnavailable(f"Redis get failed: {e}", operation="get")
        return self._decode(key, raw)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float]) -> bool:
        data = json.dumps(value)
        try:
            if ttl_seconds:
                result = self.client.set(key, data, px=self._ttl_ms(ttl_seconds))
            else:
                result = self.client.set(key, data)
        except redis.RedisError as e:
            logger.error(f"Redis set failed for {key}: {e}")
            raise BackendUnavailable(f"Redis set failed: {e}", operation="set")
        return bool(result)

    def delete(self, key: str) -> int:
        try:
            return int(self.client.delete(key))
        except redis.RedisError as e:
            logger.error(f"Redis delete failed for {key}: {e}")
            raise BackendUnavailable(f"Redis delete failed: {e}", operation="delete")

    def update(self, key: str, mutator: Mutator,
               ttl_seconds: Optional[float] = None) -> Optional[Any]:
        def txn(pipe):
            current = self._decode(key, pipe.get(key))
            new_value = mutator(current)
            if new_value is None:
                return None
            pipe.multi()
            data = json.dumps(new_value)
            if ttl_seconds:
                pipe.set(key, data, px=self._ttl_ms(ttl_seconds))
            else:
                pipe.set(key, data, keepttl=True)
            return new_value

        try:
            return self.client.transaction(txn, key, value_from_callable=True)
        except redis.RedisError as e:
            logger.error(f"Redis update failed for {key}: {e}")
            raise BackendUnavailable(f"Redis update failed: {e}", operation="update")

    def is_shared(self) -> bool:
        return True

    def describe(self) -> Dict[str, Any]:
        return {"backend": "redis", "url": self._safe_url()}

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError as e:
            logger.warning(f"Redis close failed: {e}")


# =============================================================================
# Factory Function
# =============================================================================

def get_kv_backend(config: Dict[str, Any],
                   clock: Callable[[], float] = time.time) -> KeyValueBackend:
    """
    Factory function to create the process-wide backend.

    Args:
        config: Configuration dictionary with correlation settings

    Returns:
        RedisBackend when a connection URL is configured, else MemoryBackend
    """
    corr_config = config.get("correlation", {})

    redis_url = os.environ.get("REDIS_URL") or corr_config.get("redis_url") or ""
    redis_url = str(redis_url).strip()

    if redis_url:
        return RedisBackend(
            redis_url=redis_url,
            socket_timeout=corr_config.get("redis_socket_timeout", 2.0)
        )

    ttl_ms = chunk_ttl_ms(config)
    sweep_interval = min(ttl_ms / 1000.0, 5.0)
    return MemoryBackend(sweep_interval=sweep_interval, clock=clock)


def chunk_ttl_ms(config: Dict[str, Any]) -> int:
    """Configured chunk TTL in milliseconds (env CHUNKS_TTL_MS wins)."""
    raw = os.environ.get("CHUNKS_TTL_MS") or config.get("correlation", {}).get("chunk_ttl_ms", 15000)
    try:
        ttl = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid chunk TTL {raw!r}, using 15000ms")
        ttl = 15000
    return max(1000, ttl)
