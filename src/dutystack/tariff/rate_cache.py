"""Explicit, TTL-bounded read-through cache for resolved rates.

The cache is injected wherever it is used (resolver wrapper, live-rate
service) instead of living as hidden module state, so tests can supply a
fake clock and operators can inspect or clear it.

``get_or_load`` coalesces concurrent misses for the same key into one
loader call; the lock guarding the in-flight table is never held while
the loader runs.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Generic, Hashable, Optional, Protocol, Tuple, TypeVar

from dutystack.observability import log_event

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheStatus:
    backend: str
    ttl_seconds: float
    entries: int
    fresh: int
    expired: int
    hits: int
    misses: int
    loads: int
    inflight: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RateCache(Protocol):
    def get(self, key: Hashable) -> Optional[Any]: ...

    def get_stale(self, key: Hashable) -> Optional[Any]: ...

    def put(self, key: Hashable, value: Any) -> None: ...

    def status(self) -> CacheStatus: ...

    def clear(self) -> int: ...

    def get_or_load(self, key: Hashable, loader: Callable[[], T]) -> T: ...


# ---------------------------------------------------------------------------
# Single-flight coordination
# ---------------------------------------------------------------------------
class _Call:
    __slots__ = ("done", "value", "error")

    def __init__(self) -> None:
        self.done = threading.Event()
        self.value: Any = None
        self.error: Optional[BaseException] = None


class SingleFlight:
    """At most one in-flight call per key; followers share the leader's outcome."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: Dict[Hashable, _Call] = {}

    @property
    def inflight(self) -> int:
        with self._lock:
            return len(self._calls)

    def do(self, key: Hashable, fn: Callable[[], T]) -> Tuple[T, bool]:
        """Run ``fn`` once for concurrent callers of ``key``.

        Returns ``(value, leader)`` where ``leader`` is True for the caller
        that actually executed ``fn``.
        """
        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if leader:
                call = _Call()
                self._calls[key] = call
        assert call is not None

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.value, False

        try:
            call.value = fn()
        except BaseException as exc:
            call.error = exc
            raise
        finally:
            with self._lock:
                self._calls.pop(key, None)
            call.done.set()
        return call.value, True


class _ReadThroughMixin:
    _flight: SingleFlight
    _stats_lock: threading.Lock
    _loads: int

    def get(self, key: Hashable) -> Optional[Any]:  # pragma: no cover - overridden
        raise NotImplementedError

    def put(self, key: Hashable, value: Any) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    def get_or_load(self, key: Hashable, loader: Callable[[], T]) -> T:
        cached = self.get(key)
        if cached is not None:
            return cached

        def _load() -> T:
            # Another leader may have filled the key between our miss and
            # acquiring leadership.
            again = self.get(key)
            if again is not None:
                return again
            log_event("rate_cache.load", key=_key_text(key))
            value = loader()
            with self._stats_lock:
                self._loads += 1
            self.put(key, value)
            return value

        value, _ = self._flight.do(key, _load)
        return value


def _key_text(key: Hashable) -> str:
    if isinstance(key, tuple):
        return ":".join(str(part) for part in key)
    return str(key)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------
class InMemoryRateCache(_ReadThroughMixin):
    """Process-local cache; expired entries are kept as last-known values."""

    def __init__(
        self,
        ttl_seconds: float = 900.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 10_000,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._max_entries = max(1, int(max_entries))
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._flight = SingleFlight()
        self._hits = 0
        self._misses = 0
        self._loads = 0

    def get(self, key: Hashable) -> Optional[Any]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and now - entry[0] < self.ttl_seconds:
                self._hits += 1
                return entry[1]
            self._misses += 1
            return None

    def get_stale(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            return entry[1] if entry is not None else None

    def put(self, key: Hashable, value: Any) -> None:
        now = self._clock()
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k][0])
                del self._entries[oldest]
            self._entries[key] = (now, value)

    def status(self) -> CacheStatus:
        now = self._clock()
        with self._lock:
            fresh = sum(1 for stored_at, _ in self._entries.values() if now - stored_at < self.ttl_seconds)
            total = len(self._entries)
            hits, misses = self._hits, self._misses
        return CacheStatus(
            backend="memory",
            ttl_seconds=self.ttl_seconds,
            entries=total,
            fresh=fresh,
            expired=total - fresh,
            hits=hits,
            misses=misses,
            loads=self._loads,
            inflight=self._flight.inflight,
        )

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info("Cleared %d rate cache entries", removed)
        return removed


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------
class RedisRateCache(_ReadThroughMixin):
    """Cache shared across workers via Redis.

    Fresh values live under ``<ns>:fresh:<key>`` with a TTL; the last-known
    value is mirrored under ``<ns>:last:<key>`` without expiry so stale
    fallbacks survive the TTL.
    """

    def __init__(
        self,
        client: Any,
        ttl_seconds: float = 900.0,
        *,
        namespace: str = "dutystack:rates",
        encode: Callable[[Any], Any] = lambda value: value,
        decode: Callable[[Any], Any] = lambda value: value,
    ) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self.namespace = namespace
        self._client = client
        self._encode = encode
        self._decode = decode
        self._stats_lock = threading.Lock()
        self._flight = SingleFlight()
        self._hits = 0
        self._misses = 0
        self._loads = 0

    def _fresh_key(self, key: Hashable) -> str:
        return f"{self.namespace}:fresh:{_key_text(key)}"

    def _last_key(self, key: Hashable) -> str:
        return f"{self.namespace}:last:{_key_text(key)}"

    def get(self, key: Hashable) -> Optional[Any]:
        payload = self._client.get_json(self._fresh_key(key))
        with self._stats_lock:
            if payload is None:
                self._misses += 1
            else:
                self._hits += 1
        return None if payload is None else self._decode(payload)

    def get_stale(self, key: Hashable) -> Optional[Any]:
        payload = self._client.get_json(self._last_key(key))
        return None if payload is None else self._decode(payload)

    def put(self, key: Hashable, value: Any) -> None:
        encoded = self._encode(value)
        # Round-trip through json to fail fast on unserializable values.
        json.dumps(encoded)
        self._client.set_json(self._fresh_key(key), encoded, ttl=max(1, int(self.ttl_seconds)))
        self._client.set_json(self._last_key(key), encoded)

    def status(self) -> CacheStatus:
        fresh = self._client.count_keys(f"{self.namespace}:fresh:*")
        total = self._client.count_keys(f"{self.namespace}:last:*")
        with self._stats_lock:
            hits, misses, loads = self._hits, self._misses, self._loads
        return CacheStatus(
            backend="redis",
            ttl_seconds=self.ttl_seconds,
            entries=total,
            fresh=fresh,
            expired=max(0, total - fresh),
            hits=hits,
            misses=misses,
            loads=loads,
            inflight=self._flight.inflight,
        )

    def clear(self) -> int:
        removed = self._client.delete_pattern(f"{self.namespace}:last:*")
        self._client.delete_pattern(f"{self.namespace}:fresh:*")
        with self._stats_lock:
            self._hits = 0
            self._misses = 0
        logger.info("Cleared %d redis rate cache entries", removed)
        return removed
