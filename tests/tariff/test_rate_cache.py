from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

import pytest

from dutystack.tariff.rate_cache import InMemoryRateCache, RedisRateCache, SingleFlight


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedisClient:
    """Dict-backed stand-in for RedisClient's JSON helpers."""

    def __init__(self) -> None:
        self.store: Dict[str, Any] = {}
        self.ttls: Dict[str, Optional[int]] = {}

    def get_json(self, key: str) -> Optional[Any]:
        return self.store.get(key)

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self.store[key] = value
        self.ttls[key] = ttl

    def expire_all_fresh(self) -> None:
        for key in [k for k in self.store if ":fresh:" in k]:
            del self.store[key]

    def count_keys(self, pattern: str) -> int:
        prefix = pattern.rstrip("*")
        return sum(1 for key in self.store if key.startswith(prefix))

    def delete_pattern(self, pattern: str) -> int:
        prefix = pattern.rstrip("*")
        doomed = [key for key in self.store if key.startswith(prefix)]
        for key in doomed:
            del self.store[key]
        return len(doomed)


def test_ttl_expiry_keeps_last_known_value():
    clock = FakeClock()
    cache = InMemoryRateCache(ttl_seconds=60, clock=clock)
    cache.put(("live", "p", "7208"), 25.0)

    assert cache.get(("live", "p", "7208")) == 25.0
    clock.advance(61)
    assert cache.get(("live", "p", "7208")) is None
    assert cache.get_stale(("live", "p", "7208")) == 25.0

    status = cache.status()
    assert status.entries == 1
    assert status.fresh == 0
    assert status.expired == 1


def test_get_or_load_reloads_after_expiry():
    clock = FakeClock()
    cache = InMemoryRateCache(ttl_seconds=10, clock=clock)
    values = iter([1.0, 2.0])
    assert cache.get_or_load("k", lambda: next(values)) == 1.0
    assert cache.get_or_load("k", lambda: next(values)) == 1.0
    clock.advance(11)
    assert cache.get_or_load("k", lambda: next(values)) == 2.0
    assert cache.status().loads == 2


def test_clear_reports_removed_entries():
    cache = InMemoryRateCache(ttl_seconds=60)
    cache.put("a", 1)
    cache.put("b", 2)
    assert cache.clear() == 2
    assert cache.get_stale("a") is None
    assert cache.status().entries == 0


def test_max_entries_evicts_oldest():
    clock = FakeClock()
    cache = InMemoryRateCache(ttl_seconds=60, clock=clock, max_entries=2)
    cache.put("a", 1)
    clock.advance(1)
    cache.put("b", 2)
    clock.advance(1)
    cache.put("c", 3)
    assert cache.get_stale("a") is None
    assert cache.get("b") == 2
    assert cache.get("c") == 3


def test_concurrent_loads_are_coalesced():
    cache = InMemoryRateCache(ttl_seconds=60)
    calls = []
    gate = threading.Barrier(8)

    def loader() -> float:
        calls.append(1)
        time.sleep(0.05)
        return 41.5

    def worker() -> float:
        gate.wait()
        return cache.get_or_load(("resolve", "6109100010", "CN", "2025-06-10"), loader)

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(lambda _: worker(), range(8)))

    assert results == [41.5] * 8
    assert len(calls) == 1
    assert cache.status().inflight == 0


def test_single_flight_followers_share_leader_error():
    flight = SingleFlight()
    started = threading.Event()
    release = threading.Event()

    def failing() -> None:
        started.set()
        release.wait(timeout=2)
        raise RuntimeError("upstream down")

    errors = []

    def follower() -> None:
        started.wait(timeout=2)
        try:
            flight.do("k", lambda: pytest.fail("follower must not run the loader"))
        except RuntimeError as exc:
            errors.append(str(exc))

    leader = threading.Thread(target=lambda: pytest.raises(RuntimeError, flight.do, "k", failing))
    leader.start()
    started.wait(timeout=2)
    follower_thread = threading.Thread(target=follower)
    follower_thread.start()
    time.sleep(0.2)
    release.set()
    leader.join(timeout=2)
    follower_thread.join(timeout=2)

    assert errors == ["upstream down"]
    assert flight.inflight == 0


def test_redis_cache_keeps_last_known_without_ttl():
    client = FakeRedisClient()
    cache = RedisRateCache(client, ttl_seconds=120, namespace="test:live")
    cache.put(("live", "ieepa_reciprocal", "6109100010"), 20.0)

    fresh_key = "test:live:fresh:live:ieepa_reciprocal:6109100010"
    last_key = "test:live:last:live:ieepa_reciprocal:6109100010"
    assert client.ttls[fresh_key] == 120
    assert client.ttls[last_key] is None

    client.expire_all_fresh()
    assert cache.get(("live", "ieepa_reciprocal", "6109100010")) is None
    assert cache.get_stale(("live", "ieepa_reciprocal", "6109100010")) == 20.0
    status = cache.status()
    assert status.backend == "redis"
    assert status.entries == 1
    assert status.expired == 1
    assert cache.clear() == 1


def test_redis_cache_encodes_values():
    client = FakeRedisClient()
    cache = RedisRateCache(
        client,
        ttl_seconds=60,
        encode=lambda value: {"rate": value},
        decode=lambda payload: payload["rate"],
    )
    assert cache.get_or_load("k", lambda: 7.5) == 7.5
    assert cache.get("k") == 7.5
