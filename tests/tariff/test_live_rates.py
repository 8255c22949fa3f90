from __future__ import annotations

from datetime import date

import httpx
import pytest

from dutystack.errors import STALE_RATE, UpstreamUnavailable
from dutystack.tariff.layers import TariffLayerRegistry
from dutystack.tariff.live_rates import HttpLiveRateFetcher, LiveRateService
from dutystack.tariff.rate_cache import InMemoryRateCache
from dutystack.tariff.stacking import TariffResolver
from tests.helpers.tariff_factories import make_layer

JUNE_2025 = date(2025, 6, 10)


class ScriptedFetcher:
    """Returns queued rates; ``None`` in the queue means the upstream is down."""

    def __init__(self, *rates):
        self.rates = list(rates)
        self.calls = 0

    def fetch_live_rate(self, program_id: str, code: str) -> float:
        self.calls += 1
        rate = self.rates.pop(0) if self.rates else None
        if rate is None:
            raise UpstreamUnavailable(f"{program_id} feed offline")
        return rate


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


LIVE_LAYER = make_layer("recip", "reciprocal", "*", "10%", live=True)


def test_live_rate_fetched_then_cached():
    fetcher = ScriptedFetcher(15.0)
    service = LiveRateService(fetcher, InMemoryRateCache(ttl_seconds=60))

    first = service.rate_for(LIVE_LAYER, "6109100010")
    second = service.rate_for(LIVE_LAYER, "6109100010")

    assert (first.rate, first.source, first.stale) == (15.0, "live", False)
    assert (second.rate, second.source) == (15.0, "cache")
    assert fetcher.calls == 1


def test_upstream_failure_falls_back_to_last_known_value():
    clock = FakeClock()
    fetcher = ScriptedFetcher(15.0, None)
    service = LiveRateService(fetcher, InMemoryRateCache(ttl_seconds=60, clock=clock))

    service.rate_for(LIVE_LAYER, "6109100010")
    clock.now += 120
    degraded = service.rate_for(LIVE_LAYER, "6109100010")

    assert degraded.rate == 15.0
    assert degraded.stale
    assert degraded.source == "cache"
    assert degraded.flag == STALE_RATE


def test_upstream_failure_without_history_uses_catalog_rate():
    service = LiveRateService(ScriptedFetcher(None), InMemoryRateCache(ttl_seconds=60))
    degraded = service.rate_for(LIVE_LAYER, "6109100010")
    assert degraded.rate == 10.0
    assert degraded.stale
    assert degraded.source == "catalog_fallback"


def test_stale_rate_surfaces_on_resolution(small_store):
    service = LiveRateService(ScriptedFetcher(None), InMemoryRateCache(ttl_seconds=60))
    registry = TariffLayerRegistry([LIVE_LAYER], live_rates=service)
    result = TariffResolver(small_store, registry).resolve("6109100010", "CN", JUNE_2025)

    assert result.stale
    assert STALE_RATE in result.flags
    assert result.effective_rate == pytest.approx(26.5)
    assert result.additional_duties[0].stale


def test_exclusion_layers_are_never_fetched():
    fetcher = ScriptedFetcher(99.0)
    service = LiveRateService(fetcher, InMemoryRateCache(ttl_seconds=60))
    registry = TariffLayerRegistry([], live_rates=service)
    exclusion = make_layer("annex", "reciprocal", "7208", "full", exclusion=True, live=True)
    assert registry.current_rate(exclusion, "72085100").waives_program
    assert fetcher.calls == 0


def test_http_fetcher_parses_rate_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/rates/ieepa_reciprocal/6109100010"
        return httpx.Response(200, json={"rate": 20.0})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    fetcher = HttpLiveRateFetcher("http://rates.test/", client=client)
    assert fetcher.fetch_live_rate("ieepa_reciprocal", "6109100010") == 20.0


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="maintenance"),
        httpx.Response(200, json={"rate": "twenty"}),
        httpx.Response(200, text="not json"),
    ],
)
def test_http_fetcher_maps_failures_to_upstream_unavailable(response):
    client = httpx.Client(transport=httpx.MockTransport(lambda request: response))
    fetcher = HttpLiveRateFetcher("http://rates.test", client=client)
    with pytest.raises(UpstreamUnavailable):
        fetcher.fetch_live_rate("ieepa_reciprocal", "6109100010")
