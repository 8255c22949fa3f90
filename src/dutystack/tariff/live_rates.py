"""Live rate fetches for programs that change faster than the catalog.

A failed fetch never fails the request: the service falls back to the
last value it saw (or the catalog rate) and marks the layer rate stale.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from dutystack.errors import STALE_RATE, UpstreamUnavailable
from dutystack.observability import log_event
from dutystack.tariff.layers import LayerRate, TariffLayer, catalog_rate
from dutystack.tariff.rate_cache import RateCache

logger = logging.getLogger(__name__)


class LiveRateFetcher(Protocol):
    def fetch_live_rate(self, program_id: str, code: str) -> float:
        """Return the current ad valorem rate or raise UpstreamUnavailable."""
        ...


class HttpLiveRateFetcher:
    """Fetch ``GET {base_url}/rates/{program_id}/{code}`` → ``{"rate": 25.0}``."""

    def __init__(self, base_url: str, *, timeout: float = 3.0, client: Optional[httpx.Client] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def fetch_live_rate(self, program_id: str, code: str) -> float:
        url = f"{self.base_url}/rates/{program_id}/{code}"
        try:
            response = self._client.get(url)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamUnavailable(f"Live rate fetch failed for {program_id}/{code}: {exc}") from exc
        rate = payload.get("rate") if isinstance(payload, dict) else None
        if not isinstance(rate, (int, float)) or isinstance(rate, bool) or rate < 0:
            raise UpstreamUnavailable(f"Live rate source returned no usable rate for {program_id}/{code}")
        return float(rate)

    def close(self) -> None:
        self._client.close()


class LiveRateService:
    """Read-through live rates keyed by ``(program_id, code)``."""

    def __init__(self, fetcher: LiveRateFetcher, cache: RateCache) -> None:
        self.fetcher = fetcher
        self.cache = cache

    def rate_for(self, layer: TariffLayer, code: str) -> LayerRate:
        key = ("live", layer.program_id, code)
        cached = self.cache.get(key)
        if cached is not None:
            return LayerRate(rate=float(cached), source="cache")
        try:
            value = self.cache.get_or_load(key, lambda: self.fetcher.fetch_live_rate(layer.program_id, code))
        except UpstreamUnavailable as exc:
            return self._degrade(layer, code, key, exc)
        return LayerRate(rate=float(value), source="live")

    def _degrade(self, layer: TariffLayer, code: str, key: tuple, exc: UpstreamUnavailable) -> LayerRate:
        last_known = self.cache.get_stale(key)
        log_event(
            "live_rate.stale",
            level=logging.WARNING,
            program_id=layer.program_id,
            code=code,
            reason=exc.message,
            fallback="cache" if last_known is not None else "catalog",
        )
        if last_known is not None:
            return LayerRate(rate=float(last_known), stale=True, source="cache", flag=STALE_RATE)
        fallback = catalog_rate(layer)
        return LayerRate(
            rate=fallback.rate,
            stale=True,
            source="catalog_fallback",
            flag=fallback.flag or STALE_RATE,
        )
