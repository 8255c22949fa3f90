"""API key check and per-route rate limiting for the tariff routers."""

from __future__ import annotations

import threading
import time
from typing import Dict, FrozenSet, Optional, Tuple

from fastapi import Header, HTTPException, Request

from dutystack.config import EngineSettings, get_settings
from dutystack.observability import log_event, redact_api_key


def allowed_api_keys(settings: Optional[EngineSettings] = None) -> FrozenSet[str]:
    settings = settings or get_settings()
    return frozenset(settings.api_keys)


def route_template(request: Request) -> str:
    """Matched route pattern (``/api/tariff/hierarchy/{code}``), else the raw path.

    Limits are counted per endpoint, not per concrete URL.
    """
    route = request.scope.get("route")
    template = getattr(route, "path", None)
    return template if isinstance(template, str) and template else request.url.path


class RateLimiter:
    """In-process fixed-window limiter keyed by (api_key, route template)."""

    def __init__(self, rate_per_minute: int = 60, window_seconds: int = 60) -> None:
        self.rate_per_minute = max(1, rate_per_minute)
        self.window_seconds = max(1, window_seconds)
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], Tuple[int, int]] = {}

    def _current_window(self) -> int:
        return int(time.time() // self.window_seconds)

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()

    def check(self, api_key: str, route: str) -> None:
        window = self._current_window()
        key = (api_key, route)
        with self._lock:
            count, active_window = self._counters.get(key, (0, window))
            if active_window != window:
                count = 0
                active_window = window

            if count >= self.rate_per_minute:
                log_event("api.rate_limited", api_key=redact_api_key(api_key), route=route)
                raise HTTPException(
                    status_code=429,
                    detail={
                        "message": "Rate limit exceeded",
                        "limit_per_minute": self.rate_per_minute,
                        "route": route,
                    },
                )

            self._counters[key] = (count + 1, active_window)


_limiter: Optional[RateLimiter] = None
_limiter_lock = threading.Lock()


def get_rate_limiter() -> RateLimiter:
    """Process-wide limiter, sized from settings on first use."""
    global _limiter
    with _limiter_lock:
        if _limiter is None:
            _limiter = RateLimiter(rate_per_minute=get_settings().rate_limit_per_minute)
        return _limiter


def set_rate_limit(limit: Optional[int]) -> None:
    """Replace the limiter; ``None`` re-reads the limit from settings on next use."""
    global _limiter
    with _limiter_lock:
        _limiter = None if limit is None else RateLimiter(rate_per_minute=max(1, int(limit)))


def require_api_key(
    request: Request, x_api_key: Optional[str] = Header(None)
) -> str:
    """Validate the provided API key and enforce per-route rate limits."""

    if not x_api_key:
        raise HTTPException(status_code=401, detail={"message": "Missing API key"})
    if x_api_key not in allowed_api_keys():
        raise HTTPException(status_code=401, detail={"message": "Invalid API key"})

    get_rate_limiter().check(x_api_key, route_template(request))
    return x_api_key
