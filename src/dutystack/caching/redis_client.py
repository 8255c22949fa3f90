"""Redis client used by the shared rate cache.

Cache Keys:
- dutystack:rates:fresh:{code}:{country}:{as_of} → EffectiveTariffResult JSON (TTL: cache TTL)
- dutystack:rates:last:{code}:{country}:{as_of}  → last-known copy (no TTL)
- dutystack:live:fresh:{program}:{code}          → live program rate (TTL: cache TTL)
- dutystack:live:last:{program}:{code}           → last-known live rate (no TTL)
"""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

import redis


class RedisClient:
    """Thin JSON-oriented wrapper over ``redis.Redis``."""

    def __init__(self, url: Optional[str] = None, *, client: Optional[redis.Redis] = None):
        self.url = url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self._client = client or redis.from_url(
            self.url,
            decode_responses=True,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )

    # -------------------------------------------------------------------------
    # JSON values
    # -------------------------------------------------------------------------

    def get_json(self, key: str) -> Optional[Any]:
        """Return the decoded JSON value at ``key`` or None on miss/garbage."""
        data = self._client.get(key)
        if data:
            try:
                return json.loads(data)
            except (json.JSONDecodeError, TypeError):
                return None
        return None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value, sort_keys=True)
        if ttl:
            self._client.setex(key, ttl, payload)
        else:
            self._client.set(key, payload)

    # -------------------------------------------------------------------------
    # Key-space helpers
    # -------------------------------------------------------------------------

    def count_keys(self, pattern: str) -> int:
        return sum(1 for _ in self._client.scan_iter(match=pattern, count=500))

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching ``pattern``; returns how many were removed."""
        removed = 0
        batch: list[str] = []
        for key in self._client.scan_iter(match=pattern, count=500):
            batch.append(key)
            if len(batch) >= 500:
                removed += self._client.delete(*batch)
                batch = []
        if batch:
            removed += self._client.delete(*batch)
        return removed

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.exceptions.ConnectionError:
            return False

    def info(self) -> Dict[str, Any]:
        return self._client.info()


# -------------------------------------------------------------------------
# Singleton instance
# -------------------------------------------------------------------------

_redis_client: Optional[RedisClient] = None


def get_redis_client(url: Optional[str] = None) -> RedisClient:
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient(url)
    return _redis_client
