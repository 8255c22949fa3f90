"""Redis-backed shared caching."""

from dutystack.caching.redis_client import RedisClient, get_redis_client

__all__ = ["RedisClient", "get_redis_client"]
