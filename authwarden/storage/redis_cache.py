from __future__ import annotations

import math

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for short-lived auth counters."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and open the window on the first hit only, so later attempts never
    # extend it
    _WINDOW_INCR_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

    # DECR an existing counter without creating it or dropping below zero; the
    # TTL is left untouched
    _WINDOW_DECR_SCRIPT = """
local count = tonumber(redis.call('GET', KEYS[1]) or '0')
if count > 0 then
  count = redis.call('DECR', KEYS[1])
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_incr = self.client.register_script(self._WINDOW_INCR_SCRIPT)
        self._window_decr = self.client.register_script(self._WINDOW_DECR_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def incr_window(self, key: str, window_seconds: int) -> int:
        result = await self._window_incr(keys=[key], args=[window_seconds])
        return int(result)

    async def decr_window(self, key: str) -> int:
        result = await self._window_decr(keys=[key])
        return int(result)

    async def get_counter(self, key: str) -> int:
        raw = await self.client.get(key)
        return int(raw) if raw else 0

    async def ttl_seconds(self, key: str) -> int:
        ttl = await self.client.ttl(key)
        return int(ttl) if ttl and ttl > 0 else 0

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class RedisAttemptThrottle:
    """Login attempt counter shared by every process in a deployment."""

    KEY_PREFIX = "auth:login_attempts:"

    def __init__(self, cache: RedisCache, window_seconds: int = 15 * 60) -> None:
        self.cache = cache
        self.window_seconds = window_seconds

    def _key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def increment(self, key: str) -> int:
        return await self.cache.incr_window(self._key(key), self.window_seconds)

    async def release(self, key: str) -> int:
        return await self.cache.decr_window(self._key(key))

    async def get(self, key: str) -> int:
        return await self.cache.get_counter(self._key(key))

    async def retry_after(self, key: str) -> int:
        ttl = await self.cache.ttl_seconds(self._key(key))
        if ttl <= 0:
            return 0
        return max(1, math.ceil(ttl))


__all__ = ["RedisCache", "RedisAttemptThrottle"]
