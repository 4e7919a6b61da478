from __future__ import annotations

import math
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from tessera.storage.common import rate_key_digest


def _retry_after_seconds(oldest_ms: int, window_ms: int, now_ms: int) -> int:
    return max(1, math.ceil((oldest_ms + window_ms - now_ms) / 1000))


class RedisCache:
    """Thin Redis wrapper for shared rate-limit windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic sliding window over a sorted set scored by millisecond timestamps.
    # Rejected hits are not recorded.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count < limit then
  redis.call('ZADD', key, now, member)
  count = count + 1
  allowed = 1
end

local oldest = now
local head = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if head[2] then
  oldest = tonumber(head[2])
end
redis.call('PEXPIRE', key, window)
return {allowed, count, oldest}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: float
    ) -> Tuple[bool, int, int]:
        """Record one hit; return ``(allowed, count_in_window, retry_after_seconds)``."""
        now_ms = int(time.time() * 1000)
        window_ms = int(window_seconds * 1000)
        allowed, count, oldest = await self._sliding_window(
            keys=[rate_key_digest(key)],
            args=[now_ms, window_ms, limit, f"{now_ms}:{uuid.uuid4().hex}"],
        )
        allowed_bool = bool(int(allowed))
        retry_after = 0 if allowed_bool else _retry_after_seconds(int(oldest), window_ms, now_ms)
        return allowed_bool, int(count), retry_after

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under ``asyncio.run`` per test, but exposes the same awaitable surface as
    :class:`RedisCache`.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(RedisCache._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: float
    ) -> Tuple[bool, int, int]:
        now_ms = int(time.time() * 1000)
        window_ms = int(window_seconds * 1000)
        allowed, count, oldest = self._sliding_window(
            keys=[rate_key_digest(key)],
            args=[now_ms, window_ms, limit, f"{now_ms}:{uuid.uuid4().hex}"],
        )
        allowed_bool = bool(int(allowed))
        retry_after = 0 if allowed_bool else _retry_after_seconds(int(oldest), window_ms, now_ms)
        return allowed_bool, int(count), retry_after

    async def close(self) -> None:
        self.client.close()


CacheBackend = Optional[RedisCache | SyncRedisCache]
