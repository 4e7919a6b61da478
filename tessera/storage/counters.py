"""Shared sliding-window counters used for rate limiting.

Counts live in shared storage (Redis or the relational store) so every
process enforcing a limit sees the same window.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from redis.exceptions import RedisError

from tessera.logging import get_logger
from tessera.storage.common import AuthRepository
from tessera.storage.errors import StorageUnavailable
from tessera.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    count: int
    retry_after: int = 0


class RateCounter(Protocol):
    async def hit(self, key: str, *, limit: int, window: timedelta) -> RateDecision: ...


class StoreRateCounter:
    """Sliding window over the repository's ``rate_event`` rows."""

    def __init__(
        self,
        store: AuthRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def hit(self, key: str, *, limit: int, window: timedelta) -> RateDecision:
        now = self._clock()
        allowed, count, oldest = self.store.hit_rate_window(
            key, now=now, window=window, limit=limit
        )
        if allowed:
            return RateDecision(True, count)
        reference = oldest or now
        retry_after = max(1, math.ceil((reference + window - now).total_seconds()))
        return RateDecision(False, count, retry_after)


class RedisRateCounter:
    """Sliding window backed by an atomic Redis script."""

    def __init__(self, cache: RedisCache | SyncRedisCache) -> None:
        self.cache = cache

    async def hit(self, key: str, *, limit: int, window: timedelta) -> RateDecision:
        try:
            allowed, count, retry_after = await self.cache.hit_sliding_window(
                key, limit, window.total_seconds()
            )
        except RedisError as exc:
            logger.error("rate_counter_unavailable", error_type=type(exc).__name__, error=str(exc))
            raise StorageUnavailable("rate counter unavailable") from exc
        return RateDecision(allowed, count, retry_after)
