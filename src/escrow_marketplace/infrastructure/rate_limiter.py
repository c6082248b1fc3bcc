"""Fixed-window rate limiters implementing the RateLimiter port.

Both count hits per key per window. The in-memory limiter keeps its counters
on the instance (one per process, injected where needed); the Redis limiter
shares counters across workers with INCR + EXPIRE.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from escrow_marketplace.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from redis.asyncio import Redis

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class InMemoryRateLimiter:
    """Per-instance fixed-window counter."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._max = max_requests
        self._window = window_seconds
        self._clock = clock
        self._counters: dict[str, tuple[int, int]] = {}
        self._pruned_window: int | None = None
        self._lock = asyncio.Lock()

    def _bucket(self) -> int:
        return int(self._clock().timestamp()) // self._window

    async def hit(self, key: str) -> bool:
        bucket = self._bucket()
        async with self._lock:
            if bucket != self._pruned_window:
                self._prune(bucket)
            window, count = self._counters.get(key, (bucket, 0))
            if window != bucket:
                count = 0
            count += 1
            self._counters[key] = (bucket, count)
        return count <= self._max

    def reset(self) -> None:
        self._counters.clear()

    def _prune(self, bucket: int) -> None:
        """Drop counters left over from earlier windows."""
        self._counters = {
            key: entry for key, entry in self._counters.items() if entry[0] == bucket
        }
        self._pruned_window = bucket


class RedisRateLimiter:
    """Fixed-window counter in Redis, shared by every worker process."""

    def __init__(
        self,
        redis: Redis,
        max_requests: int,
        window_seconds: int,
        prefix: str = "ratelimit",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._redis = redis
        self._max = max_requests
        self._window = window_seconds
        self._prefix = prefix
        self._clock = clock

    async def hit(self, key: str) -> bool:
        bucket = int(self._clock().timestamp()) // self._window
        redis_key = f"{self._prefix}:{key}:{bucket}"
        count = await self._redis.incr(redis_key)
        if count == 1:
            await self._redis.expire(redis_key, self._window)
        if count > self._max:
            logger.warning("rate_limit.exceeded", key=key, count=count, limit=self._max)
            return False
        return True
