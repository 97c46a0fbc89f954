"""Sliding window rate limiter for outbound provider calls, shared through Redis."""
import asyncio
import math
import time
import uuid

import structlog
from redis import asyncio as aioredis

logger = structlog.get_logger(__name__)

MIN_WAIT_SECONDS = 0.005


class SlidingWindowRateLimiter:
    """
    Allow at most `max_calls` acquisitions in any `window_seconds` interval,
    counted across every process that uses the same Redis key.

    Usage:
        limiter = SlidingWindowRateLimiter(redis, "creditledger:meter:rate:test", max_calls=10)

        async with limiter:
            await provider.submit_event(...)

    Each acquisition is a member of a sorted set scored by wall-clock time.
    A caller adds its member first and keeps it only if the window count,
    itself included, stays within the limit.
    """

    def __init__(self, redis: aioredis.Redis, key: str, max_calls: int, window_seconds: float = 1.0):
        """
        Initialize rate limiter.

        Args:
            redis: Redis client shared by every worker process
            key: Sorted set holding the window
            max_calls: Maximum calls allowed in window
            window_seconds: Time window in seconds
        """
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        self.redis = redis
        self.key = key
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._ttl_seconds = math.ceil(window_seconds) + 1
        # At most one pending acquisition per process
        self._lock = asyncio.Lock()

    async def _try_acquire(self) -> float:
        """Record a call if the window has room; otherwise return seconds to wait."""
        now = time.time()
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(self.key, "-inf", now - self.window_seconds)
        pipe.zadd(self.key, {member: now})
        pipe.zcard(self.key)
        pipe.expire(self.key, self._ttl_seconds)
        _, _, count, _ = await pipe.execute()

        if count <= self.max_calls:
            return 0.0

        await self.redis.zrem(self.key, member)
        oldest = await self.redis.zrange(self.key, 0, 0, withscores=True)
        if not oldest:
            return MIN_WAIT_SECONDS
        _, oldest_score = oldest[0]
        return max(self.window_seconds - (now - float(oldest_score)), MIN_WAIT_SECONDS)

    async def acquire(self) -> None:
        """Wait until a call is allowed, then record it."""
        async with self._lock:
            while True:
                wait = await self._try_acquire()
                if not wait:
                    return
                logger.debug("rate_limit_waiting", key=self.key, wait_seconds=round(wait, 3))
                await asyncio.sleep(wait)

    async def current_usage(self) -> int:
        """Calls recorded in the current window."""
        await self.redis.zremrangebyscore(self.key, "-inf", time.time() - self.window_seconds)
        return await self.redis.zcard(self.key)

    async def __aenter__(self) -> "SlidingWindowRateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        pass
