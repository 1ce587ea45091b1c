"""Sliding window rate limiter backed by Redis sorted sets.

Each key owns a sorted set of hit timestamps, so every process enforcing a
limit shares one window. The per-webhook test trigger limit, the dispatch
limit and the API-wide middleware each use their own key prefix.
"""
import math
import time
from dataclasses import dataclass
from typing import Callable
from uuid import uuid4

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from enrollment_webhooks.cache import cache_key

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    """Result of recording one hit against a key."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: int  # seconds until the oldest hit leaves the window

    def headers(self) -> dict[str, str]:
        """Standard rate limit response headers."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class SlidingWindowRateLimiter:
    """
    Allows at most ``limit`` hits per key within ``window_seconds``.

    Rejected hits are not counted. Redis errors fail open.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        limit: int,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        key_prefix: str = "rate_limit",
    ):
        self.redis = redis_client
        self.limit = limit
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    async def hit(self, key: object) -> RateLimitDecision:
        """Record a hit for ``key`` unless it would exceed the limit."""
        now = self._clock()
        window_key = cache_key(self.key_prefix, key)
        member = f"{now!r}:{uuid4().hex}"

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(window_key, "-inf", now - self.window_seconds)
                pipe.zadd(window_key, {member: now})
                pipe.zcard(window_key)
                pipe.zrange(window_key, 0, 0, withscores=True)
                pipe.expire(window_key, max(1, math.ceil(self.window_seconds)))
                _, _, count, oldest, _ = await pipe.execute()

            if count > self.limit:
                await self.redis.zrem(window_key, member)
        except RedisError as e:
            logger.error("rate_limit_check_failed", key=window_key, error=str(e))
            return RateLimitDecision(True, self.limit, self.limit, 0)

        if count > self.limit:
            oldest_at = oldest[0][1] if oldest else now
            retry_after = max(1, math.ceil(oldest_at + self.window_seconds - now))
            return RateLimitDecision(False, self.limit, 0, retry_after)

        return RateLimitDecision(True, self.limit, self.limit - count, 0)

    async def reset(self, key: object) -> None:
        """Clear recorded hits for a key."""
        await self.redis.delete(cache_key(self.key_prefix, key))
