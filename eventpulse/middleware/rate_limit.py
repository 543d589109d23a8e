import asyncio
import time
import uuid
from typing import Dict, Optional

from redis.asyncio import Redis
import structlog

from eventpulse.core.errors import RateLimitedError

logger = structlog.get_logger()


class RedisTokenBucket:
    """Redis-backed rate limiter with an in-memory token bucket fallback"""

    def __init__(self, rate: int, period: int, redis: Optional[Redis] = None, name: str = "rate_limit"):
        """
        Args:
            rate: Number of units (events or requests) allowed
            period: Time period in seconds
            redis: Connected client, or None to keep buckets in memory
            name: Key namespace, so several limiters can share one Redis
        """
        self.rate = rate
        self.period = period
        self.redis = redis
        self.name = name
        self.buckets: Dict[str, dict] = {}
        self._lock = asyncio.Lock()
        if redis is None:
            logger.info("rate_limiter_using_memory", limiter=name)
        else:
            logger.info("rate_limiter_using_redis", limiter=name)

    async def is_allowed(self, key: str, cost: int = 1) -> bool:
        """
        Check whether `cost` units may be spent for the given key, spending them if so

        Args:
            key: Identifier (e.g., API key or tenant id)
            cost: Units consumed by this request (e.g., events in a batch)

        Returns:
            True if allowed, False if rate limit exceeded
        """
        if self.redis is not None:
            return await self._is_allowed_redis(key, cost)
        return await self._is_allowed_memory(key, cost)

    async def _is_allowed_redis(self, key: str, cost: int) -> bool:
        """Redis-based rate limiting using sliding window"""
        redis_key = f"{self.name}:{key}"
        now = time.time()
        window_start = now - self.period

        async with self.redis.pipeline(transaction=True) as pipe:
            # Remove old entries outside the window, then count what is left
            pipe.zremrangebyscore(redis_key, 0, window_start)
            pipe.zcard(redis_key)
            results = await pipe.execute()

        used = results[1]
        if used + cost > self.rate:
            return False

        batch_id = uuid.uuid4().hex
        members = {f"{now}:{batch_id}:{i}": now for i in range(cost)}
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(redis_key, members)
            pipe.expire(redis_key, self.period)
            await pipe.execute()

        return True

    async def _is_allowed_memory(self, key: str, cost: int) -> bool:
        """Fallback: in-memory token bucket"""
        async with self._lock:
            if key not in self.buckets:
                self.buckets[key] = {
                    "tokens": float(self.rate),
                    "last_update": time.monotonic()
                }

            bucket = self.buckets[key]
            now = time.monotonic()

            # Refill tokens based on time passed
            time_passed = now - bucket["last_update"]
            bucket["last_update"] = now
            refill_amount = (time_passed / self.period) * self.rate
            bucket["tokens"] = min(self.rate, bucket["tokens"] + refill_amount)

            if bucket["tokens"] >= cost:
                bucket["tokens"] -= cost
                return True

            return False

    async def get_remaining(self, key: str) -> int:
        """Get remaining units for a key"""
        if self.redis is not None:
            redis_key = f"{self.name}:{key}"
            now = time.time()
            count = await self.redis.zcount(redis_key, now - self.period, now)
            return max(0, self.rate - count)

        bucket = self.buckets.get(key)
        if not bucket:
            return self.rate
        return int(bucket["tokens"])

    async def enforce(self, key: str, cost: int = 1) -> None:
        """Raise RateLimitedError when the budget for `key` cannot cover `cost`"""
        if await self.is_allowed(key, cost):
            return

        remaining = await self.get_remaining(key)
        logger.warning(
            "rate_limit_exceeded",
            limiter=self.name,
            key=key,
            cost=cost,
            remaining=remaining
        )
        raise RateLimitedError(
            f"Rate limit exceeded ({self.rate} per {self.period}s). Please try again later.",
            retry_after=self.period
        )
