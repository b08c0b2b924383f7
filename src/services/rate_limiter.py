# src/services/rate_limiter.py
"""
Sliding-window limiter shared by every queue worker.

Each granted start is a member of a Redis sorted set scored by its timestamp.
A start is granted only if fewer than ``max_calls`` members fall inside the
last ``window_seconds``; the count and the insert run under WATCH/MULTI so
concurrent workers (in this process or another one) cannot both take the
last slot.
"""
import asyncio
import math
import os
import time
import uuid
from typing import Awaitable, Callable, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import WatchError

logger = structlog.get_logger(__name__)

RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "5"))
RATE_LIMIT_WINDOW_SECONDS = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))


class SlidingWindowRateLimiter:
    def __init__(
        self,
        redis: Redis,
        key: str = "ratelimit:render-jobs",
        max_calls: int = RATE_LIMIT_MAX,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.redis = redis
        self.key = key
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep

    async def try_acquire(self) -> Optional[float]:
        """
        Take a slot if one is free.
        Returns None on success, otherwise the number of seconds until the oldest slot leaves the window.
        """
        member = uuid.uuid4().hex
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                now = self._clock()
                window_start = now - self.window_seconds
                try:
                    await pipe.watch(self.key)
                    in_window = await pipe.zcount(self.key, f"({window_start}", "+inf")
                    if in_window >= self.max_calls:
                        oldest = await pipe.zrangebyscore(
                            self.key, f"({window_start}", "+inf", start=0, num=1, withscores=True
                        )
                        await pipe.unwatch()
                        if not oldest:
                            continue
                        return max(oldest[0][1] + self.window_seconds - now, 0.01)

                    pipe.multi()
                    pipe.zremrangebyscore(self.key, "-inf", window_start)
                    pipe.zadd(self.key, {member: now})
                    pipe.expire(self.key, math.ceil(self.window_seconds) + 1)
                    await pipe.execute()
                    return None
                except WatchError:
                    logger.debug("rate_limiter_contention", key=self.key)
                    continue

    async def acquire(self) -> None:
        """Block until a slot is granted."""
        while True:
            wait = await self.try_acquire()
            if wait is None:
                return
            logger.info("rate_limited", key=self.key, wait_seconds=round(wait, 2))
            await self._sleep(wait)

    async def current_usage(self) -> int:
        window_start = self._clock() - self.window_seconds
        return await self.redis.zcount(self.key, f"({window_start}", "+inf")
