import asyncio
import os
import time
from abc import ABC, abstractmethod
from typing import Dict

import redis.asyncio as redis

RATE_LIMIT_BACKEND = os.getenv("RATE_LIMIT_BACKEND", "redis").lower()


class RateLimiter(ABC):
    # True if the caller may proceed, False while inside the window
    @abstractmethod
    async def hit(self, key: str, window_ms: int) -> bool: ...


class RedisRateLimiter(RateLimiter):
    def __init__(self, r: redis.Redis, prefix: str = "rl:"):
        self.r = r
        self.prefix = prefix

    async def hit(self, key, window_ms):
        ok = await self.r.set(f"{self.prefix}{key}", "1", nx=True,
                              px=window_ms)
        return bool(ok)


class MemoryRateLimiter(RateLimiter):
    """Single-process limiter. Only correct with one worker."""

    def __init__(self):
        self._deadlines: Dict[str, float] = {}
        self._lock = asyncio.Lock()

    async def hit(self, key, window_ms):
        now = time.monotonic()
        async with self._lock:
            if self._deadlines.get(key, 0.0) > now:
                return False
            self._deadlines[key] = now + window_ms / 1000.0
            if len(self._deadlines) > 10_000:
                self._deadlines = {
                    k: v for k, v in self._deadlines.items() if v > now
                }
            return True


def new_limiter(r: redis.Redis | None = None) -> RateLimiter:
    if RATE_LIMIT_BACKEND == "redis":
        if r is None:
            raise RuntimeError("redis rate limiter needs a redis client")
        return RedisRateLimiter(r)
    return MemoryRateLimiter()
