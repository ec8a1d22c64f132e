from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from services.cache import CacheBackend


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    current: int
    limit: int


class DistributedRateLimiter:
    def __init__(self, cache: CacheBackend) -> None:
        self.cache = cache

    async def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        current = await self.cache.incr(key, ttl=window_seconds)
        return RateLimitResult(
            allowed=current <= limit,
            current=current,
            limit=limit,
        )


class LeaderLock:
    """Cache-backed lease: whoever sets the key first holds it until it expires.

    With Redis behind the cache the lease is shared by every instance; with the
    in-memory cache it only coordinates tasks inside one process.
    """

    def __init__(self, cache: CacheBackend, key: str, ttl_seconds: int) -> None:
        self.cache = cache
        self.key = key
        self.ttl_seconds = max(1, ttl_seconds)
        self.owner = uuid4().hex

    async def acquire(self) -> bool:
        return await self.cache.add(self.key, self.owner, ttl=self.ttl_seconds)

    async def release(self) -> None:
        if await self.cache.get(self.key) == self.owner:
            await self.cache.delete(self.key)
