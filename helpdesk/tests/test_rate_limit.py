from __future__ import annotations

import asyncio

import pytest

from services.cache import MemoryCache
from utils.rate_limit import DistributedRateLimiter, LeaderLock


@pytest.mark.asyncio
async def test_rate_limiter_blocks_after_limit() -> None:
    cache = MemoryCache()
    limiter = DistributedRateLimiter(cache)

    result1 = await limiter.hit("k1", limit=2, window_seconds=1)
    result2 = await limiter.hit("k1", limit=2, window_seconds=1)
    result3 = await limiter.hit("k1", limit=2, window_seconds=1)

    assert result1.allowed is True
    assert result2.allowed is True
    assert result3.allowed is False


@pytest.mark.asyncio
async def test_rate_limiter_resets_after_window() -> None:
    cache = MemoryCache()
    limiter = DistributedRateLimiter(cache)

    result1 = await limiter.hit("k2", limit=1, window_seconds=1)
    assert result1.allowed is True

    await asyncio.sleep(1.1)
    result2 = await limiter.hit("k2", limit=1, window_seconds=1)
    assert result2.allowed is True


@pytest.mark.asyncio
async def test_leader_lock_is_exclusive_until_released() -> None:
    cache = MemoryCache()
    first = LeaderLock(cache, "sweep", ttl_seconds=30)
    second = LeaderLock(cache, "sweep", ttl_seconds=30)

    assert await first.acquire() is True
    assert await second.acquire() is False

    # Only the holder can release.
    await second.release()
    assert await second.acquire() is False

    await first.release()
    assert await second.acquire() is True


@pytest.mark.asyncio
async def test_leader_lock_expires() -> None:
    cache = MemoryCache()
    first = LeaderLock(cache, "sweep", ttl_seconds=1)
    second = LeaderLock(cache, "sweep", ttl_seconds=1)

    assert await first.acquire() is True
    await asyncio.sleep(1.1)
    assert await second.acquire() is True
