from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Protocol

import redis.asyncio as redis

from core.config import RedisConfig


class CacheBackend(Protocol):
    async def get(self, key: str) -> Any: ...
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...
    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool: ...
    async def delete(self, key: str) -> None: ...
    async def incr(self, key: str, ttl: int | None = None) -> int: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float | None


class MemoryCache(CacheBackend):
    """Process-local cache. Locks taken here only exclude tasks in this process."""

    def __init__(self) -> None:
        self._store: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _expiry(ttl: int | None) -> float | None:
        return time.monotonic() + ttl if ttl else None

    def _live(self, key: str) -> _Entry | None:
        entry = self._store.get(key)
        if entry and entry.expires_at is not None and time.monotonic() >= entry.expires_at:
            self._store.pop(key, None)
            return None
        return entry

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._live(key)
            return entry.value if entry else None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        async with self._lock:
            self._store[key] = _Entry(value, self._expiry(ttl))

    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._store[key] = _Entry(value, self._expiry(ttl))
            return True

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._store.pop(key, None)

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                self._store[key] = _Entry(1, self._expiry(ttl))
                return 1
            entry.value = int(entry.value) + 1
            return entry.value

    async def close(self) -> None:
        self._store.clear()


class RedisCache(CacheBackend):
    def __init__(self, url: str) -> None:
        self._client = redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Any:
        return await self._client.get(key)

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        await self._client.set(key, value, ex=ttl or None)

    async def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        result = await self._client.set(key, value, ex=ttl or None, nx=True)
        return bool(result)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            if ttl:
                # Only the first hit in a window sets the expiry.
                pipe.expire(key, ttl, nx=True)
            result = await pipe.execute()
        return int(result[0])

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig) -> CacheBackend:
    if config.enabled:
        return RedisCache(config.url)
    return MemoryCache()
