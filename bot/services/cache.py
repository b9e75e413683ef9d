from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from core.config import RedisConfig

try:
    import redis.asyncio as redis
except ImportError:  # pragma: no cover - optional dependency at runtime
    redis = None


class CacheBackend(Protocol):
    async def incr(self, key: str, ttl: int | None = None) -> int: ...
    async def ttl(self, key: str) -> float: ...
    async def sweep(self) -> int: ...
    async def close(self) -> None: ...


@dataclass(slots=True)
class _MemoryValue:
    value: Any
    expires_at: float | None


class MemoryCache(CacheBackend):
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._store: dict[str, _MemoryValue] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    def _is_expired(self, entry: _MemoryValue) -> bool:
        if entry.expires_at is None:
            return False
        return self._clock() >= entry.expires_at

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._lock:
            entry = self._store.get(key)
            now = self._clock()
            if not entry or self._is_expired(entry):
                expires_at = now + ttl if ttl else None
                self._store[key] = _MemoryValue(value=1, expires_at=expires_at)
                return 1
            entry.value = int(entry.value) + 1
            return entry.value

    async def ttl(self, key: str) -> float:
        async with self._lock:
            entry = self._store.get(key)
            if not entry or entry.expires_at is None or self._is_expired(entry):
                return 0.0
            return max(0.0, entry.expires_at - self._clock())

    async def sweep(self) -> int:
        async with self._lock:
            expired = [key for key, entry in self._store.items() if self._is_expired(entry)]
            for key in expired:
                del self._store[key]
            return len(expired)

    async def close(self) -> None:
        self._store.clear()


class RedisCache(CacheBackend):
    def __init__(self, url: str) -> None:
        if redis is None:
            raise RuntimeError("Redis dependency not installed. Add redis package.")
        self._client = redis.from_url(url, decode_responses=True)

    async def incr(self, key: str, ttl: int | None = None) -> int:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(key)
            if ttl:
                pipe.expire(key, ttl, nx=True)
            result = await pipe.execute()
        return int(result[0])

    async def ttl(self, key: str) -> float:
        remaining_ms = await self._client.pttl(key)
        if remaining_ms is None or remaining_ms < 0:
            return 0.0
        return remaining_ms / 1000

    async def sweep(self) -> int:
        return 0

    async def close(self) -> None:
        await self._client.aclose()


async def build_cache(config: RedisConfig) -> CacheBackend:
    if config.enabled:
        return RedisCache(config.url)
    return MemoryCache()
