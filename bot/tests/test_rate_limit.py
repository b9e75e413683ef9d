from __future__ import annotations

import pytest

from core.config import LimitsConfig
from core.errors import RateLimitError
from services.cache import MemoryCache
from utils.constants import ACTION_MESSAGES, ACTION_TICKETS
from utils.rate_limit import DistributedRateLimiter, ModmailRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


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
    assert result3.retry_after > 0


@pytest.mark.asyncio
async def test_rate_limiter_resets_after_window() -> None:
    clock = FakeClock()
    limiter = DistributedRateLimiter(MemoryCache(clock=clock))

    result1 = await limiter.hit("k2", limit=1, window_seconds=60)
    assert result1.allowed is True
    assert (await limiter.hit("k2", limit=1, window_seconds=60)).allowed is False

    clock.now += 61
    result2 = await limiter.hit("k2", limit=1, window_seconds=60)
    assert result2.allowed is True


@pytest.mark.asyncio
async def test_memory_cache_expiry_and_sweep() -> None:
    clock = FakeClock()
    cache = MemoryCache(clock=clock)
    assert await cache.incr("short", ttl=5) == 1
    assert await cache.incr("forever") == 1

    assert await cache.ttl("short") == 5
    assert await cache.ttl("forever") == 0
    clock.now += 6
    assert await cache.sweep() == 1
    assert await cache.incr("forever") == 2
    assert await cache.incr("short", ttl=5) == 1


@pytest.mark.asyncio
async def test_modmail_limits_are_per_user_and_action() -> None:
    limiter = ModmailRateLimiter(MemoryCache(), LimitsConfig(tickets_per_hour=1, messages_per_minute=2))

    await limiter.check_or_raise(1, ACTION_TICKETS)
    await limiter.check_or_raise(2, ACTION_TICKETS)
    await limiter.check_or_raise(1, ACTION_MESSAGES)

    with pytest.raises(RateLimitError) as excinfo:
        await limiter.check_or_raise(1, ACTION_TICKETS)
    assert excinfo.value.retry_after > 0
    assert "too many tickets" in excinfo.value.user_message

    with pytest.raises(KeyError):
        await limiter.check(1, "unknown")


@pytest.mark.asyncio
async def test_command_cooldowns_use_configured_seconds() -> None:
    limiter = ModmailRateLimiter(MemoryCache(), LimitsConfig(command_cooldowns={"default": 3, "report": 120}))

    assert await limiter.cooldown(1, "report") == 0
    remaining = await limiter.cooldown(1, "report")
    assert 0 < remaining <= 120
    assert await limiter.cooldown(2, "report") == 0

    await limiter.cooldown_or_raise(1, "claim")
    with pytest.raises(RateLimitError):
        await limiter.cooldown_or_raise(1, "claim")
