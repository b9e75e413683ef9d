from __future__ import annotations

import logging
from dataclasses import dataclass

from core.config import LimitsConfig
from core.errors import RateLimitError
from services.cache import CacheBackend
from utils.constants import ACTION_COMMANDS, ACTION_MESSAGES, ACTION_TICKETS

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class RateLimitResult:
    allowed: bool
    current: int
    limit: int
    retry_after: float = 0.0


class DistributedRateLimiter:
    def __init__(self, cache: CacheBackend) -> None:
        self.cache = cache

    async def hit(self, key: str, *, limit: int, window_seconds: int) -> RateLimitResult:
        current = await self.cache.incr(key, ttl=window_seconds)
        allowed = current <= limit
        return RateLimitResult(
            allowed=allowed,
            current=current,
            limit=limit,
            retry_after=0.0 if allowed else await self.cache.ttl(key),
        )


class ModmailRateLimiter:
    """Per-user quotas for ticket creation, relayed messages and commands."""

    def __init__(self, cache: CacheBackend, limits: LimitsConfig) -> None:
        self.limits = limits
        self._limiter = DistributedRateLimiter(cache)
        self._windows: dict[str, tuple[int, int]] = {
            ACTION_TICKETS: (limits.tickets_per_hour, 3600),
            ACTION_MESSAGES: (limits.messages_per_minute, 60),
            ACTION_COMMANDS: (limits.commands_per_minute, 60),
        }

    async def check(self, subject_id: int, action: str) -> RateLimitResult:
        if action not in self._windows:
            raise KeyError(f"Unknown rate limit action: {action}")
        limit, window = self._windows[action]
        return await self._limiter.hit(f"rl:{action}:{subject_id}", limit=limit, window_seconds=window)

    async def check_or_raise(self, subject_id: int, action: str) -> RateLimitResult:
        result = await self.check(subject_id, action)
        if not result.allowed:
            LOGGER.info(
                "Rate limit hit. user=%s action=%s count=%s limit=%s",
                subject_id,
                action,
                result.current,
                result.limit,
            )
            raise RateLimitError(_RATE_LIMIT_MESSAGES[action], result.retry_after)
        return result

    async def cooldown(self, user_id: int, command_name: str) -> float:
        seconds = self.limits.cooldown_for(command_name)
        result = await self._limiter.hit(f"cd:{command_name}:{user_id}", limit=1, window_seconds=seconds)
        return 0.0 if result.allowed else result.retry_after

    async def cooldown_or_raise(self, user_id: int, command_name: str) -> None:
        remaining = await self.cooldown(user_id, command_name)
        if remaining > 0:
            raise RateLimitError(f"The `{command_name}` command is on cooldown.", remaining)


_RATE_LIMIT_MESSAGES = {
    ACTION_TICKETS: "You have opened too many tickets recently.",
    ACTION_MESSAGES: "You are sending messages too quickly.",
    ACTION_COMMANDS: "You are using commands too quickly.",
}
