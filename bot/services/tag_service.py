from __future__ import annotations

import asyncio
import logging
import re

from core.errors import TagNotFoundError, ValidationError
from database.models import Tag
from database.repositories import TagRepository
from utils.constants import DEFAULT_TAG_COLOR
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

_TAG_NAME = re.compile(r"^[\w-]{1,32}$")
_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


def normalize_tag_name(name: str) -> str:
    cleaned = name.strip()
    if not _TAG_NAME.match(cleaned):
        raise ValidationError("Tag names must be 1-32 letters, numbers, dashes or underscores.")
    return cleaned


def validate_color(color: str | None) -> str:
    if not color:
        return DEFAULT_TAG_COLOR
    if not _HEX_COLOR.match(color.strip()):
        raise ValidationError("Invalid color format. Please use a hex color code (e.g., #ff0000).")
    return color.strip()


class TagService:
    """Per-guild tag registry. Tickets reference tags by name."""

    def __init__(self, repo: TagRepository) -> None:
        self.repo = repo
        self._lock = asyncio.Lock()

    async def create(
        self, guild_id: int, name: str, description: str, actor_id: int, color: str | None = None
    ) -> Tag:
        tag = Tag(
            guild_id=guild_id,
            name=normalize_tag_name(name),
            description=description.strip() or "No description",
            color=validate_color(color),
            created_by=actor_id,
            created_at=to_iso(utc_now()),
        )
        async with self._lock:
            if await self.repo.get(guild_id, tag.name):
                raise ValidationError(f"A tag named `{tag.name}` already exists.")
            await self.repo.create(tag)
        LOGGER.info("Tag created. guild=%s tag=%s actor=%s", guild_id, tag.name, actor_id)
        return tag

    async def update(
        self,
        guild_id: int,
        name: str,
        *,
        description: str | None = None,
        color: str | None = None,
    ) -> Tag:
        async with self._lock:
            tag = await self.require(guild_id, name)
            if description is not None:
                tag.description = description.strip() or tag.description
            if color is not None:
                tag.color = validate_color(color)
            tag.updated_at = to_iso(utc_now())
            await self.repo.update(tag)
        return tag

    async def delete(self, guild_id: int, name: str) -> Tag:
        async with self._lock:
            tag = await self.require(guild_id, name)
            await self.repo.delete(guild_id, tag.name)
        LOGGER.info("Tag deleted. guild=%s tag=%s", guild_id, tag.name)
        return tag

    async def get(self, guild_id: int, name: str) -> Tag | None:
        return await self.repo.get(guild_id, name)

    async def require(self, guild_id: int, name: str) -> Tag:
        tag = await self.repo.get(guild_id, name)
        if tag is None:
            raise TagNotFoundError(f"Tag `{name}` does not exist. Create it with `tags create` first.")
        return tag

    async def list_for_guild(self, guild_id: int) -> list[Tag]:
        return await self.repo.list_by_guild(guild_id)
