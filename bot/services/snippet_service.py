from __future__ import annotations

import logging

from core.errors import NotFoundError, ValidationError
from database.models import Snippet
from database.repositories import SnippetRepository
from services.tag_service import normalize_tag_name
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

MAX_SNIPPET_LENGTH = 2000


class SnippetService:
    def __init__(self, repo: SnippetRepository) -> None:
        self.repo = repo

    async def save(self, guild_id: int, name: str, content: str, actor_id: int) -> Snippet:
        content = content.strip()
        if not content:
            raise ValidationError("Snippet content cannot be empty.")
        if len(content) > MAX_SNIPPET_LENGTH:
            raise ValidationError(f"Snippets are limited to {MAX_SNIPPET_LENGTH} characters.")
        snippet = Snippet(
            guild_id=guild_id,
            name=normalize_tag_name(name),
            content=content,
            created_by=actor_id,
            created_at=to_iso(utc_now()),
        )
        await self.repo.upsert(snippet)
        LOGGER.info("Snippet saved. guild=%s name=%s actor=%s", guild_id, snippet.name, actor_id)
        return snippet

    async def require(self, guild_id: int, name: str) -> Snippet:
        snippet = await self.repo.get(guild_id, name)
        if snippet is None:
            raise NotFoundError(f"Snippet `{name}` does not exist.")
        return snippet

    async def delete(self, guild_id: int, name: str) -> None:
        await self.require(guild_id, name)
        await self.repo.delete(guild_id, name)

    async def names(self, guild_id: int) -> list[str]:
        return await self.repo.list_names(guild_id)
