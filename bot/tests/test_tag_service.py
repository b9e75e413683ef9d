from __future__ import annotations

import pytest

from core.errors import NotFoundError, TagNotFoundError, ValidationError
from database.base import Database
from database.repositories import SnippetRepository, TagRepository
from services.snippet_service import SnippetService
from services.tag_service import TagService, normalize_tag_name, validate_color
from utils.constants import DEFAULT_TAG_COLOR


def test_tag_name_and_color_validation() -> None:
    assert normalize_tag_name("  vip-user ") == "vip-user"
    assert validate_color(None) == DEFAULT_TAG_COLOR
    assert validate_color("#A1b2C3") == "#A1b2C3"
    with pytest.raises(ValidationError):
        normalize_tag_name("has space")
    with pytest.raises(ValidationError):
        normalize_tag_name("x" * 33)
    with pytest.raises(ValidationError):
        validate_color("red")


@pytest.mark.asyncio
async def test_tag_lifecycle(db: Database) -> None:
    tags = TagService(TagRepository(db))

    created = await tags.create(1, "Billing", "Payment issues", actor_id=5, color="#ff0000")
    assert created.name == "Billing"

    with pytest.raises(ValidationError):
        await tags.create(1, "billing", "Duplicate", actor_id=5)
    other_guild = await tags.create(2, "billing", "", actor_id=6)
    assert other_guild.description == "No description"

    updated = await tags.update(1, "BILLING", description="Refunds and charges")
    assert updated.description == "Refunds and charges"
    assert updated.color == "#ff0000"
    assert updated.updated_at is not None

    fetched = await tags.require(1, "billing")
    assert fetched.description == "Refunds and charges"
    assert [tag.name for tag in await tags.list_for_guild(1)] == ["Billing"]

    await tags.delete(1, "billing")
    assert await tags.get(1, "billing") is None
    with pytest.raises(TagNotFoundError):
        await tags.delete(1, "billing")
    assert await tags.get(2, "billing") is not None


@pytest.mark.asyncio
async def test_snippets_upsert_and_delete(db: Database) -> None:
    snippets = SnippetService(SnippetRepository(db))

    await snippets.save(1, "greeting", "Hello! How can we help?", actor_id=5)
    await snippets.save(1, "Greeting", "Hi there!", actor_id=6)
    await snippets.save(1, "closing", "Thanks for reaching out.", actor_id=5)

    saved = await snippets.require(1, "GREETING")
    assert saved.content == "Hi there!"
    assert saved.created_by == 6
    assert await snippets.names(1) == ["closing", "Greeting"]

    with pytest.raises(ValidationError):
        await snippets.save(1, "empty", "   ", actor_id=5)
    with pytest.raises(ValidationError):
        await snippets.save(1, "long", "x" * 2001, actor_id=5)

    await snippets.delete(1, "greeting")
    with pytest.raises(NotFoundError):
        await snippets.require(1, "greeting")
