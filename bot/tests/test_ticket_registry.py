from __future__ import annotations

import asyncio

import pytest

from core.errors import TicketStateError
from database.models import Ticket
from services.ticket_registry import TicketRegistry
from utils.constants import TICKET_STATUS_CLOSED


def make_ticket(number: int, user_id: int, thread_id: int | None = None, **overrides) -> Ticket:
    values = {
        "id": f"1-{number:04d}",
        "numeric_id": f"{number:04d}",
        "guild_id": 1,
        "user_id": user_id,
        "user_tag": f"user{user_id}",
        "channel_id": 50,
        "created_at": f"2026-01-01T00:00:{number:02d}+00:00",
        "thread_id": thread_id,
        "info_message_id": 9000 + number,
    }
    values.update(overrides)
    return Ticket(**values)


def test_indices_follow_add_and_remove() -> None:
    registry = TicketRegistry()
    threaded = make_ticket(1, user_id=10, thread_id=600, thread_info_message_id=8001)
    registry.add(threaded)

    assert registry.find_open_for_user(1, 10) is threaded
    assert registry.find_for_user(10, [2, 1]) is threaded
    assert registry.find_by_thread(600) is threaded
    assert registry.find_by_info_message(9001) is threaded
    assert registry.find_by_info_message(8001) is threaded
    assert registry.find_by_channel(50) == []

    assert registry.remove(threaded.id) is threaded
    assert len(registry) == 0
    assert registry.find_open_for_user(1, 10) is None
    assert registry.find_by_thread(600) is None
    assert registry.find_by_info_message(8001) is None
    assert registry.remove(threaded.id) is None


def test_one_open_ticket_per_user_and_guild() -> None:
    registry = TicketRegistry()
    registry.add(make_ticket(1, user_id=10))

    with pytest.raises(TicketStateError):
        registry.add(make_ticket(2, user_id=10))
    with pytest.raises(TicketStateError):
        registry.add(make_ticket(1, user_id=11))

    registry.add(make_ticket(3, user_id=10, guild_id=2, id="2-0003"))
    assert len(registry) == 2
    assert [ticket.id for ticket in registry.for_guild(2)] == ["2-0003"]


def test_closed_tickets_are_rejected() -> None:
    with pytest.raises(TicketStateError):
        TicketRegistry().add(make_ticket(1, user_id=10, status=TICKET_STATUS_CLOSED))


def test_legacy_channel_tickets_are_oldest_first() -> None:
    registry = TicketRegistry()
    newer = make_ticket(5, user_id=11)
    older = make_ticket(2, user_id=10)
    registry.add(newer)
    registry.add(older)

    assert registry.find_by_channel(50) == [older, newer]

    registry.remove(older.id)
    assert registry.find_by_channel(50) == [newer]


@pytest.mark.asyncio
async def test_lock_serializes_same_key() -> None:
    registry = TicketRegistry()
    order: list[str] = []

    async def worker(name: str) -> None:
        async with registry.lock("1-0001"):
            order.append(f"{name}-start")
            await asyncio.sleep(0)
            order.append(f"{name}-end")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-start", "a-end", "b-start", "b-end"]


@pytest.mark.asyncio
async def test_lock_entries_are_released_after_use() -> None:
    registry = TicketRegistry()
    ticket = make_ticket(1, user_id=10)
    registry.add(ticket)

    async def worker() -> None:
        async with registry.lock(ticket.id):
            await asyncio.sleep(0)

    await asyncio.gather(worker(), worker(), worker())
    for number in range(20):
        async with registry.lock(f"open:1:{number}"):
            pass

    assert registry._locks == {}


@pytest.mark.asyncio
async def test_remove_inside_lock_keeps_waiters_serialized() -> None:
    registry = TicketRegistry()
    ticket = make_ticket(1, user_id=10)
    registry.add(ticket)
    order: list[str] = []

    async def closer() -> None:
        async with registry.lock(ticket.id):
            order.append("close-start")
            registry.remove(ticket.id)
            await asyncio.sleep(0)
            order.append("close-end")

    async def late() -> None:
        await asyncio.sleep(0)
        async with registry.lock(ticket.id):
            order.append("late")

    await asyncio.gather(closer(), late())

    assert order == ["close-start", "close-end", "late"]
    assert registry._locks == {}
