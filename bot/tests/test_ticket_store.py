from __future__ import annotations

import json
from pathlib import Path

import pytest

from database.models import Ticket
from services.ticket_store import TicketStore, verify_integrity
from utils.constants import EVENT_CLAIMED, TICKET_STATUS_IN_PROGRESS, TICKET_STATUS_PENDING


def make_ticket(number: int = 1, **overrides) -> Ticket:
    values = {
        "id": f"7-{number:04d}",
        "numeric_id": f"{number:04d}",
        "guild_id": 7,
        "user_id": 100 + number,
        "user_tag": f"user{number}",
        "channel_id": 70,
        "created_at": "2026-01-01T00:00:00+00:00",
        "thread_id": 7000 + number,
    }
    values.update(overrides)
    return Ticket(**values)


def store_at(tmp_path: Path) -> TicketStore:
    return TicketStore(tmp_path / "active.json", tmp_path / "backup.json", retries=2, retry_delay=0)


@pytest.mark.asyncio
async def test_save_then_load(tmp_path: Path) -> None:
    store = store_at(tmp_path)
    ticket = make_ticket(tags=["billing"], events=[{"type": "claimed", "actor": 1, "timestamp": "t"}])

    assert await store.save([ticket]) is True
    loaded = store.load()

    assert loaded == [ticket]


@pytest.mark.asyncio
async def test_second_save_keeps_backup_of_previous_file(tmp_path: Path) -> None:
    store = store_at(tmp_path)
    await store.save([make_ticket(1)])
    await store.save([make_ticket(1), make_ticket(2)])

    backup = json.loads((tmp_path / "backup.json").read_text(encoding="utf-8"))
    assert [entry["id"] for entry in backup] == ["7-0001"]
    assert not (tmp_path / "active.json.tmp").exists()


@pytest.mark.asyncio
async def test_corrupt_primary_recovers_from_backup(tmp_path: Path) -> None:
    store = store_at(tmp_path)
    await store.save([make_ticket(1)])
    await store.save([make_ticket(1), make_ticket(2)])
    (tmp_path / "active.json").write_text("{not json", encoding="utf-8")

    loaded = store.load()

    assert [ticket.id for ticket in loaded] == ["7-0001"]
    restored = json.loads((tmp_path / "active.json").read_text(encoding="utf-8"))
    assert [entry["id"] for entry in restored] == ["7-0001"]


def test_missing_files_mean_empty_registry(tmp_path: Path) -> None:
    assert store_at(tmp_path).load() == []


def test_map_shaped_snapshot_is_accepted(tmp_path: Path) -> None:
    entry = make_ticket(3).to_dict()
    (tmp_path / "active.json").write_text(json.dumps([["7-0003", entry]]), encoding="utf-8")

    assert [ticket.id for ticket in store_at(tmp_path).load()] == ["7-0003"]


@pytest.mark.asyncio
async def test_save_failure_is_reported(tmp_path: Path) -> None:
    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory", encoding="utf-8")
    store = TicketStore(blocker / "active.json", blocker / "backup.json", retries=2, retry_delay=0)

    assert await store.save([make_ticket()]) is False


def test_verify_integrity_repairs_entries() -> None:
    ticket = verify_integrity(
        {
            "id": "7-0009",
            "userId": "109",
            "channelId": "70",
            "status": "weird",
            "priority": "extreme",
            "tags": ["a", "A", 5, "b"],
            "events": "nope",
        }
    )

    assert ticket is not None
    assert ticket.guild_id == 7
    assert ticket.user_id == 109
    assert ticket.numeric_id == "0009"
    assert ticket.status == TICKET_STATUS_IN_PROGRESS
    assert ticket.priority == "medium"
    assert ticket.tags == ["a", "b"]
    assert ticket.events == []
    assert ticket.created_at
    assert ticket.user_tag == "Unknown User"


def test_verify_integrity_drops_unidentifiable_entries() -> None:
    assert verify_integrity("garbage") is None
    assert verify_integrity({"user_id": 1}) is None
    assert verify_integrity({"id": "abc", "user_id": 1, "channel_id": 2}) is None
    assert verify_integrity({"id": "7-0001", "guild_id": 7, "channel_id": 2}) is None


def test_verify_integrity_keeps_valid_status() -> None:
    ticket = verify_integrity(make_ticket().to_dict())

    assert ticket is not None
    assert ticket.status == TICKET_STATUS_PENDING


def fully_populated_ticket() -> Ticket:
    return make_ticket(
        5,
        status=TICKET_STATUS_IN_PROGRESS,
        thread_id=None,
        category="tech",
        priority="urgent",
        tags=["billing", "vip"],
        events=[{"type": EVENT_CLAIMED, "actor": 9, "timestamp": "2026-01-01T00:05:00+00:00", "initiated": True}],
        assigned_to=9,
        assigned_to_tag="mod#0001",
        assigned_at="2026-01-01T00:05:00+00:00",
        first_response_time="2026-01-01T00:05:00+00:00",
        close_reason="pending review",
        info_message_id=555,
        thread_info_message_id=556,
        initiated_by=9,
        linked_message_ids=[601, 602],
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "tickets",
    [
        [],
        [make_ticket(number) for number in range(1, 41)],
        [fully_populated_ticket()],
        [make_ticket(8, thread_id=None)],
    ],
    ids=["empty", "many", "all-optional-fields", "minimal"],
)
async def test_snapshot_round_trip_is_lossless(tmp_path: Path, tickets: list[Ticket]) -> None:
    store = store_at(tmp_path)

    assert await store.save(tickets) is True

    assert store.load() == tickets
