from __future__ import annotations

import asyncio
import random
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from core.config import LimitsConfig
from core.errors import (
    BlacklistedError,
    ConfigurationError,
    DeliveryError,
    PermissionDeniedError,
    PersistenceError,
    RateLimitError,
    StaleSurveyError,
    TagNotFoundError,
    TicketNotFoundError,
    TicketStateError,
    ValidationError,
)
from database.base import Database
from database.models import HistoryMessage
from services.platform import InboundMessage
from services.ticket_service import StaffMessageOutcome
from tests.fakes import (
    GUILD_ID,
    MODMAIL_CHANNEL_ID,
    OTHER_STAFF_ID,
    STAFF_ID,
    USER_ID,
    FakePlatform,
    ServiceHarness,
    build_harness,
    guild_config,
)
from utils.constants import (
    CLAIM_EMOJI,
    EVENT_CATEGORY_CHANGED,
    EVENT_CLAIMED,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUS_PENDING,
)


def dm(content: str, author_id: int = USER_ID, message_id: int = 1) -> InboundMessage:
    return InboundMessage(
        id=message_id,
        author_id=author_id,
        author_tag=f"user{author_id}",
        content=content,
        channel_id=author_id + 1,
    )


def staff_message(
    content: str,
    channel_id: int,
    author_id: int = STAFF_ID,
    in_thread: bool = True,
    reference_message_id: int | None = None,
) -> InboundMessage:
    return InboundMessage(
        id=77,
        author_id=author_id,
        author_tag=f"staff{author_id}",
        content=content,
        channel_id=channel_id,
        guild_id=GUILD_ID,
        parent_channel_id=MODMAIL_CHANNEL_ID if in_thread else None,
        reference_message_id=reference_message_id,
    )


@pytest.mark.asyncio
async def test_first_dm_opens_thread_ticket(harness: ServiceHarness, tmp_path: Path) -> None:
    ticket = await harness.service.handle_direct_message(dm("I need help"))

    assert ticket.id == f"{GUILD_ID}-0001"
    assert ticket.numeric_id == "0001"
    assert ticket.status == TICKET_STATUS_PENDING
    assert ticket.thread_id is not None
    assert ticket.info_message_id is not None
    assert ticket.thread_info_message_id is not None
    assert harness.registry.get(ticket.id) is ticket

    relayed = harness.platform.calls_to("relay_user_message")
    assert relayed == [(ticket.thread_id, f"user{USER_ID}", "I need help", [])]
    assert harness.platform.calls_to("notify_user")[0][1] == "📩 Ticket Created"
    assert harness.platform.calls_to("post_log")[0][1] == "📩 Ticket Opened"
    assert (tmp_path / "data" / "active-tickets.json").exists()


@pytest.mark.asyncio
async def test_numeric_ids_increase_per_guild(harness: ServiceHarness) -> None:
    first = await harness.service.handle_direct_message(dm("one", author_id=501))
    second = await harness.service.handle_direct_message(dm("two", author_id=502))

    assert first.numeric_id == "0001"
    assert second.numeric_id == "0002"


@pytest.mark.asyncio
async def test_follow_up_dm_is_routed_to_open_ticket(harness: ServiceHarness) -> None:
    first = await harness.service.handle_direct_message(dm("first"))
    again = await harness.service.handle_direct_message(dm("second", message_id=2))

    assert again is first
    assert len(harness.registry) == 1
    assert [call[2] for call in harness.platform.calls_to("relay_user_message")] == ["first", "second"]


@pytest.mark.asyncio
async def test_dm_without_configured_guild_is_rejected(db: Database, tmp_path: Path, platform: FakePlatform) -> None:
    harness = build_harness(db, tmp_path, platform, guilds=[])

    with pytest.raises(ConfigurationError):
        await harness.service.handle_direct_message(dm("hello"))


@pytest.mark.asyncio
async def test_missing_modmail_channel_is_a_configuration_error(harness: ServiceHarness) -> None:
    harness.platform.existing_channels.clear()

    with pytest.raises(ConfigurationError):
        await harness.service.handle_direct_message(dm("hello"))
    assert len(harness.registry) == 0


@pytest.mark.asyncio
async def test_blacklisted_user_cannot_open_ticket(harness: ServiceHarness) -> None:
    await harness.blacklist_repo.add(GUILD_ID, USER_ID, "spam", STAFF_ID, None)

    with pytest.raises(BlacklistedError):
        await harness.service.handle_direct_message(dm("let me in"))
    assert len(harness.registry) == 0
    assert "relay_user_message" not in harness.platform.names()


@pytest.mark.asyncio
async def test_expired_blacklist_entry_is_ignored(harness: ServiceHarness) -> None:
    await harness.blacklist_repo.add(GUILD_ID, USER_ID, "spam", STAFF_ID, "2000-01-01T00:00:00+00:00")

    ticket = await harness.service.handle_direct_message(dm("hello again"))

    assert ticket.numeric_id == "0001"
    assert await harness.blacklist_repo.get_active(GUILD_ID, USER_ID) is None


@pytest.mark.asyncio
async def test_failed_thread_creation_retires_numeric_id(harness: ServiceHarness) -> None:
    harness.platform.fail_thread = True
    with pytest.raises(DeliveryError):
        await harness.service.handle_direct_message(dm("hello"))
    assert len(harness.registry) == 0
    assert "delete_message" in harness.platform.names()

    harness.platform.fail_thread = False
    ticket = await harness.service.handle_direct_message(dm("hello again"))
    assert ticket.numeric_id == "0002"


@pytest.mark.asyncio
async def test_staff_reply_auto_claims_ticket(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))

    outcome = await harness.service.handle_staff_message(staff_message("On it", ticket.thread_id))

    assert outcome is StaffMessageOutcome.REPLIED
    assert ticket.status == TICKET_STATUS_IN_PROGRESS
    assert ticket.assigned_to == STAFF_ID
    assert ticket.assigned_to_tag == f"staff{STAFF_ID}"
    assert ticket.first_response_time is not None
    assert [event["type"] for event in ticket.events] == [EVENT_CLAIMED]
    assert harness.platform.calls_to("deliver_staff_reply") == [
        (USER_ID, f"staff{STAFF_ID}", "On it", False, False)
    ]
    notices = [call[1] for call in harness.platform.calls_to("post_notice")]
    assert "Ticket Claimed" in notices


@pytest.mark.asyncio
async def test_reply_from_other_staff_warns_about_assignment(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    await harness.service.claim_ticket(ticket, STAFF_ID, "staff")

    await harness.service.reply(ticket, OTHER_STAFF_ID, "other", "Jumping in")

    assert ticket.assigned_to == STAFF_ID
    notices = harness.platform.calls_to("post_notice")
    assert notices[-1][1] == "Heads Up"
    assert harness.platform.calls_to("deliver_staff_reply")[-1][-1] is True


@pytest.mark.asyncio
async def test_anonymous_reply_is_flagged(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))

    await harness.service.reply(ticket, STAFF_ID, "staff", "Hello", anonymous=True)

    assert harness.platform.calls_to("deliver_staff_reply")[0][3] is True


@pytest.mark.asyncio
async def test_hash_prefix_posts_staff_note(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))

    outcome = await harness.service.handle_staff_message(staff_message("#check their order", ticket.thread_id))

    assert outcome is StaffMessageOutcome.NOTE
    assert harness.platform.calls_to("post_staff_note") == [
        (ticket.thread_id, f"staff{STAFF_ID}", "check their order")
    ]
    assert (ticket.thread_id, 77) in harness.platform.calls_to("delete_message")
    assert "deliver_staff_reply" not in harness.platform.names()
    assert ticket.status == TICKET_STATUS_PENDING


@pytest.mark.asyncio
async def test_command_prefixes_and_non_staff_are_ignored(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))

    command = await harness.service.handle_staff_message(staff_message("!close", ticket.thread_id))
    outsider = await harness.service.handle_staff_message(staff_message("hi", ticket.thread_id, author_id=4242))
    unrelated = await harness.service.handle_staff_message(staff_message("hi", 999_999))

    assert command is StaffMessageOutcome.IGNORED
    assert outsider is StaffMessageOutcome.IGNORED
    assert unrelated is StaffMessageOutcome.NOT_A_TICKET
    assert "deliver_staff_reply" not in harness.platform.names()


@pytest.mark.asyncio
async def test_main_channel_message_in_thread_mode_is_redirected(harness: ServiceHarness) -> None:
    await harness.service.handle_direct_message(dm("help"))

    outcome = await harness.service.handle_staff_message(
        staff_message("answer", MODMAIL_CHANNEL_ID, in_thread=False)
    )

    assert outcome is StaffMessageOutcome.WRONG_SURFACE
    assert harness.platform.calls_to("post_notice")[-1][1] == "Thread Required"
    assert (MODMAIL_CHANNEL_ID, 77) in harness.platform.calls_to("delete_message")


@pytest.mark.asyncio
async def test_claim_reaction_by_staff_claims_once(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    assert ticket.thread_info_message_id is not None

    outsider = await harness.service.handle_claim_reaction(
        ticket.thread_id, ticket.thread_info_message_id, 4242, "outsider", CLAIM_EMOJI
    )
    first = await harness.service.handle_claim_reaction(
        ticket.thread_id, ticket.thread_info_message_id, STAFF_ID, "staff", CLAIM_EMOJI
    )
    second = await harness.service.handle_claim_reaction(
        ticket.thread_id, ticket.thread_info_message_id, OTHER_STAFF_ID, "other", CLAIM_EMOJI
    )
    wrong_emoji = await harness.service.handle_claim_reaction(
        ticket.thread_id, ticket.thread_info_message_id, STAFF_ID, "staff", "👍"
    )

    assert (outsider, first, second, wrong_emoji) == (False, True, False, False)
    assert ticket.assigned_to == STAFF_ID
    assert harness.platform.calls_to("remove_reaction") == [
        (ticket.thread_id, ticket.thread_info_message_id, CLAIM_EMOJI, 4242)
    ]
    assert [call[1] for call in harness.platform.calls_to("post_log")].count("✅ Ticket Claimed") == 1


@pytest.mark.asyncio
async def test_close_archives_and_sends_survey(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    await harness.service.reply(ticket, STAFF_ID, "staff", "Fixed")
    harness.platform.history = [
        HistoryMessage(id=1, author="user500", author_id=USER_ID, content="help", timestamp="t1", is_staff=False),
        HistoryMessage(id=2, author="staff", author_id=STAFF_ID, content="Fixed", timestamp="t2", is_staff=True),
    ]

    record = await harness.service.close_ticket(ticket, STAFF_ID, "staff", "resolved")

    assert record.ticket.status == TICKET_STATUS_CLOSED
    assert record.ticket.close_reason == "resolved"
    assert record.message_count == 2
    assert record.staff_message_count == 1
    assert record.user_message_count == 1
    assert ticket.status == TICKET_STATUS_CLOSED
    assert ticket.id not in harness.registry
    assert await harness.history_repo.exists(ticket.id)
    assert harness.surveys.get(ticket.id) is not None
    assert ("archive_thread", (ticket.thread_id,)) in harness.platform.calls
    transcripts = harness.platform.calls_to("post_transcript")
    assert transcripts == [(GUILD_ID, ticket.id, [f"{ticket.id}.md", f"{ticket.id}.html"])]
    closed_dm = harness.platform.calls_to("notify_user")[-1]
    assert closed_dm[1] == "🔒 Ticket Closed"
    assert "resolved" in closed_dm[2]


@pytest.mark.asyncio
async def test_close_happens_exactly_once(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    await harness.service.close_ticket(ticket, STAFF_ID, "staff")

    with pytest.raises(TicketStateError):
        await harness.service.close_ticket(ticket, STAFF_ID, "staff")
    assert await harness.history_repo.count_for_ticket(ticket.id) == 1
    assert harness.platform.calls_to("send_survey") == [(ticket.id, USER_ID)]


@pytest.mark.asyncio
async def test_survey_rating_then_stale(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    await harness.service.claim_ticket(ticket, STAFF_ID, "staff")
    await harness.service.close_ticket(ticket, STAFF_ID, "staff")

    record = await harness.surveys.record_response(ticket.id, USER_ID, 5)

    assert record.satisfaction_rating == 5
    server = await harness.history_repo.server_stats(GUILD_ID)
    assert server is not None
    assert server.average_rating == 5
    staff_rows = await harness.history_repo.staff_stats(GUILD_ID)
    assert [(row.subject_id, row.rating_count) for row in staff_rows] == [(STAFF_ID, 1)]
    assert harness.platform.calls_to("post_log")[-1][1] == "⭐ Ticket Rated"

    with pytest.raises(StaleSurveyError):
        await harness.surveys.record_response(ticket.id, USER_ID, 4)


@pytest.mark.asyncio
async def test_undeliverable_survey_does_not_block_close(harness: ServiceHarness) -> None:
    harness.platform.fail_survey = True
    ticket = await harness.service.handle_direct_message(dm("help"))

    await harness.service.close_ticket(ticket, STAFF_ID, "staff")

    assert harness.surveys.get(ticket.id) is None
    assert await harness.history_repo.exists(ticket.id)


@pytest.mark.asyncio
async def test_user_can_open_new_ticket_after_close(harness: ServiceHarness) -> None:
    first = await harness.service.handle_direct_message(dm("help"))
    await harness.service.close_ticket(first, STAFF_ID, "staff")

    second = await harness.service.handle_direct_message(dm("more help"))

    assert second.numeric_id == "0002"
    assert second is not first


@pytest.mark.asyncio
async def test_ticket_creation_rate_limit(db: Database, tmp_path: Path, platform: FakePlatform) -> None:
    harness = build_harness(db, tmp_path, platform, limits=LimitsConfig(tickets_per_hour=1))
    first = await harness.service.handle_direct_message(dm("help"))
    await harness.service.close_ticket(first, STAFF_ID, "staff")

    with pytest.raises(RateLimitError):
        await harness.service.handle_direct_message(dm("again"))


@pytest.mark.asyncio
async def test_operations_on_closed_ticket_fail(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    await harness.service.close_ticket(ticket, STAFF_ID, "staff")

    with pytest.raises(TicketStateError):
        await harness.service.reply(ticket, STAFF_ID, "staff", "late")
    with pytest.raises(TicketStateError):
        await harness.service.set_priority(ticket, "high", STAFF_ID)


@pytest.mark.asyncio
async def test_category_priority_and_tags(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    await harness.tags.create(GUILD_ID, "billing", "Payment issues", STAFF_ID)

    await harness.service.set_category(ticket, "Tech", STAFF_ID)
    await harness.service.set_priority(ticket, "urgent", STAFF_ID, "VIP")
    await harness.service.add_tag(ticket, "BILLING", STAFF_ID)

    assert ticket.category == "tech"
    assert ticket.priority == "urgent"
    assert ticket.tags == ["billing"]
    assert ticket.events[0]["type"] == EVENT_CATEGORY_CHANGED
    assert ticket.events[1]["reason"] == "VIP"

    with pytest.raises(ValidationError):
        await harness.service.add_tag(ticket, "billing", STAFF_ID)
    with pytest.raises(TagNotFoundError):
        await harness.service.add_tag(ticket, "missing", STAFF_ID)
    with pytest.raises(ValidationError):
        await harness.service.set_category(ticket, "nonsense", STAFF_ID)
    with pytest.raises(ValidationError):
        await harness.service.set_priority(ticket, "critical", STAFF_ID)

    await harness.service.remove_tag(ticket, "Billing", STAFF_ID)
    assert ticket.tags == []
    with pytest.raises(ValidationError):
        await harness.service.remove_tag(ticket, "billing", STAFF_ID)


@pytest.mark.asyncio
async def test_resolve_ticket_by_surface_and_reference(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))

    assert harness.service.resolve_ticket(GUILD_ID, ticket.thread_id) is ticket
    assert harness.service.resolve_ticket(GUILD_ID, 1, "#1") is ticket
    assert harness.service.resolve_ticket(GUILD_ID, 1, ticket.id) is ticket
    with pytest.raises(TicketNotFoundError):
        harness.service.resolve_ticket(GUILD_ID, 12345)
    with pytest.raises(TicketNotFoundError):
        harness.service.resolve_ticket(999, 1, ticket.id)


@pytest.mark.asyncio
async def test_legacy_mode_routes_by_reference(db: Database, tmp_path: Path, platform: FakePlatform) -> None:
    harness = build_harness(db, tmp_path, platform, guilds=[guild_config(use_threads=False)])
    first = await harness.service.handle_direct_message(dm("first user", author_id=501))
    second = await harness.service.handle_direct_message(dm("second user", author_id=502))

    assert first.thread_id is None
    assert first.surface_id == MODMAIL_CHANNEL_ID
    assert "create_thread" not in platform.names()
    assert platform.calls_to("send_info")[0][2] is True

    await harness.service.handle_staff_message(
        staff_message("for the second", MODMAIL_CHANNEL_ID, in_thread=False, reference_message_id=second.info_message_id)
    )
    await harness.service.handle_staff_message(staff_message("no reference", MODMAIL_CHANNEL_ID, in_thread=False))

    delivered = platform.calls_to("deliver_staff_reply")
    assert [(call[0], call[2]) for call in delivered] == [(502, "for the second"), (501, "no reference")]
    with pytest.raises(ValidationError):
        harness.service.resolve_ticket(GUILD_ID, MODMAIL_CHANNEL_ID)


@pytest.mark.asyncio
async def test_restore_reloads_snapshot_and_counter(db: Database, tmp_path: Path) -> None:
    original = build_harness(db, tmp_path, FakePlatform())
    ticket = await original.service.handle_direct_message(dm("help"))
    await original.service.claim_ticket(ticket, STAFF_ID, "staff")

    restarted = build_harness(db, tmp_path, FakePlatform())
    restored = await restarted.service.restore()

    assert restored == 1
    loaded = restarted.registry.get(ticket.id)
    assert loaded is not None
    assert loaded.assigned_to == STAFF_ID
    assert restarted.registry.find_by_thread(ticket.thread_id) is loaded

    newer = await restarted.service.handle_direct_message(dm("other", author_id=777))
    assert newer.numeric_id == "0002"


@pytest.mark.asyncio
async def test_require_staff_and_admin(harness: ServiceHarness) -> None:
    harness.platform.admin_ids.add(STAFF_ID)

    await harness.service.require_staff(GUILD_ID, STAFF_ID)
    await harness.service.require_admin(GUILD_ID, STAFF_ID)
    with pytest.raises(PermissionDeniedError):
        await harness.service.require_admin(GUILD_ID, OTHER_STAFF_ID)
    with pytest.raises(PermissionDeniedError):
        await harness.service.require_staff(GUILD_ID, 4242)


@pytest.mark.asyncio
async def test_undelivered_reply_leaves_ticket_unclaimed(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    harness.platform.fail_dm = True

    with pytest.raises(DeliveryError):
        await harness.service.handle_staff_message(staff_message("On it", ticket.thread_id))

    assert ticket.status == TICKET_STATUS_PENDING
    assert ticket.assigned_to is None
    assert ticket.assigned_to_tag is None
    assert ticket.assigned_at is None
    assert ticket.first_response_time is None
    assert ticket.events == []
    assert "Ticket Claimed" not in [call[1] for call in harness.platform.calls_to("post_notice")]
    assert harness.store.load()[0].status == TICKET_STATUS_PENDING

    harness.platform.fail_dm = False
    await harness.service.reply(ticket, STAFF_ID, "staff", "Second try")
    assert ticket.status == TICKET_STATUS_IN_PROGRESS
    assert [event["type"] for event in ticket.events] == [EVENT_CLAIMED]


@pytest.mark.asyncio
async def test_undelivered_reply_keeps_existing_claim(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    await harness.service.claim_ticket(ticket, STAFF_ID, "staff")
    harness.platform.fail_dm = True

    with pytest.raises(DeliveryError):
        await harness.service.reply(ticket, OTHER_STAFF_ID, "other", "Hello?")

    assert ticket.status == TICKET_STATUS_IN_PROGRESS
    assert ticket.assigned_to == STAFF_ID
    assert len(ticket.events) == 1


@pytest.mark.asyncio
async def test_legacy_tickets_record_their_surface_messages(
    db: Database, tmp_path: Path, platform: FakePlatform
) -> None:
    harness = build_harness(db, tmp_path, platform, guilds=[guild_config(use_threads=False)])
    ticket = await harness.service.handle_direct_message(dm("help"))
    relayed = ticket.linked_message_ids[0]
    info = ticket.info_message_id

    await harness.service.handle_staff_message(
        staff_message("typed in channel", MODMAIL_CHANNEL_ID, in_thread=False, reference_message_id=info)
    )
    await harness.service.reply(ticket, STAFF_ID, "staff", "from a command")
    await harness.service.handle_staff_message(
        staff_message("#internal", MODMAIL_CHANNEL_ID, in_thread=False, reference_message_id=info)
    )

    assert len(ticket.linked_message_ids) == 4
    assert ticket.linked_message_ids[:2] == [relayed, 77]
    assert info not in ticket.linked_message_ids
    assert harness.store.load()[0].linked_message_ids == ticket.linked_message_ids


@pytest.mark.asyncio
async def test_thread_tickets_do_not_record_message_ids(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))

    await harness.service.reply(ticket, STAFF_ID, "staff", "hello")
    await harness.service.handle_staff_message(staff_message("#note", ticket.thread_id))

    assert ticket.linked_message_ids == []


@pytest.mark.asyncio
async def test_staff_can_open_ticket_with_user(harness: ServiceHarness) -> None:
    ticket = await harness.service.open_staff_ticket(
        GUILD_ID, USER_ID, "user500", STAFF_ID, "staff", "Hi, about your appeal", "Appeal", "HIGH"
    )

    assert ticket.status == TICKET_STATUS_IN_PROGRESS
    assert ticket.assigned_to == STAFF_ID
    assert ticket.initiated_by == STAFF_ID
    assert ticket.first_response_time is not None
    assert (ticket.category, ticket.priority) == ("appeal", "high")
    assert ticket.events[0]["type"] == EVENT_CLAIMED
    assert ticket.events[0]["initiated"] is True
    assert ticket.thread_id is not None
    assert harness.platform.calls_to("deliver_staff_reply") == [
        (USER_ID, "staff", "Hi, about your appeal", False, True)
    ]
    assert harness.platform.calls_to("post_log")[-1][1] == "📨 Staff-Initiated Ticket Opened"
    assert harness.store.load()[0].initiated_by == STAFF_ID

    routed = await harness.service.handle_direct_message(dm("thanks"))
    assert routed is ticket


@pytest.mark.asyncio
async def test_staff_open_survives_closed_dms(harness: ServiceHarness) -> None:
    harness.platform.fail_dm = True

    ticket = await harness.service.open_staff_ticket(GUILD_ID, USER_ID, "user500", STAFF_ID, "staff", "Hello")

    assert ticket.id in harness.registry
    assert ticket.priority == "medium"
    notices = harness.platform.calls_to("post_notice")
    assert notices[-1][1] == "Message Not Delivered"
    assert "Hello" in notices[-1][2]


@pytest.mark.asyncio
async def test_staff_open_rejects_bad_input_and_existing_ticket(harness: ServiceHarness) -> None:
    with pytest.raises(ValidationError):
        await harness.service.open_staff_ticket(GUILD_ID, USER_ID, "user500", STAFF_ID, "staff", "hi", "nonsense")
    with pytest.raises(ValidationError):
        await harness.service.open_staff_ticket(GUILD_ID, USER_ID, "user500", STAFF_ID, "staff", "hi", None, "critical")
    with pytest.raises(ValidationError):
        await harness.service.open_staff_ticket(GUILD_ID, USER_ID, "user500", STAFF_ID, "staff", "   ")
    assert len(harness.registry) == 0

    existing = await harness.service.handle_direct_message(dm("help"))
    with pytest.raises(ValidationError) as excinfo:
        await harness.service.open_staff_ticket(GUILD_ID, USER_ID, "user500", STAFF_ID, "staff", "hi")
    assert existing.numeric_id in excinfo.value.user_message
    assert len(harness.registry) == 1


@pytest.mark.asyncio
async def test_failed_history_fetch_keeps_ticket_open(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    harness.platform.fail_history = True

    with pytest.raises(DeliveryError):
        await harness.service.close_ticket(ticket, STAFF_ID, "staff", "done")

    assert ticket.is_open
    assert ticket.closed_at is None
    assert ticket.events == []
    assert harness.registry.get(ticket.id) is ticket
    assert not await harness.history_repo.exists(ticket.id)
    assert "send_survey" not in harness.platform.names()

    harness.platform.fail_history = False
    record = await harness.service.close_ticket(ticket, STAFF_ID, "staff", "done")
    assert record.ticket.status == TICKET_STATUS_CLOSED


@pytest.mark.asyncio
async def test_failed_archive_keeps_ticket_open(harness: ServiceHarness, monkeypatch: pytest.MonkeyPatch) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    monkeypatch.setattr(harness.history_repo, "archive", AsyncMock(side_effect=PersistenceError()))

    with pytest.raises(PersistenceError):
        await harness.service.close_ticket(ticket, STAFF_ID, "staff")

    assert ticket.is_open
    assert harness.registry.find_open_for_user(GUILD_ID, USER_ID) is ticket
    assert "send_survey" not in harness.platform.names()
    assert "archive_thread" not in harness.platform.names()
    assert harness.store.load()[0].status == TICKET_STATUS_PENDING


@pytest.mark.asyncio
async def test_restore_repairs_pending_ticket_with_assignee(db: Database, tmp_path: Path) -> None:
    original = build_harness(db, tmp_path, FakePlatform())
    ticket = await original.service.handle_direct_message(dm("help"))
    ticket.assigned_to = STAFF_ID
    await original.service.save_snapshot()

    restarted = build_harness(db, tmp_path, FakePlatform())
    await restarted.service.restore()

    loaded = restarted.registry.get(ticket.id)
    assert loaded is not None
    assert loaded.status == TICKET_STATUS_IN_PROGRESS


@pytest.mark.asyncio
async def test_mutations_repair_pending_ticket_with_assignee(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))
    ticket.assigned_to = STAFF_ID

    await harness.service.set_priority(ticket, "low", STAFF_ID)

    assert ticket.status == TICKET_STATUS_IN_PROGRESS
    assert await harness.service.claim_ticket(ticket, OTHER_STAFF_ID, "other") is False
    assert ticket.assigned_to == STAFF_ID


@pytest.mark.asyncio
async def test_concurrent_claims_have_one_winner(harness: ServiceHarness) -> None:
    ticket = await harness.service.handle_direct_message(dm("help"))

    results = await asyncio.gather(
        harness.service.claim_ticket(ticket, STAFF_ID, "staff"),
        harness.service.claim_ticket(ticket, OTHER_STAFF_ID, "other"),
        harness.service.reply(ticket, OTHER_STAFF_ID, "other", "me too"),
    )

    assert results[:2] == [True, False]
    assert ticket.assigned_to == STAFF_ID
    assert [event["type"] for event in ticket.events] == [EVENT_CLAIMED]
    assert [call[1] for call in harness.platform.calls_to("post_log")].count("✅ Ticket Claimed") == 1


@pytest.mark.asyncio
async def test_concurrent_first_messages_open_one_ticket(harness: ServiceHarness) -> None:
    tickets = await asyncio.gather(*(harness.service.handle_direct_message(dm(f"msg {n}")) for n in range(5)))

    assert len({ticket.id for ticket in tickets}) == 1
    assert len(harness.registry) == 1
    assert len(harness.platform.calls_to("relay_user_message")) == 5


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", [3, 17, 2026])
async def test_random_open_close_sequences_keep_one_ticket_per_user(
    db: Database, tmp_path: Path, platform: FakePlatform, seed: int
) -> None:
    harness = build_harness(
        db, tmp_path, platform, limits=LimitsConfig(tickets_per_hour=1000, messages_per_minute=1000)
    )
    rng = random.Random(seed)
    users = [USER_ID + offset for offset in range(4)]
    opened: set[str] = set()
    closed: set[str] = set()

    for _ in range(40):
        action = rng.choice(["dm", "dm", "reply", "close"])
        open_tickets = harness.registry.all()
        if action == "dm" or not open_tickets:
            ticket = await harness.service.handle_direct_message(dm("hello", author_id=rng.choice(users)))
            opened.add(ticket.id)
        elif action == "reply":
            ticket = rng.choice(open_tickets)
            await harness.service.reply(ticket, rng.choice([STAFF_ID, OTHER_STAFF_ID]), "staff", "ok")
        else:
            ticket = rng.choice(open_tickets)
            await harness.service.close_ticket(ticket, STAFF_ID, "staff")
            closed.add(ticket.id)

        live = harness.registry.all()
        assert all(ticket.is_open for ticket in live)
        assert len({ticket.user_id for ticket in live}) == len(live)
        assert {ticket.id for ticket in live} == opened - closed
        for user_id in users:
            found = harness.registry.find_open_for_user(GUILD_ID, user_id)
            assert found is None or found.user_id == user_id

    assert len(opened) == len({ticket_id.rsplit("-", 1)[1] for ticket_id in opened})
    for ticket_id in closed:
        assert await harness.history_repo.count_for_ticket(ticket_id) == 1
    assert {ticket.id for ticket in harness.store.load()} == opened - closed
    assert harness.registry._locks == {}
