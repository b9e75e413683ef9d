from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from core.errors import PermissionDeniedError, StaleSurveyError, ValidationError
from database.base import Database
from database.models import Ticket, TicketHistoryRecord
from database.repositories import HistoryRepository
from services.survey_service import SurveyService
from tests.fakes import FakePlatform
from utils.constants import TICKET_STATUS_CLOSED


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


def closed_ticket() -> Ticket:
    return Ticket(
        id="1-0001",
        numeric_id="0001",
        guild_id=1,
        user_id=10,
        user_tag="alice",
        channel_id=2,
        created_at="2026-06-01T10:00:00+00:00",
        status=TICKET_STATUS_CLOSED,
        closed_at="2026-06-01T11:00:00+00:00",
        assigned_to=99,
    )


async def archived_service(db: Database, platform: FakePlatform, clock: FakeClock) -> SurveyService:
    repo = HistoryRepository(db)
    await repo.archive(TicketHistoryRecord.from_ticket(closed_ticket(), []))
    return SurveyService(platform, repo, ttl_days=7, timeout_seconds=5, clock=clock)


@pytest.mark.asyncio
async def test_send_is_idempotent_per_ticket(db: Database, platform: FakePlatform) -> None:
    clock = FakeClock()
    surveys = await archived_service(db, platform, clock)

    first = await surveys.send(closed_ticket())
    second = await surveys.send(closed_ticket())

    assert first is not None and first is second
    assert first.expires_at == clock.now + timedelta(days=7)
    assert len(platform.calls_to("send_survey")) == 1
    assert len(surveys) == 1


@pytest.mark.asyncio
async def test_response_is_recorded_once(db: Database, platform: FakePlatform) -> None:
    surveys = await archived_service(db, platform, FakeClock())
    await surveys.send(closed_ticket())

    record = await surveys.record_response("1-0001", 10, 4, "quick help")

    assert record.satisfaction_rating == 4
    assert record.satisfaction_feedback == "quick help"
    assert record.rated_at == "2026-06-01T12:00:00+00:00"
    assert platform.calls_to("post_log")[-1][2]["Staff"] == "<@99>"
    with pytest.raises(StaleSurveyError):
        await surveys.record_response("1-0001", 10, 5)


@pytest.mark.asyncio
async def test_invalid_rating_and_wrong_user_keep_survey_open(db: Database, platform: FakePlatform) -> None:
    surveys = await archived_service(db, platform, FakeClock())
    await surveys.send(closed_ticket())

    with pytest.raises(ValidationError):
        await surveys.record_response("1-0001", 10, 6)
    with pytest.raises(PermissionDeniedError):
        await surveys.record_response("1-0001", 11, 3)

    assert surveys.get("1-0001") is not None


@pytest.mark.asyncio
async def test_expired_survey_is_stale(db: Database, platform: FakePlatform) -> None:
    clock = FakeClock()
    surveys = await archived_service(db, platform, clock)
    await surveys.send(closed_ticket())

    clock.now += timedelta(days=7)

    with pytest.raises(StaleSurveyError):
        await surveys.record_response("1-0001", 10, 5)


@pytest.mark.asyncio
async def test_purge_expired(db: Database, platform: FakePlatform) -> None:
    clock = FakeClock()
    surveys = await archived_service(db, platform, clock)
    await surveys.send(closed_ticket())

    assert surveys.purge_expired() == 0
    clock.now += timedelta(days=8)
    assert surveys.purge_expired() == 1
    assert len(surveys) == 0


@pytest.mark.asyncio
async def test_undeliverable_survey_is_not_tracked(db: Database, platform: FakePlatform) -> None:
    platform.fail_survey = True
    surveys = await archived_service(db, platform, FakeClock())

    assert await surveys.send(closed_ticket()) is None
    assert len(surveys) == 0
