from __future__ import annotations

from datetime import timedelta

import pytest

from database.models import Ticket
from services.notification_service import WEBHOOK_EVENT_CLOSED, WEBHOOK_EVENT_OPENED, build_webhook_payload
from utils.security import is_valid_webhook_url, redact_sensitive, sanitize_content
from utils.time import minutes_between, parse_iso, parse_relative_duration
from views.survey_view import parse_rating_custom_id, rating_custom_id


def test_sanitize_content_neutralizes_mass_mentions_and_truncates() -> None:
    assert sanitize_content("  ping @everyone and @here ") == "ping @\u200beveryone and @\u200bhere"
    assert sanitize_content(None) == ""
    assert sanitize_content("x" * 20, max_length=10) == "xxxxxxx..."


def test_redact_sensitive() -> None:
    assert redact_sensitive("failed with token=abc.def") == "failed with [REDACTED]"
    assert redact_sensitive(None) == "An unknown error occurred"


def test_webhook_url_validation() -> None:
    assert is_valid_webhook_url("https://discord.com/api/webhooks/1/abc_DEF-1")
    assert not is_valid_webhook_url("https://evil.example.com/api/webhooks/1/abc")
    assert not is_valid_webhook_url(None)


def test_time_helpers() -> None:
    assert parse_iso("2026-01-01T00:00:00Z") == parse_iso("2026-01-01T00:00:00+00:00")
    assert parse_iso("not a date") is None
    assert minutes_between("2026-01-01T00:00:00+00:00", "2026-01-01T01:30:00+00:00") == 90
    assert minutes_between(None, "2026-01-01T01:30:00+00:00") is None
    assert parse_relative_duration("2h") == timedelta(hours=2)
    assert parse_relative_duration("7d") == timedelta(days=7)
    with pytest.raises(ValueError):
        parse_relative_duration("3w")
    with pytest.raises(ValueError):
        parse_relative_duration("soon")


def test_rating_custom_ids() -> None:
    custom_id = rating_custom_id(4, "1-0001")

    assert parse_rating_custom_id(custom_id) == (4, "1-0001")
    assert parse_rating_custom_id("modmail:rating:x:1-0001") is None
    assert parse_rating_custom_id("other:4:1-0001") is None
    assert parse_rating_custom_id(None) is None


def test_webhook_payload_fields() -> None:
    ticket = Ticket(
        id="1-0001",
        numeric_id="0001",
        guild_id=1,
        user_id=10,
        user_tag="alice",
        channel_id=2,
        created_at="2026-01-01T00:00:00+00:00",
        close_reason="done",
        closed_at="2026-01-01T01:00:00+00:00",
    )

    opened = build_webhook_payload(WEBHOOK_EVENT_OPENED, ticket, {"content": "hi @everyone"})
    closed = build_webhook_payload(WEBHOOK_EVENT_CLOSED, ticket, {"staff_id": 99})

    opened_fields = {field["name"]: field["value"] for field in opened["embeds"][0]["fields"]}
    closed_fields = {field["name"]: field["value"] for field in closed["embeds"][0]["fields"]}
    assert opened["embeds"][0]["title"] == "📩 New Modmail Ticket Created"
    assert opened_fields["📝 Content"] == "hi @\u200beveryone"
    assert closed_fields["👮 Staff"] == "<@99>"
    assert closed_fields["📋 Reason"] == "done"
