from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from core.errors import (
    DeliveryError,
    PermissionDeniedError,
    PersistenceError,
    StaleSurveyError,
    ValidationError,
)
from database.models import Survey, Ticket, TicketHistoryRecord
from database.repositories import HistoryRepository
from services.platform import MessagingPlatform, call_with_timeout
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)


class SurveyService:
    """Outstanding post-close rating prompts, one per ticket, expiring after a TTL."""

    def __init__(
        self,
        platform: MessagingPlatform,
        history_repo: HistoryRepository,
        ttl_days: int = 7,
        timeout_seconds: float = 15.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.platform = platform
        self.history_repo = history_repo
        self.ttl = timedelta(days=ttl_days)
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._surveys: dict[str, Survey] = {}

    def __len__(self) -> int:
        return len(self._surveys)

    async def send(self, ticket: Ticket) -> Survey | None:
        existing = self.get(ticket.id)
        if existing is not None:
            return existing
        try:
            message_id = await call_with_timeout(
                self.platform.send_survey(ticket), self.timeout_seconds, "survey delivery"
            )
        except DeliveryError as exc:
            LOGGER.warning("Could not deliver survey for ticket %s: %s", ticket.id, exc.user_message)
            return None
        sent_at = self._clock()
        survey = Survey(
            ticket_id=ticket.id,
            user_id=ticket.user_id,
            guild_id=ticket.guild_id,
            sent_at=sent_at,
            expires_at=sent_at + self.ttl,
            message_id=message_id,
        )
        self._surveys[ticket.id] = survey
        LOGGER.info("Survey sent for ticket %s", ticket.id)
        return survey

    def get(self, ticket_id: str) -> Survey | None:
        survey = self._surveys.get(ticket_id)
        if survey is None:
            return None
        if survey.is_expired(self._clock()):
            del self._surveys[ticket_id]
            return None
        return survey

    async def record_response(
        self, ticket_id: str, user_id: int, rating: int, feedback: str | None = None
    ) -> TicketHistoryRecord:
        if rating < 1 or rating > 5:
            raise ValidationError("Ratings must be between 1 and 5.")
        survey = self.get(ticket_id)
        if survey is None:
            raise StaleSurveyError()
        if survey.user_id != user_id:
            raise PermissionDeniedError("This survey is not for you.")

        del self._surveys[ticket_id]
        try:
            record = await self.history_repo.patch_rating(
                ticket_id, rating, feedback, rated_at=to_iso(self._clock())
            )
        except PersistenceError:
            self._surveys[ticket_id] = survey
            raise
        LOGGER.info("Survey answered. ticket=%s rating=%s", ticket_id, rating)

        try:
            await call_with_timeout(
                self.platform.post_log(
                    survey.guild_id,
                    "⭐ Ticket Rated",
                    {
                        "Ticket ID": ticket_id,
                        "User": f"<@{user_id}>",
                        "Staff": f"<@{record.ticket.assigned_to}>" if record.ticket.assigned_to else "Unassigned",
                        "Rating": "⭐" * rating,
                    },
                ),
                self.timeout_seconds,
                "rating log",
            )
        except DeliveryError as exc:
            LOGGER.warning("Could not post rating for ticket %s: %s", ticket_id, exc.user_message)
        return record

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [ticket_id for ticket_id, survey in self._surveys.items() if survey.is_expired(now)]
        for ticket_id in expired:
            del self._surveys[ticket_id]
        if expired:
            LOGGER.info("Purged %s expired surveys", len(expired))
        return len(expired)
