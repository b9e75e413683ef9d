from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from database.models import Ticket
from utils.security import sanitize_content
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

WEBHOOK_EVENT_OPENED = "opened"
WEBHOOK_EVENT_CLAIMED = "claimed"
WEBHOOK_EVENT_REPLIED = "replied"
WEBHOOK_EVENT_CLOSED = "closed"

_EVENT_STYLES: dict[str, tuple[str, int]] = {
    WEBHOOK_EVENT_OPENED: ("📩 New Modmail Ticket Created", 0x00FF00),
    WEBHOOK_EVENT_CLAIMED: ("✅ Ticket Claimed", 0x0099FF),
    WEBHOOK_EVENT_REPLIED: ("💬 Staff Replied", 0x5865F2),
    WEBHOOK_EVENT_CLOSED: ("🔒 Ticket Closed", 0xFF0000),
}


def build_webhook_payload(event: str, ticket: Ticket, details: dict[str, Any]) -> dict[str, Any]:
    title, color = _EVENT_STYLES.get(event, (f"Ticket {event}", 0x5865F2))
    fields = [
        {"name": "🎫 Ticket ID", "value": ticket.numeric_id, "inline": True},
        {"name": "👤 User", "value": f"{ticket.user_tag} (<@{ticket.user_id}>)", "inline": True},
    ]
    if event == WEBHOOK_EVENT_OPENED:
        fields.append({"name": "📝 Content", "value": sanitize_content(details.get("content"), 1024) or "*No content*"})
    if event in {WEBHOOK_EVENT_CLAIMED, WEBHOOK_EVENT_REPLIED, WEBHOOK_EVENT_CLOSED} and details.get("staff_id"):
        fields.append({"name": "👮 Staff", "value": f"<@{details['staff_id']}>", "inline": True})
    if event == WEBHOOK_EVENT_CLOSED:
        fields.append({"name": "📋 Reason", "value": ticket.close_reason or "No reason provided"})
        fields.append({"name": "⏰ Closed At", "value": ticket.closed_at or to_iso(utc_now())})
    return {
        "username": "Modmail",
        "embeds": [
            {
                "title": title,
                "color": color,
                "fields": fields,
                "timestamp": to_iso(utc_now()),
            }
        ],
    }


class WebhookNotifier:
    """Fire-and-forget POSTs of ticket events to per-guild webhooks."""

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: aiohttp.ClientSession | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    def dispatch(self, url: str, event: str, ticket: Ticket, **details: Any) -> None:
        payload = build_webhook_payload(event, ticket, details)
        task = asyncio.create_task(self._post(url, event, ticket.id, payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, url: str, event: str, ticket_id: str, payload: dict[str, Any]) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        try:
            async with self._session.post(url, json=payload) as response:
                if response.status >= 400:
                    LOGGER.warning(
                        "Webhook rejected %s event for ticket %s with status %s",
                        event,
                        ticket_id,
                        response.status,
                    )
        except (aiohttp.ClientError, TimeoutError):
            LOGGER.exception("Failed to send %s webhook for ticket %s", event, ticket_id)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
