from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TypeVar

from core.errors import DeliveryError
from database.models import HistoryMessage, Ticket

T = TypeVar("T")


@dataclass(slots=True)
class InboundMessage:
    id: int
    author_id: int
    author_tag: str
    content: str
    channel_id: int
    guild_id: int | None = None
    parent_channel_id: int | None = None
    reference_message_id: int | None = None
    attachments: list[str] = field(default_factory=list)
    author_is_bot: bool = False

    @property
    def is_direct(self) -> bool:
        return self.guild_id is None

    @property
    def is_thread(self) -> bool:
        return self.parent_channel_id is not None


class MessagingPlatform(Protocol):
    """Outbound operations the ticket core needs from the chat platform.

    Implementations raise DeliveryError for any failed platform call.
    """

    async def channel_exists(self, channel_id: int) -> bool: ...

    async def create_thread(self, channel_id: int, message_id: int, name: str) -> int: ...

    async def send_info(self, surface_id: int, ticket: Ticket, *, react: bool) -> int: ...

    async def edit_info(self, surface_id: int, message_id: int, ticket: Ticket) -> None: ...

    async def remove_reaction(self, channel_id: int, message_id: int, emoji: str, user_id: int) -> None: ...

    async def relay_user_message(
        self, ticket: Ticket, author_tag: str, content: str, attachments: Sequence[str]
    ) -> int: ...

    async def post_staff_note(
        self, ticket: Ticket, author_tag: str, content: str, attachments: Sequence[str]
    ) -> int: ...

    async def post_notice(self, surface_id: int, title: str, description: str) -> None: ...

    async def delete_message(self, channel_id: int, message_id: int) -> None: ...

    async def deliver_staff_reply(
        self,
        ticket: Ticket,
        staff_tag: str,
        content: str,
        attachments: Sequence[str],
        *,
        anonymous: bool,
        mirror: bool = True,
    ) -> int | None:
        """Send the reply to the user; return the id of the mirrored copy, if one was posted."""
        ...

    async def notify_user(self, user_id: int, title: str, description: str) -> None: ...

    async def send_survey(self, ticket: Ticket) -> int: ...

    async def fetch_history(self, ticket: Ticket) -> list[HistoryMessage]: ...

    async def archive_thread(self, thread_id: int) -> None: ...

    async def is_staff(self, guild_id: int, user_id: int) -> bool: ...

    async def is_admin(self, guild_id: int, user_id: int) -> bool: ...

    async def post_log(self, guild_id: int, title: str, fields: dict[str, str]) -> None: ...

    async def post_transcript(self, guild_id: int, ticket: Ticket, paths: Sequence[Path]) -> None: ...


async def call_with_timeout(awaitable: Awaitable[T], timeout: float, action: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as exc:
        raise DeliveryError(f"Timed out during {action}.") from exc
