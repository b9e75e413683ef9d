from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

from utils.constants import (
    DEFAULT_PRIORITY,
    OPEN_STATUSES,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_PENDING,
)


@dataclass(slots=True)
class Ticket:
    id: str
    numeric_id: str
    guild_id: int
    user_id: int
    user_tag: str
    channel_id: int
    created_at: str
    status: str = TICKET_STATUS_PENDING
    thread_id: int | None = None
    category: str | None = None
    priority: str = DEFAULT_PRIORITY
    tags: list[str] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    assigned_to: int | None = None
    assigned_to_tag: str | None = None
    assigned_at: str | None = None
    first_response_time: str | None = None
    closed_at: str | None = None
    close_reason: str | None = None
    closed_by: int | None = None
    info_message_id: int | None = None
    thread_info_message_id: int | None = None
    initiated_by: int | None = None
    # Legacy mode only: ids of messages in the shared channel that belong to this ticket.
    linked_message_ids: list[int] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def uses_thread(self) -> bool:
        return self.thread_id is not None

    @property
    def surface_id(self) -> int:
        """Channel or thread where the conversation with staff happens."""
        return self.thread_id if self.thread_id is not None else self.channel_id

    def info_message_ids(self) -> list[int]:
        return [mid for mid in (self.info_message_id, self.thread_info_message_id) if mid is not None]

    def has_tag(self, name: str) -> bool:
        key = name.strip().lower()
        return any(tag.lower() == key for tag in self.tags)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Ticket:
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(slots=True)
class HistoryMessage:
    id: int
    author: str
    author_id: int
    content: str
    timestamp: str
    is_staff: bool
    attachments: list[str] = field(default_factory=list)
    kind: str = "message"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryMessage:
        return cls(
            id=int(data.get("id") or 0),
            author=str(data.get("author", "Unknown")),
            author_id=int(data.get("author_id") or 0),
            content=str(data.get("content", "")),
            timestamp=str(data.get("timestamp", "")),
            is_staff=bool(data.get("is_staff", False)),
            attachments=[str(url) for url in data.get("attachments", [])],
            kind=str(data.get("kind", "message")),
        )


@dataclass(slots=True)
class TicketHistoryRecord:
    ticket: Ticket
    messages: list[HistoryMessage] = field(default_factory=list)
    staff_message_count: int = 0
    user_message_count: int = 0
    satisfaction_rating: int | None = None
    satisfaction_feedback: str | None = None
    rated_at: str | None = None

    @property
    def id(self) -> str:
        return self.ticket.id

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @classmethod
    def from_ticket(cls, ticket: Ticket, messages: list[HistoryMessage]) -> TicketHistoryRecord:
        if ticket.status != TICKET_STATUS_CLOSED:
            raise ValueError(f"Ticket {ticket.id} must be closed before it is archived")
        staff = sum(1 for message in messages if message.is_staff)
        users = sum(1 for message in messages if not message.is_staff and message.kind != "system")
        return cls(
            ticket=ticket,
            messages=list(messages),
            staff_message_count=staff,
            user_message_count=users,
        )


@dataclass(slots=True)
class Tag:
    guild_id: int
    name: str
    description: str
    color: str
    created_by: int
    created_at: str
    updated_at: str | None = None

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass(slots=True)
class Snippet:
    guild_id: int
    name: str
    content: str
    created_by: int
    created_at: str


@dataclass(slots=True)
class Survey:
    ticket_id: str
    user_id: int
    guild_id: int
    sent_at: datetime
    expires_at: datetime
    message_id: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(slots=True)
class RollupStats:
    scope: str
    guild_id: int
    subject_id: int
    total_tickets: int = 0
    closed_tickets: int = 0
    rating_total: int = 0
    rating_count: int = 0
    display_name: str | None = None
    categories: dict[str, int] = field(default_factory=dict)
    tags: dict[str, int] = field(default_factory=dict)

    @property
    def average_rating(self) -> float | None:
        if not self.rating_count:
            return None
        return self.rating_total / self.rating_count


@dataclass(slots=True)
class SearchCriteria:
    guild_id: int | None = None
    user_id: int | None = None
    username: str | None = None
    ticket_id: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    content: str | None = None
    staff_id: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    min_rating: int | None = None
    max_rating: int | None = None
