from __future__ import annotations

import dataclasses
import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

from core.config import ConfigStore, GuildModmailConfig
from core.errors import (
    BlacklistedError,
    ConfigurationError,
    DeliveryError,
    PermissionDeniedError,
    TicketNotFoundError,
    TicketStateError,
    ValidationError,
)
from database.models import Ticket, TicketHistoryRecord
from database.repositories import BlacklistRepository, CounterRepository, HistoryRepository
from services.notification_service import (
    WEBHOOK_EVENT_CLAIMED,
    WEBHOOK_EVENT_CLOSED,
    WEBHOOK_EVENT_OPENED,
    WEBHOOK_EVENT_REPLIED,
    WebhookNotifier,
)
from services.platform import InboundMessage, MessagingPlatform, call_with_timeout
from services.survey_service import SurveyService
from services.tag_service import TagService
from services.ticket_registry import TicketRegistry
from services.ticket_store import TicketStore
from services.transcript_service import TranscriptService
from utils.constants import (
    ACTION_MESSAGES,
    ACTION_TICKETS,
    CLAIM_EMOJI,
    DEFAULT_PRIORITY,
    EVENT_CATEGORY_CHANGED,
    EVENT_CLAIMED,
    EVENT_CLOSED,
    EVENT_PRIORITY_CHANGED,
    EVENT_TAG_ADDED,
    EVENT_TAG_REMOVED,
    IGNORED_STAFF_PREFIXES,
    PRIORITY_LEVELS,
    STAFF_NOTE_PREFIX,
    TICKET_CATEGORIES,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUS_PENDING,
    format_category,
    format_priority,
)
from utils.rate_limit import ModmailRateLimiter
from utils.security import sanitize_content
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_CLAIM_FIELDS = ("status", "assigned_to", "assigned_to_tag", "assigned_at", "first_response_time")


class StaffMessageOutcome(StrEnum):
    IGNORED = "ignored"
    NOT_A_TICKET = "not_a_ticket"
    WRONG_SURFACE = "wrong_surface"
    NOTE = "note"
    REPLIED = "replied"


@dataclass(slots=True)
class TicketServiceDeps:
    registry: TicketRegistry
    store: TicketStore
    configs: ConfigStore
    platform: MessagingPlatform
    counter_repo: CounterRepository
    blacklist_repo: BlacklistRepository
    history_repo: HistoryRepository
    tags: TagService
    rate_limiter: ModmailRateLimiter
    surveys: SurveyService | None = None
    transcripts: TranscriptService | None = None
    notifier: WebhookNotifier | None = None
    platform_timeout: float = 15.0


def _event(event_type: str, actor_id: int, timestamp: str, **details: Any) -> dict[str, Any]:
    return {"type": event_type, "actor": actor_id, "timestamp": timestamp, **details}


def _thread_name(numeric_id: str, user_tag: str) -> str:
    username = user_tag.split("#", 1)[0].strip() or "user"
    return f"Ticket-{numeric_id}-{username}"[:100]


class TicketService:
    """Lifecycle of open tickets: open, relay, claim, annotate and close."""

    def __init__(self, deps: TicketServiceDeps) -> None:
        self.deps = deps

    @property
    def registry(self) -> TicketRegistry:
        return self.deps.registry

    async def _call(self, awaitable: Awaitable[T], action: str) -> T:
        return await call_with_timeout(awaitable, self.deps.platform_timeout, action)

    async def _best_effort(self, awaitable: Awaitable[Any], action: str, ticket_id: str | None = None) -> bool:
        try:
            await self._call(awaitable, action)
        except DeliveryError as exc:
            LOGGER.warning("Best-effort %s failed. ticket=%s reason=%s", action, ticket_id, exc.user_message)
            return False
        return True

    # Startup and persistence

    async def restore(self) -> int:
        restored = 0
        for ticket in self.deps.store.load():
            if not ticket.is_open:
                LOGGER.warning("Skipping closed ticket %s found in snapshot", ticket.id)
                continue
            self._repair(ticket)
            if ticket.guild_id not in self.deps.configs:
                LOGGER.warning("Restoring ticket %s for unconfigured guild %s", ticket.id, ticket.guild_id)
            try:
                self.registry.add(ticket)
            except TicketStateError as exc:
                LOGGER.error("Skipping ticket %s during restore: %s", ticket.id, exc.user_message)
                continue
            if ticket.numeric_id.isdigit():
                await self.deps.counter_repo.ensure_at_least(ticket.guild_id, int(ticket.numeric_id))
            restored += 1
        LOGGER.info("Restored %s open tickets", restored)
        return restored

    async def save_snapshot(self) -> bool:
        saved = await self.deps.store.save(self.registry.all())
        if not saved:
            LOGGER.error("Open ticket snapshot could not be saved; %s tickets kept in memory", len(self.registry))
        return saved

    # Lookups and permissions

    def resolve_ticket(self, guild_id: int, channel_id: int, ticket_ref: str | None = None) -> Ticket:
        if ticket_ref:
            ref = ticket_ref.strip().lstrip("#")
            ticket = self.registry.get(ref)
            if ticket is None:
                for candidate in self.registry.for_guild(guild_id):
                    if candidate.numeric_id == ref or (ref.isdigit() and candidate.numeric_id == f"{int(ref):04d}"):
                        ticket = candidate
                        break
            if ticket is None or ticket.guild_id != guild_id:
                raise TicketNotFoundError()
            return ticket

        ticket = self.registry.find_by_thread(channel_id)
        if ticket is not None:
            return ticket
        legacy = self.registry.find_by_channel(channel_id)
        if len(legacy) == 1:
            return legacy[0]
        if len(legacy) > 1:
            raise ValidationError("Several tickets share this channel. Pass the ticket id.")
        raise TicketNotFoundError()

    async def require_staff(self, guild_id: int, user_id: int) -> None:
        if not await self._call(self.deps.platform.is_staff(guild_id, user_id), "staff check"):
            raise PermissionDeniedError("Only staff members can manage modmail tickets.")

    async def require_admin(self, guild_id: int, user_id: int) -> None:
        if not await self._call(self.deps.platform.is_admin(guild_id, user_id), "admin check"):
            raise PermissionDeniedError("Only administrators can run this action.")

    async def _ensure_not_blacklisted(self, user_id: int) -> None:
        entry = await self.deps.blacklist_repo.find_active_in(self.deps.configs.guild_ids(), user_id)
        if entry is not None:
            LOGGER.info("Blacklisted user %s rejected (guild=%s)", user_id, entry.get("guild_id"))
            raise BlacklistedError()

    # Inbound user messages

    async def handle_direct_message(self, message: InboundMessage) -> Ticket:
        guild_ids = self.deps.configs.guild_ids()
        if not guild_ids:
            raise ConfigurationError("Modmail has not been set up on any server yet.")
        await self._ensure_not_blacklisted(message.author_id)
        existing = self.registry.find_for_user(message.author_id, guild_ids)
        if existing is not None:
            await self.forward_user_message(existing, message)
            return existing
        guild_id = self.deps.configs.default_guild_id()
        if guild_id is None:
            raise ConfigurationError("Modmail has not been set up on any server yet.")
        return await self.open_ticket(message.author_id, message.author_tag, guild_id, message)

    async def open_ticket(
        self, user_id: int, user_tag: str, guild_id: int, message: InboundMessage
    ) -> Ticket:
        await self._ensure_not_blacklisted(user_id)
        async with self.registry.lock(f"open:{guild_id}:{user_id}"):
            existing = self.registry.find_open_for_user(guild_id, user_id)
            if existing is not None:
                LOGGER.info("User %s already has ticket %s; routing message", user_id, existing.id)
                await self.forward_user_message(existing, message)
                return existing

            config = await self._require_modmail_channel(guild_id)
            await self.deps.rate_limiter.check_or_raise(user_id, ACTION_TICKETS)
            ticket = await self._create_ticket(config, user_id, user_tag)
            try:
                relayed = await self._call(
                    self.deps.platform.relay_user_message(
                        ticket, user_tag, sanitize_content(message.content), list(message.attachments)
                    ),
                    "initial message relay",
                )
            except DeliveryError as exc:
                LOGGER.warning("Initial message relay failed. ticket=%s reason=%s", ticket.id, exc.user_message)
            else:
                self._link(ticket, relayed)
            await self.save_snapshot()

        LOGGER.info("Ticket opened. ticket=%s user=%s thread=%s", ticket.id, user_id, ticket.thread_id)
        platform = self.deps.platform
        await self._best_effort(
            platform.notify_user(
                user_id,
                "📩 Ticket Created",
                f"Your ticket #{ticket.numeric_id} has been created. Staff will respond here as soon as possible.",
            ),
            "open confirmation",
            ticket.id,
        )
        await self._best_effort(
            platform.post_log(
                guild_id,
                "📩 Ticket Opened",
                {"Ticket ID": ticket.numeric_id, "User": f"{user_tag} (<@{user_id}>)"},
            ),
            "open log",
            ticket.id,
        )
        self._notify(ticket, WEBHOOK_EVENT_OPENED, content=message.content)
        return ticket

    async def open_staff_ticket(
        self,
        guild_id: int,
        user_id: int,
        user_tag: str,
        staff_id: int,
        staff_tag: str,
        content: str,
        category: str | None = None,
        priority: str | None = None,
    ) -> Ticket:
        """Start a conversation with a user on behalf of staff; the opener owns the ticket."""
        category_key = category.strip().lower() if category else None
        if category_key is not None and category_key not in TICKET_CATEGORIES:
            raise ValidationError(f"Unknown category. Use: {', '.join(TICKET_CATEGORIES)}")
        level = priority.strip().lower() if priority else DEFAULT_PRIORITY
        if level not in PRIORITY_LEVELS:
            raise ValidationError(f"Invalid priority value. Use: {', '.join(PRIORITY_LEVELS)}")
        if not content.strip():
            raise ValidationError("The initial message cannot be empty.")

        platform = self.deps.platform
        async with self.registry.lock(f"open:{guild_id}:{user_id}"):
            existing = self.registry.find_open_for_user(guild_id, user_id)
            if existing is not None:
                raise ValidationError(
                    f"There is already an active ticket for {user_tag} (#{existing.numeric_id}, {existing.status})."
                )
            config = await self._require_modmail_channel(guild_id)
            now = to_iso(utc_now())
            ticket = await self._create_ticket(
                config,
                user_id,
                user_tag,
                status=TICKET_STATUS_IN_PROGRESS,
                category=category_key,
                priority=level,
                assigned_to=staff_id,
                assigned_to_tag=staff_tag,
                assigned_at=now,
                first_response_time=now,
                initiated_by=staff_id,
                events=[_event(EVENT_CLAIMED, staff_id, now, initiated=True)],
            )
            text = sanitize_content(content)
            try:
                mirrored = await self._call(
                    platform.deliver_staff_reply(ticket, staff_tag, text, [], anonymous=False, mirror=True),
                    "initial staff message",
                )
            except DeliveryError as exc:
                LOGGER.warning("Initial staff message undelivered. ticket=%s reason=%s", ticket.id, exc.user_message)
                await self._best_effort(
                    platform.post_notice(
                        ticket.surface_id,
                        "Message Not Delivered",
                        f"Could not send the message to {user_tag}. They may have DMs disabled.\n\n{text}",
                    ),
                    "delivery warning",
                    ticket.id,
                )
            else:
                self._link(ticket, mirrored)
            await self.save_snapshot()

        LOGGER.info("Staff-initiated ticket opened. ticket=%s user=%s staff=%s", ticket.id, user_id, staff_id)
        await self._best_effort(
            platform.post_log(
                guild_id,
                "📨 Staff-Initiated Ticket Opened",
                {
                    "Ticket ID": ticket.numeric_id,
                    "User": f"{user_tag} (<@{user_id}>)",
                    "Staff": f"{staff_tag} (<@{staff_id}>)",
                    "Initial Message": text,
                },
            ),
            "open log",
            ticket.id,
        )
        self._notify(ticket, WEBHOOK_EVENT_OPENED, content=text, staff_id=staff_id)
        return ticket

    async def _require_modmail_channel(self, guild_id: int) -> GuildModmailConfig:
        config = self.deps.configs.require(guild_id)
        if not await self._call(self.deps.platform.channel_exists(config.modmail_channel_id), "channel lookup"):
            raise ConfigurationError("The modmail channel for this server could not be found.")
        return config

    async def _create_ticket(
        self, config: GuildModmailConfig, user_id: int, user_tag: str, **fields: Any
    ) -> Ticket:
        number = await self.deps.counter_repo.next_numeric_id(config.guild_id)
        numeric_id = f"{number:04d}"
        ticket = Ticket(
            id=f"{config.guild_id}-{numeric_id}",
            numeric_id=numeric_id,
            guild_id=config.guild_id,
            user_id=user_id,
            user_tag=user_tag,
            channel_id=config.modmail_channel_id,
            created_at=to_iso(utc_now()),
            **fields,
        )
        await self._create_surfaces(ticket, config)
        self.registry.add(ticket)
        return ticket

    def _link(self, ticket: Ticket, *message_ids: int | None) -> bool:
        if ticket.uses_thread:
            return False
        linked = [message_id for message_id in message_ids if message_id is not None]
        ticket.linked_message_ids.extend(linked)
        return bool(linked)

    async def _create_surfaces(self, ticket: Ticket, config: GuildModmailConfig) -> None:
        platform = self.deps.platform
        ticket.info_message_id = await self._call(
            platform.send_info(config.modmail_channel_id, ticket, react=not config.use_threads),
            "info message",
        )
        if not config.use_threads:
            return
        try:
            ticket.thread_id = await self._call(
                platform.create_thread(
                    config.modmail_channel_id,
                    ticket.info_message_id,
                    _thread_name(ticket.numeric_id, ticket.user_tag),
                ),
                "thread creation",
            )
            ticket.thread_info_message_id = await self._call(
                platform.send_info(ticket.thread_id, ticket, react=True), "thread info message"
            )
        except DeliveryError:
            LOGGER.error("Thread setup failed for ticket %s; numeric id %s is retired", ticket.id, ticket.numeric_id)
            await self._best_effort(
                platform.delete_message(config.modmail_channel_id, ticket.info_message_id),
                "info cleanup",
                ticket.id,
            )
            raise

    async def forward_user_message(self, ticket: Ticket, message: InboundMessage) -> None:
        await self.deps.rate_limiter.check_or_raise(message.author_id, ACTION_MESSAGES)
        async with self.registry.lock(ticket.id):
            self._require_open(ticket)
            relayed = await self._call(
                self.deps.platform.relay_user_message(
                    ticket, message.author_tag, sanitize_content(message.content), list(message.attachments)
                ),
                "message relay",
            )
            if self._link(ticket, relayed):
                await self.save_snapshot()

    # Claiming

    def _repair(self, ticket: Ticket) -> None:
        if ticket.status == TICKET_STATUS_PENDING and ticket.assigned_to is not None:
            LOGGER.warning("Ticket %s was pending with an assignee; marking in progress", ticket.id)
            ticket.status = TICKET_STATUS_IN_PROGRESS

    def _require_open(self, ticket: Ticket) -> None:
        if self.registry.get(ticket.id) is not ticket or not ticket.is_open:
            raise TicketStateError(f"Ticket {ticket.id} is closed.")
        self._repair(ticket)

    def _apply_claim(self, ticket: Ticket, staff_id: int, staff_tag: str) -> bool:
        if ticket.status != TICKET_STATUS_PENDING:
            return False
        now = to_iso(utc_now())
        ticket.status = TICKET_STATUS_IN_PROGRESS
        ticket.assigned_to = staff_id
        ticket.assigned_to_tag = staff_tag
        ticket.assigned_at = now
        if ticket.first_response_time is None:
            ticket.first_response_time = now
        ticket.events.append(_event(EVENT_CLAIMED, staff_id, now))
        return True

    async def _after_claim(self, ticket: Ticket, staff_id: int, staff_tag: str) -> None:
        LOGGER.info("Ticket claimed. ticket=%s staff=%s", ticket.id, staff_id)
        await self.save_snapshot()
        await self._refresh_info(ticket)
        await self._best_effort(
            self.deps.platform.post_log(
                ticket.guild_id,
                "✅ Ticket Claimed",
                {"Ticket ID": ticket.numeric_id, "User": f"<@{ticket.user_id}>", "Staff": f"{staff_tag} (<@{staff_id}>)"},
            ),
            "claim log",
            ticket.id,
        )
        self._notify(ticket, WEBHOOK_EVENT_CLAIMED, staff_id=staff_id)

    async def claim_ticket(self, ticket: Ticket, staff_id: int, staff_tag: str) -> bool:
        async with self.registry.lock(ticket.id):
            self._require_open(ticket)
            claimed = self._apply_claim(ticket, staff_id, staff_tag)
            if claimed:
                await self._after_claim(ticket, staff_id, staff_tag)
        return claimed

    async def handle_claim_reaction(
        self, channel_id: int, message_id: int, user_id: int, user_tag: str, emoji: str
    ) -> bool:
        if emoji != CLAIM_EMOJI:
            return False
        ticket = self.registry.find_by_info_message(message_id)
        if ticket is None:
            return False
        if not await self._call(self.deps.platform.is_staff(ticket.guild_id, user_id), "staff check"):
            await self._best_effort(
                self.deps.platform.remove_reaction(channel_id, message_id, emoji, user_id),
                "reaction cleanup",
                ticket.id,
            )
            return False
        claimed = await self.claim_ticket(ticket, user_id, user_tag)
        if claimed:
            await self._best_effort(
                self.deps.platform.post_notice(
                    ticket.surface_id, "Ticket Claimed", f"{CLAIM_EMOJI} <@{user_id}> has claimed this ticket."
                ),
                "claim notice",
                ticket.id,
            )
        return claimed

    # Staff messages

    def _ticket_for_staff_message(
        self, message: InboundMessage, config: GuildModmailConfig
    ) -> Ticket | StaffMessageOutcome:
        if message.is_thread:
            ticket = self.registry.find_by_thread(message.channel_id)
            return ticket if ticket is not None else StaffMessageOutcome.NOT_A_TICKET
        if message.channel_id != config.modmail_channel_id:
            return StaffMessageOutcome.NOT_A_TICKET
        legacy = self.registry.find_by_channel(message.channel_id)
        if not legacy:
            return StaffMessageOutcome.WRONG_SURFACE if config.use_threads else StaffMessageOutcome.NOT_A_TICKET
        if message.reference_message_id is not None:
            referenced = self.registry.find_by_info_message(message.reference_message_id)
            if referenced is not None and referenced in legacy:
                return referenced
        return legacy[0]

    async def handle_staff_message(self, message: InboundMessage) -> StaffMessageOutcome:
        if message.author_is_bot or message.guild_id is None:
            return StaffMessageOutcome.IGNORED
        config = self.deps.configs.get(message.guild_id)
        if config is None:
            return StaffMessageOutcome.IGNORED
        resolved = self._ticket_for_staff_message(message, config)
        if resolved is StaffMessageOutcome.NOT_A_TICKET:
            return resolved
        if message.content.startswith(IGNORED_STAFF_PREFIXES):
            return StaffMessageOutcome.IGNORED
        if not await self._call(self.deps.platform.is_staff(message.guild_id, message.author_id), "staff check"):
            return StaffMessageOutcome.IGNORED

        platform = self.deps.platform
        if resolved is StaffMessageOutcome.WRONG_SURFACE:
            await self._best_effort(
                platform.post_notice(
                    message.channel_id,
                    "Thread Required",
                    f"<@{message.author_id}> please reply inside the ticket's thread, not the main channel.",
                ),
                "thread guidance",
            )
            await self._best_effort(platform.delete_message(message.channel_id, message.id), "message removal")
            return resolved
        if not isinstance(resolved, Ticket):
            return resolved
        ticket = resolved

        if message.content.startswith(STAFF_NOTE_PREFIX):
            note = sanitize_content(message.content[len(STAFF_NOTE_PREFIX):])
            posted = await self._call(
                platform.post_staff_note(ticket, message.author_tag, note, list(message.attachments)),
                "staff note",
            )
            if self._link(ticket, posted):
                await self.save_snapshot()
            await self._best_effort(platform.delete_message(message.channel_id, message.id), "note cleanup", ticket.id)
            LOGGER.info("Staff note added. ticket=%s staff=%s", ticket.id, message.author_id)
            return StaffMessageOutcome.NOTE

        await self.reply(
            ticket,
            message.author_id,
            message.author_tag,
            message.content,
            message.attachments,
            mirror=False,
            source_message_id=message.id,
        )
        return StaffMessageOutcome.REPLIED

    async def reply(
        self,
        ticket: Ticket,
        staff_id: int,
        staff_tag: str,
        content: str,
        attachments: Sequence[str] = (),
        *,
        anonymous: bool = False,
        mirror: bool = True,
        source_message_id: int | None = None,
    ) -> None:
        platform = self.deps.platform
        async with self.registry.lock(ticket.id):
            self._require_open(ticket)
            previous = {name: getattr(ticket, name) for name in _CLAIM_FIELDS}
            event_count = len(ticket.events)
            auto_claimed = self._apply_claim(ticket, staff_id, staff_tag)
            try:
                mirrored = await self._call(
                    platform.deliver_staff_reply(
                        ticket,
                        staff_tag,
                        sanitize_content(content),
                        list(attachments),
                        anonymous=anonymous,
                        mirror=mirror,
                    ),
                    "staff reply",
                )
            except DeliveryError:
                # The user never saw the reply, so the claim it triggered is undone.
                for name, value in previous.items():
                    setattr(ticket, name, value)
                del ticket.events[event_count:]
                raise
            linked = self._link(ticket, source_message_id, mirrored)

            if auto_claimed:
                await self._best_effort(
                    platform.post_notice(
                        ticket.surface_id,
                        "Ticket Claimed",
                        f"{CLAIM_EMOJI} <@{staff_id}> has automatically claimed this ticket by replying.",
                    ),
                    "auto-claim notice",
                    ticket.id,
                )
                await self._after_claim(ticket, staff_id, staff_tag)
            else:
                if linked:
                    await self.save_snapshot()
                if ticket.assigned_to is not None and ticket.assigned_to != staff_id:
                    await self._best_effort(
                        platform.post_notice(
                            ticket.surface_id,
                            "Heads Up",
                            f"⚠️ This ticket is assigned to <@{ticket.assigned_to}>.",
                        ),
                        "assignment warning",
                        ticket.id,
                    )
        LOGGER.info("Staff reply delivered. ticket=%s staff=%s anonymous=%s", ticket.id, staff_id, anonymous)
        self._notify(ticket, WEBHOOK_EVENT_REPLIED, staff_id=staff_id)

    # Field mutators

    async def _commit_change(self, ticket: Ticket, event: dict[str, Any]) -> None:
        ticket.events.append(event)
        await self.save_snapshot()
        await self._refresh_info(ticket)

    async def set_category(self, ticket: Ticket, category: str, actor_id: int) -> None:
        key = category.strip().lower()
        if key not in TICKET_CATEGORIES:
            raise ValidationError(f"Unknown category. Use: {', '.join(TICKET_CATEGORIES)}")
        async with self.registry.lock(ticket.id):
            self._require_open(ticket)
            previous = ticket.category
            ticket.category = key
            await self._commit_change(
                ticket, _event(EVENT_CATEGORY_CHANGED, actor_id, to_iso(utc_now()), previous=previous, value=key)
            )
        await self._best_effort(
            self.deps.platform.post_notice(
                ticket.surface_id, "Category Updated", f"Category set to {format_category(key)} by <@{actor_id}>."
            ),
            "category notice",
            ticket.id,
        )

    async def set_priority(self, ticket: Ticket, priority: str, actor_id: int, reason: str | None = None) -> None:
        level = priority.strip().lower()
        if level not in PRIORITY_LEVELS:
            raise ValidationError(f"Invalid priority value. Use: {', '.join(PRIORITY_LEVELS)}")
        async with self.registry.lock(ticket.id):
            self._require_open(ticket)
            previous = ticket.priority
            ticket.priority = level
            await self._commit_change(
                ticket,
                _event(
                    EVENT_PRIORITY_CHANGED,
                    actor_id,
                    to_iso(utc_now()),
                    previous=previous,
                    value=level,
                    reason=reason,
                ),
            )
        description = f"Priority set to {format_priority(level)} by <@{actor_id}>."
        if reason:
            description += f"\nReason: {sanitize_content(reason, 1000)}"
        await self._best_effort(
            self.deps.platform.post_notice(ticket.surface_id, "Priority Updated", description),
            "priority notice",
            ticket.id,
        )

    async def add_tag(self, ticket: Ticket, tag_name: str, actor_id: int) -> None:
        tag = await self.deps.tags.require(ticket.guild_id, tag_name)
        async with self.registry.lock(ticket.id):
            self._require_open(ticket)
            if ticket.has_tag(tag.name):
                raise ValidationError(f"This ticket already has the `{tag.name}` tag.")
            ticket.tags.append(tag.name)
            await self._commit_change(ticket, _event(EVENT_TAG_ADDED, actor_id, to_iso(utc_now()), tag=tag.name))

    async def remove_tag(self, ticket: Ticket, tag_name: str, actor_id: int) -> None:
        async with self.registry.lock(ticket.id):
            self._require_open(ticket)
            if not ticket.has_tag(tag_name):
                raise ValidationError(f"This ticket does not have the `{tag_name}` tag.")
            key = tag_name.strip().lower()
            removed = next(tag for tag in ticket.tags if tag.lower() == key)
            ticket.tags.remove(removed)
            await self._commit_change(ticket, _event(EVENT_TAG_REMOVED, actor_id, to_iso(utc_now()), tag=removed))

    async def _refresh_info(self, ticket: Ticket) -> None:
        surfaces = [(ticket.channel_id, ticket.info_message_id), (ticket.thread_id, ticket.thread_info_message_id)]
        for surface_id, message_id in surfaces:
            if surface_id is None or message_id is None:
                continue
            await self._best_effort(
                self.deps.platform.edit_info(surface_id, message_id, ticket), "info refresh", ticket.id
            )

    # Closing

    async def close_ticket(
        self, ticket: Ticket, staff_id: int, staff_tag: str, reason: str | None = None
    ) -> TicketHistoryRecord:
        platform = self.deps.platform
        async with self.registry.lock(ticket.id):
            if self.registry.get(ticket.id) is not ticket or not ticket.is_open:
                raise TicketStateError(f"Ticket {ticket.id} is already closed.")
            if await self.deps.history_repo.exists(ticket.id):
                raise TicketStateError(f"Ticket {ticket.id} is already archived.")
            self._repair(ticket)

            now = to_iso(utc_now())
            closed = dataclasses.replace(
                ticket,
                status=TICKET_STATUS_CLOSED,
                closed_at=now,
                closed_by=staff_id,
                close_reason=reason.strip() if reason and reason.strip() else None,
                tags=list(ticket.tags),
                events=[*ticket.events, _event(EVENT_CLOSED, staff_id, now, reason=reason)],
            )
            messages = await self._call(platform.fetch_history(closed), "history fetch")
            record = TicketHistoryRecord.from_ticket(closed, messages)
            await self.deps.history_repo.archive(record)

            if self.deps.surveys is not None:
                await self.deps.surveys.send(closed)
            self.registry.remove(ticket.id)
            for field in ("status", "closed_at", "closed_by", "close_reason", "events"):
                setattr(ticket, field, getattr(closed, field))
            await self.save_snapshot()

        LOGGER.info(
            "Ticket closed. ticket=%s staff=%s messages=%s", closed.id, staff_id, record.message_count
        )
        await self._announce_close(closed, record, staff_tag)
        return record

    async def _announce_close(self, ticket: Ticket, record: TicketHistoryRecord, staff_tag: str) -> None:
        platform = self.deps.platform
        reason = ticket.close_reason or "No reason provided"
        await self._refresh_info(ticket)
        await self._best_effort(
            platform.notify_user(
                ticket.user_id,
                "🔒 Ticket Closed",
                f"Your ticket #{ticket.numeric_id} has been closed.\nReason: {reason}",
            ),
            "close DM",
            ticket.id,
        )
        await self._best_effort(
            platform.post_notice(ticket.surface_id, "🔒 Ticket Closed", f"Closed by <@{ticket.closed_by}>.\nReason: {reason}"),
            "close notice",
            ticket.id,
        )
        if self.deps.transcripts is not None:
            try:
                artifacts = await self.deps.transcripts.generate(record)
            except OSError:
                LOGGER.exception("Transcript generation failed for ticket %s", ticket.id)
            else:
                await self._best_effort(
                    platform.post_transcript(ticket.guild_id, ticket, artifacts.paths), "transcript post", ticket.id
                )
        await self._best_effort(
            platform.post_log(
                ticket.guild_id,
                "🔒 Ticket Closed",
                {
                    "Ticket ID": ticket.numeric_id,
                    "User": f"{ticket.user_tag} (<@{ticket.user_id}>)",
                    "Staff": f"{staff_tag} (<@{ticket.closed_by}>)",
                    "Reason": reason,
                    "Messages": str(record.message_count),
                },
            ),
            "close log",
            ticket.id,
        )
        self._notify(ticket, WEBHOOK_EVENT_CLOSED, staff_id=ticket.closed_by)
        if ticket.thread_id is not None:
            await self._best_effort(platform.archive_thread(ticket.thread_id), "thread archive", ticket.id)

    def _notify(self, ticket: Ticket, event: str, **details: Any) -> None:
        config = self.deps.configs.get(ticket.guild_id)
        if self.deps.notifier is None or config is None or not config.webhook_url:
            return
        self.deps.notifier.dispatch(config.webhook_url, event, ticket, **details)
