from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from core.errors import TicketStateError
from database.models import Ticket

LOGGER = logging.getLogger(__name__)


class TicketRegistry:
    """Open tickets keyed by id, with secondary indices kept in step with the primary map."""

    def __init__(self) -> None:
        self._tickets: dict[str, Ticket] = {}
        self._by_user: dict[tuple[int, int], str] = {}
        self._by_thread: dict[int, str] = {}
        self._by_channel: dict[int, list[str]] = {}
        self._by_info_message: dict[int, str] = {}
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        return len(self._tickets)

    def __contains__(self, ticket_id: object) -> bool:
        return ticket_id in self._tickets

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        # asyncio.Lock wakes waiters in FIFO order, which keeps per-ticket event order.
        # Entries live only while someone holds or awaits the key.
        lock, holders = self._locks.get(key) or (asyncio.Lock(), 0)
        self._locks[key] = (lock, holders + 1)
        try:
            async with lock:
                yield
        finally:
            lock, holders = self._locks[key]
            if holders <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, holders - 1)

    def add(self, ticket: Ticket) -> None:
        if not ticket.is_open:
            raise TicketStateError(f"Cannot register closed ticket {ticket.id}.")
        if ticket.id in self._tickets:
            raise TicketStateError(f"Ticket {ticket.id} is already registered.")
        user_key = (ticket.guild_id, ticket.user_id)
        if user_key in self._by_user:
            raise TicketStateError(
                f"User {ticket.user_id} already has open ticket {self._by_user[user_key]} in guild {ticket.guild_id}."
            )
        self._tickets[ticket.id] = ticket
        self._index(ticket)

    def remove(self, ticket_id: str) -> Ticket | None:
        ticket = self._tickets.pop(ticket_id, None)
        if ticket is None:
            return None
        self._unindex(ticket)
        return ticket

    def get(self, ticket_id: str) -> Ticket | None:
        return self._tickets.get(ticket_id)

    def find_open_for_user(self, guild_id: int, user_id: int) -> Ticket | None:
        ticket_id = self._by_user.get((guild_id, user_id))
        return self._tickets.get(ticket_id) if ticket_id else None

    def find_for_user(self, user_id: int, guild_ids: Iterable[int]) -> Ticket | None:
        for guild_id in guild_ids:
            ticket = self.find_open_for_user(guild_id, user_id)
            if ticket is not None:
                return ticket
        return None

    def find_by_thread(self, thread_id: int) -> Ticket | None:
        ticket_id = self._by_thread.get(thread_id)
        return self._tickets.get(ticket_id) if ticket_id else None

    def find_by_channel(self, channel_id: int) -> list[Ticket]:
        """Legacy-mode tickets that share the given container channel, oldest first."""
        tickets = [self._tickets[ticket_id] for ticket_id in self._by_channel.get(channel_id, [])]
        return sorted(tickets, key=lambda ticket: ticket.created_at)

    def find_by_info_message(self, message_id: int) -> Ticket | None:
        ticket_id = self._by_info_message.get(message_id)
        return self._tickets.get(ticket_id) if ticket_id else None

    def all(self) -> list[Ticket]:
        return list(self._tickets.values())

    def for_guild(self, guild_id: int) -> list[Ticket]:
        return [ticket for ticket in self._tickets.values() if ticket.guild_id == guild_id]

    def _index(self, ticket: Ticket) -> None:
        self._by_user[(ticket.guild_id, ticket.user_id)] = ticket.id
        if ticket.thread_id is not None:
            self._by_thread[ticket.thread_id] = ticket.id
        else:
            self._by_channel.setdefault(ticket.channel_id, []).append(ticket.id)
        for message_id in ticket.info_message_ids():
            self._by_info_message[message_id] = ticket.id

    def _unindex(self, ticket: Ticket) -> None:
        if self._by_user.get((ticket.guild_id, ticket.user_id)) == ticket.id:
            del self._by_user[(ticket.guild_id, ticket.user_id)]
        if ticket.thread_id is not None and self._by_thread.get(ticket.thread_id) == ticket.id:
            del self._by_thread[ticket.thread_id]
        channel_ids = self._by_channel.get(ticket.channel_id)
        if channel_ids and ticket.id in channel_ids:
            channel_ids.remove(ticket.id)
            if not channel_ids:
                del self._by_channel[ticket.channel_id]
        for message_id, ticket_id in list(self._by_info_message.items()):
            if ticket_id == ticket.id:
                del self._by_info_message[message_id]
