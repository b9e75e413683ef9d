from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import discord
from discord.ext import commands

from core.config import ConfigStore
from core.errors import DeliveryError
from database.models import HistoryMessage, Ticket
from utils.constants import CLAIM_EMOJI
from utils.embeds import (
    NOTE_AUTHOR_SUFFIX,
    STAFF_AUTHOR_SUFFIX,
    USER_AUTHOR_SUFFIX,
    log_embed,
    make_embed,
    staff_note_embed,
    staff_reply_embed,
    survey_embed,
    ticket_info_embed,
    user_message_embed,
)
from utils.time import parse_iso, to_iso
from views.survey_view import SurveyView

LOGGER = logging.getLogger(__name__)

MessageableChannel = discord.TextChannel | discord.Thread


@contextmanager
def _delivery(action: str) -> Iterator[None]:
    try:
        yield
    except discord.HTTPException as exc:
        raise DeliveryError(f"Discord rejected {action} ({exc.status}).") from exc


class DiscordPlatform:
    """discord.py implementation of the messaging operations the ticket core uses."""

    def __init__(self, bot: commands.Bot, configs: ConfigStore, history_page_size: int = 100) -> None:
        self.bot = bot
        self.configs = configs
        self.history_page_size = history_page_size

    async def _text_channel(self, channel_id: int) -> MessageableChannel:
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            try:
                channel = await self.bot.fetch_channel(channel_id)
            except (discord.HTTPException, discord.InvalidData) as exc:
                raise DeliveryError(f"Channel {channel_id} is not reachable.") from exc
        if not isinstance(channel, MessageableChannel):
            raise DeliveryError(f"Channel {channel_id} cannot hold ticket messages.")
        return channel

    async def _user(self, user_id: int) -> discord.User:
        user = self.bot.get_user(user_id)
        if user is not None:
            return user
        with _delivery("user lookup"):
            return await self.bot.fetch_user(user_id)

    async def _member(self, guild_id: int, user_id: int) -> discord.Member | None:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            return None
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except discord.NotFound:
            return None
        except discord.HTTPException as exc:
            raise DeliveryError("Member lookup failed.") from exc

    # Surfaces

    async def channel_exists(self, channel_id: int) -> bool:
        try:
            await self._text_channel(channel_id)
        except DeliveryError:
            return False
        return True

    async def create_thread(self, channel_id: int, message_id: int, name: str) -> int:
        channel = await self._text_channel(channel_id)
        if not isinstance(channel, discord.TextChannel):
            raise DeliveryError("Threads can only be created in text channels.")
        with _delivery("thread creation"):
            thread = await channel.get_partial_message(message_id).create_thread(
                name=name, auto_archive_duration=10080
            )
        return thread.id

    async def send_info(self, surface_id: int, ticket: Ticket, *, react: bool) -> int:
        channel = await self._text_channel(surface_id)
        with _delivery("info message"):
            message = await channel.send(embed=ticket_info_embed(ticket))
            if react:
                await message.add_reaction(CLAIM_EMOJI)
        return message.id

    async def edit_info(self, surface_id: int, message_id: int, ticket: Ticket) -> None:
        channel = await self._text_channel(surface_id)
        with _delivery("info refresh"):
            await channel.get_partial_message(message_id).edit(embed=ticket_info_embed(ticket))

    async def remove_reaction(self, channel_id: int, message_id: int, emoji: str, user_id: int) -> None:
        channel = await self._text_channel(channel_id)
        with _delivery("reaction removal"):
            await channel.get_partial_message(message_id).remove_reaction(emoji, discord.Object(id=user_id))

    async def delete_message(self, channel_id: int, message_id: int) -> None:
        channel = await self._text_channel(channel_id)
        with _delivery("message deletion"):
            await channel.get_partial_message(message_id).delete()

    async def archive_thread(self, thread_id: int) -> None:
        channel = await self._text_channel(thread_id)
        if not isinstance(channel, discord.Thread):
            return
        with _delivery("thread archive"):
            await channel.edit(archived=True, locked=True)

    # Conversation

    async def relay_user_message(
        self, ticket: Ticket, author_tag: str, content: str, attachments: Sequence[str]
    ) -> int:
        channel = await self._text_channel(ticket.surface_id)
        with _delivery("message relay"):
            message = await channel.send(embed=user_message_embed(author_tag, content, attachments))
        return message.id

    async def post_staff_note(
        self, ticket: Ticket, author_tag: str, content: str, attachments: Sequence[str]
    ) -> int:
        channel = await self._text_channel(ticket.surface_id)
        with _delivery("staff note"):
            message = await channel.send(embed=staff_note_embed(author_tag, content, attachments))
        return message.id

    async def post_notice(self, surface_id: int, title: str, description: str) -> None:
        channel = await self._text_channel(surface_id)
        with _delivery("notice"):
            await channel.send(embed=make_embed(title=title, description=description, color=0x0099FF))

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
        user = await self._user(ticket.user_id)
        with _delivery("staff reply"):
            await user.send(embed=staff_reply_embed(staff_tag, content, attachments, anonymous=anonymous))
        if not mirror:
            return None
        channel = await self._text_channel(ticket.surface_id)
        with _delivery("reply mirror"):
            message = await channel.send(
                embed=staff_reply_embed(staff_tag, content, attachments, anonymous=anonymous)
            )
        return message.id

    async def notify_user(self, user_id: int, title: str, description: str) -> None:
        user = await self._user(user_id)
        with _delivery("direct message"):
            await user.send(embed=make_embed(title=title, description=description))

    async def send_survey(self, ticket: Ticket) -> int:
        user = await self._user(ticket.user_id)
        with _delivery("survey"):
            message = await user.send(embed=survey_embed(ticket), view=SurveyView(ticket.id))
        return message.id

    # History

    async def _pages(
        self, channel: MessageableChannel, after: datetime | None
    ) -> AsyncIterator[list[discord.Message]]:
        before: discord.Message | None = None
        while True:
            page = [
                message
                async for message in channel.history(
                    limit=self.history_page_size, before=before, after=after, oldest_first=False
                )
            ]
            if page:
                yield page
            if len(page) < self.history_page_size:
                return
            before = page[-1]

    async def fetch_history(self, ticket: Ticket) -> list[HistoryMessage]:
        channel = await self._text_channel(ticket.surface_id)
        after = None if ticket.uses_thread else parse_iso(ticket.created_at)
        skip = set(ticket.info_message_ids())
        linked = set(ticket.linked_message_ids)
        bot_id = self.bot.user.id if self.bot.user else None
        pages: list[list[discord.Message]] = []
        with _delivery("history fetch"):
            async for page in self._pages(channel, after):
                pages.append(page)

        history: list[HistoryMessage] = []
        # Pages arrive newest first.
        for message in (message for page in reversed(pages) for message in reversed(page)):
            if message.id in skip:
                continue
            if not ticket.uses_thread and message.id not in linked:
                continue
            entry = await self._classify(ticket, message, bot_id)
            if entry is not None:
                history.append(entry)
        return history

    async def _classify(
        self, ticket: Ticket, message: discord.Message, bot_id: int | None
    ) -> HistoryMessage | None:
        attachments = [attachment.url for attachment in message.attachments]
        timestamp = to_iso(message.created_at)
        if message.author.id == bot_id or message.author.bot:
            if not message.embeds:
                return None
            embed = message.embeds[0]
            author_name = embed.author.name or ""
            content = embed.description or ""
            attachments.extend(
                url
                for embed_field in embed.fields
                if embed_field.name and "Attachments" in embed_field.name
                for url in (embed_field.value or "").splitlines()
                if url
            )
            if author_name.endswith(USER_AUTHOR_SUFFIX):
                return HistoryMessage(
                    id=message.id,
                    author=author_name[: -len(USER_AUTHOR_SUFFIX)],
                    author_id=ticket.user_id,
                    content=content,
                    timestamp=timestamp,
                    is_staff=False,
                    attachments=attachments,
                )
            if author_name.endswith(NOTE_AUTHOR_SUFFIX):
                return HistoryMessage(
                    id=message.id,
                    author=author_name[: -len(NOTE_AUTHOR_SUFFIX)],
                    author_id=message.author.id,
                    content=content,
                    timestamp=timestamp,
                    is_staff=True,
                    attachments=attachments,
                    kind="note",
                )
            if author_name.endswith(STAFF_AUTHOR_SUFFIX):
                return HistoryMessage(
                    id=message.id,
                    author=author_name[: -len(STAFF_AUTHOR_SUFFIX)],
                    author_id=message.author.id,
                    content=content,
                    timestamp=timestamp,
                    is_staff=True,
                    attachments=attachments,
                )
            return HistoryMessage(
                id=message.id,
                author=str(message.author),
                author_id=message.author.id,
                content=embed.title or content,
                timestamp=timestamp,
                is_staff=False,
                kind="system",
            )

        return HistoryMessage(
            id=message.id,
            author=str(message.author),
            author_id=message.author.id,
            content=message.content,
            timestamp=timestamp,
            is_staff=await self.is_staff(ticket.guild_id, message.author.id),
            attachments=attachments,
        )

    # Permissions

    async def is_staff(self, guild_id: int, user_id: int) -> bool:
        member = await self._member(guild_id, user_id)
        if member is None:
            return False
        if member.guild_permissions.administrator:
            return True
        config = self.configs.get(guild_id)
        return config is not None and any(role.id == config.staff_role_id for role in member.roles)

    async def is_admin(self, guild_id: int, user_id: int) -> bool:
        member = await self._member(guild_id, user_id)
        if member is None:
            return False
        permissions = member.guild_permissions
        return permissions.administrator or permissions.manage_guild

    # Logging

    async def post_log(self, guild_id: int, title: str, fields: dict[str, str]) -> None:
        config = self.configs.get(guild_id)
        if config is None:
            return
        channel = await self._text_channel(config.log_channel_id)
        with _delivery("log message"):
            await channel.send(embed=log_embed(title, fields))

    async def post_transcript(self, guild_id: int, ticket: Ticket, paths: Sequence[Path]) -> None:
        config = self.configs.get(guild_id)
        existing = [path for path in paths if path.exists()]
        if config is None or not existing:
            return
        channel = await self._text_channel(config.log_channel_id)
        with _delivery("transcript upload"):
            await channel.send(
                content=f"📑 Transcript for ticket #{ticket.numeric_id} ({ticket.user_tag})",
                files=[discord.File(path) for path in existing],
            )
