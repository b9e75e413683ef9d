from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import discord

from database.models import Ticket
from utils.constants import (
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_IN_PROGRESS,
    format_category,
    format_priority,
)
from utils.time import parse_iso

USER_AUTHOR_SUFFIX = " (User)"
STAFF_AUTHOR_SUFFIX = " (Staff)"
NOTE_AUTHOR_SUFFIX = " (Staff Note)"
ANONYMOUS_STAFF_NAME = "Staff Team"
ATTACHMENTS_FIELD = "📎 Attachments"

_STATUS_LABELS = {
    TICKET_STATUS_IN_PROGRESS: "🟢 In Progress",
    TICKET_STATUS_CLOSED: "🔒 Closed",
}


def make_embed(
    title: str | None,
    description: str | None,
    color: discord.Color | int | None = None,
    footer: str | None = None,
) -> discord.Embed:
    resolved_color = color if color is not None else discord.Color.blurple()
    embed = discord.Embed(
        title=title,
        description=description,
        color=resolved_color,
        timestamp=datetime.now(UTC),
    )
    if footer:
        embed.set_footer(text=footer)
    return embed


def success_embed(message: str) -> discord.Embed:
    return make_embed(title="Success", description=message, color=discord.Color.green())


def error_embed(message: str) -> discord.Embed:
    return make_embed(title="Error", description=message, color=discord.Color.red())


def _add_attachments(embed: discord.Embed, attachments: Sequence[str]) -> None:
    if attachments:
        embed.add_field(name=ATTACHMENTS_FIELD, value="\n".join(attachments)[:1024], inline=False)


def ticket_info_embed(ticket: Ticket) -> discord.Embed:
    created = parse_iso(ticket.created_at)
    embed = make_embed(
        title=f"📩 Modmail Ticket - #{ticket.numeric_id}",
        description="React with ✅ to claim this ticket." if not ticket.assigned_to and ticket.is_open else None,
        color=0xFF0000 if ticket.status == TICKET_STATUS_CLOSED else 0x0099FF,
    )
    embed.add_field(name="👤 User", value=f"<@{ticket.user_id}> ({ticket.user_tag})", inline=True)
    embed.add_field(name="📝 Status", value=_STATUS_LABELS.get(ticket.status, "🔶 Pending"), inline=True)
    embed.add_field(
        name="⏰ Created",
        value=discord.utils.format_dt(created, "f") if created else ticket.created_at,
        inline=True,
    )
    embed.add_field(name="Priority", value=format_priority(ticket.priority), inline=True)
    embed.add_field(name="📂 Category", value=format_category(ticket.category), inline=True)
    embed.add_field(
        name="👨‍💼 Assigned To",
        value=f"<@{ticket.assigned_to}>" if ticket.assigned_to is not None else "Unassigned",
        inline=True,
    )
    if ticket.initiated_by is not None:
        embed.add_field(name="📨 Initiated By", value=f"<@{ticket.initiated_by}>", inline=True)
    embed.add_field(name="🏷️ Tags", value=", ".join(ticket.tags) if ticket.tags else "None", inline=False)
    embed.set_footer(text=f"User ID: {ticket.user_id} | Ticket {ticket.id}")
    return embed


def user_message_embed(author_tag: str, content: str, attachments: Sequence[str]) -> discord.Embed:
    embed = make_embed(title=None, description=content or "*No content*", color=0x0099FF)
    embed.set_author(name=f"{author_tag}{USER_AUTHOR_SUFFIX}")
    _add_attachments(embed, attachments)
    return embed


def staff_note_embed(author_tag: str, content: str, attachments: Sequence[str]) -> discord.Embed:
    embed = make_embed(title=None, description=content or "*No content*", color=0xFFA500)
    embed.set_author(name=f"{author_tag}{NOTE_AUTHOR_SUFFIX}")
    embed.set_footer(text="Only visible to staff")
    _add_attachments(embed, attachments)
    return embed


def staff_reply_embed(
    staff_tag: str, content: str, attachments: Sequence[str], *, anonymous: bool
) -> discord.Embed:
    embed = make_embed(title=None, description=content or "*No content*", color=0x00FF00)
    name = ANONYMOUS_STAFF_NAME if anonymous else staff_tag
    embed.set_author(name=f"{name}{STAFF_AUTHOR_SUFFIX}")
    _add_attachments(embed, attachments)
    return embed


def log_embed(title: str, fields: dict[str, str]) -> discord.Embed:
    embed = make_embed(title=title, description=None, color=discord.Color.blurple())
    for name, value in fields.items():
        embed.add_field(name=name, value=(value or "-")[:1024], inline=len(value or "") < 40)
    return embed


def survey_embed(ticket: Ticket) -> discord.Embed:
    embed = make_embed(
        title="⭐ Ticket Satisfaction Survey",
        description=(
            f"Thank you for using our modmail system! Your ticket (#{ticket.numeric_id}) has been closed.\n\n"
            "We'd appreciate your feedback on how we handled your ticket. "
            "Please rate your experience from 1 to 5 stars."
        ),
        color=0x00BFFF,
        footer="Your feedback helps us improve our support",
    )
    embed.add_field(name="🎫 Ticket ID", value=ticket.numeric_id, inline=True)
    return embed
