from __future__ import annotations

import asyncio
import html
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from core.config import TranscriptConfig
from database.models import HistoryMessage, TicketHistoryRecord
from utils.constants import format_category, format_priority
from utils.time import parse_iso, utc_now


@dataclass(slots=True)
class TranscriptArtifacts:
    markdown_path: Path | None
    html_path: Path | None

    @property
    def paths(self) -> list[Path]:
        return [path for path in (self.markdown_path, self.html_path) if path is not None]


def _display_time(value: str | None) -> str:
    parsed = parse_iso(value)
    if parsed is None:
        return "Unknown"
    return parsed.strftime("%Y-%m-%d %H:%M:%S UTC")


def _header_lines(record: TicketHistoryRecord) -> list[tuple[str, str]]:
    ticket = record.ticket
    rows = [
        ("Ticket ID", ticket.numeric_id),
        ("User", f"{ticket.user_tag} ({ticket.user_id})"),
        ("Created", _display_time(ticket.created_at)),
    ]
    if ticket.closed_at:
        rows.append(("Closed", _display_time(ticket.closed_at)))
    if ticket.closed_by is not None:
        rows.append(("Closed By", f"<@{ticket.closed_by}> ({ticket.closed_by})"))
    if ticket.close_reason:
        rows.append(("Close Reason", ticket.close_reason))
    if ticket.category:
        rows.append(("Category", format_category(ticket.category)))
    rows.append(("Priority", format_priority(ticket.priority)))
    if ticket.assigned_to is not None:
        rows.append(("Assigned To", f"{ticket.assigned_to_tag or 'Unknown'} ({ticket.assigned_to})"))
    if ticket.tags:
        rows.append(("Tags", ", ".join(ticket.tags)))
    return rows


def render_markdown(record: TicketHistoryRecord, generated_at: datetime | None = None) -> str:
    lines = ["# Modmail Ticket Transcript", "", "## Ticket Information", ""]
    lines.extend(f"- **{label}:** {value}" for label, value in _header_lines(record))
    lines.extend(["", "## Messages", ""])
    for message in record.messages:
        lines.append(f"### {message.author} - {_display_time(message.timestamp)}")
        lines.append("")
        lines.append(message.content or "*No content*")
        lines.append("")
        if message.attachments:
            lines.append("**Attachments:**")
            lines.extend(f"- {url}" for url in message.attachments)
            lines.append("")
    lines.extend(["", "## End of Transcript", f"Generated: {(generated_at or utc_now()).isoformat()}", ""])
    return "\n".join(lines)


def _message_class(message: HistoryMessage) -> str:
    if message.kind == "system":
        return "system"
    return "staff" if message.is_staff else "user"


def render_html(record: TicketHistoryRecord, generated_at: datetime | None = None) -> str:
    header = "".join(
        f"<li><strong>{html.escape(label)}:</strong> {html.escape(value)}</li>"
        for label, value in _header_lines(record)
    )
    rows: list[str] = []
    for message in record.messages:
        attachment_html = ""
        if message.attachments:
            links = "".join(
                f'<li><a href="{html.escape(url)}">{html.escape(url.rsplit("/", 1)[-1])}</a></li>'
                for url in message.attachments
            )
            attachment_html = f"<ul>{links}</ul>"
        rows.append(
            f"<div class='msg {_message_class(message)}'>"
            f"<div class='meta'>{html.escape(message.author)} | {_display_time(message.timestamp)}</div>"
            f"<div class='content'>{html.escape(message.content or '')}</div>"
            f"{attachment_html}"
            "</div>"
        )
    generated = (generated_at or utc_now()).isoformat()
    return (
        "<!doctype html><html><head><meta charset='utf-8'>"
        f"<title>Ticket {html.escape(record.ticket.numeric_id)}</title>"
        "<style>"
        "body{font-family:Arial,sans-serif;background:#f5f7fb;color:#1f2937;padding:16px;}"
        ".msg{background:white;border:1px solid #e5e7eb;border-radius:8px;padding:10px;margin-bottom:8px;}"
        ".msg.staff{border-left:4px solid #5865f2;}"
        ".msg.user{border-left:4px solid #22c55e;}"
        ".msg.system{background:#f3f4f6;font-style:italic;}"
        ".meta{font-size:12px;color:#6b7280;margin-bottom:6px;}"
        ".content{white-space:pre-wrap;}"
        "ul{margin-top:8px;}"
        "</style></head><body>"
        f"<h1>Modmail Ticket Transcript - #{html.escape(record.ticket.numeric_id)}</h1>"
        f"<ul class='info'>{header}</ul>"
        + "".join(rows)
        + f"<footer>Generated: {html.escape(generated)}</footer>"
        + "</body></html>"
    )


class TranscriptService:
    def __init__(self, config: TranscriptConfig) -> None:
        self.config = config
        self.base_dir = Path(config.directory)

    def write(self, record: TicketHistoryRecord) -> TranscriptArtifacts:
        guild_dir = self.base_dir / str(record.ticket.guild_id)
        guild_dir.mkdir(parents=True, exist_ok=True)
        generated_at = utc_now()

        markdown_path: Path | None = None
        html_path: Path | None = None
        if self.config.markdown_enabled:
            markdown_path = guild_dir / f"{record.ticket.id}.md"
            markdown_path.write_text(render_markdown(record, generated_at), encoding="utf-8")
        if self.config.html_enabled:
            html_path = guild_dir / f"{record.ticket.id}.html"
            html_path.write_text(render_html(record, generated_at), encoding="utf-8")
        return TranscriptArtifacts(markdown_path=markdown_path, html_path=html_path)

    async def generate(self, record: TicketHistoryRecord) -> TranscriptArtifacts:
        return await asyncio.to_thread(self.write, record)
