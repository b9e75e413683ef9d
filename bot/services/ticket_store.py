from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from typing import Any

from database.models import Ticket
from utils.constants import (
    DEFAULT_PRIORITY,
    PRIORITY_LEVELS,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUSES,
)
from utils.time import to_iso, utc_now

LOGGER = logging.getLogger(__name__)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")
_INT_FIELDS = (
    "guild_id",
    "user_id",
    "channel_id",
    "thread_id",
    "assigned_to",
    "closed_by",
    "info_message_id",
    "thread_info_message_id",
    "initiated_by",
)
_REQUIRED_INT_FIELDS = frozenset({"guild_id", "user_id", "channel_id"})


def _snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


def _coerce_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def verify_integrity(raw: Any, now: datetime | None = None) -> Ticket | None:
    """Repair a snapshot entry, or return None when it cannot identify a ticket."""
    if not isinstance(raw, dict):
        return None
    data = {_snake_case(str(key)): value for key, value in raw.items()}

    ticket_id = str(data.get("id") or "").strip()
    if not ticket_id:
        LOGGER.warning("Dropping ticket snapshot entry without id")
        return None

    if data.get("guild_id") is None and "-" in ticket_id:
        data["guild_id"] = ticket_id.split("-", 1)[0]
    for key in _INT_FIELDS:
        data[key] = _coerce_int(data.get(key))
    missing = [key for key in _REQUIRED_INT_FIELDS if data[key] is None]
    if missing:
        LOGGER.warning("Dropping ticket %s with missing %s", ticket_id, ", ".join(sorted(missing)))
        return None

    if data.get("status") not in TICKET_STATUSES:
        LOGGER.warning("Repairing invalid status %r on ticket %s", data.get("status"), ticket_id)
        data["status"] = TICKET_STATUS_IN_PROGRESS
    if not data.get("created_at"):
        LOGGER.warning("Repairing missing created_at on ticket %s", ticket_id)
        data["created_at"] = to_iso(now or utc_now())
    if not data.get("numeric_id"):
        data["numeric_id"] = ticket_id.rsplit("-", 1)[-1]
    data["numeric_id"] = str(data["numeric_id"])
    data["id"] = ticket_id
    data["user_tag"] = str(data.get("user_tag") or "Unknown User")
    if data.get("priority") not in PRIORITY_LEVELS:
        data["priority"] = DEFAULT_PRIORITY

    tags: list[str] = []
    for tag in data.get("tags") or []:
        if isinstance(tag, str) and tag.lower() not in {existing.lower() for existing in tags}:
            tags.append(tag)
    data["tags"] = tags
    events = data.get("events")
    data["events"] = [event for event in events if isinstance(event, dict)] if isinstance(events, list) else []
    linked = data.get("linked_message_ids")
    data["linked_message_ids"] = [
        message_id for message_id in map(_coerce_int, linked if isinstance(linked, list) else []) if message_id
    ]
    return Ticket.from_dict(data)


class TicketStore:
    """JSON snapshot of open tickets with a backup copy of the previous good file."""

    def __init__(self, path: Path, backup_path: Path, retries: int = 3, retry_delay: float = 0.5) -> None:
        self.path = path
        self.backup_path = backup_path
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self._lock = asyncio.Lock()

    def load(self) -> list[Ticket]:
        entries = self._read(self.path)
        if entries is None:
            entries = self._read(self.backup_path)
            if entries is None:
                LOGGER.info("No ticket snapshot found; starting with an empty registry")
                return []
            LOGGER.warning("Recovered %s tickets from backup %s", len(entries), self.backup_path)
            try:
                self._write_text(json.dumps(entries, indent=2, ensure_ascii=False), backup=False)
            except OSError:
                LOGGER.exception("Failed to rewrite primary ticket snapshot from backup")

        tickets: list[Ticket] = []
        for entry in entries:
            ticket = verify_integrity(entry)
            if ticket is not None:
                tickets.append(ticket)
        LOGGER.info("Loaded %s tickets from snapshot (%s dropped)", len(tickets), len(entries) - len(tickets))
        return tickets

    async def save(self, tickets: Iterable[Ticket]) -> bool:
        payload = json.dumps([ticket.to_dict() for ticket in tickets], indent=2, ensure_ascii=False)
        async with self._lock:
            for attempt in range(1, self.retries + 1):
                try:
                    await asyncio.to_thread(self._write_text, payload, True)
                    return True
                except OSError:
                    LOGGER.exception("Ticket snapshot save failed (attempt %s/%s)", attempt, self.retries)
                    if attempt < self.retries:
                        await asyncio.sleep(self.retry_delay * attempt)
        return False

    def _read(self, path: Path) -> list[Any] | None:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError):
            LOGGER.exception("Ticket snapshot %s is unreadable", path)
            return None
        if isinstance(raw, dict):
            return list(raw.values())
        if not isinstance(raw, list):
            LOGGER.error("Ticket snapshot %s has unexpected root type %s", path, type(raw).__name__)
            return None
        entries: list[Any] = []
        for item in raw:
            # [id, ticket] pairs are accepted from older map-shaped dumps.
            if isinstance(item, list) and len(item) == 2 and isinstance(item[1], dict):
                entries.append(item[1])
            else:
                entries.append(item)
        return entries

    def _write_text(self, payload: str, backup: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            if backup and self.path.exists():
                self.backup_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(self.path, self.backup_path)
            os.replace(temp_path, self.path)
        finally:
            if temp_path.exists():
                temp_path.unlink()
