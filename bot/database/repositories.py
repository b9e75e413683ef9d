from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from core.errors import HistoryRecordNotFoundError, PersistenceError, TicketStateError
from database.base import DATABASE_ERRORS, Database, Transaction
from database.models import (
    HistoryMessage,
    RollupStats,
    SearchCriteria,
    Snippet,
    Tag,
    Ticket,
    TicketHistoryRecord,
)
from utils.constants import TICKET_STATUS_CLOSED
from utils.time import parse_iso

LOGGER = logging.getLogger(__name__)

SCOPE_GLOBAL = "global"
SCOPE_USER = "user"
SCOPE_SERVER = "server"
SCOPE_SERVER_USER = "server_user"
SCOPE_STAFF = "staff"


def _json_load(value: str | None, default: Any) -> Any:
    if value is None:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


class CounterRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def next_numeric_id(self, guild_id: int) -> int:
        async with self.db.transaction() as tx:
            await tx.execute(
                """
                INSERT INTO guild_counters(guild_id, last_numeric_id, updated_at)
                VALUES (?, 1, ?)
                ON CONFLICT(guild_id) DO UPDATE SET
                    last_numeric_id = guild_counters.last_numeric_id + 1,
                    updated_at = excluded.updated_at;
                """,
                [guild_id, _now_iso()],
            )
            row = await tx.fetchone(
                "SELECT last_numeric_id FROM guild_counters WHERE guild_id = ?;",
                [guild_id],
            )
        if row is None:
            raise PersistenceError("The ticket counter could not be read.")
        return int(row["last_numeric_id"])

    async def current(self, guild_id: int) -> int:
        row = await self.db.fetchone(
            "SELECT last_numeric_id FROM guild_counters WHERE guild_id = ?;",
            [guild_id],
        )
        return int(row["last_numeric_id"]) if row else 0

    async def ensure_at_least(self, guild_id: int, value: int) -> None:
        await self.db.execute(
            """
            INSERT INTO guild_counters(guild_id, last_numeric_id, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(guild_id) DO UPDATE SET
                last_numeric_id = CASE
                    WHEN guild_counters.last_numeric_id < excluded.last_numeric_id
                    THEN excluded.last_numeric_id
                    ELSE guild_counters.last_numeric_id
                END,
                updated_at = excluded.updated_at;
            """,
            [guild_id, value, _now_iso()],
        )


class TagRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(self, tag: Tag) -> None:
        await self.db.execute(
            """
            INSERT INTO ticket_tags(guild_id, name_key, name, description, color, created_by_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?);
            """,
            [tag.guild_id, tag.key, tag.name, tag.description, tag.color, tag.created_by, tag.created_at],
        )

    async def update(self, tag: Tag) -> None:
        await self.db.execute(
            """
            UPDATE ticket_tags
            SET description = ?, color = ?, updated_at = ?
            WHERE guild_id = ? AND name_key = ?;
            """,
            [tag.description, tag.color, tag.updated_at, tag.guild_id, tag.key],
        )

    async def delete(self, guild_id: int, name: str) -> None:
        await self.db.execute(
            "DELETE FROM ticket_tags WHERE guild_id = ? AND name_key = ?;",
            [guild_id, name.strip().lower()],
        )

    async def get(self, guild_id: int, name: str) -> Tag | None:
        row = await self.db.fetchone(
            "SELECT * FROM ticket_tags WHERE guild_id = ? AND name_key = ?;",
            [guild_id, name.strip().lower()],
        )
        return self._to_tag(row) if row else None

    async def list_by_guild(self, guild_id: int) -> list[Tag]:
        rows = await self.db.fetchall(
            "SELECT * FROM ticket_tags WHERE guild_id = ? ORDER BY name_key ASC;",
            [guild_id],
        )
        return [self._to_tag(row) for row in rows]

    @staticmethod
    def _to_tag(row: dict[str, Any]) -> Tag:
        return Tag(
            guild_id=int(row["guild_id"]),
            name=row["name"],
            description=row["description"],
            color=row["color"],
            created_by=int(row["created_by_id"]),
            created_at=row["created_at"],
            updated_at=row.get("updated_at"),
        )


class SnippetRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def upsert(self, snippet: Snippet) -> None:
        await self.db.execute(
            """
            INSERT INTO ticket_snippets(guild_id, name_key, name, content, created_by_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(guild_id, name_key) DO UPDATE SET
                name = excluded.name,
                content = excluded.content,
                created_by_id = excluded.created_by_id,
                created_at = excluded.created_at;
            """,
            [
                snippet.guild_id,
                snippet.name.lower(),
                snippet.name,
                snippet.content,
                snippet.created_by,
                snippet.created_at,
            ],
        )

    async def delete(self, guild_id: int, name: str) -> None:
        await self.db.execute(
            "DELETE FROM ticket_snippets WHERE guild_id = ? AND name_key = ?;",
            [guild_id, name.strip().lower()],
        )

    async def get(self, guild_id: int, name: str) -> Snippet | None:
        row = await self.db.fetchone(
            "SELECT * FROM ticket_snippets WHERE guild_id = ? AND name_key = ?;",
            [guild_id, name.strip().lower()],
        )
        if not row:
            return None
        return Snippet(
            guild_id=int(row["guild_id"]),
            name=row["name"],
            content=row["content"],
            created_by=int(row["created_by_id"]),
            created_at=row["created_at"],
        )

    async def list_names(self, guild_id: int) -> list[str]:
        rows = await self.db.fetchall(
            "SELECT name FROM ticket_snippets WHERE guild_id = ? ORDER BY name_key ASC;",
            [guild_id],
        )
        return [row["name"] for row in rows]


class BlacklistRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def add(
        self, guild_id: int, user_id: int, reason: str, created_by_id: int, until_at: str | None
    ) -> None:
        await self.db.execute(
            """
            INSERT INTO ticket_blacklist(guild_id, user_id, reason, until_at, created_by_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(guild_id, user_id) DO UPDATE SET
                reason = excluded.reason,
                until_at = excluded.until_at,
                created_by_id = excluded.created_by_id,
                created_at = excluded.created_at;
            """,
            [guild_id, user_id, reason, until_at, created_by_id, _now_iso()],
        )

    async def remove(self, guild_id: int, user_id: int) -> bool:
        existing = await self.db.fetchone(
            "SELECT user_id FROM ticket_blacklist WHERE guild_id = ? AND user_id = ?;",
            [guild_id, user_id],
        )
        if not existing:
            return False
        await self.db.execute(
            "DELETE FROM ticket_blacklist WHERE guild_id = ? AND user_id = ?;",
            [guild_id, user_id],
        )
        return True

    async def get_active(self, guild_id: int, user_id: int) -> dict[str, Any] | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM ticket_blacklist
            WHERE guild_id = ? AND user_id = ?;
            """,
            [guild_id, user_id],
        )
        if not row:
            return None
        expiry = parse_iso(row.get("until_at"))
        if expiry is not None and expiry <= datetime.now(UTC):
            await self.remove(guild_id, user_id)
            return None
        return row

    async def find_active_in(self, guild_ids: Iterable[int], user_id: int) -> dict[str, Any] | None:
        for guild_id in guild_ids:
            row = await self.get_active(guild_id, user_id)
            if row:
                return row
        return None

    async def list_by_guild(self, guild_id: int) -> list[dict[str, Any]]:
        return await self.db.fetchall(
            "SELECT * FROM ticket_blacklist WHERE guild_id = ? ORDER BY created_at DESC;",
            [guild_id],
        )


class HistoryRepository:
    """Closed ticket archive with rollups maintained at write time."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def archive(self, record: TicketHistoryRecord) -> TicketHistoryRecord:
        ticket = record.ticket
        if ticket.status != TICKET_STATUS_CLOSED:
            raise TicketStateError(f"Ticket {ticket.id} is not closed.")
        try:
            async with self.db.transaction() as tx:
                existing = await tx.fetchone(
                    "SELECT ticket_id FROM ticket_history WHERE ticket_id = ?;",
                    [ticket.id],
                )
                if existing:
                    raise TicketStateError(f"Ticket {ticket.id} is already archived.")
                await tx.execute(
                    """
                    INSERT INTO ticket_history(
                        ticket_id, numeric_id, guild_id, user_id, user_tag, channel_id, thread_id,
                        category, priority, assigned_to, assigned_to_tag, assigned_at,
                        first_response_time, created_at, closed_at, closed_by, close_reason,
                        info_message_id, thread_info_message_id, message_count,
                        staff_message_count, user_message_count, satisfaction_rating,
                        satisfaction_feedback, rated_at, tags_json, events_json, messages_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    [
                        ticket.id,
                        ticket.numeric_id,
                        ticket.guild_id,
                        ticket.user_id,
                        ticket.user_tag,
                        ticket.channel_id,
                        ticket.thread_id,
                        ticket.category,
                        ticket.priority,
                        ticket.assigned_to,
                        ticket.assigned_to_tag,
                        ticket.assigned_at,
                        ticket.first_response_time,
                        ticket.created_at,
                        ticket.closed_at,
                        ticket.closed_by,
                        ticket.close_reason,
                        ticket.info_message_id,
                        ticket.thread_info_message_id,
                        record.message_count,
                        record.staff_message_count,
                        record.user_message_count,
                        record.satisfaction_rating,
                        record.satisfaction_feedback,
                        record.rated_at,
                        _json_dump(ticket.tags),
                        _json_dump(ticket.events),
                        _json_dump([message.to_dict() for message in record.messages]),
                    ],
                )
                await self._apply_archive_rollups(tx, ticket)
        except DATABASE_ERRORS as exc:
            LOGGER.exception("Failed to archive ticket %s", ticket.id)
            raise PersistenceError() from exc
        LOGGER.info("Archived ticket %s with %s messages", ticket.id, record.message_count)
        return record

    async def _apply_archive_rollups(self, tx: Transaction, ticket: Ticket) -> None:
        targets: list[tuple[str, int, int, str | None]] = [
            (SCOPE_GLOBAL, 0, 0, None),
            (SCOPE_USER, 0, ticket.user_id, ticket.user_tag),
            (SCOPE_SERVER, ticket.guild_id, 0, None),
            (SCOPE_SERVER_USER, ticket.guild_id, ticket.user_id, ticket.user_tag),
        ]
        if ticket.assigned_to is not None:
            targets.append((SCOPE_STAFF, ticket.guild_id, ticket.assigned_to, ticket.assigned_to_tag))

        now = _now_iso()
        for scope, guild_id, subject_id, display_name in targets:
            await tx.execute(
                """
                INSERT INTO history_rollups(
                    scope, guild_id, subject_id, total_tickets, closed_tickets, display_name, updated_at
                )
                VALUES (?, ?, ?, 1, 1, ?, ?)
                ON CONFLICT(scope, guild_id, subject_id) DO UPDATE SET
                    total_tickets = history_rollups.total_tickets + 1,
                    closed_tickets = history_rollups.closed_tickets + 1,
                    display_name = COALESCE(excluded.display_name, history_rollups.display_name),
                    updated_at = excluded.updated_at;
                """,
                [scope, guild_id, subject_id, display_name, now],
            )
            if scope == SCOPE_SERVER_USER:
                continue
            dimensions = [("tag", tag) for tag in ticket.tags]
            if ticket.category:
                dimensions.append(("category", ticket.category))
            for dimension, value in dimensions:
                await tx.execute(
                    """
                    INSERT INTO history_rollup_counts(scope, guild_id, subject_id, dimension, value, count)
                    VALUES (?, ?, ?, ?, ?, 1)
                    ON CONFLICT(scope, guild_id, subject_id, dimension, value) DO UPDATE SET
                        count = history_rollup_counts.count + 1;
                    """,
                    [scope, guild_id, subject_id, dimension, value],
                )

    async def patch_rating(
        self,
        ticket_id: str,
        rating: int,
        feedback: str | None = None,
        rated_at: str | None = None,
    ) -> TicketHistoryRecord:
        rated_at = rated_at or _now_iso()
        try:
            async with self.db.transaction() as tx:
                row = await tx.fetchone(
                    """
                    SELECT guild_id, user_id, assigned_to, satisfaction_rating
                    FROM ticket_history WHERE ticket_id = ?;
                    """,
                    [ticket_id],
                )
                if not row:
                    raise HistoryRecordNotFoundError()
                previous = row.get("satisfaction_rating")
                await tx.execute(
                    """
                    UPDATE ticket_history
                    SET satisfaction_rating = ?,
                        satisfaction_feedback = COALESCE(?, satisfaction_feedback),
                        rated_at = ?
                    WHERE ticket_id = ?;
                    """,
                    [rating, feedback, rated_at, ticket_id],
                )
                total_delta = rating - int(previous) if previous is not None else rating
                count_delta = 0 if previous is not None else 1
                targets = [
                    (SCOPE_USER, 0, int(row["user_id"])),
                    (SCOPE_SERVER, int(row["guild_id"]), 0),
                ]
                if row.get("assigned_to") is not None:
                    targets.append((SCOPE_STAFF, int(row["guild_id"]), int(row["assigned_to"])))
                for scope, guild_id, subject_id in targets:
                    await tx.execute(
                        """
                        UPDATE history_rollups
                        SET rating_total = rating_total + ?,
                            rating_count = rating_count + ?,
                            updated_at = ?
                        WHERE scope = ? AND guild_id = ? AND subject_id = ?;
                        """,
                        [total_delta, count_delta, rated_at, scope, guild_id, subject_id],
                    )
        except DATABASE_ERRORS as exc:
            LOGGER.exception("Failed to record rating for ticket %s", ticket_id)
            raise PersistenceError() from exc

        record = await self.get(ticket_id)
        if record is None:
            raise HistoryRecordNotFoundError()
        return record

    async def exists(self, ticket_id: str) -> bool:
        row = await self.db.fetchone(
            "SELECT ticket_id FROM ticket_history WHERE ticket_id = ?;",
            [ticket_id],
        )
        return row is not None

    async def get(self, ticket_id: str) -> TicketHistoryRecord | None:
        row = await self.db.fetchone(
            "SELECT * FROM ticket_history WHERE ticket_id = ?;",
            [ticket_id],
        )
        return self._to_record(row) if row else None

    async def count_for_ticket(self, ticket_id: str) -> int:
        row = await self.db.fetchone(
            "SELECT COUNT(*) AS count FROM ticket_history WHERE ticket_id = ?;",
            [ticket_id],
        )
        return int(row["count"]) if row else 0

    async def list_for_user(
        self, user_id: int, guild_id: int | None = None, limit: int = 25
    ) -> list[TicketHistoryRecord]:
        records = await self.search(SearchCriteria(guild_id=guild_id, user_id=user_id))
        records.sort(key=lambda record: record.ticket.created_at, reverse=True)
        return records[:limit]

    async def list_window(
        self, guild_id: int, start: datetime | None = None, end: datetime | None = None
    ) -> list[TicketHistoryRecord]:
        return await self.search(SearchCriteria(guild_id=guild_id, start_date=start, end_date=end))

    async def search(self, criteria: SearchCriteria) -> list[TicketHistoryRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if criteria.guild_id is not None:
            clauses.append("guild_id = ?")
            params.append(criteria.guild_id)
        if criteria.user_id is not None:
            clauses.append("user_id = ?")
            params.append(criteria.user_id)
        if criteria.category:
            clauses.append("category = ?")
            params.append(criteria.category)
        if criteria.staff_id is not None:
            clauses.append("assigned_to = ?")
            params.append(criteria.staff_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db.fetchall(f"SELECT * FROM ticket_history {where};", params)
        records = [self._to_record(row) for row in rows]
        return [record for record in records if _matches(record, criteria)]

    async def rollup(self, scope: str, guild_id: int, subject_id: int) -> RollupStats | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM history_rollups
            WHERE scope = ? AND guild_id = ? AND subject_id = ?;
            """,
            [scope, guild_id, subject_id],
        )
        if not row:
            return None
        counts = await self.db.fetchall(
            """
            SELECT dimension, value, count FROM history_rollup_counts
            WHERE scope = ? AND guild_id = ? AND subject_id = ?;
            """,
            [scope, guild_id, subject_id],
        )
        return self._to_rollup(row, counts)

    async def rollups(self, scope: str, guild_id: int) -> list[RollupStats]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM history_rollups
            WHERE scope = ? AND guild_id = ?
            ORDER BY total_tickets DESC, subject_id ASC;
            """,
            [scope, guild_id],
        )
        counts = await self.db.fetchall(
            """
            SELECT subject_id, dimension, value, count FROM history_rollup_counts
            WHERE scope = ? AND guild_id = ?;
            """,
            [scope, guild_id],
        )
        by_subject: dict[int, list[dict[str, Any]]] = {}
        for count in counts:
            by_subject.setdefault(int(count["subject_id"]), []).append(count)
        return [self._to_rollup(row, by_subject.get(int(row["subject_id"]), [])) for row in rows]

    async def global_stats(self) -> RollupStats | None:
        return await self.rollup(SCOPE_GLOBAL, 0, 0)

    async def user_stats(self, user_id: int) -> RollupStats | None:
        return await self.rollup(SCOPE_USER, 0, user_id)

    async def server_stats(self, guild_id: int) -> RollupStats | None:
        return await self.rollup(SCOPE_SERVER, guild_id, 0)

    async def staff_stats(self, guild_id: int) -> list[RollupStats]:
        return await self.rollups(SCOPE_STAFF, guild_id)

    @staticmethod
    def _to_rollup(row: dict[str, Any], counts: list[dict[str, Any]]) -> RollupStats:
        stats = RollupStats(
            scope=row["scope"],
            guild_id=int(row["guild_id"]),
            subject_id=int(row["subject_id"]),
            total_tickets=int(row["total_tickets"]),
            closed_tickets=int(row["closed_tickets"]),
            rating_total=int(row["rating_total"]),
            rating_count=int(row["rating_count"]),
            display_name=row.get("display_name"),
        )
        for count in counts:
            bucket = stats.categories if count["dimension"] == "category" else stats.tags
            bucket[str(count["value"])] = int(count["count"])
        return stats

    @staticmethod
    def _to_record(row: dict[str, Any]) -> TicketHistoryRecord:
        ticket = Ticket(
            id=row["ticket_id"],
            numeric_id=row["numeric_id"],
            guild_id=int(row["guild_id"]),
            user_id=int(row["user_id"]),
            user_tag=row["user_tag"],
            channel_id=int(row["channel_id"]),
            created_at=row["created_at"],
            status=TICKET_STATUS_CLOSED,
            thread_id=_optional_int(row.get("thread_id")),
            category=row.get("category"),
            priority=row["priority"],
            tags=list(_json_load(row.get("tags_json"), [])),
            events=list(_json_load(row.get("events_json"), [])),
            assigned_to=_optional_int(row.get("assigned_to")),
            assigned_to_tag=row.get("assigned_to_tag"),
            assigned_at=row.get("assigned_at"),
            first_response_time=row.get("first_response_time"),
            closed_at=row["closed_at"],
            close_reason=row.get("close_reason"),
            closed_by=_optional_int(row.get("closed_by")),
            info_message_id=_optional_int(row.get("info_message_id")),
            thread_info_message_id=_optional_int(row.get("thread_info_message_id")),
        )
        messages = [HistoryMessage.from_dict(item) for item in _json_load(row.get("messages_json"), [])]
        rating = row.get("satisfaction_rating")
        return TicketHistoryRecord(
            ticket=ticket,
            messages=messages,
            staff_message_count=int(row.get("staff_message_count") or 0),
            user_message_count=int(row.get("user_message_count") or 0),
            satisfaction_rating=int(rating) if rating is not None else None,
            satisfaction_feedback=row.get("satisfaction_feedback"),
            rated_at=row.get("rated_at"),
        )


def _matches(record: TicketHistoryRecord, criteria: SearchCriteria) -> bool:
    ticket = record.ticket
    if criteria.username and criteria.username.lower() not in ticket.user_tag.lower():
        return False
    if criteria.ticket_id:
        needle = criteria.ticket_id.strip()
        if needle not in ticket.id and not _same_number(needle.lstrip("#"), ticket.numeric_id):
            return False
    if criteria.tags:
        wanted = {tag.lower() for tag in criteria.tags}
        if not any(tag.lower() in wanted for tag in ticket.tags):
            return False
    if criteria.content:
        needle = criteria.content.lower()
        if not any(needle in message.content.lower() for message in record.messages):
            return False
    if criteria.start_date or criteria.end_date:
        created = parse_iso(ticket.created_at)
        if created is None:
            return False
        if criteria.start_date and created < criteria.start_date:
            return False
        if criteria.end_date and created > criteria.end_date:
            return False
    if criteria.min_rating is not None or criteria.max_rating is not None:
        if record.satisfaction_rating is None:
            return False
        if criteria.min_rating is not None and record.satisfaction_rating < criteria.min_rating:
            return False
        if criteria.max_rating is not None and record.satisfaction_rating > criteria.max_rating:
            return False
    return True


def _same_number(left: str, right: str) -> bool:
    if not left.isdigit() or not right.isdigit():
        return False
    return int(left) == int(right)
