from __future__ import annotations

import asyncio
import csv
import logging
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from core.config import MetricsConfig
from core.errors import ValidationError
from database.models import SearchCriteria, Ticket, TicketHistoryRecord
from database.repositories import HistoryRepository
from utils.constants import PRIORITY_LEVELS, REPORT_METRICS, TICKET_STATUS_CLOSED, TICKET_STATUS_PENDING
from utils.time import minutes_between, parse_iso, utc_now

try:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt
except ImportError:  # pragma: no cover - optional graph dependency
    plt = None

LOGGER = logging.getLogger(__name__)

NOT_AVAILABLE = "N/A"


@dataclass(slots=True)
class LeaderboardEntry:
    subject_id: int
    display_name: str
    count: int
    average_rating: float | None = None


@dataclass(slots=True)
class SatisfactionStats:
    average_rating: float | None
    rating_counts: dict[int, int]
    rated_tickets: int
    total_tickets: int

    @property
    def response_rate(self) -> float:
        if not self.total_tickets:
            return 0.0
        return self.rated_tickets / self.total_tickets * 100


@dataclass(slots=True)
class BasicStats:
    days: int
    total_tickets: int
    closed_tickets: int
    close_rate: float
    category_counts: dict[str, int]
    priority_counts: dict[str, int]
    tag_counts: dict[str, int]
    average_response_minutes: float | None
    average_resolution_hours: float | None
    tickets_per_day: dict[str, int]
    top_users: list[LeaderboardEntry]
    top_staff: list[LeaderboardEntry]
    satisfaction: SatisfactionStats


@dataclass(slots=True)
class StaffPerformance:
    staff_id: int
    staff_tag: str
    tickets_handled: int = 0
    tickets_closed: int = 0
    average_rating: float | None = None
    average_response_minutes: float | None = None
    average_resolution_hours: float | None = None
    categories: dict[str, int] = field(default_factory=dict)
    tags: dict[str, int] = field(default_factory=dict)

    @property
    def close_rate(self) -> float:
        if not self.tickets_handled:
            return 0.0
        return self.tickets_closed / self.tickets_handled * 100


@dataclass(slots=True)
class ReportOptions:
    time_range_days: int = 30
    start_date: datetime | None = None
    end_date: datetime | None = None
    staff_id: int | None = None
    category: str | None = None
    tags: Sequence[str] = ()
    metrics: Sequence[str] = REPORT_METRICS


def format_minutes(value: float | None) -> str:
    return NOT_AVAILABLE if value is None else f"{value:.2f} minutes"


def format_hours(value: float | None) -> str:
    return NOT_AVAILABLE if value is None else f"{value:.2f} hours"


def format_rating(value: float | None) -> str:
    return NOT_AVAILABLE if value is None else f"{value:.2f}"


def format_percent(value: float) -> str:
    return f"{value:.2f}%" if value else "0%"


def _mean(values: Sequence[float]) -> float | None:
    return sum(values) / len(values) if values else None


def _response_minutes(record: TicketHistoryRecord) -> float | None:
    if record.ticket.first_response_time is None:
        return None
    return minutes_between(record.ticket.created_at, record.ticket.first_response_time)


def _resolution_hours(record: TicketHistoryRecord) -> float | None:
    if record.ticket.status != TICKET_STATUS_CLOSED or not record.ticket.closed_at:
        return None
    minutes = minutes_between(record.ticket.created_at, record.ticket.closed_at)
    return None if minutes is None else minutes / 60


def filter_window(records: Iterable[TicketHistoryRecord], days: int, now: datetime) -> list[TicketHistoryRecord]:
    cutoff = now - timedelta(days=days)
    selected: list[TicketHistoryRecord] = []
    for record in records:
        created = parse_iso(record.ticket.created_at)
        if created is not None and created >= cutoff:
            selected.append(record)
    return selected


def tickets_per_day(records: Iterable[TicketHistoryRecord], days: int, now: datetime) -> dict[str, int]:
    series = {(now - timedelta(days=offset)).date().isoformat(): 0 for offset in range(days - 1, -1, -1)}
    for record in records:
        created = parse_iso(record.ticket.created_at)
        if created is None:
            continue
        key = created.date().isoformat()
        if key in series:
            series[key] += 1
    return series


def category_counts(records: Iterable[TicketHistoryRecord]) -> dict[str, int]:
    return dict(Counter(record.ticket.category or "uncategorized" for record in records))


def priority_counts(records: Iterable[TicketHistoryRecord]) -> dict[str, int]:
    return dict(Counter(record.ticket.priority or "unset" for record in records))


def tag_counts(records: Iterable[TicketHistoryRecord]) -> dict[str, int]:
    return dict(Counter(tag for record in records for tag in record.ticket.tags))


def satisfaction_stats(records: Sequence[TicketHistoryRecord]) -> SatisfactionStats:
    ratings = [record.satisfaction_rating for record in records if record.satisfaction_rating is not None]
    counts = {star: 0 for star in range(1, 6)}
    for rating in ratings:
        counts[rating] = counts.get(rating, 0) + 1
    return SatisfactionStats(
        average_rating=_mean(ratings),
        rating_counts=counts,
        rated_tickets=len(ratings),
        total_tickets=len(records),
    )


def top_users(records: Iterable[TicketHistoryRecord], limit: int = 5) -> list[LeaderboardEntry]:
    entries: dict[int, LeaderboardEntry] = {}
    for record in records:
        ticket = record.ticket
        entry = entries.setdefault(
            ticket.user_id, LeaderboardEntry(subject_id=ticket.user_id, display_name=ticket.user_tag or "Unknown", count=0)
        )
        entry.count += 1
    return sorted(entries.values(), key=lambda entry: (-entry.count, entry.subject_id))[:limit]


def top_staff(records: Iterable[TicketHistoryRecord], limit: int = 5) -> list[LeaderboardEntry]:
    entries: dict[int, LeaderboardEntry] = {}
    ratings: dict[int, list[int]] = {}
    for record in records:
        ticket = record.ticket
        if ticket.assigned_to is None:
            continue
        entry = entries.setdefault(
            ticket.assigned_to,
            LeaderboardEntry(subject_id=ticket.assigned_to, display_name=ticket.assigned_to_tag or "Unknown", count=0),
        )
        entry.count += 1
        if record.satisfaction_rating is not None:
            ratings.setdefault(ticket.assigned_to, []).append(record.satisfaction_rating)
    for staff_id, entry in entries.items():
        entry.average_rating = _mean(ratings.get(staff_id, []))
    return sorted(entries.values(), key=lambda entry: (-entry.count, entry.subject_id))[:limit]


def compute_basic_stats(
    records: Iterable[TicketHistoryRecord], days: int, now: datetime, leaderboard_size: int = 5
) -> BasicStats:
    window = filter_window(records, days, now)
    total = len(window)
    closed = sum(1 for record in window if record.ticket.status == TICKET_STATUS_CLOSED)
    response_times = [value for value in map(_response_minutes, window) if value is not None]
    resolution_times = [value for value in map(_resolution_hours, window) if value is not None]
    return BasicStats(
        days=days,
        total_tickets=total,
        closed_tickets=closed,
        close_rate=closed / total * 100 if total else 0.0,
        category_counts=category_counts(window),
        priority_counts=priority_counts(window),
        tag_counts=tag_counts(window),
        average_response_minutes=_mean(response_times),
        average_resolution_hours=_mean(resolution_times),
        tickets_per_day=tickets_per_day(window, days, now),
        top_users=top_users(window, leaderboard_size),
        top_staff=top_staff(window, leaderboard_size),
        satisfaction=satisfaction_stats(window),
    )


def compute_staff_performance(records: Iterable[TicketHistoryRecord]) -> list[StaffPerformance]:
    rows: dict[int, StaffPerformance] = {}
    ratings: dict[int, list[int]] = {}
    responses: dict[int, list[float]] = {}
    resolutions: dict[int, list[float]] = {}
    for record in records:
        ticket = record.ticket
        if ticket.assigned_to is None:
            continue
        staff_id = ticket.assigned_to
        row = rows.setdefault(staff_id, StaffPerformance(staff_id=staff_id, staff_tag=ticket.assigned_to_tag or "Unknown"))
        row.tickets_handled += 1
        if ticket.status == TICKET_STATUS_CLOSED:
            row.tickets_closed += 1
        if record.satisfaction_rating is not None:
            ratings.setdefault(staff_id, []).append(record.satisfaction_rating)
        response = _response_minutes(record)
        if response is not None:
            responses.setdefault(staff_id, []).append(response)
        resolution = _resolution_hours(record)
        if resolution is not None:
            resolutions.setdefault(staff_id, []).append(resolution)
        if ticket.category:
            row.categories[ticket.category] = row.categories.get(ticket.category, 0) + 1
        for tag in ticket.tags:
            row.tags[tag] = row.tags.get(tag, 0) + 1

    for staff_id, row in rows.items():
        row.average_rating = _mean(ratings.get(staff_id, []))
        row.average_response_minutes = _mean(responses.get(staff_id, []))
        row.average_resolution_hours = _mean(resolutions.get(staff_id, []))
    return sorted(rows.values(), key=lambda row: (-row.tickets_handled, row.staff_id))


def _time_summary(values: Sequence[float], formatter: Callable[[float | None], str]) -> dict[str, str]:
    if not values:
        return {"average": NOT_AVAILABLE, "min": NOT_AVAILABLE, "max": NOT_AVAILABLE}
    return {"average": formatter(_mean(values)), "min": formatter(min(values)), "max": formatter(max(values))}


def compute_custom_report(
    records: Iterable[TicketHistoryRecord], options: ReportOptions, now: datetime
) -> dict[str, Any]:
    unknown = [metric for metric in options.metrics if metric not in REPORT_METRICS]
    if unknown:
        raise ValidationError(f"Unknown report metrics: {', '.join(unknown)}")

    start, end = options.start_date, options.end_date
    if start is not None and end is not None:
        selected = []
        for record in records:
            created = parse_iso(record.ticket.created_at)
            if created is not None and start <= created <= end:
                selected.append(record)
        days = max(1, (end.date() - start.date()).days + 1)
        series_end = end
        time_range = f"{start.date().isoformat()} to {end.date().isoformat()}"
    else:
        days = options.time_range_days
        selected = filter_window(records, days, now)
        series_end = now
        time_range = f"Last {days} days"

    if options.staff_id is not None:
        selected = [record for record in selected if record.ticket.assigned_to == options.staff_id]
    if options.category:
        selected = [record for record in selected if record.ticket.category == options.category]
    if options.tags:
        wanted = {tag.lower() for tag in options.tags}
        selected = [
            record for record in selected if wanted.intersection(tag.lower() for tag in record.ticket.tags)
        ]

    data: dict[str, Any] = {}
    if "tickets" in options.metrics:
        data["tickets"] = {
            "total": len(selected),
            "closed": sum(1 for record in selected if record.ticket.status == TICKET_STATUS_CLOSED),
            "per_day": tickets_per_day(selected, days, series_end),
        }
    if "response" in options.metrics:
        values = [value for value in map(_response_minutes, selected) if value is not None]
        data["response_times"] = _time_summary(values, format_minutes)
    if "resolution" in options.metrics:
        values = [value for value in map(_resolution_hours, selected) if value is not None]
        data["resolution_times"] = _time_summary(values, format_hours)
    if "satisfaction" in options.metrics:
        stats = satisfaction_stats(selected)
        data["satisfaction"] = {
            "average": format_rating(stats.average_rating),
            "counts": stats.rating_counts,
            "percentage": format_percent(stats.response_rate),
        }
    data["categories"] = category_counts(selected)
    data["tags"] = tag_counts(selected)

    return {
        "title": "Custom Modmail Report",
        "time_range": time_range,
        "filters": {
            "staff_id": str(options.staff_id) if options.staff_id is not None else "All Staff",
            "category": options.category or "All Categories",
            "tags": ", ".join(options.tags) if options.tags else "All Tags",
        },
        "data": data,
    }


@dataclass(slots=True)
class OpenTicketSummary:
    total: int
    pending: int
    in_progress: int
    priority_counts: dict[str, int]
    oldest_pending_hours: float | None


def summarize_open_tickets(tickets: Iterable[Ticket], now: datetime) -> OpenTicketSummary:
    """Snapshot of the open queue for the staff dashboard."""
    tickets = list(tickets)
    pending = [ticket for ticket in tickets if ticket.status == TICKET_STATUS_PENDING]
    counts = Counter(ticket.priority for ticket in tickets)
    ages = [
        (now - created).total_seconds() / 3600
        for created in (parse_iso(ticket.created_at) for ticket in pending)
        if created is not None
    ]
    return OpenTicketSummary(
        total=len(tickets),
        pending=len(pending),
        in_progress=len(tickets) - len(pending),
        priority_counts={level: counts.get(level, 0) for level in PRIORITY_LEVELS},
        oldest_pending_hours=max(ages) if ages else None,
    )


class AnalyticsService:
    def __init__(
        self,
        metrics_config: MetricsConfig,
        history_repo: HistoryRepository,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.metrics_config = metrics_config
        self.history_repo = history_repo
        self.export_dir = Path(metrics_config.export_directory)
        self._clock = clock

    async def _window(self, guild_id: int, days: int) -> tuple[list[TicketHistoryRecord], datetime]:
        if days < 1 or days > 365:
            raise ValidationError("The time range must be between 1 and 365 days.")
        now = self._clock()
        records = await self.history_repo.list_window(guild_id, start=now - timedelta(days=days))
        return records, now

    async def basic_stats(self, guild_id: int, days: int = 30) -> BasicStats:
        records, now = await self._window(guild_id, days)
        return compute_basic_stats(records, days, now, self.metrics_config.leaderboard_size)

    async def staff_performance(self, guild_id: int, days: int = 30) -> list[StaffPerformance]:
        records, _ = await self._window(guild_id, days)
        return compute_staff_performance(records)

    async def custom_report(self, guild_id: int, options: ReportOptions) -> dict[str, Any]:
        criteria = SearchCriteria(guild_id=guild_id, staff_id=options.staff_id, category=options.category)
        if options.start_date is not None and options.end_date is not None:
            if options.start_date > options.end_date:
                raise ValidationError("The start date must be before the end date.")
            criteria.start_date = options.start_date
            criteria.end_date = options.end_date
        records = await self.history_repo.search(criteria)
        return compute_custom_report(records, options, self._clock())

    async def export_csv(self, guild_id: int, days: int = 30) -> Path:
        records, _ = await self._window(guild_id, days)
        output = self.export_dir / f"tickets_{guild_id}.csv"
        await asyncio.to_thread(self._write_csv, output, records)
        LOGGER.info("Exported %s history records for guild %s", len(records), guild_id)
        return output

    @staticmethod
    def _write_csv(output: Path, records: Sequence[TicketHistoryRecord]) -> None:
        output.parent.mkdir(parents=True, exist_ok=True)
        with output.open("w", encoding="utf-8", newline="") as handle:
            writer = csv.writer(handle)
            writer.writerow(
                [
                    "ticket_id",
                    "number",
                    "user_id",
                    "user_tag",
                    "category",
                    "priority",
                    "tags",
                    "assigned_to",
                    "created_at",
                    "first_response_time",
                    "closed_at",
                    "close_reason",
                    "message_count",
                    "satisfaction_rating",
                ]
            )
            for record in sorted(records, key=lambda item: item.ticket.created_at):
                ticket = record.ticket
                writer.writerow(
                    [
                        ticket.id,
                        ticket.numeric_id,
                        ticket.user_id,
                        ticket.user_tag,
                        ticket.category or "",
                        ticket.priority,
                        ";".join(ticket.tags),
                        ticket.assigned_to or "",
                        ticket.created_at,
                        ticket.first_response_time or "",
                        ticket.closed_at or "",
                        ticket.close_reason or "",
                        record.message_count,
                        record.satisfaction_rating or "",
                    ]
                )

    async def generate_graph(self, guild_id: int, days: int = 30) -> Path | None:
        if not self.metrics_config.enable_graphs or plt is None:
            return None
        records, now = await self._window(guild_id, days)
        series = tickets_per_day(records, days, now)
        output = self.export_dir / f"ticket_volume_{guild_id}.png"
        await asyncio.to_thread(self._plot, output, series, days)
        return output

    @staticmethod
    def _plot(output: Path, series: dict[str, int], days: int) -> None:
        output.parent.mkdir(parents=True, exist_ok=True)
        figure = plt.figure(figsize=(12, 5))
        try:
            plt.plot(list(series), list(series.values()), marker="o", linewidth=2)
            plt.xticks(rotation=45, ha="right")
            plt.ylabel("Ticket Count")
            plt.title(f"Ticket Volume (Last {days} Days)")
            plt.tight_layout()
            plt.savefig(output)
        finally:
            plt.close(figure)
