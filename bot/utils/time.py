from __future__ import annotations

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.astimezone(UTC).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def minutes_between(start: str | None, end: str | None) -> float | None:
    started = parse_iso(start)
    ended = parse_iso(end)
    if started is None or ended is None:
        return None
    return (ended - started).total_seconds() / 60


def parse_relative_duration(value: str) -> timedelta:
    value = value.strip().lower()
    if not value:
        raise ValueError("Empty duration")
    unit = value[-1]
    amount = int(value[:-1])
    if unit == "s":
        return timedelta(seconds=amount)
    if unit == "m":
        return timedelta(minutes=amount)
    if unit == "h":
        return timedelta(hours=amount)
    if unit == "d":
        return timedelta(days=amount)
    raise ValueError("Invalid duration unit. Use s, m, h, d.")
