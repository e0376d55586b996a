"""Calendar helpers — local-date bucketing in the caller's timezone."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

SECONDS_PER_DAY = 86400.0


def today_in(tz: str, now: datetime | None = None) -> date:
    """Calendar date of ``now`` (default: current time) in ``tz``."""
    now = now or datetime.now(timezone.utc)
    return local_date(now, tz)


def local_date(ts: datetime, tz: str) -> date:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(ZoneInfo(tz)).date()


def start_of_local_day(day: date, tz: str) -> datetime:
    return datetime.combine(day, time.min, tzinfo=ZoneInfo(tz))


def day_before(day: date) -> date:
    return day - timedelta(days=1)


def dates_between(start: date, end: date) -> list[date]:
    """Every calendar date from ``start`` to ``end`` inclusive."""
    if end < start:
        return []
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def days_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_DAY


def month_start(day: date, months_back: int = 0) -> date:
    """First day of the month ``months_back`` months before ``day``'s month."""
    index = day.year * 12 + (day.month - 1) - months_back
    return date(index // 12, index % 12 + 1, 1)


def month_end(first: date) -> date:
    return month_start(first, -1) - timedelta(days=1)
