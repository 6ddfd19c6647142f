"""Calendar helpers. Every boundary is a UTC calendar day or month."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def day_key(value: datetime | date) -> str:
    if isinstance(value, datetime):
        value = value.astimezone(timezone.utc) if value.tzinfo else value
        value = value.date()
    return value.strftime("%Y-%m-%d")


def month_key(value: datetime | date) -> str:
    if isinstance(value, datetime) and value.tzinfo:
        value = value.astimezone(timezone.utc)
    return f"{value.year:04d}-{value.month:02d}"


def last_n_days(n: int, now: datetime) -> list[date]:
    """The *n* calendar days ending today, oldest first."""
    today = now.astimezone(timezone.utc).date()
    return [today - timedelta(days=offset) for offset in range(n - 1, -1, -1)]


def window_start(days: int, now: datetime) -> datetime:
    """Midnight UTC opening a window of *days* calendar days ending today."""
    first = last_n_days(days, now)[0]
    return datetime.combine(first, time.min, tzinfo=timezone.utc)


def window_end(now: datetime) -> datetime:
    """Midnight UTC closing today; stable for the whole day."""
    today = now.astimezone(timezone.utc).date()
    return datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)


def last_n_months(n: int, now: datetime) -> list[tuple[int, int]]:
    """(year, month) for the *n* months ending with the current one, oldest first."""
    now = now.astimezone(timezone.utc)
    index = now.year * 12 + (now.month - 1)
    return [(i // 12, i % 12 + 1) for i in range(index - n + 1, index + 1)]


def month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    """[start, end) of a calendar month in UTC."""
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        end = datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(year, month + 1, 1, tzinfo=timezone.utc)
    return start, end
