"""Time helpers shared by the monitor, ledger and scheduler."""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone

_MONTH_STEPS: dict[str, int] = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}

_DAY_STEPS: dict[str, int] = {
    "daily": 1,
    "weekly": 7,
}


def utcnow() -> datetime:
    """Return current UTC time as a naive datetime.

    SQLite (via SQLModel) strips timezone info on round-trip, so all
    stored timestamps are naive-UTC.  Using naive-UTC everywhere
    avoids "can't subtract offset-naive and offset-aware" errors.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Normalize an incoming timestamp to the naive-UTC convention."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length.

    Jan 31 + 1 month is Feb 28 (or 29), not Mar 3.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_frequency(value: datetime, frequency: str) -> datetime:
    """Advance *value* by one check-in period."""
    if frequency in _DAY_STEPS:
        return value + timedelta(days=_DAY_STEPS[frequency])
    if frequency in _MONTH_STEPS:
        return add_months(value, _MONTH_STEPS[frequency])
    raise ValueError(f"Unknown check-in frequency: {frequency}")


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> timedelta:
    """Exponential backoff: min(base * 2^(attempt-1), max_delay)."""
    delay = min(base_seconds * (2 ** (max(attempt, 1) - 1)), max_seconds)
    return timedelta(seconds=delay)
