"""UTC datetime utilities."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Return current UTC time as timezone-aware datetime.

    This function should be used instead of datetime.now() or datetime.utcnow()
    to ensure all timestamps are timezone-aware and stored in UTC.

    Returns:
        Timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes, convert aware ones to UTC.

    SQLite drops tzinfo on storage, so every datetime read back from the
    database passes through here.

    Args:
        value: Datetime to normalise (None passes through)

    Returns:
        Timezone-aware datetime in UTC, or None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def combine_utc(day: date, clock: str) -> datetime:
    """
    Build a UTC instant from a date and an "HH:MM" clock string.

    Args:
        day: Calendar date
        clock: Clock time such as "15:00"

    Returns:
        Timezone-aware datetime in UTC
    """
    hours, minutes = (int(part) for part in clock.split(":", 1))
    return datetime.combine(day, time(hours, minutes), tzinfo=timezone.utc)


def start_of_day(day: date) -> datetime:
    """Midnight UTC at the start of ``day``."""
    return datetime.combine(day, time(0, 0), tzinfo=timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    """Signed number of hours from ``earlier`` to ``later``."""
    return (ensure_utc(later) - ensure_utc(earlier)) / timedelta(hours=1)  # type: ignore[operator]
