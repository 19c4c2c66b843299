"""UTC timestamp helpers shared by the store, the queue and the task ledger."""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

# Average month length used when turning date ranges into months of experience
DAYS_PER_MONTH = 30.0


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current UTC time with timezone info
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    Naive datetimes are treated as UTC; aware ones are converted.

    Args:
        dt: Datetime to convert (can be None)

    Returns:
        Timezone-aware datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime], include_microseconds: bool = True) -> str:
    """Format a datetime as ISO 8601 UTC with a 'Z' suffix.

    Args:
        dt: Datetime to format
        include_microseconds: Whether to keep the fractional part

    Returns:
        Formatted string, or "" when dt is None

    Example:
        >>> dt = datetime(2026, 3, 1, 9, 30, 0, tzinfo=timezone.utc)
        >>> format_timestamp(dt, include_microseconds=False)
        '2026-03-01T09:30:00Z'
    """
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return ""

    if include_microseconds:
        return dt_utc.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return dt_utc.strftime("%Y-%m-%dT%H:%M:%SZ")


def hours_ago(hours: float, now: Optional[datetime] = None) -> datetime:
    """Return the UTC instant `hours` before `now` (defaults to current time)."""
    reference = ensure_utc(now) if now is not None else utc_now()
    return reference - timedelta(hours=hours)


def months_between(start: date, end: Optional[date] = None) -> float:
    """Number of months between two dates, using 30-day months.

    An open-ended range (end=None) runs until today. Reversed ranges yield 0.

    Example:
        >>> months_between(date(2025, 1, 1), date(2025, 7, 1))
        6.033333333333333
    """
    finish = end or utc_now().date()
    days = (finish - start).days
    if days <= 0:
        return 0.0
    return days / DAYS_PER_MONTH
