"""Utility helpers for time handling."""

from .timestamps import ensure_utc, format_timestamp, hours_ago, months_between, utc_now

__all__ = [
    "utc_now",
    "ensure_utc",
    "format_timestamp",
    "hours_ago",
    "months_between",
]
