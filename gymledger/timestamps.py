"""
timestamps.py
Conversion between calendar dates and integral Unix timestamps.

Both directions work in the local timezone, so a date string converted to a
timestamp and back always yields the same calendar date whatever the UTC
offset of the machine. Conversion failures return None instead of raising.
"""

from __future__ import annotations

import time
from datetime import date, datetime


def to_timestamp(value) -> int | None:
    """
    Date string ("YYYY-MM-DD" or any ISO form), date or datetime -> epoch seconds.
    Dates are read as local midnight; naive datetimes as local wall-clock time.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None

    try:
        return int(dt.timestamp())
    except (OverflowError, OSError, ValueError):
        return None


def from_timestamp(ts) -> str | None:
    """Epoch seconds -> local calendar date "YYYY-MM-DD"."""
    if ts is None or isinstance(ts, bool) or not isinstance(ts, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(ts).date().isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def current_timestamp() -> int:
    return int(time.time())


def normalize_date(value) -> str | None:
    """Any supported date form (string, timestamp, date, datetime) -> "YYYY-MM-DD"."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_timestamp(value)
    return from_timestamp(to_timestamp(value))
