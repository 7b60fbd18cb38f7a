"""
Centralized datetime utilities for PredictRadar.

All timestamps are stored as naive UTC datetimes. These helpers keep the
conversion in one place so that tz-aware values coming from adapters or
quote providers never get compared against naive database values.
"""

from datetime import date, datetime, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Any) -> Optional[datetime]:
    """
    Normalize a datetime-like value to a naive UTC datetime.

    Accepts aware or naive datetimes, ISO strings (with or without a trailing
    ``Z``), dates, and None.

    Examples:
        >>> to_naive_utc('2025-11-21T21:00:00Z')
        datetime.datetime(2025, 11, 21, 21, 0)
        >>> to_naive_utc(None) is None
        True
    """
    if value is None:
        return None

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    elif isinstance(value, date) and not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day)

    if not isinstance(value, datetime):
        raise TypeError(f"Cannot convert {type(value).__name__} to datetime")

    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
