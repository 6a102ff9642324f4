"""
Timestamp utilities for consistent time handling across the pipeline.
"""

import time
from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to an aware UTC datetime object.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def parse_datetime(value: Union[str, int, float, datetime, None]) -> datetime:
    """Parse a stored document timestamp (ISO string or epoch seconds).

    Args:
        value: Value read back from the store

    Returns:
        Aware datetime, the epoch if the value is missing
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return to_datetime(float(value))
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return to_datetime(0)


def relative_time_label(moment: datetime, now: Optional[datetime] = None) -> str:
    """Human-relative label such as 'today', 'yesterday' or '3 weeks ago'.

    Args:
        moment: Past point in time
        now: Reference time (defaults to current UTC time)

    Returns:
        Relative label
    """
    now = now or utc_now()
    diff_days = int((now - parse_datetime(moment)).total_seconds() // 86400)

    if diff_days <= 0:
        return 'today'
    if diff_days == 1:
        return 'yesterday'
    if diff_days < 7:
        return f'{diff_days} days ago'
    if diff_days < 30:
        return f'{diff_days // 7} weeks ago'
    return f'{diff_days // 30} months ago'


def format_absolute_date(moment: datetime) -> str:
    """Format as 'Mar 5, 2026'."""
    moment = parse_datetime(moment)
    return f'{moment.strftime("%b")} {moment.day}, {moment.year}'
