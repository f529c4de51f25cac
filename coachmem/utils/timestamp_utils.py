"""
Timestamp utilities for consistent time handling across the stores.
"""

import time
from datetime import datetime, timezone
from typing import Any, Optional

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def now_utc() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to an aware UTC datetime.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """Parse a stored timestamp that may be ISO-8601, epoch seconds, or a datetime.

    Naive values are taken to be UTC.
    """
    if default is None:
        default = EPOCH
    if value is None or value == '':
        return default
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        return to_datetime(value)
    else:
        text = str(value)
        if text.isdigit():
            return to_datetime(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace('Z', '+00:00'))
        except ValueError:
            return default
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
