"""
Timestamp utilities for consistent time handling across the system.

All timestamps inside the engine are timezone-aware UTC datetimes. Stores
persist them as epoch milliseconds so range filters compare integers.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC.

    Args:
        value: datetime to normalize

    Returns:
        Aware UTC datetime
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_epoch_ms(value: Optional[datetime] = None) -> int:
    """Convert a datetime to epoch milliseconds.

    Args:
        value: datetime to convert (optional, uses current time if None)

    Returns:
        Milliseconds since the epoch
    """
    if value is None:
        value = utc_now()
    return int(ensure_utc(value).timestamp() * 1000)


def from_epoch_ms(value: Union[int, float, str]) -> datetime:
    """Convert epoch milliseconds back to an aware UTC datetime."""
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def parse_timestamp(value: Union[datetime, int, float, str]) -> datetime:
    """Parse the timestamp shapes accepted at the ingestion boundary.

    Args:
        value: datetime, epoch milliseconds, or ISO-8601 string

    Returns:
        Aware UTC datetime

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        raise ValueError(f'Invalid timestamp: {value!r}')
    if isinstance(value, (int, float)):
        return from_epoch_ms(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return from_epoch_ms(int(text))
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return ensure_utc(datetime.fromisoformat(text))
    raise ValueError(f'Invalid timestamp: {value!r}')


def lookback_boundary(lookback_days: float, now: Optional[datetime] = None) -> datetime:
    """Start of the lookback window ending at ``now``."""
    if now is None:
        now = utc_now()
    return ensure_utc(now) - timedelta(days=max(0.0, lookback_days))
