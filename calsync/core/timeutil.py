"""Time helpers.

Timestamps are aware UTC datetimes. Values read back from SQLite may come
back naive depending on the column type, so anything loaded from the
database goes through ``to_utc`` before it is compared.
"""

from datetime import UTC, datetime
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def to_utc(value: datetime) -> datetime:
    """Convert a datetime to aware UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_rfc3339(value: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC with a trailing Z."""
    return to_utc(value).replace(tzinfo=None).isoformat() + "Z"
