"""Cache entry model backing the response cache."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from calsync.core.timeutil import utcnow


class CacheEntry(SQLModel, table=True):
    """A cached provider response.

    Attributes:
        id: Integer primary key.
        key: Cache key, e.g. ``"google_calendar:12:calendars"`` (unique).
        value: JSON-serializable payload.
        expires_at: Entry is ignored from this moment on (UTC).
        created: Row creation time.
        updated: Last write time.
    """
    __tablename__ = "cache_entry"

    id: int | None = Field(default=None, primary_key=True)
    key: str = Field(index=True, unique=True)
    value: Any = Field(default=None, sa_column=Column(JSON))
    expires_at: datetime = Field(index=True)
    created: datetime = Field(default_factory=utcnow)
    updated: datetime = Field(default_factory=utcnow)
