"""Busy block model: externally-sourced unavailability."""

from datetime import datetime

from sqlmodel import Field, SQLModel

from calsync.core.timeutil import utcnow

BLOCK_BUSY = "busy"
BLOCK_RELEASED = "released"


class BusyBlock(SQLModel, table=True):
    """A period during which the user is unavailable for bookings.

    Blocks are published from busy mirrored events and released (not
    deleted) once the event stops being busy, so the booking side can tell
    a freed slot from one it never knew about.

    Attributes:
        id: Integer primary key.
        user_id: Platform user the block applies to.
        provider: Provider the source event came from.
        source_id: ``"{provider}_{calendar_id}_{external_event_id}"`` (unique).
        title: Source event title.
        description: Source event description.
        start_time: Block start (UTC).
        end_time: Block end (UTC).
        status: ``busy`` or ``released``.
        created: Row creation time.
        updated: Last modification time.
    """
    __tablename__ = "busy_block"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    provider: str
    source_id: str = Field(index=True, unique=True)
    title: str
    description: str | None = None
    start_time: datetime = Field(index=True)
    end_time: datetime = Field(index=True)
    status: str = Field(default=BLOCK_BUSY)
    created: datetime = Field(default_factory=utcnow)
    updated: datetime = Field(default_factory=utcnow)
