"""Mirrored calendar event model.

This module defines the CalendarEvent model, the local copy of an event
read from a provider calendar. Events are written only by the sync engine
and read by the availability layer and the events API.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

from calsync.core.timeutil import utcnow

if TYPE_CHECKING:
    from calsync.models.integration import Integration

STATUS_CONFIRMED = "confirmed"
STATUS_TENTATIVE = "tentative"
STATUS_CANCELLED = "cancelled"

TRANSPARENCY_OPAQUE = "opaque"
TRANSPARENCY_TRANSPARENT = "transparent"


class SoftDeletable(Protocol):
    """Rows that are marked cancelled instead of being deleted."""

    status: str

    def mark_cancelled(self) -> None: ...


class CalendarEvent(SQLModel, table=True):
    """A local mirror of one provider event.

    Rows are unique per (integration, provider event id). Reconciliation
    never deletes them: an event that disappears upstream is marked
    ``cancelled`` so bookings and audit trails that reference it survive.

    Attributes:
        id: Integer primary key.
        user_id: Platform user the event belongs to.
        integration_id: Owning integration.
        provider: Provider the event was read from.
        calendar_id: Provider calendar the event lives in.
        calendar_name: Display name of that calendar.
        external_event_id: Event id on the provider side.
        title: Event summary, ``"Untitled Event"`` when the provider has none.
        description: Event body or preview.
        location: Free-text location.
        start_time: Start (UTC). All-day events start at midnight.
        end_time: End (UTC), exclusive.
        is_all_day: True for date-only events.
        status: ``confirmed``, ``tentative`` or ``cancelled``.
        transparency: ``opaque`` (blocks time) or ``transparent`` (free).
        organizer_email: Organizer address when known.
        is_organizer: True when the integration's account organizes it.
        html_link: Link to the event in the provider's UI.
        etag: Provider version tag.
        created: Row creation time.
        updated: Last modification time.
        synced_at: When a sync last saw this event upstream.
        integration: The owning integration.
    """
    __tablename__ = "calendar_event"
    __table_args__ = (
        UniqueConstraint("integration_id", "external_event_id", name="uq_event_integration_external"),
    )

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    integration_id: int = Field(foreign_key="integration.id", index=True)
    provider: str = Field(index=True)
    calendar_id: str = Field(index=True)
    calendar_name: str | None = None
    external_event_id: str
    title: str = "Untitled Event"
    description: str | None = None
    location: str | None = None
    start_time: datetime = Field(index=True)
    end_time: datetime = Field(index=True)
    is_all_day: bool = False
    status: str = Field(default=STATUS_CONFIRMED)
    transparency: str = Field(default=TRANSPARENCY_OPAQUE)
    organizer_email: str | None = None
    is_organizer: bool = False
    html_link: str | None = None
    etag: str | None = None
    created: datetime = Field(default_factory=utcnow)
    updated: datetime = Field(default_factory=utcnow)
    synced_at: datetime | None = None

    integration: "Integration" = Relationship(back_populates="events")

    @property
    def is_cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED

    @property
    def is_busy(self) -> bool:
        """Whether the event blocks the user's time."""
        return not self.is_cancelled and self.transparency != TRANSPARENCY_TRANSPARENT

    def mark_cancelled(self) -> None:
        self.status = STATUS_CANCELLED
        self.updated = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "integration_id": self.integration_id,
            "provider": self.provider,
            "calendar_id": self.calendar_id,
            "calendar_name": self.calendar_name,
            "external_event_id": self.external_event_id,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "is_all_day": self.is_all_day,
            "status": self.status,
            "transparency": self.transparency,
            "organizer_email": self.organizer_email,
            "is_organizer": self.is_organizer,
            "html_link": self.html_link,
            "is_busy": self.is_busy,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
        }
