"""Google Meet link model.

This module defines the MeetLink model which records the conference
created for a booking through a Google Meet integration. Rows are kept
for a retention period after the meeting ends and then removed by the
cleanup job.
"""

from datetime import datetime

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from calsync.core.timeutil import utcnow


class MeetLink(SQLModel, table=True):
    """A Google Meet conference created for a booking.

    Attributes:
        id: Integer primary key.
        user_id: Platform user that owns the meeting.
        integration_id: Google Meet integration used to create it.
        booking_id: Platform booking the link belongs to, if any.
        event_id: Local event reference, if any.
        meet_id: Id of the provider event carrying the conference.
        meet_link: Join URL.
        conference_data: Raw conference payload from the provider.
        title: Meeting title.
        description: Meeting description.
        start_time: Meeting start (UTC).
        end_time: Meeting end (UTC).
        status: ``active`` until removed.
        created: Row creation time.
        updated: Last modification time.
    """
    __tablename__ = "meet_link"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    integration_id: int = Field(foreign_key="integration.id", index=True)
    booking_id: int | None = Field(default=None, index=True)
    event_id: int | None = None
    meet_id: str
    meet_link: str
    conference_data: dict = Field(default_factory=dict, sa_column=Column(JSON))
    title: str
    description: str | None = None
    start_time: datetime
    end_time: datetime = Field(index=True)
    status: str = "active"
    created: datetime = Field(default_factory=utcnow)
    updated: datetime = Field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "booking_id": self.booking_id,
            "meet_id": self.meet_id,
            "meet_link": self.meet_link,
            "title": self.title,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "status": self.status,
        }
