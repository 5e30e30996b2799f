"""Provider adapter contract and the normalized payloads it exchanges.

Adapters own everything provider-specific: endpoints, scopes, wire
formats and the mapping of transport failures onto :mod:`calsync.errors`.
The authenticator and the sync engine hold an adapter and only ever see
the models defined here.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from calsync.models import Integration

OWN_EVENT_MARKER = "calsync_event"


class OAuthConfig(BaseModel):
    """Static OAuth client settings for one provider."""

    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_url: str
    token_url: str
    scopes: list[str]

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


class CalendarDescriptor(BaseModel):
    id: str
    name: str
    primary: bool = False
    selected: bool = False
    access_role: str | None = None
    time_zone: str | None = None


class RemoteEvent(BaseModel):
    """A provider event normalized to UTC times.

    Cancelled events may come without times; every other event has both.
    """

    id: str
    title: str = "Untitled Event"
    description: str | None = None
    location: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    is_all_day: bool = False
    status: str = "confirmed"
    transparency: str = "opaque"
    organizer_email: str | None = None
    is_organizer: bool = False
    html_link: str | None = None
    etag: str | None = None
    is_own: bool = False  # created by this system; never mirrored back

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"


class EventRequest(BaseModel):
    """An event to create on the provider."""

    title: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    calendar_id: str = "primary"
    attendees: list[str] = Field(default_factory=list)
    add_conference: bool = False
    time_zone: str = "UTC"


class EventDescriptor(BaseModel):
    """What the provider returned for a created event."""

    id: str
    calendar_id: str
    html_link: str | None = None
    meet_link: str | None = None
    conference_data: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)


class ProviderAdapter(ABC):
    """Provider-specific transport used by the authenticator and sync engine.

    Token endpoints answer with a payload dict (``access_token``,
    ``expires_in``, ``refresh_token``, ``scope``) or an error payload
    (``error``, ``error_description``); the authenticator interprets it.
    Every other method raises :mod:`calsync.errors` types on failure.
    """

    provider: str

    @property
    @abstractmethod
    def oauth_config(self) -> OAuthConfig: ...

    @abstractmethod
    def exchange_code(self, code: str) -> dict:
        """Trade an authorization code for a token payload."""

    @abstractmethod
    def refresh_token(self, integration: Integration) -> dict:
        """Mint a new access token from the integration's refresh token."""

    @abstractmethod
    def get_user_info(self, access_token: str) -> dict:
        """Return ``{"id": ..., "email": ...}`` for the authorized account."""

    @abstractmethod
    def list_calendars(self, integration: Integration) -> list[CalendarDescriptor]: ...

    @abstractmethod
    def fetch_events(
        self,
        integration: Integration,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[RemoteEvent]:
        """Fetch every page of events overlapping ``[start, end)``.

        Either the complete list is returned or an error is raised; callers
        rely on a returned list being exhaustive.
        """

    @abstractmethod
    def create_event(self, integration: Integration, request: EventRequest) -> EventDescriptor: ...

    @abstractmethod
    def delete_event(self, integration: Integration, calendar_id: str, event_id: str) -> None:
        """Delete an event on the provider; attendees are notified where supported."""
