"""Integration model: one linked provider account per row.

This module defines the Integration model which stores the OAuth
credentials and bookkeeping for a platform user's connection to a
calendar provider. It is the credential store the authenticator reads and
refreshes, and the anchor every mirrored event, rate limit window and
Meet link hangs off.
"""

from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship, SQLModel

from calsync.core.timeutil import utcnow

if TYPE_CHECKING:
    from calsync.models.calendar_event import CalendarEvent


class Provider(StrEnum):
    GOOGLE_CALENDAR = "google_calendar"
    GOOGLE_MEET = "google_meet"
    OUTLOOK_CALENDAR = "outlook_calendar"


class IntegrationStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Integration(SQLModel, table=True):
    """A user's authorized connection to one calendar provider.

    Rows are created by a successful OAuth callback and mutated on every
    token refresh and every successful sync. The sync path never deletes
    them; status only changes through explicit policy (the token refresh
    batch job marks rows whose refresh was rejected as expired).

    Attributes:
        id: Integer primary key.
        user_id: Platform user that owns the connection.
        provider: One of the :class:`Provider` values.
        external_id: Account id on the provider side.
        name: Display name, e.g. ``"google_calendar (ada@example.com)"``.
        access_token: Current bearer token.
        refresh_token: Long-lived token used to mint new access tokens.
            Not every provider returns one.
        token_expiry: When ``access_token`` stops working (UTC).
            ``None`` means unknown and is treated as expired.
        scopes: Space-separated list of granted scopes.
        config: Free-form provider settings. ``email`` is the account
            address; ``calendar_ids`` restricts sync to those calendars.
        status: One of the :class:`IntegrationStatus` values.
        last_synced: End of the last successful sync.
        created: Row creation time.
        updated: Last modification time.
        events: Mirrored calendar events owned by this integration.
    """
    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    provider: str = Field(index=True)
    external_id: str
    name: str
    access_token: str
    refresh_token: str | None = None
    token_expiry: datetime | None = None
    scopes: str = ""
    config: dict = Field(default_factory=dict, sa_column=Column(JSON))
    status: str = Field(default=IntegrationStatus.ACTIVE.value, index=True)
    last_synced: datetime | None = None
    created: datetime = Field(default_factory=utcnow)
    updated: datetime = Field(default_factory=utcnow)

    events: list["CalendarEvent"] = Relationship(back_populates="integration")

    @property
    def is_active(self) -> bool:
        return self.status == IntegrationStatus.ACTIVE

    @property
    def email(self) -> str | None:
        return (self.config or {}).get("email")

    def touch(self) -> None:
        self.updated = utcnow()

    def update_config(self, **values) -> None:
        """Merge values into ``config``.

        The dict is replaced rather than mutated so SQLAlchemy notices the
        change to the JSON column.
        """
        self.config = {**(self.config or {}), **values}

    def to_dict(self) -> dict:
        """Serialize for API responses. Tokens are never included."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "provider": self.provider,
            "external_id": self.external_id,
            "name": self.name,
            "status": self.status,
            "last_synced": self.last_synced.isoformat() if self.last_synced else None,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat(),
        }
