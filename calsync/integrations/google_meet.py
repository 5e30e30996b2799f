"""Google Meet: conference links created through Calendar events.

Meet has no separate event API here; a link is minted by inserting a
calendar event with a ``hangoutsMeet`` conference request, and the
resulting join URL is recorded in ``meet_link`` for the booking.
"""
import logging
from datetime import datetime, timedelta

from sqlmodel import Session, col, select

from calsync.core.config import Settings
from calsync.core.timeutil import Clock, to_utc, utcnow
from calsync.errors import ProviderRejectedError, ValidationError
from calsync.integrations.authenticator import Authenticator
from calsync.integrations.base import EventDescriptor, EventRequest
from calsync.integrations.cache import ResponseCache
from calsync.integrations.google_calendar import SCOPES as CALENDAR_SCOPES
from calsync.integrations.google_calendar import GoogleCalendarAdapter
from calsync.integrations.rate_limiter import RateLimiter
from calsync.models import Integration, MeetLink, Provider

logger = logging.getLogger(__name__)

MEET_SCOPES = CALENDAR_SCOPES + [
    "https://www.googleapis.com/auth/meetings.space.created",
]


class GoogleMeetAdapter(GoogleCalendarAdapter):
    """Google Calendar adapter whose created events always carry a Meet conference."""

    provider = Provider.GOOGLE_MEET.value
    scopes = MEET_SCOPES

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleMeetAdapter":
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_meet_redirect_uri,
            timeout=settings.provider_timeout_seconds,
        )

    def create_event(self, integration: Integration, request: EventRequest) -> EventDescriptor:
        created = super().create_event(integration, request.model_copy(update={"add_conference": True}))
        if not created.meet_link:
            raise ProviderRejectedError(
                "Google did not return a Meet link for the created event",
                integration_id=integration.id,
                provider=self.provider,
                endpoint="create",
            )
        return created


class MeetLinkService:
    def __init__(
        self,
        session: Session,
        adapter: GoogleMeetAdapter,
        authenticator: Authenticator,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        now: Clock = utcnow,
    ):
        self.session = session
        self.adapter = adapter
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.now = now

    def create_meet_link(
        self,
        integration: Integration,
        title: str,
        start: datetime,
        end: datetime,
        booking_id: int | None = None,
        event_id: int | None = None,
        options: dict | None = None,
    ) -> MeetLink:
        """Create a Meet conference and record it for the booking."""
        if integration.provider != Provider.GOOGLE_MEET:
            raise ValidationError(
                f"Integration {integration.id} is not a Google Meet integration",
                integration_id=integration.id,
                provider=integration.provider,
            )
        if not title or not title.strip():
            raise ValidationError("Meeting title is required", integration_id=integration.id)
        start, end = to_utc(start), to_utc(end)
        if start >= end:
            raise ValidationError("Meeting start must be before its end", integration_id=integration.id)

        options = options or {}
        request = EventRequest(
            title=title,
            start=start,
            end=end,
            description=options.get("description"),
            attendees=options.get("attendees") or [],
            calendar_id=options.get("calendar_id", "primary"),
            add_conference=True,
        )

        self.authenticator.ensure_valid_token(integration)
        self.rate_limiter.check(integration, "create")
        created = self.adapter.create_event(integration, request)

        now = self.now()
        link = MeetLink(
            user_id=integration.user_id,
            integration_id=integration.id,
            booking_id=booking_id,
            event_id=event_id,
            meet_id=created.id,
            meet_link=created.meet_link,
            conference_data=created.conference_data,
            title=title,
            description=request.description,
            start_time=start,
            end_time=end,
            created=now,
            updated=now,
        )
        self.session.add(link)
        self.session.commit()
        self.session.refresh(link)

        if booking_id is not None:
            self.cache.delete(self._booking_key(integration.user_id, booking_id))
        logger.info(f"Created Meet link {link.meet_id} for integration {integration.id}")
        return link

    @staticmethod
    def _booking_key(user_id: int, booking_id: int) -> str:
        return ResponseCache.make_key(Provider.GOOGLE_MEET.value, "user", user_id, "booking", booking_id)

    def get_meet_link_for_booking(self, booking_id: int, user_id: int) -> dict | None:
        """The user's active Meet link for a booking, cached for the ``meeting_link`` TTL."""

        def lookup() -> dict | None:
            link = self.session.exec(
                select(MeetLink)
                .where(MeetLink.booking_id == booking_id)
                .where(MeetLink.user_id == user_id)
                .where(MeetLink.status == "active")
                .order_by(col(MeetLink.created).desc())
            ).first()
            return link.to_dict() if link else None

        return self.cache.remember(self._booking_key(user_id, booking_id), lookup, self.cache.ttl_for("meeting_link"))

    def cleanup_expired(self, retention_days: int = 7, dry_run: bool = False) -> int:
        """Delete links whose meeting ended more than ``retention_days`` ago."""
        cutoff = self.now() - timedelta(days=retention_days)
        expired = self.session.exec(select(MeetLink).where(MeetLink.end_time < cutoff)).all()

        if dry_run:
            logger.info(f"Dry run: would delete {len(expired)} Meet links ended before {cutoff}")
            return len(expired)

        bookings = {(link.user_id, link.booking_id) for link in expired if link.booking_id is not None}
        for link in expired:
            self.session.delete(link)
        self.session.commit()
        for user_id, booking_id in bookings:
            self.cache.delete(self._booking_key(user_id, booking_id))

        logger.info(f"Deleted {len(expired)} Meet links ended before {cutoff}")
        return len(expired)
