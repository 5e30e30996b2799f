"""Calendar synchronization engine.

Mirrors provider events into ``calendar_event`` and keeps availability
blocks in step with them. Reconciliation is a soft cancel: a local event
that no longer comes back from the provider inside the synced window is
marked ``cancelled``, never deleted.

A calendar is reconciled only after every page of its events has been
fetched. If a fetch fails the sync stops with the error, nothing is
cancelled for that calendar, and ``last_synced`` is left alone so the
next scheduled pass retries the whole window.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime

from pydantic import ValidationError as PydanticValidationError
from sqlmodel import Session, col, select

from calsync.core.timeutil import Clock, to_utc, utcnow
from calsync.errors import IntegrationError, SyncInProgressError, ValidationError
from calsync.integrations.authenticator import Authenticator
from calsync.integrations.availability import BusyBlockPublisher
from calsync.integrations.base import (
    CalendarDescriptor,
    EventDescriptor,
    EventRequest,
    ProviderAdapter,
    RemoteEvent,
)
from calsync.integrations.cache import ResponseCache
from calsync.integrations.rate_limiter import RateLimiter
from calsync.models import CalendarEvent, Integration, IntegrationStatus
from calsync.models.calendar_event import STATUS_CANCELLED

logger = logging.getLogger(__name__)


class SyncLocks:
    """In-process single-flight guard, one lock per integration id.

    An entry exists only while its sync runs, so the map stays bounded by
    the number of concurrent syncs.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def is_locked(self, integration_id: int) -> bool:
        with self._guard:
            lock = self._locks.get(integration_id)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, integration: Integration):
        with self._guard:
            lock = self._locks.setdefault(integration.id, threading.Lock())
            acquired = lock.acquire(blocking=False)
        if not acquired:
            raise SyncInProgressError(
                f"A sync is already running for integration {integration.id}",
                integration_id=integration.id,
                provider=integration.provider,
                endpoint="sync",
            )
        try:
            yield
        finally:
            with self._guard:
                lock.release()
                self._locks.pop(integration.id, None)


def _validate_range(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    start, end = to_utc(start), to_utc(end)
    if start >= end:
        raise ValidationError(f"Start {start.isoformat()} must be before end {end.isoformat()}")
    return start, end


class CalendarSyncEngine:
    def __init__(
        self,
        session: Session,
        adapter: ProviderAdapter,
        authenticator: Authenticator,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        publisher: BusyBlockPublisher | None = None,
        locks: SyncLocks | None = None,
        now: Clock = utcnow,
    ):
        self.session = session
        self.adapter = adapter
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.publisher = publisher or BusyBlockPublisher(session, now=now)
        self.locks = locks or SyncLocks()
        self.now = now

    @property
    def provider(self) -> str:
        return self.adapter.provider

    def get_calendars(self, integration: Integration) -> list[CalendarDescriptor]:
        """Provider calendar list, cached for the ``calendars_list`` TTL."""

        def fetch() -> list[dict]:
            self.authenticator.ensure_valid_token(integration)
            self.rate_limiter.check(integration, "default")
            calendars = self.adapter.list_calendars(integration)
            return [calendar.model_dump(mode="json") for calendar in calendars]

        cached = self.cache.remember(
            self.cache.make_key(integration.provider, integration.id, "calendars"),
            fetch,
            self.cache.ttl_for("calendars_list"),
        )
        return [CalendarDescriptor.model_validate(item) for item in cached]

    def _calendars_to_sync(self, integration: Integration) -> list[CalendarDescriptor]:
        calendars = self.get_calendars(integration)
        configured = (integration.config or {}).get("calendar_ids")
        if configured:
            by_id = {calendar.id: calendar for calendar in calendars}
            return [by_id.get(cid) or CalendarDescriptor(id=cid, name=cid) for cid in configured]
        return [calendar for calendar in calendars if calendar.primary or calendar.selected]

    def sync_events(self, integration: Integration, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Mirror every synced calendar's events in ``[start, end)``.

        Returns the events created or updated by this pass.

        Raises:
            ValidationError: ``start`` is not before ``end``.
            SyncInProgressError: Another sync holds this integration.
            AuthError: The token could not be refreshed.
            RateLimitError: The ``sync`` quota is exhausted.
            ProviderUnavailableError: A calendar could not be fetched completely.
        """
        start, end = _validate_range(start, end)

        with self.locks.hold(integration):
            self.authenticator.ensure_valid_token(integration)
            self.rate_limiter.check(integration, "sync")

            calendars = self._calendars_to_sync(integration)
            synced: list[CalendarEvent] = []
            for calendar in calendars:
                synced.extend(self._sync_calendar(integration, calendar, start, end))

            now = self.now()
            integration.last_synced = now
            integration.updated = now
            self.session.add(integration)
            self.session.commit()

        logger.info(
            f"Synced {len(synced)} events from {len(calendars)} calendars "
            f"for integration {integration.id} ({integration.provider})"
        )
        return synced

    def _sync_calendar(
        self,
        integration: Integration,
        calendar: CalendarDescriptor,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEvent]:
        try:
            remote_events = self.adapter.fetch_events(integration, calendar.id, start, end)
        except IntegrationError as e:
            logger.error(
                f"Fetching calendar {calendar.id} failed for integration {integration.id}, "
                f"skipping reconciliation: {e}"
            )
            raise

        now = self.now()
        keep_ids: set[str] = set()
        upserted: list[CalendarEvent] = []

        for remote in remote_events:
            if remote.is_own:
                keep_ids.add(remote.id)
                continue
            if remote.is_cancelled:
                self._apply_remote_cancellation(integration, remote, now)
                continue
            keep_ids.add(remote.id)
            event = self._upsert_event(integration, calendar, remote, now)
            self.publisher.apply(event)
            upserted.append(event)

        cancelled = self._cancel_missing(integration, calendar.id, keep_ids, start, end)
        self.session.commit()

        logger.debug(
            f"Calendar {calendar.id} of integration {integration.id}: "
            f"{len(upserted)} upserted, {len(cancelled)} cancelled"
        )
        return upserted

    def _find_event(self, integration: Integration, external_event_id: str) -> CalendarEvent | None:
        return self.session.exec(
            select(CalendarEvent)
            .where(CalendarEvent.integration_id == integration.id)
            .where(CalendarEvent.external_event_id == external_event_id)
        ).first()

    def _apply_remote_cancellation(self, integration: Integration, remote: RemoteEvent, now: datetime) -> None:
        existing = self._find_event(integration, remote.id)
        if existing is None or existing.is_cancelled:
            return
        existing.mark_cancelled()
        existing.synced_at = now
        self.session.add(existing)
        self.publisher.release(existing)

    def _upsert_event(
        self,
        integration: Integration,
        calendar: CalendarDescriptor,
        remote: RemoteEvent,
        now: datetime,
    ) -> CalendarEvent:
        event = self._find_event(integration, remote.id)
        if event is None:
            event = CalendarEvent(
                user_id=integration.user_id,
                integration_id=integration.id,
                provider=integration.provider,
                calendar_id=calendar.id,
                external_event_id=remote.id,
                start_time=remote.start,
                end_time=remote.end,
                created=now,
            )
        elif event.calendar_id != calendar.id:
            # the block key includes the calendar, so the old one would stay busy
            self.publisher.release(event)

        event.calendar_id = calendar.id
        event.calendar_name = calendar.name
        event.title = remote.title or "Untitled Event"
        event.description = remote.description
        event.location = remote.location
        event.start_time = remote.start
        event.end_time = remote.end
        event.is_all_day = remote.is_all_day
        event.status = remote.status
        event.transparency = remote.transparency
        event.organizer_email = remote.organizer_email
        event.is_organizer = remote.is_organizer
        event.html_link = remote.html_link
        event.etag = remote.etag
        event.updated = now
        event.synced_at = now

        self.session.add(event)
        return event

    def cancel_missing_events(
        self,
        integration: Integration,
        calendar_id: str,
        keep_ids: set[str],
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[CalendarEvent]:
        """Soft-cancel local events of a calendar that are not in ``keep_ids``.

        With a window, only events overlapping ``[start, end)`` are
        considered; without one, the whole calendar is reconciled.
        """
        cancelled = self._cancel_missing(integration, calendar_id, keep_ids, start, end)
        self.session.commit()
        return cancelled

    def _cancel_missing(
        self,
        integration: Integration,
        calendar_id: str,
        keep_ids: set[str],
        start: datetime | None,
        end: datetime | None,
    ) -> list[CalendarEvent]:
        statement = (
            select(CalendarEvent)
            .where(CalendarEvent.integration_id == integration.id)
            .where(CalendarEvent.calendar_id == calendar_id)
            .where(CalendarEvent.status != STATUS_CANCELLED)
        )
        if start is not None:
            statement = statement.where(CalendarEvent.end_time > to_utc(start))
        if end is not None:
            statement = statement.where(CalendarEvent.start_time < to_utc(end))

        cancelled = []
        for event in self.session.exec(statement).all():
            if event.external_event_id in keep_ids:
                continue
            event.mark_cancelled()
            self.session.add(event)
            self.publisher.release(event)
            cancelled.append(event)

        if cancelled:
            logger.info(
                f"Cancelled {len(cancelled)} events removed upstream from calendar "
                f"{calendar_id} (integration {integration.id})"
            )
        return cancelled

    def create_calendar_event(
        self,
        integration: Integration,
        title: str,
        start: datetime,
        end: datetime,
        options: dict | None = None,
    ) -> EventDescriptor:
        """Create an event on the provider. The local mirror is not touched.

        ``options`` may carry ``description``, ``location``, ``calendar_id``,
        ``attendees``, ``add_conference`` and ``time_zone``.
        """
        if not title or not title.strip():
            raise ValidationError("Event title is required", integration_id=integration.id)
        start, end = _validate_range(start, end)
        try:
            request = EventRequest.model_validate({**(options or {}), "title": title, "start": start, "end": end})
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid event options: {e}", integration_id=integration.id) from e

        self.authenticator.ensure_valid_token(integration)
        self.rate_limiter.check(integration, "create")

        created = self.adapter.create_event(integration, request)
        logger.info(f"Created event {created.id} on {integration.provider} for integration {integration.id}")
        return created

    def delete_calendar_event(
        self,
        integration: Integration,
        event_id: str,
        calendar_id: str = "primary",
    ) -> CalendarEvent | None:
        """Delete an event on the provider and soft-cancel its local mirror.

        Returns the mirrored row when there was one.
        """
        if not event_id:
            raise ValidationError("Event id is required", integration_id=integration.id)

        self.authenticator.ensure_valid_token(integration)
        self.rate_limiter.check(integration, "delete")
        self.adapter.delete_event(integration, calendar_id, event_id)

        event = self._find_event(integration, event_id)
        if event is not None and not event.is_cancelled:
            event.mark_cancelled()
            self.session.add(event)
            self.publisher.release(event)
            self.session.commit()

        logger.info(f"Deleted event {event_id} on {integration.provider} for integration {integration.id}")
        return event

    def disconnect(self, integration: Integration) -> int:
        """Revoke an integration and withdraw everything it published.

        Mirrored events are soft-cancelled and their busy blocks released.
        Returns the number of events cancelled.
        """
        events = self.session.exec(
            select(CalendarEvent)
            .where(CalendarEvent.integration_id == integration.id)
            .where(CalendarEvent.status != STATUS_CANCELLED)
        ).all()
        for event in events:
            event.mark_cancelled()
            self.session.add(event)
            self.publisher.release(event)

        integration.status = IntegrationStatus.REVOKED.value
        integration.touch()
        self.session.add(integration)
        self.session.commit()

        self.cache.delete(self.cache.make_key(integration.provider, integration.id, "calendars"))
        logger.info(
            f"Disconnected integration {integration.id} ({integration.provider}), "
            f"cancelled {len(events)} mirrored events"
        )
        return len(events)

    def get_events_for_date_range(self, user_id: int, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Mirrored, non-cancelled events of this provider overlapping ``[start, end)``."""
        start, end = _validate_range(start, end)
        return list(
            self.session.exec(
                select(CalendarEvent)
                .where(CalendarEvent.user_id == user_id)
                .where(CalendarEvent.provider == self.provider)
                .where(CalendarEvent.status != STATUS_CANCELLED)
                .where(CalendarEvent.start_time < end)
                .where(CalendarEvent.end_time > start)
                .order_by(col(CalendarEvent.start_time).asc())
            ).all()
        )
