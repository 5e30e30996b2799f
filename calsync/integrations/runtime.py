"""Wiring of adapters, cache, rate limiter and sync locks.

One :class:`IntegrationRuntime` lives per process. It owns the components
that must be shared across requests and jobs (the cache and rate limiter
on the engine, the per-integration sync locks) and builds the
session-bound authenticator, sync engine and Meet link service on demand.
"""
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine
from sqlmodel import Session

from calsync.core.config import Settings
from calsync.core.config import settings as default_settings
from calsync.core.timeutil import Clock, utcnow
from calsync.errors import ValidationError
from calsync.integrations.authenticator import Authenticator
from calsync.integrations.availability import BusyBlockPublisher
from calsync.integrations.base import ProviderAdapter
from calsync.integrations.cache import ResponseCache
from calsync.integrations.google_calendar import GoogleCalendarAdapter
from calsync.integrations.google_meet import GoogleMeetAdapter, MeetLinkService
from calsync.integrations.outlook import OutlookCalendarAdapter
from calsync.integrations.rate_limiter import RateLimiter
from calsync.integrations.sync import CalendarSyncEngine, SyncLocks
from calsync.models import Provider


def default_adapters(settings: Settings) -> dict[str, ProviderAdapter]:
    return {
        Provider.GOOGLE_CALENDAR.value: GoogleCalendarAdapter.from_settings(settings),
        Provider.GOOGLE_MEET.value: GoogleMeetAdapter.from_settings(settings),
        Provider.OUTLOOK_CALENDAR.value: OutlookCalendarAdapter.from_settings(settings),
    }


class IntegrationRuntime:
    def __init__(
        self,
        engine: Engine,
        settings: Settings = default_settings,
        adapters: dict[str, ProviderAdapter] | None = None,
        now: Clock = utcnow,
    ):
        self.engine = engine
        self.settings = settings
        self.now = now
        self.adapters = adapters if adapters is not None else default_adapters(settings)
        self.cache = ResponseCache(engine, settings.cache_ttls, now=now)
        self.rate_limiter = RateLimiter(engine, settings.rate_limits, now=now)
        self.locks = SyncLocks()

    @property
    def providers(self) -> list[str]:
        return list(self.adapters)

    def adapter(self, provider: str) -> ProviderAdapter:
        try:
            return self.adapters[provider]
        except KeyError:
            raise ValidationError(f"Unknown provider: {provider}", provider=provider) from None

    def authenticator(self, session: Session, provider: str) -> Authenticator:
        return Authenticator(
            session,
            self.adapter(provider),
            cache=self.cache,
            refresh_buffer=timedelta(minutes=self.settings.token_refresh_buffer_minutes),
            now=self.now,
        )

    def sync_engine(self, session: Session, provider: str) -> CalendarSyncEngine:
        return CalendarSyncEngine(
            session,
            self.adapter(provider),
            self.authenticator(session, provider),
            self.rate_limiter,
            self.cache,
            publisher=BusyBlockPublisher(session, now=self.now),
            locks=self.locks,
            now=self.now,
        )

    def meet_links(self, session: Session) -> MeetLinkService:
        provider = Provider.GOOGLE_MEET.value
        return MeetLinkService(
            session,
            self.adapter(provider),
            self.authenticator(session, provider),
            self.rate_limiter,
            self.cache,
            now=self.now,
        )

    def sync_window(self) -> tuple[datetime, datetime]:
        """Default batch window: ``[today - past_days, today + future_days)``."""
        today = self.now().replace(hour=0, minute=0, second=0, microsecond=0)
        return (
            today - timedelta(days=self.settings.sync_past_days),
            today + timedelta(days=self.settings.sync_future_days),
        )


_runtime: IntegrationRuntime | None = None


def get_runtime() -> IntegrationRuntime:
    """Process-wide runtime on the application engine (FastAPI dependency)."""
    global _runtime

    if _runtime is None:
        from calsync.core.database import engine

        _runtime = IntegrationRuntime(engine)
    return _runtime
