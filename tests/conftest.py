"""Shared test fixtures."""

from collections import Counter
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from calsync.core.config import Settings
from calsync.core.database import create_db_and_tables, get_session, make_engine
from calsync.integrations.base import (
    CalendarDescriptor,
    EventDescriptor,
    EventRequest,
    OAuthConfig,
    ProviderAdapter,
    RemoteEvent,
)
from calsync.integrations.runtime import IntegrationRuntime, get_runtime
from calsync.main import app
from calsync.models import Integration, Provider


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeAdapter(ProviderAdapter):
    """In-memory provider. Tests set its calendars, events and payloads."""

    def __init__(self, provider: str):
        self.provider = provider
        self.calendars = [CalendarDescriptor(id="primary", name="Primary", primary=True, selected=True)]
        self.events: dict[str, list[RemoteEvent]] = {"primary": []}
        self.exchange_payload = {
            "access_token": "new-access",
            "refresh_token": "new-refresh",
            "expires_in": 3600,
            "scope": "calendar",
        }
        self.refresh_payload = {"access_token": "refreshed-access", "expires_in": 3600}
        self.refresh_error: Exception | None = None
        self.user_info = {"id": "ext-123", "email": "ada@example.com"}
        self.fetch_error: Exception | None = None
        self.fail_calendar: str | None = None
        self.created: list[EventRequest] = []
        self.deleted: list[tuple[str, str]] = []
        self.delete_error: Exception | None = None
        self.calls = Counter()

    @property
    def oauth_config(self) -> OAuthConfig:
        return OAuthConfig(
            client_id="client-id",
            client_secret="client-secret",
            redirect_uri="https://app.example.com/callback",
            authorize_url="https://auth.example.com/authorize",
            token_url="https://auth.example.com/token",
            scopes=["calendar", "email"],
        )

    def exchange_code(self, code: str) -> dict:
        self.calls["exchange_code"] += 1
        return dict(self.exchange_payload)

    def refresh_token(self, integration: Integration) -> dict:
        self.calls["refresh_token"] += 1
        if self.refresh_error:
            raise self.refresh_error
        return dict(self.refresh_payload)

    def get_user_info(self, access_token: str) -> dict:
        self.calls["get_user_info"] += 1
        return dict(self.user_info)

    def list_calendars(self, integration: Integration) -> list[CalendarDescriptor]:
        self.calls["list_calendars"] += 1
        return list(self.calendars)

    def fetch_events(self, integration, calendar_id, start, end) -> list[RemoteEvent]:
        self.calls["fetch_events"] += 1
        if self.fetch_error and self.fail_calendar in (None, calendar_id):
            raise self.fetch_error
        return list(self.events.get(calendar_id, []))

    def create_event(self, integration: Integration, request: EventRequest) -> EventDescriptor:
        self.calls["create_event"] += 1
        self.created.append(request)
        return EventDescriptor(
            id=f"created-{len(self.created)}",
            calendar_id=request.calendar_id,
            html_link="https://calendar.example.com/event",
            meet_link="https://meet.google.com/abc-defg-hij" if request.add_conference else None,
        )

    def delete_event(self, integration: Integration, calendar_id: str, event_id: str) -> None:
        self.calls["delete_event"] += 1
        if self.delete_error:
            raise self.delete_error
        self.deleted.append((calendar_id, event_id))


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock(datetime(2025, 3, 10, 9, 0, 0, tzinfo=UTC))


@pytest.fixture(name="engine")
def engine_fixture(tmp_path):
    """SQLite database file per test.

    A file (not ``sqlite://``) so the cache and rate limiter get their own
    connections, as they do in production.
    """
    engine = make_engine(f"sqlite:///{tmp_path / 'calsync.db'}")
    create_db_and_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    """Create a new database session for each test."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return Settings(database_url="sqlite://", sync_past_days=7, sync_future_days=30)


@pytest.fixture(name="adapters")
def adapters_fixture() -> dict[str, FakeAdapter]:
    return {provider.value: FakeAdapter(provider.value) for provider in Provider}


@pytest.fixture(name="google_adapter")
def google_adapter_fixture(adapters) -> FakeAdapter:
    return adapters[Provider.GOOGLE_CALENDAR.value]


@pytest.fixture(name="runtime")
def runtime_fixture(engine, settings, adapters, clock) -> IntegrationRuntime:
    return IntegrationRuntime(engine, settings=settings, adapters=adapters, now=clock)


@pytest.fixture(name="make_integration")
def make_integration_fixture(session: Session, clock: FakeClock):
    """Factory for stored integrations; tokens expire an hour from now by default."""

    def make(
        provider: str = Provider.GOOGLE_CALENDAR.value,
        user_id: int = 1,
        expires_in: timedelta | None = timedelta(hours=1),
        **overrides,
    ) -> Integration:
        values = {
            "user_id": user_id,
            "provider": provider,
            "external_id": f"ext-{provider}-{user_id}",
            "name": f"{provider} (ada@example.com)",
            "access_token": "old-access",
            "refresh_token": "old-refresh",
            "token_expiry": clock.now + expires_in if expires_in is not None else None,
            "created": clock.now,
            "updated": clock.now,
        }
        values.update(overrides)
        integration = Integration(**values)
        session.add(integration)
        session.commit()
        session.refresh(integration)
        return integration

    return make


@pytest.fixture(name="integration")
def integration_fixture(make_integration) -> Integration:
    return make_integration()


@pytest.fixture(name="remote_event")
def remote_event_fixture(clock: FakeClock):
    """Factory for provider events starting ``hours`` from now."""

    def make(event_id: str, hours: float = 1, duration: float = 1, **overrides) -> RemoteEvent:
        start = clock.now + timedelta(hours=hours)
        values = {
            "id": event_id,
            "title": f"Event {event_id}",
            "start": start,
            "end": start + timedelta(hours=duration),
        }
        values.update(overrides)
        return RemoteEvent(**values)

    return make


@pytest.fixture(name="client")
def client_fixture(session: Session, runtime: IntegrationRuntime):
    """Create a test client with the test database session and runtime."""

    def get_session_override():
        return session

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_runtime] = lambda: runtime
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
