"""Tests for API routes."""

from datetime import timedelta

from fastapi.testclient import TestClient
from sqlmodel import Session, select

from calsync.errors import ProviderRejectedError, ProviderUnavailableError
from calsync.models import CalendarEvent, Integration

USER = {"X-User-Id": "1"}


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_check(self, client: TestClient):
        """Test the health endpoint returns OK."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "app": "calsync"}


class TestOAuthRoutes:
    """Tests for the connect flow."""

    def test_auth_url(self, client: TestClient):
        response = client.get("/integrations/google_calendar/auth-url", params={"state": "xyz"})
        assert response.status_code == 200
        assert response.json()["url"].startswith("https://auth.example.com/authorize?")
        assert "state=xyz" in response.json()["url"]

    def test_unknown_provider(self, client: TestClient):
        response = client.get("/integrations/zoom/auth-url")
        assert response.status_code == 422

    def test_callback_creates_integration(self, client: TestClient, session: Session):
        response = client.get("/integrations/outlook_calendar/callback", params={"code": "abc"}, headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["provider"] == "outlook_calendar"
        assert "access_token" not in data
        assert session.get(Integration, data["id"]).access_token == "new-access"

    def test_callback_with_provider_error(self, client: TestClient):
        response = client.get(
            "/integrations/google_calendar/callback",
            params={"error": "access_denied"},
            headers=USER,
        )

        assert response.status_code == 401
        assert response.json()["error"] == "auth_failed"

    def test_callback_requires_user(self, client: TestClient):
        response = client.get("/integrations/google_calendar/callback", params={"code": "abc"})
        assert response.status_code == 422

    def test_list_integrations(self, client: TestClient, make_integration):
        make_integration(user_id=1)
        make_integration(user_id=2)

        response = client.get("/integrations", headers=USER)

        assert response.status_code == 200
        assert [item["user_id"] for item in response.json()] == [1]


class TestDisconnectRoute:
    """Tests for revoking an integration."""

    def test_disconnect(self, client: TestClient, integration, google_adapter, remote_event, runtime, session, clock):
        google_adapter.events["primary"] = [remote_event("a")]
        runtime.sync_engine(session, "google_calendar").sync_events(
            integration, clock.now, clock.now + timedelta(days=1)
        )

        response = client.delete(f"/integrations/{integration.id}", headers=USER)

        assert response.status_code == 200
        assert response.json()["integration"]["status"] == "revoked"
        assert response.json()["cancelled_events"] == 1
        assert client.get("/availability/busy", headers=USER).json() == []
        assert client.post("/integrations/google_calendar/sync", json={}, headers=USER).status_code == 404

    def test_other_users_integration(self, client: TestClient, make_integration, session: Session):
        other = make_integration(user_id=2)

        response = client.delete(f"/integrations/{other.id}", headers=USER)

        assert response.status_code == 404
        session.expire_all()
        assert session.get(Integration, other.id).is_active is True

    def test_unknown_integration(self, client: TestClient):
        assert client.delete("/integrations/999", headers=USER).status_code == 404


class TestSyncRoutes:
    """Tests for calendars and on-demand sync."""

    def test_calendars(self, client: TestClient, integration):
        response = client.get("/integrations/google_calendar/calendars", headers=USER)
        assert response.status_code == 200
        assert response.json()[0]["id"] == "primary"

    def test_no_integration(self, client: TestClient):
        response = client.post("/integrations/google_calendar/sync", json={}, headers=USER)
        assert response.status_code == 404

    def test_sync(self, client: TestClient, integration, google_adapter, remote_event):
        google_adapter.events["primary"] = [remote_event("a"), remote_event("b")]

        response = client.post("/integrations/google_calendar/sync", json={"end_date": "+7 days"}, headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["synced"] == 2
        assert {event["external_event_id"] for event in data["events"]} == {"a", "b"}

    def test_invalid_window(self, client: TestClient, integration):
        response = client.post(
            "/integrations/google_calendar/sync",
            json={"start_date": "+7 days", "end_date": "today"},
            headers=USER,
        )
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_request"

    def test_provider_unavailable(self, client: TestClient, integration, google_adapter):
        google_adapter.fetch_error = ProviderUnavailableError("Google timed out", provider="google_calendar")

        response = client.post("/integrations/google_calendar/sync", json={}, headers=USER)

        assert response.status_code == 503
        assert response.json()["error"] == "provider_unavailable"

    def test_rate_limited(self, client: TestClient, integration, runtime):
        runtime.rate_limiter.limits.providers["google_calendar"]["sync"].requests = 1

        assert client.post("/integrations/google_calendar/sync", json={}, headers=USER).status_code == 200
        response = client.post("/integrations/google_calendar/sync", json={}, headers=USER)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0

    def test_expired_token_without_refresh(self, client: TestClient, make_integration):
        make_integration(expires_in=None, refresh_token=None)

        response = client.post("/integrations/google_calendar/sync", json={}, headers=USER)

        assert response.status_code == 401
        assert response.json()["error"] == "no_refresh_token"

    def test_sync_in_progress(self, client: TestClient, integration, runtime):
        with runtime.locks.hold(integration):
            response = client.post("/integrations/google_calendar/sync", json={}, headers=USER)
        assert response.status_code == 409


class TestEventRoutes:
    """Tests for event creation and reads."""

    def test_create_event(self, client: TestClient, integration, google_adapter):
        response = client.post(
            "/integrations/google_calendar/events",
            json={"title": "Demo", "start_time": "2025-03-11T10:00:00Z", "end_time": "2025-03-11T11:00:00Z"},
            headers=USER,
        )

        assert response.status_code == 201
        assert response.json()["id"] == "created-1"
        assert "raw" not in response.json()
        assert google_adapter.created[0].title == "Demo"

    def test_create_meet_link(self, client: TestClient, make_integration):
        make_integration(provider="google_meet")

        response = client.post(
            "/integrations/google_meet/events",
            json={"title": "Consult", "start_time": "tomorrow", "end_time": "+2 days", "booking_id": 3},
            headers=USER,
        )
        assert response.status_code == 201
        assert response.json()["meet_link"] == "https://meet.google.com/abc-defg-hij"

        lookup = client.get("/integrations/google_meet/bookings/3", headers=USER)
        assert lookup.status_code == 200
        assert lookup.json()["booking_id"] == 3

    def test_missing_booking(self, client: TestClient):
        assert client.get("/integrations/google_meet/bookings/99", headers=USER).status_code == 404

    def test_booking_lookup_scoped_to_user(self, client: TestClient, make_integration):
        make_integration(provider="google_meet")
        client.post(
            "/integrations/google_meet/events",
            json={"title": "Consult", "start_time": "tomorrow", "end_time": "+2 days", "booking_id": 3},
            headers=USER,
        )

        response = client.get("/integrations/google_meet/bookings/3", headers={"X-User-Id": "2"})

        assert response.status_code == 404

    def test_booking_lookup_requires_user(self, client: TestClient):
        assert client.get("/integrations/google_meet/bookings/3").status_code == 422

    def test_delete_event(self, client: TestClient, integration, google_adapter, remote_event, runtime, session, clock):
        google_adapter.events["primary"] = [remote_event("a")]
        runtime.sync_engine(session, "google_calendar").sync_events(
            integration, clock.now, clock.now + timedelta(days=1)
        )

        response = client.delete("/integrations/google_calendar/events/a", headers=USER)

        assert response.status_code == 200
        assert response.json()["event"]["status"] == "cancelled"
        assert google_adapter.deleted == [("primary", "a")]
        assert client.get("/availability/busy", headers=USER).json() == []

    def test_delete_event_on_calendar(self, client: TestClient, integration, google_adapter):
        response = client.delete(
            "/integrations/google_calendar/events/x", params={"calendar_id": "team"}, headers=USER
        )

        assert response.status_code == 200
        assert response.json() == {"deleted": "x", "event": None}
        assert google_adapter.deleted == [("team", "x")]

    def test_delete_event_rejected_upstream(self, client: TestClient, integration, google_adapter):
        google_adapter.delete_error = ProviderRejectedError("not found", provider="google_calendar")

        response = client.delete("/integrations/google_calendar/events/x", headers=USER)

        assert response.status_code == 502
        assert response.json()["error"] == "provider_rejected"

    def test_list_events_across_providers(
        self, client: TestClient, make_integration, adapters, remote_event, runtime, session, clock
    ):
        google = make_integration(provider="google_calendar")
        outlook = make_integration(provider="outlook_calendar")
        adapters["google_calendar"].events["primary"] = [remote_event("g", hours=3)]
        adapters["outlook_calendar"].events["primary"] = [remote_event("o", hours=1)]
        window = (clock.now, clock.now + timedelta(days=1))
        runtime.sync_engine(session, "google_calendar").sync_events(google, *window)
        runtime.sync_engine(session, "outlook_calendar").sync_events(outlook, *window)

        response = client.get("/events", params={"start": "today", "end": "+1 day"}, headers=USER)

        assert response.status_code == 200
        assert [event["external_event_id"] for event in response.json()] == ["o", "g"]

    def test_busy_blocks(self, client: TestClient, integration, google_adapter, remote_event, runtime, session, clock):
        google_adapter.events["primary"] = [remote_event("a"), remote_event("free", transparency="transparent")]
        runtime.sync_engine(session, "google_calendar").sync_events(
            integration, clock.now, clock.now + timedelta(days=1)
        )

        response = client.get("/availability/busy", headers=USER)

        assert response.status_code == 200
        assert [block["source_id"] for block in response.json()] == ["google_calendar_primary_a"]

    def test_bad_date_expression(self, client: TestClient):
        response = client.get("/events", params={"start": "someday"}, headers=USER)
        assert response.status_code == 422


class TestMessageRoutes:
    """Tests for message intake."""

    def test_sync_message_accepted_and_handled(self, client: TestClient, integration, google_adapter, remote_event, engine):
        google_adapter.events["primary"] = [remote_event("a")]

        response = client.post("/messages/sync", json={"integration_id": integration.id})

        assert response.status_code == 202
        assert response.json() == {"accepted": True, "integration_id": integration.id}
        with Session(engine) as session:
            assert len(session.exec(select(CalendarEvent)).all()) == 1

    def test_failing_message_still_accepted(self, client: TestClient):
        response = client.post(
            "/messages/create-event",
            json={"integration_id": 404, "title": "x", "start_time": "today", "end_time": "tomorrow"},
        )
        assert response.status_code == 202

    def test_malformed_message_rejected(self, client: TestClient):
        response = client.post("/messages/sync", json={"start_date": "today"})
        assert response.status_code == 422
