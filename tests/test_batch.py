"""Tests for batch drivers and the CLI."""

from datetime import timedelta

import pytest
from sqlmodel import Session, select

from calsync.cli import build_parser, run
from calsync.core.timeutil import to_utc
from calsync.errors import ProviderUnavailableError, ValidationError
from calsync.integrations.batch import (
    cleanup_expired_meet_links,
    housekeeping,
    refresh_expiring_tokens,
    sync_all_for_provider,
)
from calsync.models import CalendarEvent, Integration, IntegrationStatus, MeetLink


def _reload(session: Session, integration: Integration) -> Integration:
    session.expire_all()
    return session.get(Integration, integration.id)


class TestSyncAll:
    """Tests for provider-wide sync."""

    def test_syncs_every_active_integration(self, runtime, make_integration, google_adapter, remote_event, session, clock):
        first = make_integration(user_id=1)
        second = make_integration(user_id=2)
        make_integration(user_id=3, status=IntegrationStatus.REVOKED.value)
        make_integration(user_id=4, provider="outlook_calendar")
        google_adapter.events["primary"] = [remote_event("a")]

        result = sync_all_for_provider(runtime, "google_calendar")

        assert (result.success, result.failure, result.skipped) == (2, 0, 0)
        assert to_utc(_reload(session, first).last_synced) == clock.now
        assert to_utc(_reload(session, second).last_synced) == clock.now
        events = session.exec(select(CalendarEvent)).all()
        assert sorted(event.user_id for event in events) == [1, 2]

    def test_recently_synced_skipped(self, runtime, make_integration, google_adapter, clock):
        make_integration(user_id=1, last_synced=clock.now - timedelta(minutes=10))
        make_integration(user_id=2, last_synced=clock.now - timedelta(hours=2))

        result = sync_all_for_provider(runtime, "google_calendar")

        assert (result.success, result.skipped) == (1, 1)
        assert google_adapter.calls["fetch_events"] == 1

    def test_dry_run_fetches_nothing(self, runtime, make_integration, google_adapter, session):
        integration = make_integration()

        result = sync_all_for_provider(runtime, "google_calendar", dry_run=True)

        assert result.success == 1
        assert google_adapter.calls["fetch_events"] == 0
        assert _reload(session, integration).last_synced is None

    def test_failure_does_not_stop_batch(self, runtime, make_integration, google_adapter, session):
        make_integration(user_id=1, expires_in=None, refresh_token=None)
        healthy = make_integration(user_id=2)

        result = sync_all_for_provider(runtime, "google_calendar")

        assert (result.success, result.failure) == (1, 1)
        assert len(result.errors) == 1
        assert _reload(session, healthy).last_synced is not None

    def test_unexpected_error_counted(self, runtime, make_integration, google_adapter):
        make_integration()
        google_adapter.fetch_error = RuntimeError("bug")

        result = sync_all_for_provider(runtime, "google_calendar")

        assert result.failure == 1

    def test_unknown_provider(self, runtime):
        with pytest.raises(ValidationError):
            sync_all_for_provider(runtime, "zoom")


class TestRefreshTokens:
    """Tests for proactive token refresh."""

    def test_refreshes_only_expiring(self, runtime, make_integration, google_adapter, session):
        expiring = make_integration(user_id=1, expires_in=timedelta(minutes=30))
        fresh = make_integration(user_id=2, expires_in=timedelta(hours=5))

        result = refresh_expiring_tokens(runtime, hours_ahead=2)

        assert result.success == 1
        assert _reload(session, expiring).access_token == "refreshed-access"
        assert _reload(session, fresh).access_token == "old-access"

    def test_missing_refresh_token_marks_expired(self, runtime, make_integration, google_adapter, session):
        integration = make_integration(expires_in=timedelta(minutes=30), refresh_token=None)

        result = refresh_expiring_tokens(runtime)

        assert result.expired == 1
        assert google_adapter.calls["refresh_token"] == 0
        assert _reload(session, integration).status == IntegrationStatus.EXPIRED

    def test_invalid_grant_marks_expired(self, runtime, make_integration, google_adapter, session):
        integration = make_integration(expires_in=timedelta(minutes=30))
        google_adapter.refresh_payload = {"error": "invalid_grant", "error_description": "Token revoked"}

        result = refresh_expiring_tokens(runtime)

        assert (result.expired, result.failure) == (1, 0)
        assert _reload(session, integration).status == IntegrationStatus.EXPIRED

    def test_transient_failure_keeps_status(self, runtime, make_integration, google_adapter, session):
        integration = make_integration(expires_in=timedelta(minutes=30))
        google_adapter.refresh_error = ProviderUnavailableError("timeout")

        result = refresh_expiring_tokens(runtime)

        assert (result.expired, result.failure) == (0, 1)
        assert _reload(session, integration).status == IntegrationStatus.ACTIVE

    def test_provider_filter(self, runtime, make_integration, adapters):
        make_integration(provider="google_calendar", expires_in=None)
        make_integration(provider="outlook_calendar", expires_in=None)

        result = refresh_expiring_tokens(runtime, provider="outlook_calendar")

        assert result.success == 1
        assert adapters["google_calendar"].calls["refresh_token"] == 0
        assert adapters["outlook_calendar"].calls["refresh_token"] == 1

    def test_dry_run_changes_nothing(self, runtime, make_integration, google_adapter, session):
        without_token = make_integration(user_id=1, expires_in=None, refresh_token=None)
        make_integration(user_id=2, expires_in=None)

        result = refresh_expiring_tokens(runtime, dry_run=True)

        assert (result.success, result.expired) == (1, 1)
        assert google_adapter.calls["refresh_token"] == 0
        assert _reload(session, without_token).status == IntegrationStatus.ACTIVE


class TestMaintenance:
    """Tests for cleanup jobs."""

    def test_cleanup_expired_meet_links(self, runtime, make_integration, session, clock):
        integration = make_integration(provider="google_meet")
        session.add(
            MeetLink(
                user_id=1,
                integration_id=integration.id,
                meet_id="m1",
                meet_link="https://meet.google.com/old",
                title="Old",
                start_time=clock.now - timedelta(days=9, hours=1),
                end_time=clock.now - timedelta(days=9),
            )
        )
        session.commit()

        assert cleanup_expired_meet_links(runtime, retention_days=7) == 1

    def test_housekeeping(self, runtime, integration, clock):
        runtime.rate_limiter.check(integration, "sync")
        runtime.cache.set("stale", 1, ttl=60)
        clock.advance(hours=3)

        assert housekeeping(runtime) == {"rate_limit_windows": 1, "cache_entries": 1}


class TestCli:
    """Tests for the command line entry point."""

    def test_sync_all(self, runtime, make_integration, capsys):
        make_integration()
        args = build_parser().parse_args(["sync-all", "--provider", "google_calendar"])

        assert run(args, runtime) == 0
        assert "google_calendar: 1 synced, 0 skipped, 0 failed" in capsys.readouterr().out

    def test_sync_all_failure_exit_code(self, runtime, make_integration, capsys):
        make_integration(expires_in=None, refresh_token=None)
        args = build_parser().parse_args(["sync-all"])

        assert run(args, runtime) == 1
        assert "error:" in capsys.readouterr().out

    def test_refresh_tokens_dry_run(self, runtime, make_integration, capsys):
        make_integration(expires_in=None)
        args = build_parser().parse_args(["refresh-tokens", "--hours-ahead", "1", "--dry-run"])

        assert run(args, runtime) == 0
        assert capsys.readouterr().out.startswith("[dry run] 1 refreshed")

    def test_cleanup_defaults(self, runtime, capsys):
        args = build_parser().parse_args(["cleanup-expired-events"])

        assert args.days == 7
        assert run(args, runtime) == 0
        assert "deleted 0 Meet links older than 7 days" in capsys.readouterr().out

    def test_unknown_provider_rejected_by_parser(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sync-all", "--provider", "zoom"])
