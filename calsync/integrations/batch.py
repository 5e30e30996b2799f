"""Batch drivers run by the CLI and the scheduler.

Each integration is processed in its own session so one failure cannot
roll back another's work. Outcomes are counted independently and a
failure never stops the batch.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta

from sqlmodel import Session, col, or_, select

from calsync.core.timeutil import to_utc
from calsync.errors import AuthError, IntegrationError
from calsync.integrations.runtime import IntegrationRuntime
from calsync.models import Integration, IntegrationStatus

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    success: int = 0
    failure: int = 0
    skipped: int = 0
    expired: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def _active_integrations(session: Session, provider: str | None = None) -> list[Integration]:
    statement = (
        select(Integration)
        .where(Integration.status == IntegrationStatus.ACTIVE.value)
        .order_by(Integration.id)
    )
    if provider:
        statement = statement.where(Integration.provider == provider)
    return list(session.exec(statement).all())


def _integration_ids(runtime: IntegrationRuntime, provider: str | None = None) -> list[int]:
    with Session(runtime.engine) as session:
        return [integration.id for integration in _active_integrations(session, provider)]


def sync_all_for_provider(runtime: IntegrationRuntime, provider: str, dry_run: bool = False) -> BatchResult:
    """Sync every active integration of a provider over the default window.

    Integrations synced within ``sync_min_interval_minutes`` are skipped.
    """
    runtime.adapter(provider)  # unknown providers fail before touching anything
    result = BatchResult()
    start, end = runtime.sync_window()
    min_interval = timedelta(minutes=runtime.settings.sync_min_interval_minutes)

    for integration_id in _integration_ids(runtime, provider):
        with Session(runtime.engine) as session:
            integration = session.get(Integration, integration_id)
            if integration is None or not integration.is_active:
                result.skipped += 1
                continue

            if integration.last_synced and to_utc(integration.last_synced) > runtime.now() - min_interval:
                logger.debug(f"Integration {integration.id} synced recently, skipping")
                result.skipped += 1
                continue

            if dry_run:
                logger.info(f"Dry run: would sync integration {integration.id} ({integration.name})")
                result.success += 1
                continue

            try:
                runtime.sync_engine(session, provider).sync_events(integration, start, end)
                result.success += 1
            except IntegrationError as e:
                session.rollback()
                logger.error(f"Sync failed for integration {integration_id}: {e}")
                result.failure += 1
                result.errors.append(f"{integration_id}: {e}")
            except Exception as e:
                session.rollback()
                logger.exception(f"Unexpected error syncing integration {integration_id}")
                result.failure += 1
                result.errors.append(f"{integration_id}: {e}")

    logger.info(f"Batch sync for {provider} finished: {result.as_dict()}")
    return result


def refresh_expiring_tokens(
    runtime: IntegrationRuntime,
    hours_ahead: int = 2,
    provider: str | None = None,
    dry_run: bool = False,
) -> BatchResult:
    """Refresh tokens that expire within ``hours_ahead``.

    Integrations without a refresh token, or whose refresh the provider
    rejects with ``invalid_grant``, are marked expired.
    """
    if provider:
        runtime.adapter(provider)
    result = BatchResult()
    threshold = runtime.now() + timedelta(hours=hours_ahead)

    with Session(runtime.engine) as session:
        statement = (
            select(Integration)
            .where(Integration.status == IntegrationStatus.ACTIVE.value)
            .where(or_(col(Integration.token_expiry).is_(None), col(Integration.token_expiry) <= threshold))
            .order_by(Integration.id)
        )
        if provider:
            statement = statement.where(Integration.provider == provider)
        integration_ids = [integration.id for integration in session.exec(statement).all()]

    for integration_id in integration_ids:
        with Session(runtime.engine) as session:
            integration = session.get(Integration, integration_id)
            if integration.provider not in runtime.adapters:
                result.skipped += 1
                continue

            if not integration.refresh_token:
                logger.warning(f"Integration {integration.id} has no refresh token, marking expired")
                if not dry_run:
                    _mark_expired(session, integration)
                result.expired += 1
                continue

            if dry_run:
                logger.info(f"Dry run: would refresh token for integration {integration.id}")
                result.success += 1
                continue

            try:
                runtime.authenticator(session, integration.provider).refresh_access_token(integration)
                result.success += 1
            except AuthError as e:
                session.rollback()
                logger.warning(f"Token refresh rejected for integration {integration_id}: {e}")
                if e.provider_error == "invalid_grant":
                    _mark_expired(session, integration)
                    result.expired += 1
                else:
                    result.failure += 1
                result.errors.append(f"{integration_id}: {e}")
            except IntegrationError as e:
                session.rollback()
                logger.error(f"Token refresh failed for integration {integration_id}: {e}")
                result.failure += 1
                result.errors.append(f"{integration_id}: {e}")

    logger.info(f"Token refresh finished: {result.as_dict()}")
    return result


def _mark_expired(session: Session, integration: Integration) -> None:
    integration.status = IntegrationStatus.EXPIRED.value
    integration.touch()
    session.add(integration)
    session.commit()


def cleanup_expired_meet_links(runtime: IntegrationRuntime, retention_days: int = 7, dry_run: bool = False) -> int:
    with Session(runtime.engine) as session:
        return runtime.meet_links(session).cleanup_expired(retention_days, dry_run=dry_run)


def housekeeping(runtime: IntegrationRuntime) -> dict:
    """Drop stale rate limit windows and expired cache entries."""
    retention = timedelta(hours=runtime.settings.rate_limit_retention_hours)
    return {
        "rate_limit_windows": runtime.rate_limiter.cleanup(retention),
        "cache_entries": runtime.cache.purge_expired(),
    }
