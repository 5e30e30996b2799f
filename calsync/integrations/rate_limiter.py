"""Per-integration, per-endpoint-class rate limiting.

Calls are counted in one-second buckets stored in ``rate_limit_window``;
a call is allowed while the buckets inside the sliding window sum to less
than the configured maximum. The limiter fails open: if the bucket table
cannot be read or written the call goes through and the error is logged.
"""
import logging
from datetime import timedelta

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from calsync.core.config import RateLimitConfig, RateLimitRule
from calsync.core.timeutil import Clock, to_utc, utcnow
from calsync.errors import RateLimitError
from calsync.models import Integration, RateLimitWindow

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(self, engine: Engine, limits: RateLimitConfig | None = None, now: Clock = utcnow):
        self.engine = engine
        self.limits = limits or RateLimitConfig()
        self.now = now

    def check(self, integration: Integration, endpoint: str = "default") -> None:
        """Record one call, or raise RateLimitError when the quota is used up."""
        rule = self.limits.rule_for(integration.provider, endpoint)
        if rule is None:
            return

        try:
            with Session(self.engine) as session:
                self._check_and_record(session, integration, endpoint, rule)
        except SQLAlchemyError as e:
            logger.error(
                f"Rate limit storage failed for integration {integration.id} "
                f"({integration.provider}/{endpoint}), allowing call: {e}"
            )

    def _check_and_record(
        self,
        session: Session,
        integration: Integration,
        endpoint: str,
        rule: RateLimitRule,
    ) -> None:
        now = self.now()
        window_floor = now - timedelta(seconds=rule.window_seconds)

        windows = session.exec(
            select(RateLimitWindow)
            .where(RateLimitWindow.integration_id == integration.id)
            .where(RateLimitWindow.endpoint == endpoint)
            .where(RateLimitWindow.window_start >= window_floor)
        ).all()
        used = sum(w.requests_count for w in windows)

        if used >= rule.requests:
            oldest = min(to_utc(w.window_start) for w in windows)
            retry_after = max(1, int((oldest + timedelta(seconds=rule.window_seconds) - now).total_seconds()) + 1)
            logger.warning(
                f"Rate limit exceeded for integration {integration.id} "
                f"({integration.provider}/{endpoint}): {used}/{rule.requests} "
                f"in {rule.window_seconds}s"
            )
            raise RateLimitError(
                f"Rate limit exceeded for {endpoint}, retry in {retry_after}s",
                retry_after=retry_after,
                integration_id=integration.id,
                provider=integration.provider,
                endpoint=endpoint,
            )

        bucket_start = now.replace(microsecond=0)
        bucket = next((w for w in windows if to_utc(w.window_start) == bucket_start), None)
        if bucket is None:
            bucket = RateLimitWindow(
                integration_id=integration.id,
                endpoint=endpoint,
                window_start=bucket_start,
                created=now,
            )
        bucket.requests_count += 1
        session.add(bucket)
        session.commit()

    def cleanup(self, older_than: timedelta = timedelta(hours=2)) -> int:
        """Delete buckets older than ``older_than``. Returns the number removed."""
        cutoff = self.now() - older_than
        try:
            with Session(self.engine) as session:
                stale = session.exec(
                    select(RateLimitWindow).where(RateLimitWindow.window_start < cutoff)
                ).all()
                for window in stale:
                    session.delete(window)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Rate limit cleanup failed: {e}")
            return 0

        if stale:
            logger.info(f"Removed {len(stale)} stale rate limit windows")
        return len(stale)
