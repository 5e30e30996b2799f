"""Background job scheduler for syncing and maintenance."""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from calsync.core.config import settings
from calsync.integrations.batch import (
    cleanup_expired_meet_links,
    housekeeping,
    refresh_expiring_tokens,
    sync_all_for_provider,
)
from calsync.integrations.runtime import get_runtime

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


def sync_job():
    """Sync every active integration of every provider."""
    runtime = get_runtime()
    for provider in runtime.providers:
        try:
            result = sync_all_for_provider(runtime, provider)
            logger.info(f"Background sync for {provider} completed: {result.as_dict()}")
        except Exception as e:
            logger.error(f"Background sync for {provider} failed: {e}")


def token_refresh_job():
    """Refresh tokens before they expire."""
    try:
        result = refresh_expiring_tokens(get_runtime(), hours_ahead=settings.token_refresh_hours_ahead)
        logger.info(f"Token refresh completed: {result.as_dict()}")
    except Exception as e:
        logger.error(f"Token refresh failed: {e}")


def housekeeping_job():
    """Garbage-collect rate limit windows, cache entries and old Meet links."""
    runtime = get_runtime()
    try:
        removed = housekeeping(runtime)
        removed["meet_links"] = cleanup_expired_meet_links(runtime, settings.meet_retention_days)
        logger.info(f"Housekeeping completed: {removed}")
    except Exception as e:
        logger.error(f"Housekeeping failed: {e}")


def start_scheduler():
    """Start the background scheduler."""
    scheduler.add_job(
        sync_job,
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="calendar_sync",
        replace_existing=True,
    )
    scheduler.add_job(
        token_refresh_job,
        trigger=IntervalTrigger(hours=1),
        id="token_refresh",
        replace_existing=True,
    )
    scheduler.add_job(
        housekeeping_job,
        trigger=IntervalTrigger(hours=1),
        id="housekeeping",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started, syncing every {settings.sync_interval_minutes} minutes"
    )


def shutdown_scheduler():
    """Graceful shutdown."""
    scheduler.shutdown(wait=False)
    logger.info("Scheduler shut down")
