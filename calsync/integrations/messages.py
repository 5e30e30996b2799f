"""Asynchronous message handlers.

Messages are fire-and-forget: there is no reply channel, so a handler
logs failures and returns instead of raising. Missing or inactive
integrations are ignored with a warning.
"""
import logging

from pydantic import BaseModel, Field
from sqlmodel import Session

from calsync.errors import IntegrationError
from calsync.integrations.dates import parse_date_expression
from calsync.integrations.runtime import IntegrationRuntime
from calsync.models import Integration, Provider

logger = logging.getLogger(__name__)


class SyncCalendarMessage(BaseModel):
    integration_id: int
    start_date: str = "today"
    end_date: str = "+30 days"


class CreateCalendarEventMessage(BaseModel):
    integration_id: int
    title: str
    start_time: str
    end_time: str
    booking_id: int | None = None
    options: dict = Field(default_factory=dict)


def _load_integration(session: Session, runtime: IntegrationRuntime, integration_id: int) -> Integration | None:
    integration = session.get(Integration, integration_id)
    if integration is None:
        logger.warning(f"Integration {integration_id} not found, ignoring message")
        return None
    if not integration.is_active:
        logger.warning(f"Integration {integration_id} is {integration.status}, ignoring message")
        return None
    if integration.provider not in runtime.adapters:
        logger.warning(f"Integration {integration_id} has unsupported provider {integration.provider}")
        return None
    return integration


def handle_sync_calendar(runtime: IntegrationRuntime, message: SyncCalendarMessage) -> int | None:
    """Sync one integration. Returns the number of events synced, None on failure."""
    with Session(runtime.engine) as session:
        integration = _load_integration(session, runtime, message.integration_id)
        if integration is None:
            return None

        try:
            start = parse_date_expression(message.start_date, runtime.now)
            end = parse_date_expression(message.end_date, runtime.now)
            events = runtime.sync_engine(session, integration.provider).sync_events(integration, start, end)
        except IntegrationError as e:
            session.rollback()
            logger.error(
                f"Sync message failed for integration {message.integration_id} "
                f"({e.reason}): {e}"
            )
            return None
        except Exception:
            session.rollback()
            logger.exception(f"Unexpected error handling sync message for integration {message.integration_id}")
            return None

        logger.info(f"Sync message processed for integration {integration.id}: {len(events)} events")
        return len(events)


def handle_create_calendar_event(runtime: IntegrationRuntime, message: CreateCalendarEventMessage) -> str | None:
    """Create an event (or a Meet link for Google Meet). Returns the provider id, None on failure."""
    with Session(runtime.engine) as session:
        integration = _load_integration(session, runtime, message.integration_id)
        if integration is None:
            return None

        try:
            start = parse_date_expression(message.start_time, runtime.now)
            end = parse_date_expression(message.end_time, runtime.now)
            if integration.provider == Provider.GOOGLE_MEET:
                link = runtime.meet_links(session).create_meet_link(
                    integration,
                    message.title,
                    start,
                    end,
                    booking_id=message.booking_id,
                    options=message.options,
                )
                created_id = link.meet_id
            else:
                created = runtime.sync_engine(session, integration.provider).create_calendar_event(
                    integration, message.title, start, end, message.options
                )
                created_id = created.id
        except IntegrationError as e:
            session.rollback()
            logger.error(
                f"Create event message failed for integration {message.integration_id} "
                f"({e.reason}): {e}"
            )
            return None
        except Exception:
            session.rollback()
            logger.exception(
                f"Unexpected error handling create event message for integration {message.integration_id}"
            )
            return None

        logger.info(f"Created event {created_id} for integration {integration.id}")
        return created_id
