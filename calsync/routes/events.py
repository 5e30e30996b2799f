"""Routes for reading mirrored events and published busy blocks."""
from fastapi import APIRouter, Depends
from sqlmodel import Session

from calsync.core.database import get_session
from calsync.core.timeutil import to_utc
from calsync.integrations.availability import BusyBlockPublisher
from calsync.integrations.dates import parse_date_expression
from calsync.integrations.runtime import IntegrationRuntime, get_runtime
from calsync.routes.integrations import get_user_id

router = APIRouter(tags=["events"])


@router.get("/events")
async def list_events(
    start: str = "today",
    end: str = "+7 days",
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """
    List the user's mirrored events overlapping the window, across providers.

    Cancelled events are excluded; ``is_busy`` tells free from busy time.
    Accepts date expressions such as ``today`` or ``+7 days``.
    """
    window_start = parse_date_expression(start, runtime.now)
    window_end = parse_date_expression(end, runtime.now)

    events = []
    for provider in runtime.providers:
        events.extend(
            runtime.sync_engine(session, provider).get_events_for_date_range(user_id, window_start, window_end)
        )
    events.sort(key=lambda event: to_utc(event.start_time))
    return [event.to_dict() for event in events]


@router.get("/availability/busy")
async def busy_blocks(
    start: str = "today",
    end: str = "+7 days",
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """List active busy blocks published from provider calendars."""
    window_start = parse_date_expression(start, runtime.now)
    window_end = parse_date_expression(end, runtime.now)
    blocks = BusyBlockPublisher(session, now=runtime.now).busy_blocks_for_user(user_id, window_start, window_end)
    return [
        {
            "source_id": block.source_id,
            "provider": block.provider,
            "title": block.title,
            "start_time": block.start_time.isoformat(),
            "end_time": block.end_time.isoformat(),
        }
        for block in blocks
    ]
