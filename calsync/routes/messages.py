"""Message intake: accept a message and handle it in the background."""
from fastapi import APIRouter, BackgroundTasks, Depends

from calsync.integrations.messages import (
    CreateCalendarEventMessage,
    SyncCalendarMessage,
    handle_create_calendar_event,
    handle_sync_calendar,
)
from calsync.integrations.runtime import IntegrationRuntime, get_runtime

router = APIRouter(prefix="/messages", tags=["messages"])


@router.post("/sync", status_code=202)
async def enqueue_sync(
    message: SyncCalendarMessage,
    background_tasks: BackgroundTasks,
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Queue a calendar sync; failures are only logged."""
    background_tasks.add_task(handle_sync_calendar, runtime, message)
    return {"accepted": True, "integration_id": message.integration_id}


@router.post("/create-event", status_code=202)
async def enqueue_create_event(
    message: CreateCalendarEventMessage,
    background_tasks: BackgroundTasks,
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Queue event (or Meet link) creation; failures are only logged."""
    background_tasks.add_task(handle_create_calendar_event, runtime, message)
    return {"accepted": True, "integration_id": message.integration_id}
