"""Integration routes: OAuth connect flow, calendars, sync and provider events."""
from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlmodel import Session, select

from calsync.core.database import get_session
from calsync.errors import AuthError
from calsync.integrations.authenticator import Authenticator
from calsync.integrations.dates import parse_date_expression
from calsync.integrations.runtime import IntegrationRuntime, get_runtime
from calsync.models import Integration, Provider

router = APIRouter(prefix="/integrations", tags=["integrations"])


def get_user_id(x_user_id: int = Header(...)) -> int:
    """Platform user id, supplied by the gateway in front of this service."""
    return x_user_id


class SyncRequest(BaseModel):
    integration_id: int | None = None
    start_date: str = "today"
    end_date: str = "+30 days"


class CreateEventRequest(BaseModel):
    integration_id: int | None = None
    title: str
    start_time: str
    end_time: str
    booking_id: int | None = None
    options: dict = Field(default_factory=dict)


def _require_integration(auth: Authenticator, user_id: int, integration_id: int | None) -> Integration:
    integration = auth.get_user_integration(user_id, integration_id)
    if integration is None:
        raise HTTPException(status_code=404, detail=f"No active {auth.provider} integration")
    return integration


@router.get("")
async def list_integrations(
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
):
    """List the user's integrations across all providers."""
    integrations = session.exec(
        select(Integration).where(Integration.user_id == user_id).order_by(Integration.id)
    ).all()
    return [integration.to_dict() for integration in integrations]


@router.get("/{provider}/auth-url")
async def auth_url(
    provider: Provider,
    state: str | None = None,
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Return the provider authorization URL to redirect the user to."""
    return {"url": runtime.authenticator(session, provider.value).get_auth_url(state)}


@router.get("/{provider}/callback")
async def auth_callback(
    provider: Provider,
    code: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Complete the OAuth flow and store the integration."""
    if error:
        raise AuthError(f"Authorization denied: {error_description or error}", provider=provider.value)
    integration = runtime.authenticator(session, provider.value).handle_auth_callback(user_id, code or "")
    return integration.to_dict()


@router.get("/{provider}/calendars")
async def list_calendars(
    provider: Provider,
    integration_id: int | None = None,
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """List the provider calendars of an integration (cached)."""
    engine = runtime.sync_engine(session, provider.value)
    integration = _require_integration(engine.authenticator, user_id, integration_id)
    return [calendar.model_dump() for calendar in engine.get_calendars(integration)]


@router.post("/{provider}/sync")
async def sync_now(
    provider: Provider,
    request: SyncRequest,
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Sync an integration immediately over the requested window."""
    engine = runtime.sync_engine(session, provider.value)
    integration = _require_integration(engine.authenticator, user_id, request.integration_id)
    start = parse_date_expression(request.start_date, runtime.now)
    end = parse_date_expression(request.end_date, runtime.now)

    events = engine.sync_events(integration, start, end)
    return {
        "integration": integration.to_dict(),
        "synced": len(events),
        "events": [event.to_dict() for event in events],
    }


@router.post("/{provider}/events", status_code=201)
async def create_event(
    provider: Provider,
    request: CreateEventRequest,
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Create an event on the provider; Google Meet integrations get a Meet link."""
    start = parse_date_expression(request.start_time, runtime.now)
    end = parse_date_expression(request.end_time, runtime.now)

    if provider == Provider.GOOGLE_MEET:
        service = runtime.meet_links(session)
        integration = _require_integration(service.authenticator, user_id, request.integration_id)
        link = service.create_meet_link(
            integration, request.title, start, end, booking_id=request.booking_id, options=request.options
        )
        return link.to_dict()

    engine = runtime.sync_engine(session, provider.value)
    integration = _require_integration(engine.authenticator, user_id, request.integration_id)
    created = engine.create_calendar_event(integration, request.title, start, end, request.options)
    return created.model_dump(exclude={"raw"})


@router.delete("/{provider}/events/{event_id}")
async def delete_event(
    provider: Provider,
    event_id: str,
    calendar_id: str = "primary",
    integration_id: int | None = None,
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Delete an event on the provider and cancel its local mirror."""
    engine = runtime.sync_engine(session, provider.value)
    integration = _require_integration(engine.authenticator, user_id, integration_id)
    event = engine.delete_calendar_event(integration, event_id, calendar_id)
    return {"deleted": event_id, "event": event.to_dict() if event else None}


@router.delete("/{integration_id}")
async def disconnect_integration(
    integration_id: int,
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Revoke an integration and release the availability it published."""
    integration = session.get(Integration, integration_id)
    if integration is None or integration.user_id != user_id:
        raise HTTPException(status_code=404, detail="Integration not found")

    cancelled = runtime.sync_engine(session, integration.provider).disconnect(integration)
    return {"integration": integration.to_dict(), "cancelled_events": cancelled}


@router.get("/google_meet/bookings/{booking_id}")
async def meet_link_for_booking(
    booking_id: int,
    user_id: int = Depends(get_user_id),
    session: Session = Depends(get_session),
    runtime: IntegrationRuntime = Depends(get_runtime),
):
    """Return the user's active Meet link recorded for a booking."""
    link = runtime.meet_links(session).get_meet_link_for_booking(booking_id, user_id)
    if link is None:
        raise HTTPException(status_code=404, detail="No Meet link for this booking")
    return link
