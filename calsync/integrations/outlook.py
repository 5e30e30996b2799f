"""Microsoft Outlook calendar adapter (Microsoft identity platform + Graph).

All HTTP goes through one ``httpx.Client`` with a bounded timeout. Tests
pass an ``httpx.MockTransport`` in place of the network.
"""
import logging
import uuid
from datetime import datetime

import httpx
from dateutil import parser as date_parser

from calsync.core.config import Settings
from calsync.core.timeutil import to_rfc3339, to_utc
from calsync.errors import AuthError, ProviderRejectedError, ProviderUnavailableError
from calsync.integrations.base import (
    CalendarDescriptor,
    EventDescriptor,
    EventRequest,
    OAuthConfig,
    ProviderAdapter,
    RemoteEvent,
)
from calsync.models import Integration, Provider

logger = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
LOGIN_URL = "https://login.microsoftonline.com"

SCOPES = [
    "offline_access",
    "Calendars.Read",
    "Calendars.ReadWrite",
    "User.Read",
]

# transactionId prefix marking events created by this system
OWN_TRANSACTION_PREFIX = "calsync-"

PAGE_SIZE = 250


def parse_graph_time(value: dict | None) -> datetime | None:
    """Parse a Graph ``dateTimeTimeZone``; values are requested in UTC."""
    if not value or not value.get("dateTime"):
        return None
    return to_utc(date_parser.isoparse(value["dateTime"]))


def remote_event_from_graph(item: dict) -> RemoteEvent | None:
    start = parse_graph_time(item.get("start"))
    end = parse_graph_time(item.get("end"))
    cancelled = bool(item.get("isCancelled", False))

    if not cancelled and (start is None or end is None):
        logger.warning(f"Outlook event {item.get('id')} has no start/end")
        return None

    organizer = ((item.get("organizer") or {}).get("emailAddress") or {}).get("address")
    return RemoteEvent(
        id=item["id"],
        title=item.get("subject") or "Untitled Event",
        description=item.get("bodyPreview"),
        location=(item.get("location") or {}).get("displayName") or None,
        start=start,
        end=end,
        is_all_day=bool(item.get("isAllDay", False)),
        status="cancelled" if cancelled else "confirmed",
        transparency="transparent" if item.get("showAs") == "free" else "opaque",
        organizer_email=organizer,
        is_organizer=bool(item.get("isOrganizer", False)),
        html_link=item.get("webLink"),
        etag=item.get("@odata.etag") or item.get("changeKey"),
        is_own=(item.get("transactionId") or "").startswith(OWN_TRANSACTION_PREFIX),
    )


def calendar_from_graph(item: dict) -> CalendarDescriptor:
    is_default = bool(item.get("isDefaultCalendar", False))
    return CalendarDescriptor(
        id=item["id"],
        name=item.get("name") or item["id"],
        primary=is_default,
        selected=is_default,
        access_role="writer" if item.get("canEdit") else "reader",
    )


def _graph_time(value: datetime) -> str:
    # Graph pairs a wall-clock dateTime with a separate timeZone field
    return to_utc(value).replace(tzinfo=None).isoformat()


def build_graph_event_body(request: EventRequest) -> dict:
    body = {
        "subject": request.title,
        "start": {"dateTime": _graph_time(request.start), "timeZone": "UTC"},
        "end": {"dateTime": _graph_time(request.end), "timeZone": "UTC"},
        "transactionId": f"{OWN_TRANSACTION_PREFIX}{uuid.uuid4()}",
    }
    if request.description:
        body["body"] = {"contentType": "HTML", "content": request.description}
    if request.location:
        body["location"] = {"displayName": request.location}
    if request.attendees:
        body["attendees"] = [
            {"emailAddress": {"address": email}, "type": "required"} for email in request.attendees
        ]
    if request.add_conference:
        body["isOnlineMeeting"] = True
        body["onlineMeetingProvider"] = "teamsForBusiness"
    return body


class OutlookCalendarAdapter(ProviderAdapter):
    provider = Provider.OUTLOOK_CALENDAR.value

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        tenant: str = "common",
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.tenant = tenant
        self.client = httpx.Client(timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.BaseTransport | None = None) -> "OutlookCalendarAdapter":
        return cls(
            client_id=settings.microsoft_client_id,
            client_secret=settings.microsoft_client_secret,
            redirect_uri=settings.microsoft_redirect_uri,
            tenant=settings.microsoft_tenant,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
        )

    @property
    def oauth_config(self) -> OAuthConfig:
        return OAuthConfig(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            authorize_url=f"{LOGIN_URL}/{self.tenant}/oauth2/v2.0/authorize",
            token_url=f"{LOGIN_URL}/{self.tenant}/oauth2/v2.0/token",
            scopes=SCOPES,
        )

    def _token_request(self, data: dict, integration: Integration | None = None) -> dict:
        """POST to the token endpoint; OAuth error payloads are returned, not raised."""
        context = {"integration_id": integration.id if integration else None, "provider": self.provider}
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scope": " ".join(SCOPES),
            **data,
        }
        try:
            response = self.client.post(self.oauth_config.token_url, data=form)
        except httpx.RequestError as e:
            raise ProviderUnavailableError(f"Microsoft token endpoint unreachable: {e}", **context) from e

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderUnavailableError(
                f"Microsoft token endpoint unavailable ({response.status_code})", **context
            )
        try:
            return response.json()
        except ValueError:
            return {"error": "invalid_response", "error_description": response.text[:200]}

    def exchange_code(self, code: str) -> dict:
        return self._token_request(
            {"grant_type": "authorization_code", "code": code, "redirect_uri": self.redirect_uri}
        )

    def refresh_token(self, integration: Integration) -> dict:
        return self._token_request(
            {"grant_type": "refresh_token", "refresh_token": integration.refresh_token},
            integration,
        )

    def _graph(
        self,
        method: str,
        url: str,
        access_token: str,
        integration: Integration | None = None,
        endpoint: str = "default",
        **kwargs,
    ) -> dict:
        context = {
            "integration_id": integration.id if integration else None,
            "provider": self.provider,
            "endpoint": endpoint,
        }
        if not url.startswith("http"):
            url = f"{GRAPH_URL}{url}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }
        try:
            response = self.client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            raise ProviderUnavailableError(f"Microsoft Graph unreachable: {e}", **context) from e

        if response.status_code == 401:
            raise AuthError("Microsoft Graph rejected the access token", **context)
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Microsoft Graph unavailable ({response.status_code})", **context
            )
        if response.status_code >= 400:
            logger.error(f"Graph API error {response.status_code}: {response.text}")
            raise ProviderRejectedError(
                f"Microsoft Graph rejected the request ({response.status_code})", **context
            )
        if not response.content:
            return {}
        return response.json()

    def get_user_info(self, access_token: str) -> dict:
        me = self._graph("GET", "/me", access_token)
        return {"id": me.get("id"), "email": me.get("mail") or me.get("userPrincipalName")}

    def _paged(self, url: str, integration: Integration, endpoint: str, params: dict | None = None) -> list[dict]:
        """Collect ``value`` items across ``@odata.nextLink`` pages."""
        items = []
        while url:
            data = self._graph("GET", url, integration.access_token, integration, endpoint, params=params)
            items.extend(data.get("value", []))
            url = data.get("@odata.nextLink")
            params = None  # nextLink already carries the query
        return items

    def list_calendars(self, integration: Integration) -> list[CalendarDescriptor]:
        return [calendar_from_graph(item) for item in self._paged("/me/calendars", integration, "default")]

    def fetch_events(
        self,
        integration: Integration,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[RemoteEvent]:
        items = self._paged(
            f"/me/calendars/{calendar_id}/calendarView",
            integration,
            "sync",
            params={
                "startDateTime": to_rfc3339(start),
                "endDateTime": to_rfc3339(end),
                "$top": PAGE_SIZE,
            },
        )
        events = []
        for item in items:
            event = remote_event_from_graph(item)
            if event is None:
                raise ProviderRejectedError(
                    f"Outlook returned event {item.get('id')} without start/end",
                    integration_id=integration.id,
                    provider=self.provider,
                    endpoint="sync",
                )
            events.append(event)
        return events

    def create_event(self, integration: Integration, request: EventRequest) -> EventDescriptor:
        path = "/me/events" if request.calendar_id == "primary" else f"/me/calendars/{request.calendar_id}/events"
        created = self._graph(
            "POST",
            path,
            integration.access_token,
            integration,
            "create",
            json=build_graph_event_body(request),
        )
        online_meeting = created.get("onlineMeeting") or {}
        return EventDescriptor(
            id=created["id"],
            calendar_id=request.calendar_id,
            html_link=created.get("webLink"),
            meet_link=online_meeting.get("joinUrl"),
            conference_data=online_meeting,
            raw=created,
        )

    def delete_event(self, integration: Integration, calendar_id: str, event_id: str) -> None:
        path = f"/me/events/{event_id}" if calendar_id == "primary" else f"/me/calendars/{calendar_id}/events/{event_id}"
        self._graph("DELETE", path, integration.access_token, integration, "delete")
