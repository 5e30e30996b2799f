"""Google Calendar adapter.

OAuth runs through google-auth-oauthlib's ``Flow`` and google-auth's
``Credentials``; API calls go through googleapiclient over an
``httplib2.Http`` with a bounded timeout. Payload mapping lives in plain
module functions so it can be exercised on recorded dicts.
"""
import functools
import logging
import os
import uuid
from datetime import datetime

import httplib2
from dateutil import parser as date_parser
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from requests.exceptions import RequestException

from calsync.core.config import Settings
from calsync.core.timeutil import to_rfc3339, to_utc, utcnow
from calsync.errors import (
    AuthError,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from calsync.integrations.base import (
    OWN_EVENT_MARKER,
    CalendarDescriptor,
    EventDescriptor,
    EventRequest,
    OAuthConfig,
    ProviderAdapter,
    RemoteEvent,
)
from calsync.models import Integration, Provider

logger = logging.getLogger(__name__)

# Google may grant a superset of the requested scopes (include_granted_scopes).
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"

SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/userinfo.email",
]

PAGE_SIZE = 250


def parse_google_time(value: dict | None) -> tuple[datetime | None, bool]:
    """Parse a Google ``start``/``end`` object into (UTC datetime, is_all_day)."""
    if not value:
        return None, False
    if value.get("dateTime"):
        return to_utc(date_parser.isoparse(value["dateTime"])), False
    if value.get("date"):
        return to_utc(datetime.strptime(value["date"], "%Y-%m-%d")), True
    return None, False


def is_own_google_event(item: dict) -> bool:
    private = (item.get("extendedProperties") or {}).get("private") or {}
    return private.get(OWN_EVENT_MARKER) == "true"


def remote_event_from_google(item: dict) -> RemoteEvent | None:
    """Map a Google event resource. Returns None for events without usable times."""
    start, is_all_day = parse_google_time(item.get("start"))
    end, _ = parse_google_time(item.get("end"))
    status = item.get("status", "confirmed")

    if status != "cancelled" and (start is None or end is None):
        logger.warning(f"Google event {item.get('id')} has no start/end")
        return None

    organizer = item.get("organizer") or {}
    return RemoteEvent(
        id=item["id"],
        title=item.get("summary") or "Untitled Event",
        description=item.get("description"),
        location=item.get("location"),
        start=start,
        end=end,
        is_all_day=is_all_day,
        status=status,
        transparency=item.get("transparency", "opaque"),
        organizer_email=organizer.get("email"),
        is_organizer=bool(organizer.get("self", False)),
        html_link=item.get("htmlLink"),
        etag=item.get("etag"),
        is_own=is_own_google_event(item),
    )


def calendar_from_google(item: dict) -> CalendarDescriptor:
    return CalendarDescriptor(
        id=item["id"],
        name=item.get("summaryOverride") or item.get("summary") or item["id"],
        primary=bool(item.get("primary", False)),
        selected=bool(item.get("selected", False)),
        access_role=item.get("accessRole"),
        time_zone=item.get("timeZone"),
    )


def extract_meet_link(item: dict) -> str | None:
    """Join URL of a Google Meet conference attached to an event, if any."""
    for entry_point in (item.get("conferenceData") or {}).get("entryPoints", []):
        if entry_point.get("entryPointType") == "video" and entry_point.get("uri"):
            return entry_point["uri"]
    return item.get("hangoutLink")


def build_google_event_body(request: EventRequest) -> dict:
    """Event resource for ``events.insert``, marked as created by us."""
    body = {
        "summary": request.title,
        "start": {"dateTime": to_rfc3339(request.start), "timeZone": request.time_zone},
        "end": {"dateTime": to_rfc3339(request.end), "timeZone": request.time_zone},
        "extendedProperties": {"private": {OWN_EVENT_MARKER: "true"}},
    }
    if request.description:
        body["description"] = request.description
    if request.location:
        body["location"] = request.location
    if request.attendees:
        body["attendees"] = [{"email": email} for email in request.attendees]
    if request.add_conference:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": uuid.uuid4().hex,
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


class GoogleCalendarAdapter(ProviderAdapter):
    provider = Provider.GOOGLE_CALENDAR.value
    scopes = SCOPES

    def __init__(self, client_id: str, client_secret: str, redirect_uri: str, timeout: float = 15.0):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleCalendarAdapter":
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            timeout=settings.provider_timeout_seconds,
        )

    @property
    def oauth_config(self) -> OAuthConfig:
        return OAuthConfig(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            authorize_url=AUTHORIZE_URL,
            token_url=TOKEN_URL,
            scopes=self.scopes,
        )

    def _flow(self) -> Flow:
        return Flow.from_client_config(
            {
                "web": {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uris": [self.redirect_uri],
                    "auth_uri": AUTHORIZE_URL,
                    "token_uri": TOKEN_URL,
                }
            },
            scopes=self.scopes,
            redirect_uri=self.redirect_uri,
        )

    def exchange_code(self, code: str) -> dict:
        try:
            token = self._flow().fetch_token(code=code, timeout=self.timeout)
        except OAuth2Error as e:
            return {"error": e.error, "error_description": e.description}
        except RequestException as e:
            raise ProviderUnavailableError(
                f"Google token endpoint unreachable: {e}", provider=self.provider
            ) from e

        scope = token.get("scope")
        return {
            "access_token": token.get("access_token"),
            "refresh_token": token.get("refresh_token"),
            "expires_in": token.get("expires_in"),
            "scope": " ".join(scope) if isinstance(scope, list) else scope,
        }

    def refresh_token(self, integration: Integration) -> dict:
        credentials = Credentials(
            token=None,
            refresh_token=integration.refresh_token,
            token_uri=TOKEN_URL,
            client_id=self.client_id,
            client_secret=self.client_secret,
        )
        try:
            credentials.refresh(functools.partial(Request(), timeout=self.timeout))
        except RefreshError as e:
            details = e.args[1] if len(e.args) > 1 and isinstance(e.args[1], dict) else {}
            return {
                "error": details.get("error", "refresh_failed"),
                "error_description": details.get("error_description", str(e)),
            }
        except TransportError as e:
            raise ProviderUnavailableError(
                f"Google token endpoint unreachable: {e}",
                integration_id=integration.id,
                provider=self.provider,
            ) from e

        expires_in = None
        if credentials.expiry:
            expires_in = max(0, int((to_utc(credentials.expiry) - utcnow()).total_seconds()))
        return {
            "access_token": credentials.token,
            "expires_in": expires_in,
            "refresh_token": credentials.refresh_token,
        }

    def _service(self, api: str, version: str, access_token: str):
        http = AuthorizedHttp(Credentials(token=access_token), http=httplib2.Http(timeout=self.timeout))
        return build(api, version, http=http, cache_discovery=False)

    def _execute(self, request, integration: Integration | None = None, endpoint: str = "default") -> dict:
        """Run an API request, mapping failures onto runtime errors."""
        context = {
            "integration_id": integration.id if integration else None,
            "provider": self.provider,
            "endpoint": endpoint,
        }
        try:
            return request.execute()
        except HttpError as e:
            status = e.resp.status
            if status == 401:
                raise AuthError(f"Google rejected the access token: {e}", **context) from e
            if status == 429 or status >= 500:
                raise ProviderUnavailableError(f"Google API unavailable ({status}): {e}", **context) from e
            raise ProviderRejectedError(f"Google API rejected the request ({status}): {e}", **context) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise ProviderUnavailableError(f"Google API unreachable: {e}", **context) from e

    def get_user_info(self, access_token: str) -> dict:
        info = self._execute(self._service("oauth2", "v2", access_token).userinfo().get())
        return {"id": info.get("id"), "email": info.get("email")}

    def list_calendars(self, integration: Integration) -> list[CalendarDescriptor]:
        service = self._service("calendar", "v3", integration.access_token)
        calendars = []
        page_token = None
        while True:
            result = self._execute(
                service.calendarList().list(pageToken=page_token), integration
            )
            calendars.extend(calendar_from_google(item) for item in result.get("items", []))
            page_token = result.get("nextPageToken")
            if not page_token:
                return calendars

    def fetch_events(
        self,
        integration: Integration,
        calendar_id: str,
        start: datetime,
        end: datetime,
    ) -> list[RemoteEvent]:
        service = self._service("calendar", "v3", integration.access_token)
        events = []
        page_token = None
        while True:
            result = self._execute(
                service.events().list(
                    calendarId=calendar_id,
                    timeMin=to_rfc3339(start),
                    timeMax=to_rfc3339(end),
                    showDeleted=True,
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=PAGE_SIZE,
                    pageToken=page_token,
                ),
                integration,
                endpoint="sync",
            )
            for item in result.get("items", []):
                event = remote_event_from_google(item)
                if event is None:
                    raise ProviderRejectedError(
                        f"Google returned event {item.get('id')} without start/end",
                        integration_id=integration.id,
                        provider=self.provider,
                        endpoint="sync",
                    )
                events.append(event)

            page_token = result.get("nextPageToken")
            if not page_token:
                return events

    def create_event(self, integration: Integration, request: EventRequest) -> EventDescriptor:
        service = self._service("calendar", "v3", integration.access_token)
        created = self._execute(
            service.events().insert(
                calendarId=request.calendar_id,
                body=build_google_event_body(request),
                conferenceDataVersion=1 if request.add_conference else 0,
                sendUpdates="all" if request.attendees else "none",
            ),
            integration,
            endpoint="create",
        )
        return EventDescriptor(
            id=created["id"],
            calendar_id=request.calendar_id,
            html_link=created.get("htmlLink"),
            meet_link=extract_meet_link(created),
            conference_data=created.get("conferenceData") or {},
            raw=created,
        )


    def delete_event(self, integration: Integration, calendar_id: str, event_id: str) -> None:
        service = self._service("calendar", "v3", integration.access_token)
        self._execute(
            service.events().delete(calendarId=calendar_id, eventId=event_id, sendUpdates="all"),
            integration,
            endpoint="delete",
        )
