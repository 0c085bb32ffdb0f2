"""Google Calendar client: OAuth via httpx, Calendar API v3 via googleapiclient."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import httplib2
import httpx
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calsync.config import Settings
from calsync.errors import ProviderUnavailableError
from calsync.metrics import provider_calls_total
from calsync.models.calendar_integration import CalendarProvider
from calsync.services.calendar_backend import (
    CalendarEventPayload,
    CalendarInfo,
    EventRef,
    ProviderProfile,
    RemoteEvent,
    Transparency,
)
from calsync.services.oauth_client import OAuthProviderClient

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]


def parse_google_time(value: dict[str, Any], fallback_tz: str = "UTC") -> datetime:
    """Convert a Google ``{dateTime}`` or all-day ``{date}`` object into an aware datetime."""
    if "dateTime" in value:
        dt = datetime.fromisoformat(value["dateTime"].replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=ZoneInfo(value.get("timeZone") or fallback_tz))
        return dt
    day = datetime.fromisoformat(value["date"])
    return day.replace(tzinfo=ZoneInfo(value.get("timeZone") or fallback_tz))


class GoogleCalendarClient(OAuthProviderClient):
    provider = CalendarProvider.GOOGLE
    token_url = GOOGLE_TOKEN_URL
    default_integration_name = "Google Calendar"

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
        service_factory: Callable[[str], Any] | None = None,
    ) -> None:
        super().__init__(settings, http_client)
        self._service_factory = service_factory or self._build_service

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._settings.google_client_id,
            "redirect_uri": self._settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _token_request(self, grant: dict[str, str]) -> tuple[dict[str, str], httpx.BasicAuth | None]:
        data = {
            **grant,
            "client_id": self._settings.google_client_id,
            "client_secret": self._settings.google_client_secret.get_secret_value(),
        }
        if grant["grant_type"] == "authorization_code":
            data["redirect_uri"] = self._settings.google_redirect_uri
        return data, None

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        resp = await self._request("GET", GOOGLE_USERINFO_URL, access_token)
        info = resp.json()
        return ProviderProfile(account_id=info["id"], email=info.get("email"), name=info.get("name"))

    # --- Calendar API ---

    def _build_service(self, access_token: str):
        creds = Credentials(token=access_token)
        http = AuthorizedHttp(creds, http=httplib2.Http(timeout=self._timeout))
        return build("calendar", "v3", http=http, cache_discovery=False)

    async def _execute(self, access_token: str, call: Callable[[Any], Any], *, allow_not_found: bool = False) -> Any:
        """Run a blocking googleapiclient request in the default executor."""
        loop = asyncio.get_running_loop()

        def _run():
            service = self._service_factory(access_token)
            return call(service).execute()

        try:
            result = await loop.run_in_executor(None, _run)
        except HttpError as e:
            body = e.content.decode("utf-8", errors="replace") if isinstance(e.content, bytes) else str(e.content)
            self._raise_for_status(int(e.resp.status), body, "API", allow_not_found=allow_not_found)
            return None
        except (httplib2.HttpLib2Error, OSError) as e:
            provider_calls_total.labels(provider=self.provider_label, outcome="unavailable").inc()
            raise ProviderUnavailableError(f"GOOGLE API call failed: {type(e).__name__}") from e
        provider_calls_total.labels(provider=self.provider_label, outcome="ok").inc()
        return result

    async def list_calendars(self, access_token: str) -> list[CalendarInfo]:
        data = await self._execute(access_token, lambda s: s.calendarList().list())
        return [
            CalendarInfo(
                id=item["id"],
                name=item.get("summary", item["id"]),
                description=item.get("description"),
                color=item.get("backgroundColor"),
                primary=bool(item.get("primary")),
                timezone=item.get("timeZone"),
            )
            for item in data.get("items", [])
        ]

    async def list_events(
        self, auth: str, calendar_id: str | None, start: datetime, end: datetime
    ) -> list[RemoteEvent]:
        calendar = calendar_id or "primary"
        events: list[RemoteEvent] = []
        page_token: str | None = None
        while True:
            data = await self._execute(
                auth,
                lambda s, token=page_token: s.events().list(
                    calendarId=calendar,
                    timeMin=start.astimezone(timezone.utc).isoformat(),
                    timeMax=end.astimezone(timezone.utc).isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=250,
                    pageToken=token,
                ),
            )
            tz = data.get("timeZone") or "UTC"
            for item in data.get("items", []):
                if item.get("status") == "cancelled" or item.get("transparency") == "transparent":
                    continue
                if "start" not in item or "end" not in item:
                    continue
                events.append(
                    RemoteEvent(
                        external_id=item["id"],
                        summary=item.get("summary"),
                        start=parse_google_time(item["start"], tz),
                        end=parse_google_time(item["end"], tz),
                        transparency=Transparency.BUSY,
                        etag=item.get("etag"),
                        url=item.get("htmlLink"),
                        raw=item,
                    )
                )
            page_token = data.get("nextPageToken")
            if not page_token:
                return events

    @staticmethod
    def _event_body(payload: CalendarEventPayload) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": payload.summary,
            "start": {"dateTime": payload.start.isoformat(), "timeZone": payload.timezone},
            "end": {"dateTime": payload.end.isoformat(), "timeZone": payload.timezone},
            "transparency": "transparent" if payload.transparency == Transparency.FREE else "opaque",
            "status": payload.status.lower(),
        }
        if payload.description:
            body["description"] = payload.description
        if payload.location:
            body["location"] = payload.location
        if payload.attendees:
            body["attendees"] = [
                {"email": a.email, **({"displayName": a.name} if a.name else {})} for a in payload.attendees
            ]
        return body

    async def create_event(self, auth: str, calendar_id: str | None, payload: CalendarEventPayload) -> EventRef:
        created = await self._execute(
            auth,
            lambda s: s.events().insert(
                calendarId=calendar_id or "primary", body=self._event_body(payload), sendUpdates="all"
            ),
        )
        return EventRef(external_id=created["id"], url=created.get("htmlLink"), etag=created.get("etag"))

    async def update_event(
        self, auth: str, calendar_id: str | None, ref: EventRef, payload: CalendarEventPayload
    ) -> EventRef:
        updated = await self._execute(
            auth,
            lambda s: s.events().update(
                calendarId=calendar_id or "primary",
                eventId=ref.external_id,
                body=self._event_body(payload),
                sendUpdates="all",
            ),
        )
        return EventRef(external_id=updated["id"], url=updated.get("htmlLink"), etag=updated.get("etag"))

    async def delete_event(self, auth: str, calendar_id: str | None, ref: EventRef) -> None:
        await self._execute(
            auth,
            lambda s: s.events().delete(
                calendarId=calendar_id or "primary", eventId=ref.external_id, sendUpdates="all"
            ),
            allow_not_found=True,
        )

    # --- Push notifications ---

    async def watch_events(
        self, access_token: str, calendar_id: str | None, channel_id: str, address: str, ttl_seconds: int = 604800
    ) -> dict[str, Any]:
        """Register a web_hook channel; returns ``{resourceId, expiration}``."""
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "params": {"ttl": str(ttl_seconds)},
        }
        token = self._settings.google_channel_token.get_secret_value()
        if token:
            body["token"] = token
        response = await self._execute(
            access_token, lambda s: s.events().watch(calendarId=calendar_id or "primary", body=body)
        )
        expiration = response.get("expiration")
        expires_at = (
            datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc)
            if expiration
            else datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        )
        return {"resourceId": response.get("resourceId"), "expiration": expires_at}

    async def stop_channel(self, access_token: str, channel_id: str, resource_id: str) -> None:
        await self._execute(
            access_token,
            lambda s: s.channels().stop(body={"id": channel_id, "resourceId": resource_id}),
            allow_not_found=True,
        )
