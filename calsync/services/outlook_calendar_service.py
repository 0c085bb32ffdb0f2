"""Microsoft Outlook calendar client over the Graph REST API."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import quote, urlencode
from zoneinfo import ZoneInfo

import httpx

from calsync.config import Settings
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

MICROSOFT_LOGIN_URL = "https://login.microsoftonline.com"
GRAPH_API_URL = "https://graph.microsoft.com/v1.0"
OUTLOOK_SCOPES = ["Calendars.ReadWrite", "User.Read", "offline_access"]
SUBSCRIPTION_LIFETIME = timedelta(days=3)
UTC_PREFER_HEADER = {"Prefer": 'outlook.timezone="UTC"'}


def parse_graph_time(value: dict[str, Any]) -> datetime:
    """Parse a Graph ``dateTimeTimeZone``; Graph emits 7 fractional digits."""
    raw = value["dateTime"].rstrip("Z")
    if "." in raw:
        base, fraction = raw.split(".", 1)
        raw = f"{base}.{fraction[:6]}"
    dt = datetime.fromisoformat(raw)
    tz_name = value.get("timeZone") or "UTC"
    try:
        tz = ZoneInfo(tz_name)
    except (KeyError, ValueError):
        # Windows zone names are not IANA; calendarView is requested in UTC anyway
        tz = timezone.utc
    return dt.replace(tzinfo=tz)


def _graph_time(dt: datetime, tz_name: str) -> dict[str, str]:
    local = dt.astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)
    return {"dateTime": local.isoformat(), "timeZone": tz_name}


class OutlookCalendarClient(OAuthProviderClient):
    provider = CalendarProvider.OUTLOOK
    default_integration_name = "Outlook Calendar"

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        super().__init__(settings, http_client)
        tenant = settings.microsoft_tenant_id or "common"
        self._authority = f"{MICROSOFT_LOGIN_URL}/{tenant}/oauth2/v2.0"
        self.token_url = f"{self._authority}/token"

    def build_authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._settings.microsoft_client_id,
            "response_type": "code",
            "redirect_uri": self._settings.microsoft_redirect_uri,
            "response_mode": "query",
            "scope": " ".join(OUTLOOK_SCOPES),
            "state": state,
            "prompt": "consent",
        }
        return f"{self._authority}/authorize?{urlencode(params)}"

    def _token_request(self, grant: dict[str, str]) -> tuple[dict[str, str], httpx.BasicAuth | None]:
        data = {
            **grant,
            "client_id": self._settings.microsoft_client_id,
            "client_secret": self._settings.microsoft_client_secret.get_secret_value(),
            "scope": " ".join(OUTLOOK_SCOPES),
        }
        if grant["grant_type"] == "authorization_code":
            data["redirect_uri"] = self._settings.microsoft_redirect_uri
        return data, None

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        resp = await self._request("GET", f"{GRAPH_API_URL}/me", access_token)
        me = resp.json()
        return ProviderProfile(
            account_id=me["id"],
            email=me.get("mail") or me.get("userPrincipalName"),
            name=me.get("displayName"),
        )

    async def list_calendars(self, access_token: str) -> list[CalendarInfo]:
        resp = await self._request("GET", f"{GRAPH_API_URL}/me/calendars", access_token)
        return [
            CalendarInfo(
                id=item["id"],
                name=item.get("name", item["id"]),
                color=item.get("hexColor") or None,
                primary=bool(item.get("isDefaultCalendar")),
            )
            for item in resp.json().get("value", [])
        ]

    @staticmethod
    def _events_path(calendar_id: str | None) -> str:
        if calendar_id:
            return f"{GRAPH_API_URL}/me/calendars/{quote(calendar_id, safe='')}"
        return f"{GRAPH_API_URL}/me"

    async def list_events(
        self, auth: str, calendar_id: str | None, start: datetime, end: datetime
    ) -> list[RemoteEvent]:
        url: str | None = f"{self._events_path(calendar_id)}/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": start.astimezone(timezone.utc).isoformat(),
            "endDateTime": end.astimezone(timezone.utc).isoformat(),
            "$top": 250,
            "$select": "id,subject,start,end,showAs,isCancelled,webLink",
        }
        events: list[RemoteEvent] = []
        while url:
            resp = await self._request("GET", url, auth, params=params, headers=UTC_PREFER_HEADER)
            data = resp.json()
            for item in data.get("value", []):
                if item.get("isCancelled") or item.get("showAs") == "free":
                    continue
                events.append(
                    RemoteEvent(
                        external_id=item["id"],
                        summary=item.get("subject"),
                        start=parse_graph_time(item["start"]),
                        end=parse_graph_time(item["end"]),
                        transparency=Transparency.BUSY,
                        etag=item.get("@odata.etag"),
                        url=item.get("webLink"),
                        raw=item,
                    )
                )
            # nextLink already carries the query
            url, params = data.get("@odata.nextLink"), None
        return events

    @staticmethod
    def _event_body(payload: CalendarEventPayload) -> dict[str, Any]:
        body: dict[str, Any] = {
            "subject": payload.summary,
            "body": {"contentType": "text", "content": payload.description or ""},
            "start": _graph_time(payload.start, payload.timezone),
            "end": _graph_time(payload.end, payload.timezone),
            "showAs": "free" if payload.transparency == Transparency.FREE else "busy",
        }
        if payload.location:
            body["location"] = {"displayName": payload.location}
        if payload.attendees:
            body["attendees"] = [
                {"emailAddress": {"address": a.email, "name": a.name or a.email}, "type": "required"}
                for a in payload.attendees
            ]
        if payload.categories:
            body["categories"] = payload.categories
        return body

    async def create_event(self, auth: str, calendar_id: str | None, payload: CalendarEventPayload) -> EventRef:
        resp = await self._request(
            "POST", f"{self._events_path(calendar_id)}/events", auth, json_body=self._event_body(payload)
        )
        created = resp.json()
        return EventRef(external_id=created["id"], url=created.get("webLink"), etag=created.get("@odata.etag"))

    async def update_event(
        self, auth: str, calendar_id: str | None, ref: EventRef, payload: CalendarEventPayload
    ) -> EventRef:
        headers = {"If-Match": ref.etag} if ref.etag else None
        resp = await self._request(
            "PATCH",
            f"{GRAPH_API_URL}/me/events/{quote(ref.external_id, safe='')}",
            auth,
            json_body=self._event_body(payload),
            headers=headers,
        )
        updated = resp.json()
        return EventRef(
            external_id=updated.get("id", ref.external_id),
            url=updated.get("webLink", ref.url),
            etag=updated.get("@odata.etag"),
        )

    async def delete_event(self, auth: str, calendar_id: str | None, ref: EventRef) -> None:
        await self._request(
            "DELETE",
            f"{GRAPH_API_URL}/me/events/{quote(ref.external_id, safe='')}",
            auth,
            allow_not_found=True,
        )

    # --- Change notifications ---

    async def create_subscription(
        self, access_token: str, calendar_id: str | None, notification_url: str, client_state: str
    ) -> dict[str, Any]:
        resource = f"/me/calendars/{calendar_id}/events" if calendar_id else "/me/events"
        expires = datetime.now(timezone.utc) + SUBSCRIPTION_LIFETIME
        resp = await self._request(
            "POST",
            f"{GRAPH_API_URL}/subscriptions",
            access_token,
            json_body={
                "changeType": "created,updated,deleted",
                "notificationUrl": notification_url,
                "resource": resource,
                "expirationDateTime": expires.strftime("%Y-%m-%dT%H:%M:%S.0000000Z"),
                "clientState": client_state,
            },
        )
        data = resp.json()
        return {"id": data["id"], "resource": data.get("resource"), "expiration": expires}

    async def renew_subscription(self, access_token: str, subscription_id: str) -> datetime:
        expires = datetime.now(timezone.utc) + SUBSCRIPTION_LIFETIME
        await self._request(
            "PATCH",
            f"{GRAPH_API_URL}/subscriptions/{subscription_id}",
            access_token,
            json_body={"expirationDateTime": expires.strftime("%Y-%m-%dT%H:%M:%S.0000000Z")},
        )
        return expires

    async def delete_subscription(self, access_token: str, subscription_id: str) -> None:
        await self._request(
            "DELETE", f"{GRAPH_API_URL}/subscriptions/{subscription_id}", access_token, allow_not_found=True
        )
