"""Zoom client: scheduled meetings stand in for calendar events."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode

import httpx

from calsync.models.calendar_integration import CalendarProvider
from calsync.services.calendar_backend import (
    CalendarEventPayload,
    CalendarInfo,
    EventRef,
    ProviderProfile,
    RemoteEvent,
    Transparency,
)
from calsync.services.conflict_service import overlaps
from calsync.services.oauth_client import OAuthProviderClient

logger = logging.getLogger(__name__)

ZOOM_AUTH_URL = "https://zoom.us/oauth/authorize"
ZOOM_TOKEN_URL = "https://zoom.us/oauth/token"
ZOOM_API_URL = "https://api.zoom.us/v2"
ZOOM_SCOPES = "meeting:write meeting:read user:read calendar:read calendar:write"
ZOOM_CALENDAR_ID = "zoom-meetings"

SCHEDULED_MEETING = 2


class ZoomClient(OAuthProviderClient):
    provider = CalendarProvider.ZOOM
    token_url = ZOOM_TOKEN_URL
    default_integration_name = "Zoom"

    def build_authorization_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self._settings.zoom_client_id,
            "redirect_uri": self._settings.zoom_redirect_uri,
            "scope": ZOOM_SCOPES,
            "state": state,
        }
        return f"{ZOOM_AUTH_URL}?{urlencode(params)}"

    def _token_request(self, grant: dict[str, str]) -> tuple[dict[str, str], httpx.BasicAuth | None]:
        data = dict(grant)
        if grant["grant_type"] == "authorization_code":
            data["redirect_uri"] = self._settings.zoom_redirect_uri
        auth = httpx.BasicAuth(self._settings.zoom_client_id, self._settings.zoom_client_secret.get_secret_value())
        return data, auth

    async def fetch_profile(self, access_token: str) -> ProviderProfile:
        resp = await self._request("GET", f"{ZOOM_API_URL}/users/me", access_token)
        user = resp.json()
        name = " ".join(p for p in (user.get("first_name"), user.get("last_name")) if p) or None
        return ProviderProfile(account_id=str(user["id"]), email=user.get("email"), name=name)

    async def list_calendars(self, access_token: str) -> list[CalendarInfo]:
        return [CalendarInfo(id=ZOOM_CALENDAR_ID, name="Zoom Meetings", primary=True)]

    async def list_events(
        self, auth: str, calendar_id: str | None, start: datetime, end: datetime
    ) -> list[RemoteEvent]:
        params: dict[str, Any] = {"type": "upcoming", "page_size": 300}
        events: list[RemoteEvent] = []
        while True:
            resp = await self._request("GET", f"{ZOOM_API_URL}/users/me/meetings", auth, params=params)
            data = resp.json()
            for meeting in data.get("meetings", []):
                if not meeting.get("start_time"):
                    # Recurring meetings with no fixed time
                    continue
                meeting_start = datetime.fromisoformat(meeting["start_time"].replace("Z", "+00:00"))
                meeting_end = meeting_start + timedelta(minutes=int(meeting.get("duration") or 0))
                if not overlaps(start, end, meeting_start, meeting_end):
                    continue
                events.append(
                    RemoteEvent(
                        external_id=str(meeting["id"]),
                        summary=meeting.get("topic"),
                        start=meeting_start,
                        end=meeting_end,
                        transparency=Transparency.BUSY,
                        url=meeting.get("join_url"),
                        raw=meeting,
                    )
                )
            next_token = data.get("next_page_token")
            if not next_token:
                return events
            params = {**params, "next_page_token": next_token}

    @staticmethod
    def _meeting_body(payload: CalendarEventPayload) -> dict[str, Any]:
        return {
            "topic": payload.summary,
            "type": SCHEDULED_MEETING,
            "start_time": payload.start.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "duration": max(payload.duration_minutes, 1),
            "timezone": payload.timezone,
            "agenda": (payload.description or "")[:2000],
            "settings": {"join_before_host": False, "waiting_room": True},
        }

    async def create_event(self, auth: str, calendar_id: str | None, payload: CalendarEventPayload) -> EventRef:
        resp = await self._request(
            "POST", f"{ZOOM_API_URL}/users/me/meetings", auth, json_body=self._meeting_body(payload)
        )
        meeting = resp.json()
        return EventRef(external_id=str(meeting["id"]), url=meeting.get("join_url"))

    async def update_event(
        self, auth: str, calendar_id: str | None, ref: EventRef, payload: CalendarEventPayload
    ) -> EventRef:
        # PATCH returns 204 with no body
        await self._request(
            "PATCH", f"{ZOOM_API_URL}/meetings/{ref.external_id}", auth, json_body=self._meeting_body(payload)
        )
        return EventRef(external_id=ref.external_id, url=ref.url)

    async def delete_event(self, auth: str, calendar_id: str | None, ref: EventRef) -> None:
        await self._request("DELETE", f"{ZOOM_API_URL}/meetings/{ref.external_id}", auth, allow_not_found=True)
