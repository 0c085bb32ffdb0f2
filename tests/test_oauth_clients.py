"""Tests for OAuth state handling and the Google, Outlook and Zoom REST clients."""

import base64
import json
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import httplib2
import httpx
import pytest
from googleapiclient.errors import HttpError

from calsync.errors import (
    AuthExpiredError,
    InvalidStateError,
    OAuthExchangeError,
    OAuthRefreshError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from calsync.services.calendar_backend import CalendarEventPayload, EventRef
from calsync.services.google_calendar_service import GoogleCalendarClient, parse_google_time
from calsync.services.oauth_client import OAuthState, decode_state, encode_state
from calsync.services.outlook_calendar_service import OutlookCalendarClient, parse_graph_time
from calsync.services.zoom_service import ZoomClient

START = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestState:
    def test_roundtrip(self):
        state = OAuthState(user_id=uuid.uuid4(), integration_name="Work calendar", provider="GOOGLE")
        assert decode_state(encode_state(state)) == state

    def test_wire_format_is_base64_json(self):
        user_id = uuid.uuid4()
        raw = encode_state(OAuthState(user_id=user_id, integration_name="Work"))
        assert json.loads(base64.b64decode(raw)) == {"userId": str(user_id), "integrationName": "Work"}

    @pytest.mark.parametrize(
        "raw",
        [
            "not base64 at all!",
            base64.b64encode(b"not json").decode(),
            base64.b64encode(b'["a", "list"]').decode(),
            base64.b64encode(json.dumps({"integrationName": "x"}).encode()).decode(),
            base64.b64encode(json.dumps({"userId": "not-a-uuid", "integrationName": "x"}).encode()).decode(),
            base64.b64encode(json.dumps({"userId": str(uuid.uuid4()), "integrationName": ""}).encode()).decode(),
        ],
    )
    def test_rejects_malformed_state(self, raw):
        with pytest.raises(InvalidStateError):
            decode_state(raw)


class TestAuthorizationUrls:
    def test_google_requests_offline_access(self, settings):
        url = GoogleCalendarClient(settings).build_authorization_url("abc")
        query = parse_qs(urlparse(url).query)
        assert query["access_type"] == ["offline"]
        assert query["prompt"] == ["consent"]
        assert query["state"] == ["abc"]
        assert "https://www.googleapis.com/auth/calendar" in query["scope"][0].split()

    def test_outlook_uses_tenant_authority(self, settings):
        url = OutlookCalendarClient(settings).build_authorization_url("abc")
        assert url.startswith("https://login.microsoftonline.com/common/oauth2/v2.0/authorize?")
        assert "offline_access" in parse_qs(urlparse(url).query)["scope"][0].split()


class TestTokenEndpoint:
    @pytest.mark.asyncio
    async def test_exchange_code(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            form = parse_qs(request.content.decode())
            assert form["grant_type"] == ["authorization_code"]
            assert form["code"] == ["the-code"]
            assert form["redirect_uri"] == [settings.google_redirect_uri]
            return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600})

        tokens = await GoogleCalendarClient(settings, http_client=mock_client(handler)).exchange_code("the-code")
        assert (tokens.access_token, tokens.refresh_token, tokens.expires_in) == ("at", "rt", 3600)

    @pytest.mark.asyncio
    async def test_exchange_failure_keeps_provider_body(self, settings):
        client = GoogleCalendarClient(
            settings, http_client=mock_client(lambda r: httpx.Response(400, json={"error": "invalid_grant"}))
        )
        with pytest.raises(OAuthExchangeError) as exc_info:
            await client.exchange_code("used-code")
        assert "invalid_grant" in exc_info.value.provider_body

    @pytest.mark.asyncio
    async def test_refresh_rejected_is_refresh_error(self, settings):
        client = OutlookCalendarClient(
            settings, http_client=mock_client(lambda r: httpx.Response(400, json={"error": "invalid_grant"}))
        )
        with pytest.raises(OAuthRefreshError):
            await client.refresh_access_token("revoked")

    @pytest.mark.asyncio
    async def test_refresh_rate_limited_is_transient(self, settings):
        client = GoogleCalendarClient(
            settings, http_client=mock_client(lambda r: httpx.Response(429, json={"error": "rate_limit_exceeded"}))
        )
        with pytest.raises(ProviderUnavailableError):
            await client.refresh_access_token("rt")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,body",
        [
            (401, {"error": "invalid_client"}),
            (400, {"error": "invalid_request"}),
            (403, {"error": "invalid_grant"}),
            (400, None),
        ],
    )
    async def test_refresh_other_client_errors_do_not_revoke(self, settings, status, body):
        def handler(request):
            if body is None:
                return httpx.Response(status, text="<html>Bad Request</html>")
            return httpx.Response(status, json=body)

        client = GoogleCalendarClient(settings, http_client=mock_client(handler))
        with pytest.raises(ProviderRequestError) as exc_info:
            await client.refresh_access_token("rt")
        assert not isinstance(exc_info.value, OAuthRefreshError)

    @pytest.mark.asyncio
    async def test_refresh_invalid_grant_on_401_is_refresh_error(self, settings):
        client = ZoomClient(
            settings, http_client=mock_client(lambda r: httpx.Response(401, json={"error": "invalid_grant"}))
        )
        with pytest.raises(OAuthRefreshError):
            await client.refresh_access_token("revoked")

    @pytest.mark.asyncio
    async def test_refresh_server_error_is_transient(self, settings):
        client = OutlookCalendarClient(settings, http_client=mock_client(lambda r: httpx.Response(503)))
        with pytest.raises(ProviderUnavailableError):
            await client.refresh_access_token("rt")

    @pytest.mark.asyncio
    async def test_refresh_keeps_refresh_token_when_not_rotated(self, settings):
        client = GoogleCalendarClient(
            settings, http_client=mock_client(lambda r: httpx.Response(200, json={"access_token": "new", "expires_in": 3599}))
        )
        tokens = await client.refresh_access_token("old-refresh")
        assert tokens.access_token == "new"
        assert tokens.refresh_token == "old-refresh"

    @pytest.mark.asyncio
    async def test_zoom_uses_basic_client_auth(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600})

        await ZoomClient(settings, http_client=mock_client(handler)).exchange_code("code")
        assert seen["auth"] == "Basic " + base64.b64encode(b"zoom-client:zoom-secret").decode()
        assert "client_secret" not in seen["form"]


class TestOutlookEvents:
    @pytest.mark.asyncio
    async def test_list_events_filters_free_and_cancelled(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Prefer"] == 'outlook.timezone="UTC"'
            assert request.headers["Authorization"] == "Bearer token"
            return httpx.Response(
                200,
                json={
                    "value": [
                        {
                            "id": "busy",
                            "subject": "Standup",
                            "showAs": "busy",
                            "start": {"dateTime": "2030-01-07T09:00:00.0000000", "timeZone": "UTC"},
                            "end": {"dateTime": "2030-01-07T09:30:00.0000000", "timeZone": "UTC"},
                        },
                        {
                            "id": "free",
                            "showAs": "free",
                            "start": {"dateTime": "2030-01-07T12:00:00.0000000", "timeZone": "UTC"},
                            "end": {"dateTime": "2030-01-07T13:00:00.0000000", "timeZone": "UTC"},
                        },
                        {
                            "id": "cancelled",
                            "isCancelled": True,
                            "showAs": "busy",
                            "start": {"dateTime": "2030-01-07T14:00:00.0000000", "timeZone": "UTC"},
                            "end": {"dateTime": "2030-01-07T15:00:00.0000000", "timeZone": "UTC"},
                        },
                    ]
                },
            )

        client = OutlookCalendarClient(settings, http_client=mock_client(handler))
        events = await client.list_events("token", None, START, START + timedelta(days=1))
        assert [e.external_id for e in events] == ["busy"]
        assert events[0].start == START

    @pytest.mark.asyncio
    async def test_follows_next_link(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            if len(calls) == 1:
                return httpx.Response(200, json={"value": [], "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/calendarView?page=2"})
            return httpx.Response(200, json={"value": []})

        await OutlookCalendarClient(settings, http_client=mock_client(handler)).list_events("t", None, START, START)
        assert calls[1] == "https://graph.microsoft.com/v1.0/me/calendarView?page=2"

    @pytest.mark.asyncio
    async def test_unauthorized_is_auth_expired(self, settings):
        client = OutlookCalendarClient(settings, http_client=mock_client(lambda r: httpx.Response(401)))
        with pytest.raises(AuthExpiredError):
            await client.fetch_profile("expired")

    @pytest.mark.asyncio
    async def test_bad_request_is_request_error(self, settings):
        client = OutlookCalendarClient(settings, http_client=mock_client(lambda r: httpx.Response(400, text="bad")))
        payload = CalendarEventPayload(summary="x", start=START, end=START + timedelta(hours=1))
        with pytest.raises(ProviderRequestError):
            await client.create_event("token", None, payload)

    @pytest.mark.asyncio
    async def test_delete_missing_event_is_ok(self, settings):
        client = OutlookCalendarClient(settings, http_client=mock_client(lambda r: httpx.Response(404)))
        await client.delete_event("token", None, EventRef(external_id="gone"))

    def test_graph_time_truncates_seven_digit_fraction(self):
        parsed = parse_graph_time({"dateTime": "2030-01-07T09:00:00.1234567", "timeZone": "UTC"})
        assert parsed == datetime(2030, 1, 7, 9, 0, 0, 123456, tzinfo=timezone.utc)


class TestGoogleEvents:
    @pytest.mark.asyncio
    async def test_list_events_skips_transparent(self, settings):
        service = MagicMock()
        service.events.return_value.list.return_value.execute.return_value = {
            "timeZone": "UTC",
            "items": [
                {"id": "a", "summary": "Busy", "start": {"dateTime": "2030-01-07T09:00:00Z"}, "end": {"dateTime": "2030-01-07T10:00:00Z"}},
                {"id": "b", "transparency": "transparent", "start": {"dateTime": "2030-01-07T11:00:00Z"}, "end": {"dateTime": "2030-01-07T12:00:00Z"}},
                {"id": "c", "status": "cancelled", "start": {"dateTime": "2030-01-07T13:00:00Z"}, "end": {"dateTime": "2030-01-07T14:00:00Z"}},
            ],
        }
        client = GoogleCalendarClient(settings, service_factory=lambda token: service)
        events = await client.list_events("token", "primary", START, START + timedelta(days=1))
        assert [e.external_id for e in events] == ["a"]
        _, kwargs = service.events.return_value.list.call_args
        assert kwargs["singleEvents"] is True
        assert kwargs["orderBy"] == "startTime"

    @pytest.mark.asyncio
    async def test_http_error_maps_to_taxonomy(self, settings):
        service = MagicMock()
        service.events.return_value.insert.return_value.execute.side_effect = HttpError(
            httplib2.Response({"status": "401"}), b'{"error": {"message": "Invalid Credentials"}}'
        )
        client = GoogleCalendarClient(settings, service_factory=lambda token: service)
        payload = CalendarEventPayload(summary="x", start=START, end=START + timedelta(hours=1))
        with pytest.raises(AuthExpiredError):
            await client.create_event("token", "primary", payload)

    @pytest.mark.asyncio
    async def test_create_sends_updates_to_attendees(self, settings):
        service = MagicMock()
        service.events.return_value.insert.return_value.execute.return_value = {
            "id": "evt-1",
            "htmlLink": "https://calendar.google.com/evt-1",
            "etag": '"1"',
        }
        client = GoogleCalendarClient(settings, service_factory=lambda token: service)
        payload = CalendarEventPayload(summary="x", start=START, end=START + timedelta(hours=1))
        ref = await client.create_event("token", "primary", payload)
        assert ref.external_id == "evt-1"
        _, kwargs = service.events.return_value.insert.call_args
        assert kwargs["sendUpdates"] == "all"
        assert kwargs["body"]["transparency"] == "opaque"

    def test_all_day_time_is_local_midnight(self):
        parsed = parse_google_time({"date": "2030-01-07"}, "Europe/Berlin")
        assert parsed.utcoffset() == timedelta(hours=1)
        assert (parsed.hour, parsed.minute) == (0, 0)


class TestZoom:
    @pytest.mark.asyncio
    async def test_list_events_only_overlapping_meetings(self, settings):
        body = {
            "meetings": [
                {"id": 1, "topic": "Inside", "start_time": "2030-01-07T09:30:00Z", "duration": 30},
                {"id": 2, "topic": "Outside", "start_time": "2030-01-09T09:30:00Z", "duration": 30},
                {"id": 3, "topic": "Recurring, no fixed time"},
            ]
        }
        client = ZoomClient(settings, http_client=mock_client(lambda r: httpx.Response(200, json=body)))
        events = await client.list_events("token", "zoom-meetings", START, START + timedelta(days=1))
        assert [e.summary for e in events] == ["Inside"]
