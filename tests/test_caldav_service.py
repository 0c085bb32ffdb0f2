"""Tests for the CalDAV client against an httpx.MockTransport server."""

import base64
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from calsync.errors import CHECK_CREDENTIALS_MESSAGE, ConflictError, DiscoveryError, ProviderRequestError
from calsync.services.caldav_service import DEFAULT_CALENDAR_COLOR, CalDAVClient, parse_multistatus
from calsync.services.calendar_backend import CalDAVCredentials, CalendarEventPayload, EventRef

BASE = "https://dav.example.com"
CREDS = CalDAVCredentials(server_url=BASE, username="alice", password="s3cret")
START = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)

PRINCIPAL_RESPONSE = """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/principals/users/alice/</d:href>
    <d:propstat>
      <d:prop><c:calendar-home-set><d:href>/calendars/alice/</d:href></c:calendar-home-set></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""

CALENDARS_RESPONSE = """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:cs="http://calendarserver.org/ns/" xmlns:ic="http://apple.com/ns/ical/">
  <d:response>
    <d:href>/calendars/alice/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/work/</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection/><c:calendar/></d:resourcetype>
        <d:displayname>Work</d:displayname>
        <cs:getctag>ctag-1</cs:getctag>
        <ic:calendar-color>#FF0000</ic:calendar-color>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/home/</d:href>
    <d:propstat>
      <d:prop>
        <d:resourcetype><d:collection/><c:calendar/></d:resourcetype>
        <d:displayname>Home</d:displayname>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
    <d:propstat>
      <d:prop><ic:calendar-color/></d:prop>
      <d:status>HTTP/1.1 404 Not Found</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""

REPORT_RESPONSE = """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:response>
    <d:href>/calendars/alice/work/busy-1.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"etag-busy"</d:getetag>
        <c:calendar-data>BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:busy-1
SUMMARY:Standup
DTSTART:20300107T090000Z
DTEND:20300107T093000Z
END:VEVENT
END:VCALENDAR
</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>/calendars/alice/work/free-1.ics</d:href>
    <d:propstat>
      <d:prop>
        <d:getetag>"etag-free"</d:getetag>
        <c:calendar-data>BEGIN:VCALENDAR
VERSION:2.0
BEGIN:VEVENT
UID:free-1
SUMMARY:Lunch (free)
DTSTART:20300107T120000Z
DTEND:20300107T130000Z
TRANSP:TRANSPARENT
END:VEVENT
END:VCALENDAR
</c:calendar-data>
      </d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""


def multistatus(body: str) -> httpx.Response:
    return httpx.Response(207, text=body, headers={"Content-Type": "application/xml"})


def discovery_handler(request: httpx.Request) -> httpx.Response:
    """Server without .well-known support whose principal lives at /principals/users/alice/."""
    path = request.url.path
    if path == "/.well-known/caldav":
        return httpx.Response(404)
    if path == "/principals/users/alice/":
        return multistatus(PRINCIPAL_RESPONSE)
    if path == "/calendars/alice/" and request.headers.get("Depth") == "1":
        return multistatus(CALENDARS_RESPONSE)
    return httpx.Response(404)


def client_for(handler, settings) -> CalDAVClient:
    return CalDAVClient(settings, transport=httpx.MockTransport(handler))


def payload() -> CalendarEventPayload:
    return CalendarEventPayload(summary="Intro", start=START, end=START + timedelta(minutes=30), uid="booking-1@calsync")


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_fallback_principal_path(self, settings):
        calendars = await client_for(discovery_handler, settings).discover_calendars(CREDS)
        assert [c.name for c in calendars] == ["Work", "Home"]
        work, home = calendars
        assert work.url == f"{BASE}/calendars/alice/work/"
        assert work.id == "/calendars/alice/work/"
        assert work.color == "#FF0000"
        assert work.ctag == "ctag-1"
        assert home.color == DEFAULT_CALENDAR_COLOR

    @pytest.mark.asyncio
    async def test_well_known_and_fallback_agree(self, settings):
        def well_known_handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/.well-known/caldav":
                return multistatus(
                    """<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:"><d:response><d:href>/.well-known/caldav</d:href>
<d:propstat><d:prop><d:current-user-principal><d:href>/principals/users/alice/</d:href></d:current-user-principal></d:prop>
<d:status>HTTP/1.1 200 OK</d:status></d:propstat></d:response></d:multistatus>"""
                )
            return discovery_handler(request)

        via_well_known = await client_for(well_known_handler, settings).discover_calendars(CREDS)
        via_fallback = await client_for(discovery_handler, settings).discover_calendars(CREDS)
        assert [c.url for c in via_well_known] == [c.url for c in via_fallback]

    @pytest.mark.asyncio
    async def test_sends_basic_auth(self, settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Authorization"))
            return discovery_handler(request)

        await client_for(handler, settings).discover_calendars(CREDS)
        expected = "Basic " + base64.b64encode(b"alice:s3cret").decode()
        assert seen and all(h == expected for h in seen)

    @pytest.mark.asyncio
    async def test_bad_credentials_give_user_message(self, settings):
        client = client_for(lambda request: httpx.Response(401), settings)
        with pytest.raises(DiscoveryError) as exc_info:
            await client.discover_calendars(CREDS)
        assert exc_info.value.user_message == CHECK_CREDENTIALS_MESSAGE

    @pytest.mark.asyncio
    async def test_network_error_is_discovery_error(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused")

        with pytest.raises(DiscoveryError):
            await client_for(handler, settings).discover_calendars(CREDS)


class TestEvents:
    @pytest.mark.asyncio
    async def test_create_puts_ics_with_if_none_match(self, settings):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["method"] = request.method
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = request.content.decode()
            return httpx.Response(201, headers={"ETag": '"v1"'})

        ref = await client_for(handler, settings).create_event(CREDS, f"{BASE}/calendars/alice/work", payload())
        assert captured["method"] == "PUT"
        assert captured["url"] == f"{BASE}/calendars/alice/work/booking-1@calsync.ics"
        assert captured["headers"]["If-None-Match"] == "*"
        assert captured["headers"]["Content-Type"].startswith("text/calendar")
        assert "UID:booking-1@calsync\r\n" in captured["body"]
        assert ref == EventRef(external_id="booking-1@calsync", url=captured["url"], etag='"v1"')

    @pytest.mark.asyncio
    async def test_update_with_stale_etag_conflicts(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["If-Match"] == '"stale"'
            return httpx.Response(412)

        ref = EventRef(external_id="booking-1@calsync", url=f"{BASE}/calendars/alice/work/booking-1@calsync.ics", etag='"stale"')
        with pytest.raises(ConflictError):
            await client_for(handler, settings).update_event(CREDS, None, ref, payload())

    @pytest.mark.asyncio
    async def test_delete_tolerates_missing_event(self, settings):
        client = client_for(lambda request: httpx.Response(404), settings)
        await client.delete_event(CREDS, f"{BASE}/calendars/alice/work/", EventRef(external_id="gone"))

    @pytest.mark.asyncio
    async def test_report_skips_transparent_events(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "REPORT"
            assert b'time-range start="20300107T000000Z" end="20300108T000000Z"' in request.content
            return multistatus(REPORT_RESPONSE)

        start = datetime(2030, 1, 7, tzinfo=timezone.utc)
        events = await client_for(handler, settings).list_events(
            CREDS, f"{BASE}/calendars/alice/work/", start, start + timedelta(days=1)
        )
        assert [e.external_id for e in events] == ["busy-1"]
        assert events[0].etag == '"etag-busy"'
        assert events[0].url == f"{BASE}/calendars/alice/work/busy-1.ics"
        assert events[0].start == datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)


class TestMultistatus:
    def test_non_2xx_propstat_is_ignored(self):
        resources = parse_multistatus(CALENDARS_RESPONSE)
        home = resources[2]
        assert home.text("http://apple.com/ns/ical/", "calendar-color") is None
        assert home.text("DAV:", "displayname") == "Home"

    def test_entity_declarations_rejected(self):
        body = (
            '<?xml version="1.0"?>'
            '<!DOCTYPE d:multistatus [<!ENTITY a "aaaaaaaaaa"><!ENTITY b "&a;&a;&a;&a;&a;&a;&a;&a;">]>'
            '<d:multistatus xmlns:d="DAV:"><d:response><d:href>&b;</d:href></d:response></d:multistatus>'
        )
        with pytest.raises(ProviderRequestError):
            parse_multistatus(body)

    def test_malformed_xml_rejected(self):
        with pytest.raises(ProviderRequestError):
            parse_multistatus("<d:multistatus xmlns:d='DAV:'><unclosed>")
