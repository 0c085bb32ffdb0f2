"""CalDAV (RFC 4791) client: calendar discovery and event CRUD over WebDAV."""

import logging
import re
import xml.etree.ElementTree as ET
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator
from urllib.parse import quote, urljoin

import httpx
from defusedxml import DefusedXmlException
from defusedxml import ElementTree as SafeET

from calsync.config import Settings
from calsync.errors import (
    CHECK_CREDENTIALS_MESSAGE,
    AuthExpiredError,
    CalendarError,
    ConflictError,
    DiscoveryError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from calsync.metrics import provider_calls_total
from calsync.services import ical
from calsync.services.calendar_backend import (
    CalDAVCredentials,
    CalendarBackend,
    CalendarEventPayload,
    CalendarInfo,
    EventRef,
    RemoteEvent,
)

logger = logging.getLogger(__name__)

DAV_NS = "DAV:"
CALDAV_NS = "urn:ietf:params:xml:ns:caldav"
CS_NS = "http://calendarserver.org/ns/"
APPLE_ICAL_NS = "http://apple.com/ns/ical/"

DEFAULT_CALENDAR_COLOR = "#0066CC"

FALLBACK_PRINCIPAL_PATHS = (
    "/principals/users/{username}/",
    "/principals/{username}/",
    "/caldav/principals/{username}/",
    "/dav/principals/users/{username}/",
)

PRINCIPAL_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:">
  <d:prop>
    <d:current-user-principal/>
  </d:prop>
</d:propfind>"""

CALENDAR_HOME_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <c:calendar-home-set/>
  </d:prop>
</d:propfind>"""

CALENDAR_LIST_BODY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav" xmlns:cs="http://calendarserver.org/ns/" xmlns:ic="http://apple.com/ns/ical/">
  <d:prop>
    <d:resourcetype/>
    <d:displayname/>
    <c:calendar-description/>
    <c:supported-calendar-component-set/>
    <cs:getctag/>
    <ic:calendar-color/>
  </d:prop>
</d:propfind>"""

CALENDAR_QUERY_TEMPLATE = """<?xml version="1.0" encoding="utf-8"?>
<c:calendar-query xmlns:d="DAV:" xmlns:c="urn:ietf:params:xml:ns:caldav">
  <d:prop>
    <d:getetag/>
    <c:calendar-data/>
  </d:prop>
  <c:filter>
    <c:comp-filter name="VCALENDAR">
      <c:comp-filter name="VEVENT">
        <c:time-range start="{start}" end="{end}"/>
      </c:comp-filter>
    </c:comp-filter>
  </c:filter>
</c:calendar-query>"""

_UID_FROM_URL = re.compile(r"([^/]+)\.ics$")


def _tag(ns: str, name: str) -> str:
    return f"{{{ns}}}{name}"


@dataclass
class DAVResource:
    """One ``<response>`` from a multistatus body with its 2xx properties."""

    href: str
    props: dict[str, ET.Element] = field(default_factory=dict)

    def text(self, ns: str, name: str) -> str | None:
        el = self.props.get(_tag(ns, name))
        if el is None or el.text is None:
            return None
        return el.text.strip() or None

    def href_in(self, ns: str, name: str) -> str | None:
        el = self.props.get(_tag(ns, name))
        if el is None:
            return None
        href = el.find(_tag(DAV_NS, "href"))
        if href is None or not href.text:
            return None
        return href.text.strip()


def parse_multistatus(body: str | bytes) -> list[DAVResource]:
    """Parse a 207 multistatus document, keeping only properties with a 2xx propstat."""
    try:
        root = SafeET.fromstring(body)
    except (SafeET.ParseError, DefusedXmlException) as e:
        raise ProviderRequestError("Malformed WebDAV response") from e

    resources: list[DAVResource] = []
    for response in root.iter(_tag(DAV_NS, "response")):
        href_el = response.find(_tag(DAV_NS, "href"))
        if href_el is None or not href_el.text:
            continue
        resource = DAVResource(href=href_el.text.strip())
        for propstat in response.findall(_tag(DAV_NS, "propstat")):
            status = propstat.findtext(_tag(DAV_NS, "status"), default="HTTP/1.1 200 OK")
            parts = status.split()
            if len(parts) < 2 or not parts[1].startswith("2"):
                continue
            prop = propstat.find(_tag(DAV_NS, "prop"))
            if prop is None:
                continue
            for child in prop:
                resource.props[child.tag] = child
        resources.append(resource)
    return resources


def uid_from_url(url: str) -> str | None:
    match = _UID_FROM_URL.search(url)
    return match.group(1) if match else None


class CalDAVClient(CalendarBackend):
    """Speak just enough WebDAV/CalDAV to discover calendars and manage events.

    ``auth`` for the event operations is a ``CalDAVCredentials``; ``calendar_id``
    is the absolute calendar collection URL. A ``transport`` may be injected for
    tests.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._timeout = settings.provider_timeout_seconds
        self._transport = transport

    @asynccontextmanager
    async def _client(self, creds: CalDAVCredentials) -> AsyncIterator[httpx.AsyncClient]:
        async with httpx.AsyncClient(
            auth=httpx.BasicAuth(creds.username, creds.password),
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
            headers={"User-Agent": "CalSync-CalDAV/1.0"},
        ) as client:
            yield client

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        content: str | None = None,
        headers: dict[str, str] | None = None,
        allow_not_found: bool = False,
    ) -> httpx.Response:
        try:
            resp = await client.request(method, url, content=content, headers=headers)
        except httpx.HTTPError as e:
            provider_calls_total.labels(provider="caldav", outcome="unavailable").inc()
            raise ProviderUnavailableError(f"CalDAV {method} failed: {type(e).__name__}") from e

        status = resp.status_code
        if status < 400 or (allow_not_found and status in (404, 410)):
            provider_calls_total.labels(provider="caldav", outcome="ok").inc()
            return resp
        if status in (401, 403):
            outcome, exc = "auth_expired", AuthExpiredError
        elif status == 412:
            outcome, exc = "conflict", ConflictError
        elif status >= 500:
            outcome, exc = "unavailable", ProviderUnavailableError
        else:
            outcome, exc = "rejected", ProviderRequestError
        provider_calls_total.labels(provider="caldav", outcome=outcome).inc()
        raise exc(f"CalDAV {method} {status}", provider_body=resp.text)

    async def _propfind(self, client: httpx.AsyncClient, url: str, depth: int, body: str) -> list[DAVResource]:
        resp = await self._send(
            client,
            "PROPFIND",
            url,
            content=body,
            headers={"Depth": str(depth), "Content-Type": "application/xml; charset=utf-8"},
        )
        return parse_multistatus(resp.content)

    # --- Discovery ---

    async def discover_calendars(self, creds: CalDAVCredentials) -> list[CalendarInfo]:
        """Resolve principal → calendar home → calendars.

        Any failure surfaces as one ``DiscoveryError`` with a user-facing message.
        """
        try:
            async with self._client(creds) as client:
                principal_url = await self._discover_principal(client, creds)
                home_url = await self._discover_calendar_home(client, principal_url)
                return await self._list_calendars(client, home_url)
        except CalendarError as e:
            logger.warning("CalDAV discovery failed: %s", type(e).__name__)
            raise DiscoveryError(CHECK_CREDENTIALS_MESSAGE) from e

    async def _discover_principal(self, client: httpx.AsyncClient, creds: CalDAVCredentials) -> str:
        base = creds.server_url.rstrip("/")
        well_known = f"{base}/.well-known/caldav"
        try:
            for resource in await self._propfind(client, well_known, 0, PRINCIPAL_BODY):
                href = resource.href_in(DAV_NS, "current-user-principal")
                if href:
                    return urljoin(well_known, href)
            logger.info("Well-known CalDAV lookup returned no principal; probing common paths")
        except CalendarError as e:
            logger.info("Well-known CalDAV lookup failed (%s); probing common paths", type(e).__name__)

        username = quote(creds.username, safe="@")
        for path in FALLBACK_PRINCIPAL_PATHS:
            candidate = base + path.format(username=username)
            try:
                await self._send(
                    client,
                    "PROPFIND",
                    candidate,
                    content=PRINCIPAL_BODY,
                    headers={"Depth": "0", "Content-Type": "application/xml; charset=utf-8"},
                )
            except CalendarError:
                continue
            return candidate
        raise DiscoveryError("Could not discover principal URL")

    async def _discover_calendar_home(self, client: httpx.AsyncClient, principal_url: str) -> str:
        for resource in await self._propfind(client, principal_url, 0, CALENDAR_HOME_BODY):
            href = resource.href_in(CALDAV_NS, "calendar-home-set")
            if href:
                return urljoin(principal_url, href)
        raise DiscoveryError("Could not find calendar home")

    async def _list_calendars(self, client: httpx.AsyncClient, home_url: str) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        for resource in await self._propfind(client, home_url, 1, CALENDAR_LIST_BODY):
            resourcetype = resource.props.get(_tag(DAV_NS, "resourcetype"))
            if resourcetype is None or resourcetype.find(_tag(CALDAV_NS, "calendar")) is None:
                continue
            url = urljoin(home_url, resource.href)
            color = resource.text(APPLE_ICAL_NS, "calendar-color") or resource.text(CALDAV_NS, "calendar-color")
            calendars.append(
                CalendarInfo(
                    id=resource.href,
                    name=resource.text(DAV_NS, "displayname") or "Unnamed Calendar",
                    description=resource.text(CALDAV_NS, "calendar-description"),
                    color=color or DEFAULT_CALENDAR_COLOR,
                    url=url,
                    ctag=resource.text(CS_NS, "getctag"),
                )
            )
        return calendars

    async def test_connection(self, creds: CalDAVCredentials) -> bool:
        await self.discover_calendars(creds)
        return True

    # --- Events ---

    @staticmethod
    def _event_url(calendar_url: str, uid: str) -> str:
        if not calendar_url.endswith("/"):
            calendar_url += "/"
        return f"{calendar_url}{quote(uid, safe='@')}.ics"

    async def create_event(
        self, auth: CalDAVCredentials, calendar_id: str | None, payload: CalendarEventPayload
    ) -> EventRef:
        if not calendar_id:
            raise ProviderRequestError("CalDAV integration has no calendar URL")
        uid = payload.uid or ical.generate_uid()
        url = self._event_url(calendar_id, uid)
        async with self._client(auth) as client:
            resp = await self._send(
                client,
                "PUT",
                url,
                content=ical.build_event(payload, uid),
                headers={"Content-Type": "text/calendar; charset=utf-8", "If-None-Match": "*"},
            )
        return EventRef(external_id=uid, url=url, etag=resp.headers.get("ETag"))

    async def update_event(
        self, auth: CalDAVCredentials, calendar_id: str | None, ref: EventRef, payload: CalendarEventPayload
    ) -> EventRef:
        """Re-PUT the event; a known ETag is sent as If-Match and a 412 raises ``ConflictError``."""
        url = ref.url or self._event_url(calendar_id or "", ref.external_id)
        headers = {"Content-Type": "text/calendar; charset=utf-8"}
        if ref.etag:
            headers["If-Match"] = ref.etag
        async with self._client(auth) as client:
            resp = await self._send(
                client, "PUT", url, content=ical.build_event(payload, ref.external_id), headers=headers
            )
        return EventRef(external_id=ref.external_id, url=url, etag=resp.headers.get("ETag"))

    async def delete_event(self, auth: CalDAVCredentials, calendar_id: str | None, ref: EventRef) -> None:
        url = ref.url or self._event_url(calendar_id or "", ref.external_id)
        headers = {"If-Match": ref.etag} if ref.etag else None
        async with self._client(auth) as client:
            await self._send(client, "DELETE", url, headers=headers, allow_not_found=True)

    async def get_events(
        self,
        auth: CalDAVCredentials,
        calendar_url: str,
        start: datetime,
        end: datetime,
        default_tz: str = "UTC",
    ) -> list[RemoteEvent]:
        """REPORT calendar-query over [start, end); transparent events are skipped."""
        body = CALENDAR_QUERY_TEMPLATE.format(start=ical.format_utc(start), end=ical.format_utc(end))
        async with self._client(auth) as client:
            resp = await self._send(
                client,
                "REPORT",
                calendar_url,
                content=body,
                headers={"Depth": "1", "Content-Type": "application/xml; charset=utf-8"},
            )
        events: list[RemoteEvent] = []
        for resource in parse_multistatus(resp.content):
            data = resource.text(CALDAV_NS, "calendar-data")
            if not data:
                continue
            url = urljoin(calendar_url, resource.href)
            etag = resource.text(DAV_NS, "getetag")
            for parsed in ical.parse_events(data, default_tz):
                if not parsed.is_busy:
                    continue
                events.append(
                    RemoteEvent(
                        external_id=parsed.uid or uid_from_url(url) or resource.href,
                        summary=parsed.summary,
                        start=parsed.start,
                        end=parsed.end,
                        transparency=parsed.transparency,
                        etag=etag,
                        url=url,
                        raw={"href": resource.href},
                    )
                )
        return events

    async def list_events(
        self, auth: CalDAVCredentials, calendar_id: str | None, start: datetime, end: datetime
    ) -> list[RemoteEvent]:
        if not calendar_id:
            raise ProviderRequestError("CalDAV integration has no calendar URL")
        return await self.get_events(auth, calendar_id, start, end, auth.timezone)
