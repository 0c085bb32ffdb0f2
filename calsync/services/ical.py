"""iCalendar (RFC 5545) encoding and decoding for single VEVENT resources."""

import logging
import secrets
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar, Event, vCalAddress, vDatetime, vDuration, vText
from icalendar.parser import foldline

from calsync.services.calendar_backend import Attendee, CalendarEventPayload, Transparency

logger = logging.getLogger(__name__)

PRODID = "-//CalSync//CalSync Calendar//EN"
FOLD_LIMIT = 75


@dataclass
class ICalEvent:
    uid: str
    summary: str | None
    start: datetime
    end: datetime
    transparency: Transparency = Transparency.BUSY
    description: str | None = None
    location: str | None = None
    status: str | None = None

    @property
    def is_busy(self) -> bool:
        return self.transparency == Transparency.BUSY


def normalize_newlines(value: str) -> str:
    """TEXT has a single line-break escape, so CRLF and bare CR become LF."""
    return value.replace("\r\n", "\n").replace("\r", "\n")


def escape_text(value: str) -> str:
    return vText(normalize_newlines(value)).to_ical().decode("utf-8")


def unescape_text(value: str) -> str:
    return str(vText.from_ical(value))


def format_utc(dt: datetime) -> str:
    """Format as ``YYYYMMDDTHHMMSSZ``; naive datetimes are taken as UTC."""
    return vDatetime(_as_utc(dt)).to_ical().decode("ascii")


def generate_uid(domain: str = "calsync") -> str:
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}@{domain}"


def fold_line(line: str) -> str:
    """Fold to 75 octets per physical line without splitting UTF-8 sequences."""
    return foldline(line, limit=FOLD_LIMIT)


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _address(person: Attendee, partstat: str | None = None) -> vCalAddress:
    address = vCalAddress(f"mailto:{person.email}")
    if person.name:
        address.params["cn"] = person.name
    if partstat:
        address.params["partstat"] = partstat
    return address


def build_event(payload: CalendarEventPayload, uid: str, stamp: datetime | None = None) -> str:
    """Serialize a payload as a VCALENDAR containing one VEVENT, CRLF line endings.

    Properties are emitted in insertion order (``sorted=False``) so servers see
    UID, DTSTAMP, DTSTART and DTEND ahead of the descriptive fields.
    """
    cal = Calendar()
    cal.add("version", "2.0")
    cal.add("prodid", PRODID)
    cal.add("calscale", "GREGORIAN")

    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", _as_utc(stamp or datetime.now(timezone.utc)))
    event.add("dtstart", _as_utc(payload.start))
    event.add("dtend", _as_utc(payload.end))
    event.add("summary", normalize_newlines(payload.summary))
    if payload.description:
        event.add("description", normalize_newlines(payload.description))
    if payload.location:
        event.add("location", normalize_newlines(payload.location))
    if payload.organizer:
        event.add("organizer", _address(payload.organizer))
    for attendee in payload.attendees:
        event.add("attendee", _address(attendee, attendee.status or "NEEDS-ACTION"))
    if payload.categories:
        event.add("categories", list(payload.categories))
    if payload.priority is not None:
        event.add("priority", payload.priority)
    if payload.transparency:
        event.add("transp", "TRANSPARENT" if payload.transparency == Transparency.FREE else "OPAQUE")
    if payload.status:
        event.add("status", payload.status)
    cal.add_component(event)

    return cal.to_ical(sorted=False).decode("utf-8")


# --- Decoding ---


def _resolve_tz(tzid: str | None):
    if tzid:
        try:
            return ZoneInfo(tzid)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown default zone %s; using UTC", tzid)
    return timezone.utc


def _to_datetime(value: date | datetime, default_tz) -> datetime:
    """Floating times and all-day dates are read in ``default_tz``."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=default_tz)
    return datetime(value.year, value.month, value.day, tzinfo=default_tz)


def parse_duration(value: str) -> timedelta:
    return vDuration.from_ical(value.strip())


def _text(component: Event, name: str) -> str | None:
    value = component.get(name)
    return str(value) if value is not None else None


def parse_events(text: str, default_tz: str = "UTC") -> list[ICalEvent]:
    """Decode every VEVENT in an iCalendar document.

    Events without a DTSTART are dropped. Missing DTEND falls back to DURATION,
    then to one day for all-day events, then to a zero-length event.
    """
    try:
        cal = Calendar.from_ical(text)
    except ValueError as e:
        logger.warning("Unparseable iCalendar data: %s", e)
        return []

    tz = _resolve_tz(default_tz)
    events: list[ICalEvent] = []
    for component in cal.walk("VEVENT"):
        dtstart = component.get("dtstart")
        if dtstart is None:
            continue
        raw_start = dtstart.dt
        start = _to_datetime(raw_start, tz)
        all_day = not isinstance(raw_start, datetime)

        if component.get("dtend") is not None:
            end = _to_datetime(component.get("dtend").dt, tz)
        elif component.get("duration") is not None:
            end = start + component.get("duration").dt
        elif all_day:
            end = start + timedelta(days=1)
        else:
            end = start

        transp = (_text(component, "transp") or "OPAQUE").strip().upper()
        status = _text(component, "status")
        events.append(
            ICalEvent(
                uid=(_text(component, "uid") or "").strip(),
                summary=_text(component, "summary"),
                start=start,
                end=end,
                transparency=Transparency.FREE if transp == "TRANSPARENT" else Transparency.BUSY,
                description=_text(component, "description"),
                location=_text(component, "location"),
                status=status.strip().upper() if status else None,
            )
        )
    return events
