"""Interval overlap checks and free-slot search over busy events."""

from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Iterable
from zoneinfo import ZoneInfo

from calsync.services.calendar_backend import RemoteEvent

SLOT_STEP = timedelta(minutes=30)
WORKDAY_START = time(9, 0)
WORKDAY_END = time(18, 0)
MAX_SUGGESTIONS = 5


@dataclass
class TimeSlot:
    start: datetime
    end: datetime


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap: [a) and [b) conflict iff a.start < b.end and b.start < a.end.

    Touching intervals do not conflict.
    """
    return start_a < end_b and start_b < end_a


def find_conflicts(start: datetime, end: datetime, events: Iterable[RemoteEvent]) -> list[RemoteEvent]:
    """Return busy events overlapping [start, end). Free events never conflict."""
    return [e for e in events if e.is_busy and overlaps(start, end, e.start, e.end)]


def find_free_slots(
    busy: list[RemoteEvent],
    duration: timedelta,
    search_from: datetime,
    days: int = 7,
    tz_name: str = "UTC",
    limit: int = MAX_SUGGESTIONS,
) -> list[TimeSlot]:
    """Scan working hours in 30-minute steps for slots that clear every busy event.

    Working hours (09:00-18:00) are taken in ``tz_name``; slots starting before
    ``search_from`` are skipped.
    """
    tz = ZoneInfo(tz_name)
    local_from = search_from.astimezone(tz)
    slots: list[TimeSlot] = []

    for day_offset in range(days):
        day = (local_from + timedelta(days=day_offset)).date()
        cursor = datetime.combine(day, WORKDAY_START, tzinfo=tz)
        day_end = datetime.combine(day, WORKDAY_END, tzinfo=tz)
        while cursor + duration <= day_end:
            slot_end = cursor + duration
            if cursor >= search_from and not find_conflicts(cursor, slot_end, busy):
                slots.append(TimeSlot(start=cursor, end=slot_end))
                if len(slots) >= limit:
                    return slots
            cursor += SLOT_STEP
    return slots
