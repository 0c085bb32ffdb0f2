"""Provider-neutral calendar types and the backend interface every provider implements."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Transparency(str, Enum):
    BUSY = "busy"
    FREE = "free"


@dataclass
class Attendee:
    email: str
    name: str | None = None
    status: str = "NEEDS-ACTION"


@dataclass
class CalendarEventPayload:
    """Event data built from a booking, converted to each provider's shape at the client boundary."""

    summary: str
    start: datetime
    end: datetime
    description: str | None = None
    location: str | None = None
    organizer: Attendee | None = None
    attendees: list[Attendee] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    priority: int | None = None
    transparency: Transparency = Transparency.BUSY
    status: str = "CONFIRMED"
    uid: str | None = None
    timezone: str = "UTC"

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


@dataclass
class RemoteEvent:
    """Normalized view of a provider event. ``start``/``end`` are timezone-aware."""

    external_id: str
    summary: str | None
    start: datetime
    end: datetime
    transparency: Transparency = Transparency.BUSY
    etag: str | None = None
    url: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def is_busy(self) -> bool:
        return self.transparency == Transparency.BUSY


@dataclass
class EventRef:
    """Where a created event lives on the provider, as stored in the booking link."""

    external_id: str
    url: str | None = None
    etag: str | None = None


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


@dataclass
class ProviderProfile:
    account_id: str
    email: str | None = None
    name: str | None = None


@dataclass
class CalendarInfo:
    id: str
    name: str
    description: str | None = None
    color: str | None = None
    primary: bool = False
    url: str | None = None
    ctag: str | None = None
    timezone: str | None = None


@dataclass
class CalDAVCredentials:
    server_url: str
    username: str
    password: str
    # zone for floating DTSTART/DTEND values
    timezone: str = "UTC"


class CalendarBackend(ABC):
    """Event operations shared by every provider.

    ``auth`` is the decrypted access token for OAuth providers and a
    ``CalDAVCredentials`` for CalDAV. It is passed on every call; clients keep no
    per-integration state.
    """

    @abstractmethod
    async def create_event(self, auth: Any, calendar_id: str | None, payload: CalendarEventPayload) -> EventRef:
        ...

    @abstractmethod
    async def update_event(
        self, auth: Any, calendar_id: str | None, ref: EventRef, payload: CalendarEventPayload
    ) -> EventRef:
        ...

    @abstractmethod
    async def delete_event(self, auth: Any, calendar_id: str | None, ref: EventRef) -> None:
        ...

    @abstractmethod
    async def list_events(
        self, auth: Any, calendar_id: str | None, start: datetime, end: datetime
    ) -> list[RemoteEvent]:
        """Return busy events overlapping [start, end); free/transparent events are excluded."""
        ...
