"""CalSync database models."""

from calsync.models.booking import Booking, LocationType
from calsync.models.booking_calendar_event import BookingCalendarEvent
from calsync.models.calendar_integration import CalendarIntegration, CalendarProvider
from calsync.models.external_event import ExternalEvent
from calsync.models.user import User
from calsync.models.webhook import WebhookChannel, WebhookReceipt

__all__ = [
    "User",
    "Booking",
    "LocationType",
    "CalendarIntegration",
    "CalendarProvider",
    "BookingCalendarEvent",
    "ExternalEvent",
    "WebhookChannel",
    "WebhookReceipt",
]
