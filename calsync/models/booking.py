"""Booking model (owned by the booking module; read here for sync)."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from calsync.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class LocationType(str, Enum):
    IN_PERSON = "IN_PERSON"
    PHONE = "PHONE"
    ONLINE = "ONLINE"


class Booking(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "bookings"

    host_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    attendee_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    attendee_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    location_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    location_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    meeting_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Legacy single back-reference, set to the last successful write
    external_calendar_event_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    calendar_integration_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("calendar_integrations.id", ondelete="SET NULL"),
        nullable=True,
    )

    host: Mapped["User"] = relationship("User")
    calendar_events: Mapped[list["BookingCalendarEvent"]] = relationship(
        "BookingCalendarEvent", back_populates="booking", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<Booking {self.id} host_id={self.host_id}>"
