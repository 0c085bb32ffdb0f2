"""Per-integration link between a booking and the remote event it produced."""

import uuid

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from calsync.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class BookingCalendarEvent(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "booking_calendar_events"
    __table_args__ = (
        UniqueConstraint("booking_id", "integration_id", name="uq_booking_integration"),
        UniqueConstraint("integration_id", "external_event_id", name="uq_integration_external_event"),
    )

    booking_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    integration_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("calendar_integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_event_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    event_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    etag: Mapped[str | None] = mapped_column(String(255), nullable=True)

    booking: Mapped["Booking"] = relationship("Booking", back_populates="calendar_events")

    def __repr__(self) -> str:
        return f"<BookingCalendarEvent booking_id={self.booking_id} integration_id={self.integration_id}>"
