"""Calendar integration model with encrypted credentials."""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from calsync.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class CalendarProvider(str, Enum):
    GOOGLE = "GOOGLE"
    OUTLOOK = "OUTLOOK"
    CALDAV = "CALDAV"
    ZOOM = "ZOOM"


class CalendarIntegration(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "calendar_integrations"
    __table_args__ = (
        # CalDAV may be connected several times (distinct server + calendar)
        Index(
            "uq_calendar_integrations_user_provider",
            "user_id",
            "provider",
            unique=True,
            postgresql_where=text("provider <> 'CALDAV'"),
        ),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Credentials: iv:tag:ciphertext envelopes, never plaintext
    encrypted_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    encrypted_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    server_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    username: Mapped[str | None] = mapped_column(String(320), nullable=True)
    encrypted_password: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_account_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    # Sync policy
    calendar_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    conflict_detection: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Health
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    auth_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="calendar_integrations")

    @property
    def provider_enum(self) -> CalendarProvider:
        return CalendarProvider(self.provider)

    def __repr__(self) -> str:
        return f"<CalendarIntegration {self.id} provider={self.provider}>"
