"""User model (owned by the platform's account module)."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from calsync.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    calendar_integrations: Mapped[list["CalendarIntegration"]] = relationship(
        "CalendarIntegration", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )

    def __repr__(self) -> str:
        return f"<User {self.id}>"
