"""Calendar integration schemas."""

import uuid
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def check_timezone(v: str | None) -> str | None:
    """Accept only IANA zone names such as ``Europe/Berlin``."""
    if v is None:
        return v
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {v}") from None
    return v


class IntegrationResponse(CamelModel):
    """Integration as shown to its owner. Credentials are never included."""

    id: uuid.UUID
    provider: str
    name: str
    description: str | None = None
    calendar_id: str | None = None
    server_url: str | None = None
    username: str | None = None
    timezone: str
    is_active: bool
    sync_enabled: bool
    conflict_detection: bool
    last_sync_at: datetime | None = None
    last_error: str | None = None
    provider_account_email: str | None = None


class IntegrationUpdate(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    calendar_id: str | None = None
    timezone: str | None = None
    is_active: bool | None = None
    sync_enabled: bool | None = None
    conflict_detection: bool | None = None
    password: str | None = Field(default=None, min_length=1)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str | None) -> str | None:
        return check_timezone(v)


class CalDAVCredentialsRequest(CamelModel):
    server_url: HttpUrl
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class CalDAVIntegrationCreate(CalDAVCredentialsRequest):
    name: str = Field(default="CalDAV Calendar", min_length=1, max_length=255)
    description: str | None = None
    calendar_id: str | None = None
    timezone: str = "UTC"
    sync_enabled: bool = True
    conflict_detection: bool = True

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return check_timezone(v)


class CalendarResponse(CamelModel):
    id: str
    name: str
    description: str | None = None
    color: str | None = None
    primary: bool = False
    url: str | None = None
    ctag: str | None = None
    timezone: str | None = None


class IntegrationStatusResponse(CamelModel):
    id: uuid.UUID
    provider: str
    name: str
    is_active: bool
    sync_enabled: bool
    last_sync_at: datetime | None = None
    last_error: str | None = None
    healthy: bool


class ConnectionTestResponse(CamelModel):
    id: uuid.UUID
    success: bool
    error: str | None = None


class AuthorizationUrlResponse(CamelModel):
    url: str
