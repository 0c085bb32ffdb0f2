"""Booking sync and conflict schemas."""

import uuid
from datetime import datetime

from pydantic import Field, field_validator, model_validator

from calsync.schemas.integration import CamelModel, check_timezone


class SyncResultResponse(CamelModel):
    integration_id: uuid.UUID
    provider: str
    success: bool
    external_event_id: str | None = None
    error: str | None = None


class BookingSyncResponse(CamelModel):
    booking_id: uuid.UUID
    results: list[SyncResultResponse]


class BookingRemovalResponse(CamelModel):
    success: bool
    message: str
    results: list[SyncResultResponse] = []


class TimeRange(CamelModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_order(self):
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("start and end must include a timezone offset")
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class ConflictCheckRequest(TimeRange):
    integration_ids: list[uuid.UUID] | None = None


class AlternativesRequest(TimeRange):
    days: int = Field(default=7, ge=1, le=31)
    timezone: str = "UTC"

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        return check_timezone(v)


class ConflictEventResponse(CamelModel):
    integration_id: uuid.UUID
    integration_name: str
    provider: str
    external_id: str
    summary: str | None = None
    start: datetime
    end: datetime


class CheckedIntegrationResponse(CamelModel):
    id: uuid.UUID
    name: str
    provider: str
    success: bool
    error: str | None = None


class ConflictReportResponse(CamelModel):
    has_conflicts: bool
    conflicts: list[ConflictEventResponse]
    checked_integrations: list[CheckedIntegrationResponse]
    time_range: TimeRange


class TimeSlotResponse(CamelModel):
    start: datetime
    end: datetime
