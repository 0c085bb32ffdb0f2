"""Booking push/removal and availability routes."""

import uuid

from fastapi import APIRouter, Depends

from calsync.dependencies import get_current_user_id, get_orchestrator, get_repository
from calsync.errors import BookingNotFoundError
from calsync.schemas.sync import (
    AlternativesRequest,
    BookingRemovalResponse,
    BookingSyncResponse,
    CheckedIntegrationResponse,
    ConflictCheckRequest,
    ConflictEventResponse,
    ConflictReportResponse,
    SyncResultResponse,
    TimeRange,
    TimeSlotResponse,
)
from calsync.services.integration_repository import IntegrationRepository
from calsync.services.sync_service import SyncOrchestrator

router = APIRouter(prefix="/calendar", tags=["calendar-sync"])


async def _check_host(repo: IntegrationRepository, user_id: uuid.UUID, booking_id: uuid.UUID) -> None:
    booking = await repo.get_booking(booking_id)
    if booking is None or booking.host_id != user_id:
        raise BookingNotFoundError(f"Booking {booking_id} not found for user")


@router.post("/sync/bookings/{booking_id}", response_model=BookingSyncResponse)
async def sync_booking(
    booking_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    await _check_host(repo, user_id, booking_id)
    results = await orchestrator.sync_booking_to_all_integrations(booking_id)
    return BookingSyncResponse(
        booking_id=booking_id,
        results=[SyncResultResponse.model_validate(r) for r in results],
    )


@router.delete("/sync/bookings/{booking_id}", response_model=BookingRemovalResponse)
async def remove_booking(
    booking_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    await _check_host(repo, user_id, booking_id)
    removal = await orchestrator.remove_booking_from_calendar(booking_id)
    return BookingRemovalResponse(
        success=removal.success,
        message=removal.message,
        results=[SyncResultResponse.model_validate(r) for r in removal.results],
    )


@router.post("/conflicts", response_model=ConflictReportResponse)
async def check_conflicts(
    body: ConflictCheckRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    report = await orchestrator.check_conflicts(user_id, body.start, body.end, body.integration_ids)
    return ConflictReportResponse(
        has_conflicts=report.has_conflicts,
        conflicts=[
            ConflictEventResponse(
                integration_id=c.integration_id,
                integration_name=c.integration_name,
                provider=c.provider,
                external_id=c.event.external_id,
                summary=c.event.summary,
                start=c.event.start,
                end=c.event.end,
            )
            for c in report.conflicts
        ],
        checked_integrations=[CheckedIntegrationResponse.model_validate(c) for c in report.checked_integrations],
        time_range=TimeRange(start=report.start, end=report.end),
    )


@router.post("/conflicts/alternatives", response_model=list[TimeSlotResponse])
async def suggest_alternatives(
    body: AlternativesRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    slots = await orchestrator.suggest_alternatives(user_id, body.start, body.end, body.days, body.timezone)
    return [TimeSlotResponse(start=s.start, end=s.end) for s in slots]
