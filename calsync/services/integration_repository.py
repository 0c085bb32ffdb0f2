"""Persistence for calendar integrations, booking links, event cache and webhook state."""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from calsync.models.booking import Booking
from calsync.models.booking_calendar_event import BookingCalendarEvent
from calsync.models.calendar_integration import CalendarIntegration, CalendarProvider
from calsync.models.external_event import ExternalEvent
from calsync.models.webhook import WebhookChannel, WebhookReceipt
from calsync.services.calendar_backend import EventRef, RemoteEvent

logger = logging.getLogger(__name__)


class IntegrationRepository:
    """All database access used by the orchestrator and webhook ingestion.

    One ``AsyncSession`` cannot be used by concurrent tasks, and a booking sync
    fans out across integrations, so every method takes ``self._lock``.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db
        self._lock = asyncio.Lock()

    # --- Bookings ---

    async def get_booking(self, booking_id: uuid.UUID) -> Booking | None:
        async with self._lock:
            result = await self._db.execute(
                select(Booking)
                .options(selectinload(Booking.host), selectinload(Booking.calendar_events))
                .where(Booking.id == booking_id)
            )
            return result.scalar_one_or_none()

    async def set_booking_back_reference(
        self, booking_id: uuid.UUID, integration_id: uuid.UUID | None, external_event_id: str | None
    ) -> None:
        async with self._lock:
            await self._db.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(calendar_integration_id=integration_id, external_calendar_event_id=external_event_id)
            )
            await self._db.commit()

    # --- Integrations ---

    async def get_integration(self, integration_id: uuid.UUID) -> CalendarIntegration | None:
        async with self._lock:
            result = await self._db.execute(
                select(CalendarIntegration)
                .where(CalendarIntegration.id == integration_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def get_user_integration(self, user_id: uuid.UUID, integration_id: uuid.UUID) -> CalendarIntegration | None:
        async with self._lock:
            result = await self._db.execute(
                select(CalendarIntegration).where(
                    CalendarIntegration.id == integration_id,
                    CalendarIntegration.user_id == user_id,
                )
            )
            return result.scalar_one_or_none()

    async def list_user_integrations(self, user_id: uuid.UUID) -> list[CalendarIntegration]:
        async with self._lock:
            result = await self._db.execute(
                select(CalendarIntegration)
                .where(CalendarIntegration.user_id == user_id)
                .order_by(CalendarIntegration.created_at)
            )
            return list(result.scalars().all())

    async def list_sync_targets(self, user_id: uuid.UUID) -> list[CalendarIntegration]:
        async with self._lock:
            result = await self._db.execute(
                select(CalendarIntegration)
                .where(
                    CalendarIntegration.user_id == user_id,
                    CalendarIntegration.is_active.is_(True),
                    CalendarIntegration.sync_enabled.is_(True),
                )
                .order_by(CalendarIntegration.created_at)
            )
            return list(result.scalars().all())

    async def list_conflict_sources(
        self, user_id: uuid.UUID, integration_ids: Iterable[uuid.UUID] | None = None
    ) -> list[CalendarIntegration]:
        query = select(CalendarIntegration).where(
            CalendarIntegration.user_id == user_id,
            CalendarIntegration.is_active.is_(True),
            CalendarIntegration.conflict_detection.is_(True),
        )
        if integration_ids is not None:
            query = query.where(CalendarIntegration.id.in_(list(integration_ids)))
        async with self._lock:
            result = await self._db.execute(query.order_by(CalendarIntegration.created_at))
            return list(result.scalars().all())

    async def list_active_by_provider(self, provider: CalendarProvider) -> list[CalendarIntegration]:
        async with self._lock:
            result = await self._db.execute(
                select(CalendarIntegration).where(
                    CalendarIntegration.provider == provider.value,
                    CalendarIntegration.is_active.is_(True),
                )
            )
            return list(result.scalars().all())

    async def find_user_provider_integration(
        self, user_id: uuid.UUID, provider: CalendarProvider
    ) -> CalendarIntegration | None:
        async with self._lock:
            result = await self._db.execute(
                select(CalendarIntegration).where(
                    CalendarIntegration.user_id == user_id,
                    CalendarIntegration.provider == provider.value,
                )
            )
            return result.scalars().first()

    async def add_integration(self, integration: CalendarIntegration) -> CalendarIntegration:
        async with self._lock:
            self._db.add(integration)
            await self._db.commit()
            await self._db.refresh(integration)
            return integration

    async def save(self, integration: CalendarIntegration) -> None:
        async with self._lock:
            await self._db.commit()

    async def delete_integration(self, integration: CalendarIntegration) -> None:
        async with self._lock:
            await self._db.delete(integration)
            await self._db.commit()

    async def save_tokens(
        self,
        integration: CalendarIntegration,
        encrypted_access_token: str,
        encrypted_refresh_token: str | None,
        expires_at: datetime | None,
    ) -> None:
        integration.encrypted_access_token = encrypted_access_token
        if encrypted_refresh_token is not None:
            integration.encrypted_refresh_token = encrypted_refresh_token
        integration.token_expires_at = expires_at
        await self.save(integration)

    async def record_sync_success(self, integration: CalendarIntegration) -> None:
        integration.last_sync_at = datetime.now(timezone.utc)
        integration.last_error = None
        integration.auth_failure_count = 0
        await self.save(integration)

    async def record_sync_failure(
        self,
        integration: CalendarIntegration,
        error: str,
        *,
        auth_failure: bool = False,
        deactivate: bool = False,
    ) -> None:
        integration.last_error = error[:1000]
        if auth_failure:
            integration.auth_failure_count = (integration.auth_failure_count or 0) + 1
        if deactivate:
            integration.is_active = False
        await self.save(integration)

    # --- Booking links ---

    async def get_links(self, booking_id: uuid.UUID) -> list[BookingCalendarEvent]:
        async with self._lock:
            result = await self._db.execute(
                select(BookingCalendarEvent).where(BookingCalendarEvent.booking_id == booking_id)
            )
            return list(result.scalars().all())

    async def upsert_link(self, booking_id: uuid.UUID, integration_id: uuid.UUID, ref: EventRef) -> None:
        stmt = pg_insert(BookingCalendarEvent).values(
            id=uuid.uuid4(),
            booking_id=booking_id,
            integration_id=integration_id,
            external_event_id=ref.external_id,
            event_url=ref.url,
            etag=ref.etag,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_booking_integration",
            set_={"external_event_id": ref.external_id, "event_url": ref.url, "etag": ref.etag},
        )
        async with self._lock:
            await self._db.execute(stmt)
            await self._db.commit()

    async def delete_link(self, booking_id: uuid.UUID, integration_id: uuid.UUID) -> None:
        async with self._lock:
            await self._db.execute(
                delete(BookingCalendarEvent).where(
                    BookingCalendarEvent.booking_id == booking_id,
                    BookingCalendarEvent.integration_id == integration_id,
                )
            )
            await self._db.commit()

    async def delete_links_for_external_event(self, integration_id: uuid.UUID, external_event_id: str) -> int:
        async with self._lock:
            result = await self._db.execute(
                delete(BookingCalendarEvent).where(
                    BookingCalendarEvent.integration_id == integration_id,
                    BookingCalendarEvent.external_event_id == external_event_id,
                )
            )
            await self._db.commit()
            return result.rowcount or 0

    # --- External event cache ---

    async def replace_external_events(self, integration_id: uuid.UUID, events: list[RemoteEvent]) -> None:
        """Upsert fetched events; cached events absent from the fetch are marked deleted."""
        seen = [e.external_id for e in events]
        async with self._lock:
            for event in events:
                stmt = pg_insert(ExternalEvent).values(
                    id=uuid.uuid4(),
                    integration_id=integration_id,
                    external_event_id=event.external_id,
                    summary=event.summary,
                    start_time=event.start,
                    end_time=event.end,
                    etag=event.etag,
                    is_deleted=False,
                    raw=event.raw or None,
                )
                stmt = stmt.on_conflict_do_update(
                    constraint="uq_external_event",
                    set_={
                        "summary": event.summary,
                        "start_time": event.start,
                        "end_time": event.end,
                        "etag": event.etag,
                        "is_deleted": False,
                        "raw": event.raw or None,
                    },
                )
                await self._db.execute(stmt)
            stale = update(ExternalEvent).where(ExternalEvent.integration_id == integration_id)
            if seen:
                stale = stale.where(ExternalEvent.external_event_id.notin_(seen))
            await self._db.execute(stale.values(is_deleted=True))
            await self._db.commit()

    async def mark_external_event_deleted(self, integration_id: uuid.UUID, external_event_id: str) -> None:
        async with self._lock:
            await self._db.execute(
                update(ExternalEvent)
                .where(
                    ExternalEvent.integration_id == integration_id,
                    ExternalEvent.external_event_id == external_event_id,
                )
                .values(is_deleted=True)
            )
            await self._db.commit()

    # --- Webhooks ---

    async def record_webhook_receipt(
        self, provider: str, dedupe_key: str, integration_id: uuid.UUID | None
    ) -> bool:
        """Insert a receipt; returns False when this notification was already seen."""
        stmt = (
            pg_insert(WebhookReceipt)
            .values(id=uuid.uuid4(), provider=provider, dedupe_key=dedupe_key, integration_id=integration_id)
            .on_conflict_do_nothing(constraint="uq_webhook_receipt")
            .returning(WebhookReceipt.id)
        )
        async with self._lock:
            result = await self._db.execute(stmt)
            inserted = result.scalar_one_or_none() is not None
            await self._db.commit()
            return inserted

    async def delete_webhook_receipt(self, provider: str, dedupe_key: str) -> None:
        """Release a receipt whose processing failed; earlier writes are already committed."""
        async with self._lock:
            await self._db.rollback()
            await self._db.execute(
                delete(WebhookReceipt).where(
                    WebhookReceipt.provider == provider,
                    WebhookReceipt.dedupe_key == dedupe_key,
                )
            )
            await self._db.commit()

    async def purge_webhook_receipts(self, cutoff: datetime) -> int:
        async with self._lock:
            result = await self._db.execute(delete(WebhookReceipt).where(WebhookReceipt.received_at < cutoff))
            await self._db.commit()
            return result.rowcount or 0

    async def get_channel(self, channel_id: str) -> WebhookChannel | None:
        async with self._lock:
            result = await self._db.execute(select(WebhookChannel).where(WebhookChannel.channel_id == channel_id))
            return result.scalar_one_or_none()

    async def list_channels_expiring_before(self, cutoff: datetime) -> list[WebhookChannel]:
        async with self._lock:
            result = await self._db.execute(select(WebhookChannel).where(WebhookChannel.expires_at < cutoff))
            return list(result.scalars().all())

    async def list_integration_channels(self, integration_id: uuid.UUID) -> list[WebhookChannel]:
        async with self._lock:
            result = await self._db.execute(
                select(WebhookChannel).where(WebhookChannel.integration_id == integration_id)
            )
            return list(result.scalars().all())

    async def save_channel(
        self,
        integration_id: uuid.UUID,
        provider: CalendarProvider,
        channel_id: str,
        resource_id: str | None,
        expires_at: datetime | None,
    ) -> None:
        async with self._lock:
            self._db.add(
                WebhookChannel(
                    integration_id=integration_id,
                    provider=provider.value,
                    channel_id=channel_id,
                    resource_id=resource_id,
                    expires_at=expires_at,
                )
            )
            await self._db.commit()

    async def update_channel_expiry(self, channel: WebhookChannel, expires_at: datetime) -> None:
        channel.expires_at = expires_at
        async with self._lock:
            await self._db.commit()

    async def delete_channel(self, channel: WebhookChannel) -> None:
        async with self._lock:
            await self._db.delete(channel)
            await self._db.commit()
