"""Celery tasks for background calendar synchronization."""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from calsync.config import get_settings
from calsync.errors import CalendarError, IntegrationNotFoundError
from calsync.models.calendar_integration import CalendarProvider
from calsync.services.crypto_service import get_credential_vault
from calsync.services.integration_repository import IntegrationRepository
from calsync.services.locks import RedisIntegrationLocks
from calsync.services.sync_service import ProviderClients, SyncOrchestrator

logger = logging.getLogger(__name__)

# Renew anything that would lapse before the next hourly run
CHANNEL_RENEWAL_LEAD = timedelta(hours=12)


async def _run(work):
    """Open a session, Redis locks and an orchestrator for one task invocation.

    Each ``asyncio.run`` gets its own event loop, so the engine and Redis client
    are created here and closed before the loop ends.
    """
    settings = get_settings()
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    engine = create_async_engine(settings.database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        async with session_factory() as db:
            repo = IntegrationRepository(db)
            orchestrator = SyncOrchestrator(
                settings,
                repo,
                ProviderClients.from_settings(settings),
                get_credential_vault(settings),
                RedisIntegrationLocks(redis, ttl_seconds=settings.provider_timeout_seconds * 6),
            )
            return await work(orchestrator, repo)
    finally:
        await redis.aclose()
        await engine.dispose()


@shared_task(name="calsync.tasks.sync_tasks.sync_booking")
def sync_booking(booking_id: str):
    """Push a booking to every sync-enabled integration of its host."""

    async def _sync(orchestrator: SyncOrchestrator, repo: IntegrationRepository):
        results = await orchestrator.sync_booking_to_all_integrations(uuid.UUID(booking_id))
        return [
            {"integrationId": str(r.integration_id), "success": r.success, "error": r.error} for r in results
        ]

    return asyncio.run(_run(_sync))


@shared_task(name="calsync.tasks.sync_tasks.remove_booking")
def remove_booking(booking_id: str):
    async def _remove(orchestrator: SyncOrchestrator, repo: IntegrationRepository):
        removal = await orchestrator.remove_booking_from_calendar(uuid.UUID(booking_id))
        return {"success": removal.success, "message": removal.message}

    return asyncio.run(_run(_remove))


@shared_task(name="calsync.tasks.sync_tasks.refresh_integration")
def refresh_integration(integration_id: str):
    """Re-fetch one integration's busy events, typically after a push notification."""

    async def _refresh(orchestrator: SyncOrchestrator, repo: IntegrationRepository):
        try:
            return await orchestrator.refresh_integration(uuid.UUID(integration_id))
        except IntegrationNotFoundError:
            logger.info("Integration %s is gone or inactive; skipping refresh", integration_id)
            return 0
        except CalendarError as e:
            logger.warning("Refresh of integration %s failed: %s", integration_id, type(e).__name__)
            return 0

    return asyncio.run(_run(_refresh))


@shared_task(name="calsync.tasks.sync_tasks.sync_caldav_integrations")
def sync_caldav_integrations():
    """Periodic pull for CalDAV integrations, which have no push channel."""

    async def _sync_all(orchestrator: SyncOrchestrator, repo: IntegrationRepository):
        integrations = await repo.list_active_by_provider(CalendarProvider.CALDAV)
        refreshed = 0
        for integration in integrations:
            try:
                await orchestrator.refresh_integration(integration.id)
                refreshed += 1
            except CalendarError as e:
                logger.warning("CalDAV refresh failed for %s: %s", integration.id, type(e).__name__)
        logger.info("CalDAV refresh: %d/%d integrations", refreshed, len(integrations))
        return refreshed

    return asyncio.run(_run(_sync_all))


@shared_task(name="calsync.tasks.sync_tasks.register_push_channel")
def register_push_channel(integration_id: str):
    async def _register(orchestrator: SyncOrchestrator, repo: IntegrationRepository):
        try:
            return await orchestrator.register_push_channel(uuid.UUID(integration_id))
        except CalendarError as e:
            logger.warning("Push channel registration failed for %s: %s", integration_id, type(e).__name__)
            return None

    return asyncio.run(_run(_register))


@shared_task(name="calsync.tasks.sync_tasks.renew_push_channels")
def renew_push_channels():
    """Renew Graph subscriptions and replace Google channels close to expiry."""

    async def _renew(orchestrator: SyncOrchestrator, repo: IntegrationRepository):
        cutoff = datetime.now(timezone.utc) + CHANNEL_RENEWAL_LEAD
        channels = await repo.list_channels_expiring_before(cutoff)
        renewed = 0
        for channel in channels:
            try:
                await orchestrator.renew_push_channel(channel)
                renewed += 1
            except IntegrationNotFoundError:
                await repo.delete_channel(channel)
            except CalendarError as e:
                logger.warning("Renewal of channel %s failed: %s", channel.channel_id, type(e).__name__)
        logger.info("Renewed %d/%d push channels", renewed, len(channels))
        return renewed

    return asyncio.run(_run(_renew))


@shared_task(name="calsync.tasks.sync_tasks.purge_webhook_receipts")
def purge_webhook_receipts():
    """Drop dedupe receipts older than ``webhook_dedupe_ttl_seconds``."""

    async def _purge(orchestrator: SyncOrchestrator, repo: IntegrationRepository):
        ttl = get_settings().webhook_dedupe_ttl_seconds
        purged = await repo.purge_webhook_receipts(datetime.now(timezone.utc) - timedelta(seconds=ttl))
        logger.info("Purged %d webhook receipts older than %ds", purged, ttl)
        return purged

    return asyncio.run(_run(_purge))
