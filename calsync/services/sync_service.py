"""Synchronization between bookings and external calendars.

The orchestrator fans a booking out to every active integration of its host,
keeps one remote-event link per integration, answers conflict queries, and
refreshes the cached view of external calendars. A failing integration never
aborts the others: each outcome is reported as its own ``SyncResult``.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, TypeVar

from calsync.config import Settings
from calsync.errors import (
    AuthExpiredError,
    BookingNotFoundError,
    CalendarError,
    IntegrationNotFoundError,
    OAuthRefreshError,
)
from calsync.metrics import conflict_checks_total, sync_results_total
from calsync.middleware.logging import redact_secrets
from calsync.models.booking import Booking, LocationType
from calsync.models.calendar_integration import CalendarIntegration, CalendarProvider
from calsync.models.webhook import WebhookChannel
from calsync.services.caldav_service import CalDAVClient
from calsync.services.calendar_backend import (
    Attendee,
    CalDAVCredentials,
    CalendarBackend,
    CalendarEventPayload,
    CalendarInfo,
    EventRef,
    RemoteEvent,
)
from calsync.services.conflict_service import TimeSlot, find_conflicts, find_free_slots
from calsync.services.crypto_service import CredentialVault
from calsync.services.google_calendar_service import GoogleCalendarClient
from calsync.services.integration_repository import IntegrationRepository
from calsync.services.locks import IntegrationLocks
from calsync.services.oauth_client import OAuthProviderClient
from calsync.services.outlook_calendar_service import OutlookCalendarClient
from calsync.services.zoom_service import ZoomClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Refresh this long before the recorded expiry
TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)
NOT_SYNCED_MESSAGE = "Booking is not synced to any calendar"


@dataclass
class SyncResult:
    integration_id: uuid.UUID
    provider: str
    success: bool
    external_event_id: str | None = None
    error: str | None = None


@dataclass
class RemovalResult:
    success: bool
    message: str
    results: list[SyncResult] = field(default_factory=list)


@dataclass
class CheckedIntegration:
    id: uuid.UUID
    name: str
    provider: str
    success: bool
    error: str | None = None


@dataclass
class Conflict:
    integration_id: uuid.UUID
    integration_name: str
    provider: str
    event: RemoteEvent


@dataclass
class ConflictReport:
    has_conflicts: bool
    conflicts: list[Conflict]
    checked_integrations: list[CheckedIntegration]
    start: datetime
    end: datetime


@dataclass
class ProviderClients:
    """One client per provider, selected by the integration's provider field."""

    google: GoogleCalendarClient
    outlook: OutlookCalendarClient
    zoom: ZoomClient
    caldav: CalDAVClient

    def backend(self, provider: CalendarProvider) -> CalendarBackend:
        if provider == CalendarProvider.CALDAV:
            return self.caldav
        return self.oauth(provider)

    def oauth(self, provider: CalendarProvider) -> OAuthProviderClient:
        if provider == CalendarProvider.GOOGLE:
            return self.google
        elif provider == CalendarProvider.OUTLOOK:
            return self.outlook
        elif provider == CalendarProvider.ZOOM:
            return self.zoom
        raise ValueError(f"{provider.value} is not an OAuth provider")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderClients":
        return cls(
            google=GoogleCalendarClient(settings),
            outlook=OutlookCalendarClient(settings),
            zoom=ZoomClient(settings),
            caldav=CalDAVClient(settings),
        )


def describe_error(exc: Exception) -> str:
    """Short, secret-free description stored in ``last_error`` and sync results."""
    if isinstance(exc, CalendarError):
        return redact_secrets(f"{type(exc).__name__}: {exc}")
    return f"{type(exc).__name__}: unexpected error"


def build_event_description(booking: Booking, app_name: str = "CalSync") -> str:
    description = ""
    if booking.description:
        description += f"{booking.description}\n\n"
    if booking.meeting_type:
        description += f"Meeting Type: {booking.meeting_type}\n"
    minutes = booking.duration_minutes or int((booking.end_time - booking.start_time).total_seconds() // 60)
    description += f"Duration: {minutes} minutes\n"
    if booking.notes:
        description += f"\nNotes: {booking.notes}"
    description += f"\n\nBooked via {app_name}"
    return description


def event_location(booking: Booking) -> str | None:
    if booking.location_type == LocationType.IN_PERSON.value:
        return booking.location_address or "In Person"
    if booking.location_type == LocationType.PHONE.value:
        return "Phone Call"
    if booking.location_type == LocationType.ONLINE.value:
        return booking.meeting_url or "Online Meeting"
    return None


def build_event_payload(booking: Booking, tz_name: str = "UTC", app_name: str = "CalSync") -> CalendarEventPayload:
    attendees = []
    if booking.attendee_email:
        attendees.append(Attendee(email=booking.attendee_email, name=booking.attendee_name))
    organizer = None
    host = booking.host
    if host is not None and host.email:
        organizer = Attendee(email=host.email, name=host.name)
    return CalendarEventPayload(
        summary=booking.title or f"Meeting with {booking.attendee_name or 'guest'}",
        start=booking.start_time,
        end=booking.end_time,
        description=build_event_description(booking, app_name),
        location=event_location(booking),
        organizer=organizer,
        attendees=attendees,
        timezone=tz_name or "UTC",
        uid=f"booking-{booking.id}@calsync",
    )


class SyncOrchestrator:
    def __init__(
        self,
        settings: Settings,
        repo: IntegrationRepository,
        clients: ProviderClients,
        vault: CredentialVault,
        locks: IntegrationLocks,
    ) -> None:
        self._settings = settings
        self._repo = repo
        self._clients = clients
        self._vault = vault
        self._locks = locks

    # --- Credentials ---

    async def _resolve_auth(self, integration: CalendarIntegration) -> Any:
        """Decrypt credentials, refreshing an OAuth token that has already expired."""
        provider = integration.provider_enum
        if provider == CalendarProvider.CALDAV:
            return CalDAVCredentials(
                server_url=integration.server_url or "",
                username=integration.username or "",
                password=self._vault.decrypt(integration.encrypted_password or ""),
                timezone=integration.timezone or "UTC",
            )
        expires_at = integration.token_expires_at
        if (
            expires_at is not None
            and integration.encrypted_refresh_token
            and expires_at <= datetime.now(timezone.utc) + TOKEN_EXPIRY_MARGIN
        ):
            return await self._refresh(integration)
        return self._vault.decrypt(integration.encrypted_access_token or "")

    async def _refresh(self, integration: CalendarIntegration) -> str:
        refresh_token = self._vault.decrypt(integration.encrypted_refresh_token or "")
        if not refresh_token:
            raise OAuthRefreshError("No refresh token stored for integration")
        client = self._clients.oauth(integration.provider_enum)
        tokens = await client.refresh_access_token(refresh_token)
        expires_at = (
            datetime.now(timezone.utc) + timedelta(seconds=int(tokens.expires_in)) if tokens.expires_in else None
        )
        await self._repo.save_tokens(
            integration,
            self._vault.encrypt(tokens.access_token),
            self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            expires_at,
        )
        logger.info("Refreshed access token for integration %s", integration.id)
        return tokens.access_token

    async def run_with_integration(
        self,
        integration_id: uuid.UUID,
        operation: Callable[[CalendarIntegration, Any], Awaitable[T]],
        *,
        record_success: bool = True,
    ) -> T:
        """Single-flight: reload → decrypt → call → persist, for one integration.

        A 401/403 from the provider triggers exactly one refresh-and-retry. The
        outcome is written to the integration's health fields before returning.
        """
        async with self._locks.hold(integration_id):
            integration = await self._repo.get_integration(integration_id)
            if integration is None or not integration.is_active:
                raise IntegrationNotFoundError(f"Integration {integration_id} is missing or inactive")
            try:
                auth = await self._resolve_auth(integration)
                try:
                    result = await operation(integration, auth)
                except AuthExpiredError:
                    if integration.provider_enum == CalendarProvider.CALDAV:
                        raise
                    logger.info("Access token rejected for integration %s; refreshing once", integration.id)
                    auth = await self._refresh(integration)
                    result = await operation(integration, auth)
            except CalendarError as exc:
                await self._record_failure(integration, exc)
                raise
            if record_success:
                await self._repo.record_sync_success(integration)
            return result

    async def _record_failure(self, integration: CalendarIntegration, exc: CalendarError) -> None:
        error = describe_error(exc)
        if isinstance(exc, OAuthRefreshError):
            logger.warning("Refresh token revoked for integration %s; deactivating", integration.id)
            await self._repo.record_sync_failure(integration, error, auth_failure=True, deactivate=True)
        elif isinstance(exc, AuthExpiredError):
            failures = (integration.auth_failure_count or 0) + 1
            deactivate = failures >= self._settings.max_auth_failures
            if deactivate:
                logger.warning("Integration %s hit %d auth failures; deactivating", integration.id, failures)
            await self._repo.record_sync_failure(integration, error, auth_failure=True, deactivate=deactivate)
        else:
            await self._repo.record_sync_failure(integration, error)

    # --- Booking push / removal ---

    async def sync_booking_to_all_integrations(self, booking_id: uuid.UUID) -> list[SyncResult]:
        """Create or update the booking's event on every active, sync-enabled integration."""
        booking = await self._repo.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")

        integrations = await self._repo.list_sync_targets(booking.host_id)
        if not integrations:
            logger.info("No sync-enabled integrations for booking %s", booking_id)
            return []

        links = {link.integration_id: link for link in await self._repo.get_links(booking_id)}
        outcomes = await asyncio.gather(
            *(self._push_one(booking, integration, links.get(integration.id)) for integration in integrations),
            return_exceptions=True,
        )

        results: list[SyncResult] = []
        for integration, outcome in zip(integrations, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Unexpected failure syncing booking %s to %s: %r", booking_id, integration.id, outcome)
                outcome = SyncResult(
                    integration_id=integration.id,
                    provider=integration.provider,
                    success=False,
                    error=describe_error(outcome) if isinstance(outcome, Exception) else "cancelled",
                )
            results.append(outcome)

        # Legacy single back-reference: the last successful write in integration order wins
        last_success = next((r for r in reversed(results) if r.success), None)
        if last_success is not None:
            await self._repo.set_booking_back_reference(
                booking_id, last_success.integration_id, last_success.external_event_id
            )

        logger.info(
            "Synced booking %s: %d/%d integrations succeeded",
            booking_id,
            sum(r.success for r in results),
            len(results),
        )
        return results

    push_booking = sync_booking_to_all_integrations

    async def _push_one(self, booking: Booking, integration: CalendarIntegration, link) -> SyncResult:
        provider = integration.provider_enum
        backend = self._clients.backend(provider)

        async def operation(current: CalendarIntegration, auth: Any) -> EventRef:
            payload = build_event_payload(booking, current.timezone or "UTC", self._settings.app_name)
            if link is not None:
                ref = EventRef(external_id=link.external_event_id, url=link.event_url, etag=link.etag)
                return await backend.update_event(auth, current.calendar_id, ref, payload)
            return await backend.create_event(auth, current.calendar_id, payload)

        operation_name = "update" if link is not None else "create"
        try:
            ref = await self.run_with_integration(integration.id, operation)
        except CalendarError as exc:
            sync_results_total.labels(provider=provider.value.lower(), operation=operation_name, status="failed").inc()
            logger.warning("Booking %s → integration %s failed: %s", booking.id, integration.id, type(exc).__name__)
            return SyncResult(
                integration_id=integration.id,
                provider=integration.provider,
                success=False,
                error=describe_error(exc),
            )

        await self._repo.upsert_link(booking.id, integration.id, ref)
        sync_results_total.labels(provider=provider.value.lower(), operation=operation_name, status="success").inc()
        return SyncResult(
            integration_id=integration.id,
            provider=integration.provider,
            success=True,
            external_event_id=ref.external_id,
        )

    async def remove_booking_from_calendar(self, booking_id: uuid.UUID) -> RemovalResult:
        """Best-effort delete of every remote event linked to the booking."""
        booking = await self._repo.get_booking(booking_id)
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")

        links = await self._repo.get_links(booking_id)
        if not links and not (booking.calendar_integration_id and booking.external_calendar_event_id):
            return RemovalResult(success=True, message=NOT_SYNCED_MESSAGE)

        targets = [(link.integration_id, EventRef(link.external_event_id, link.event_url, link.etag)) for link in links]
        if not targets:
            targets = [(booking.calendar_integration_id, EventRef(booking.external_calendar_event_id))]

        outcomes = await asyncio.gather(
            *(self._remove_one(booking_id, integration_id, ref) for integration_id, ref in targets),
            return_exceptions=True,
        )
        results: list[SyncResult] = []
        for (integration_id, ref), outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Unexpected failure removing booking %s from %s: %r", booking_id, integration_id, outcome)
                outcome = SyncResult(integration_id=integration_id, provider="", success=False, error="unexpected error")
            results.append(outcome)

        if all(r.success for r in results):
            await self._repo.set_booking_back_reference(booking_id, None, None)
            return RemovalResult(success=True, message="Booking removed from calendars", results=results)
        return RemovalResult(success=False, message="Some calendars could not be updated", results=results)

    async def _remove_one(self, booking_id: uuid.UUID, integration_id: uuid.UUID, ref: EventRef) -> SyncResult:
        provider = ""

        async def operation(current: CalendarIntegration, auth: Any) -> None:
            nonlocal provider
            provider = current.provider
            await self._clients.backend(current.provider_enum).delete_event(auth, current.calendar_id, ref)

        try:
            await self.run_with_integration(integration_id, operation)
        except IntegrationNotFoundError:
            # Integration deleted or disabled; nothing left to clean up remotely
            await self._repo.delete_link(booking_id, integration_id)
            return SyncResult(integration_id=integration_id, provider=provider, success=True)
        except CalendarError as exc:
            sync_results_total.labels(provider=provider.lower() or "unknown", operation="delete", status="failed").inc()
            return SyncResult(
                integration_id=integration_id, provider=provider, success=False, error=describe_error(exc)
            )

        await self._repo.delete_link(booking_id, integration_id)
        sync_results_total.labels(provider=provider.lower(), operation="delete", status="success").inc()
        return SyncResult(
            integration_id=integration_id, provider=provider, success=True, external_event_id=ref.external_id
        )

    # --- Availability ---

    async def _fetch_busy(self, integration: CalendarIntegration, start: datetime, end: datetime) -> list[RemoteEvent]:
        backend = self._clients.backend(integration.provider_enum)

        async def operation(current: CalendarIntegration, auth: Any) -> list[RemoteEvent]:
            return await backend.list_events(auth, current.calendar_id, start, end)

        return await self.run_with_integration(integration.id, operation, record_success=False)

    async def check_conflicts(
        self,
        user_id: uuid.UUID,
        start: datetime,
        end: datetime,
        integration_ids: list[uuid.UUID] | None = None,
    ) -> ConflictReport:
        """Union of overlapping busy events, each tagged with the integration it came from."""
        integrations = await self._repo.list_conflict_sources(user_id, integration_ids)
        outcomes = await asyncio.gather(
            *(self._fetch_busy(i, start, end) for i in integrations),
            return_exceptions=True,
        )

        conflicts: list[Conflict] = []
        checked: list[CheckedIntegration] = []
        for integration, outcome in zip(integrations, outcomes):
            if isinstance(outcome, BaseException):
                error = describe_error(outcome) if isinstance(outcome, Exception) else "cancelled"
                checked.append(
                    CheckedIntegration(integration.id, integration.name, integration.provider, False, error)
                )
                continue
            checked.append(CheckedIntegration(integration.id, integration.name, integration.provider, True))
            for event in find_conflicts(start, end, outcome):
                conflicts.append(Conflict(integration.id, integration.name, integration.provider, event))

        conflict_checks_total.labels(result="conflict" if conflicts else "clear").inc()
        return ConflictReport(
            has_conflicts=bool(conflicts),
            conflicts=conflicts,
            checked_integrations=checked,
            start=start,
            end=end,
        )

    async def suggest_alternatives(
        self,
        user_id: uuid.UUID,
        start: datetime,
        end: datetime,
        days: int = 7,
        tz_name: str = "UTC",
    ) -> list[TimeSlot]:
        """Up to five conflict-free slots of the same length, starting from ``start``."""
        window_end = start + timedelta(days=days)
        integrations = await self._repo.list_conflict_sources(user_id)
        outcomes = await asyncio.gather(
            *(self._fetch_busy(i, start, window_end) for i in integrations),
            return_exceptions=True,
        )
        busy: list[RemoteEvent] = []
        for integration, outcome in zip(integrations, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Skipping integration %s for alternatives: %r", integration.id, outcome)
                continue
            busy.extend(outcome)
        return find_free_slots(busy, end - start, start, days=days, tz_name=tz_name)

    # --- Integration maintenance ---

    async def refresh_integration(self, integration_id: uuid.UUID) -> int:
        """Re-fetch the sync window into the event cache; returns the number of busy events."""
        now = datetime.now(timezone.utc)
        window_end = now + timedelta(days=self._settings.sync_window_days)
        backend_for = self._clients.backend

        async def operation(current: CalendarIntegration, auth: Any) -> list[RemoteEvent]:
            return await backend_for(current.provider_enum).list_events(auth, current.calendar_id, now, window_end)

        events = await self.run_with_integration(integration_id, operation)
        await self._repo.replace_external_events(integration_id, events)
        logger.info("Refreshed %d events for integration %s", len(events), integration_id)
        return len(events)

    async def list_calendars(self, integration_id: uuid.UUID) -> list[CalendarInfo]:
        async def operation(current: CalendarIntegration, auth: Any) -> list[CalendarInfo]:
            if current.provider_enum == CalendarProvider.CALDAV:
                return await self._clients.caldav.discover_calendars(auth)
            return await self._clients.oauth(current.provider_enum).list_calendars(auth)

        return await self.run_with_integration(integration_id, operation, record_success=False)

    async def test_connection(self, integration_id: uuid.UUID) -> CheckedIntegration:
        """Call the provider with stored credentials; success clears ``last_error``."""

        async def operation(current: CalendarIntegration, auth: Any) -> CalendarIntegration:
            if current.provider_enum == CalendarProvider.CALDAV:
                await self._clients.caldav.test_connection(auth)
            else:
                await self._clients.oauth(current.provider_enum).fetch_profile(auth)
            return current

        try:
            integration = await self.run_with_integration(integration_id, operation)
        except IntegrationNotFoundError:
            raise
        except CalendarError as exc:
            integration = await self._repo.get_integration(integration_id)
            return CheckedIntegration(
                integration_id,
                integration.name if integration else "",
                integration.provider if integration else "",
                False,
                describe_error(exc),
            )
        return CheckedIntegration(integration.id, integration.name, integration.provider, True)

    # --- Push channels ---

    async def register_push_channel(self, integration_id: uuid.UUID) -> str | None:
        """Subscribe to remote changes; returns the new channel id, or None when push is unsupported."""
        base_url = self._settings.webhook_base_url.rstrip("/")
        if not base_url:
            return None
        channel_id = str(uuid.uuid4())
        prefix = f"{base_url}{self._settings.api_prefix}/calendar/webhooks"

        async def operation(current: CalendarIntegration, auth: Any) -> tuple[str, str | None, datetime] | None:
            provider = current.provider_enum
            if provider == CalendarProvider.GOOGLE:
                watch = await self._clients.google.watch_events(
                    auth, current.calendar_id, channel_id, f"{prefix}/google"
                )
                return channel_id, watch["resourceId"], watch["expiration"]
            if provider == CalendarProvider.OUTLOOK:
                subscription = await self._clients.outlook.create_subscription(
                    auth,
                    current.calendar_id,
                    f"{prefix}/outlook",
                    self._settings.outlook_client_state.get_secret_value(),
                )
                return subscription["id"], subscription["resource"], subscription["expiration"]
            return None

        registered = await self.run_with_integration(integration_id, operation, record_success=False)
        if registered is None:
            return None
        integration = await self._repo.get_integration(integration_id)
        registered_id, resource_id, expires_at = registered
        await self._repo.save_channel(integration_id, integration.provider_enum, registered_id, resource_id, expires_at)
        logger.info("Registered push channel %s for integration %s", registered_id, integration_id)
        return registered_id

    async def renew_push_channel(self, channel: WebhookChannel) -> None:
        """Extend a Graph subscription in place; Google channels are replaced."""

        async def operation(current: CalendarIntegration, auth: Any) -> datetime | None:
            if current.provider_enum == CalendarProvider.OUTLOOK:
                return await self._clients.outlook.renew_subscription(auth, channel.channel_id)
            if channel.resource_id:
                await self._clients.google.stop_channel(auth, channel.channel_id, channel.resource_id)
            return None

        expires_at = await self.run_with_integration(channel.integration_id, operation, record_success=False)
        if expires_at is not None:
            await self._repo.update_channel_expiry(channel, expires_at)
            return
        await self._repo.delete_channel(channel)
        await self.register_push_channel(channel.integration_id)

    async def unregister_push_channels(self, integration_id: uuid.UUID) -> None:
        """Best-effort stop of every channel before the integration is removed."""
        for channel in await self._repo.list_integration_channels(integration_id):

            async def operation(current: CalendarIntegration, auth: Any, channel=channel) -> None:
                if current.provider_enum == CalendarProvider.OUTLOOK:
                    await self._clients.outlook.delete_subscription(auth, channel.channel_id)
                elif channel.resource_id:
                    await self._clients.google.stop_channel(auth, channel.channel_id, channel.resource_id)

            try:
                await self.run_with_integration(integration_id, operation, record_success=False)
            except CalendarError as exc:
                logger.warning("Could not stop channel %s: %s", channel.channel_id, type(exc).__name__)
