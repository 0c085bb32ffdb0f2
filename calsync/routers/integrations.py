"""Calendar integration management routes."""

import logging
import uuid

from fastapi import APIRouter, Depends, Response, status

from calsync.dependencies import (
    get_current_user_id,
    get_orchestrator,
    get_provider_clients,
    get_repository,
    get_vault,
)
from calsync.errors import IntegrationNotFoundError, ProviderRequestError
from calsync.models.calendar_integration import CalendarIntegration, CalendarProvider
from calsync.schemas.integration import (
    CalDAVCredentialsRequest,
    CalDAVIntegrationCreate,
    CalendarResponse,
    ConnectionTestResponse,
    IntegrationResponse,
    IntegrationStatusResponse,
    IntegrationUpdate,
)
from calsync.services.calendar_backend import CalDAVCredentials
from calsync.services.crypto_service import CredentialVault
from calsync.services.integration_repository import IntegrationRepository
from calsync.services.sync_service import ProviderClients, SyncOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendar/integrations", tags=["calendar-integrations"])


async def _owned(repo: IntegrationRepository, user_id: uuid.UUID, integration_id: uuid.UUID) -> CalendarIntegration:
    integration = await repo.get_user_integration(user_id, integration_id)
    if integration is None:
        raise IntegrationNotFoundError(f"Integration {integration_id} not found for user")
    return integration


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
):
    return await repo.list_user_integrations(user_id)


@router.get("/status", response_model=list[IntegrationStatusResponse])
async def integrations_status(
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
):
    """Health summary: an integration is healthy when active with no recorded error."""
    return [
        IntegrationStatusResponse(
            id=i.id,
            provider=i.provider,
            name=i.name,
            is_active=i.is_active,
            sync_enabled=i.sync_enabled,
            last_sync_at=i.last_sync_at,
            last_error=i.last_error,
            healthy=bool(i.is_active and not i.last_error),
        )
        for i in await repo.list_user_integrations(user_id)
    ]


@router.post("/caldav/discover", response_model=list[CalendarResponse])
async def discover_caldav_calendars(
    body: CalDAVCredentialsRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    clients: ProviderClients = Depends(get_provider_clients),
):
    creds = CalDAVCredentials(server_url=str(body.server_url), username=body.username, password=body.password)
    return await clients.caldav.discover_calendars(creds)


@router.post("/caldav", response_model=IntegrationResponse, status_code=status.HTTP_201_CREATED)
async def create_caldav_integration(
    body: CalDAVIntegrationCreate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    clients: ProviderClients = Depends(get_provider_clients),
    vault: CredentialVault = Depends(get_vault),
    repo: IntegrationRepository = Depends(get_repository),
):
    """Validate the credentials by discovery, then store them encrypted."""
    server_url = str(body.server_url).rstrip("/")
    creds = CalDAVCredentials(server_url=server_url, username=body.username, password=body.password)
    calendars = await clients.caldav.discover_calendars(creds)
    if not calendars:
        raise ProviderRequestError("No calendars found on the CalDAV server")

    if body.calendar_id:
        selected = next((c for c in calendars if body.calendar_id in (c.id, c.url)), None)
        if selected is None:
            raise ProviderRequestError("Selected calendar was not found on the CalDAV server")
    else:
        selected = calendars[0]

    integration = CalendarIntegration(
        user_id=user_id,
        provider=CalendarProvider.CALDAV.value,
        name=body.name,
        description=body.description,
        server_url=server_url,
        username=body.username,
        encrypted_password=vault.encrypt(body.password),
        calendar_id=selected.url or selected.id,
        timezone=body.timezone,
        is_active=True,
        sync_enabled=body.sync_enabled,
        conflict_detection=body.conflict_detection,
        auth_failure_count=0,
    )
    integration = await repo.add_integration(integration)
    logger.info("Created CalDAV integration %s", integration.id)
    return integration


@router.get("/{integration_id}", response_model=IntegrationResponse)
async def get_integration(
    integration_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
):
    return await _owned(repo, user_id, integration_id)


@router.patch("/{integration_id}", response_model=IntegrationResponse)
async def update_integration(
    integration_id: uuid.UUID,
    body: IntegrationUpdate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    vault: CredentialVault = Depends(get_vault),
    repo: IntegrationRepository = Depends(get_repository),
):
    integration = await _owned(repo, user_id, integration_id)
    changes = body.model_dump(exclude_unset=True, by_alias=False)
    password = changes.pop("password", None)
    if password is not None:
        if integration.provider != CalendarProvider.CALDAV.value:
            raise ProviderRequestError("Only CalDAV integrations have a password")
        integration.encrypted_password = vault.encrypt(password)
    for field, value in changes.items():
        setattr(integration, field, value)
    if changes.get("is_active"):
        integration.auth_failure_count = 0
    await repo.save(integration)
    return integration


@router.delete("/{integration_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_integration(
    integration_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    integration = await _owned(repo, user_id, integration_id)
    if integration.is_active:
        await orchestrator.unregister_push_channels(integration_id)
    await repo.delete_integration(integration)
    logger.info("Deleted integration %s", integration_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{integration_id}/test", response_model=ConnectionTestResponse)
async def test_integration_connection(
    integration_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    await _owned(repo, user_id, integration_id)
    result = await orchestrator.test_connection(integration_id)
    return ConnectionTestResponse(id=integration_id, success=result.success, error=result.error)


@router.get("/{integration_id}/calendars", response_model=list[CalendarResponse])
async def list_integration_calendars(
    integration_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    await _owned(repo, user_id, integration_id)
    return await orchestrator.list_calendars(integration_id)


@router.post("/{integration_id}/sync")
async def sync_integration_now(
    integration_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    repo: IntegrationRepository = Depends(get_repository),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Manual re-fetch of the integration's busy events into the cache."""
    await _owned(repo, user_id, integration_id)
    count = await orchestrator.refresh_integration(integration_id)
    return {"integrationId": str(integration_id), "events": count}
