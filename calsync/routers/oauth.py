"""Calendar OAuth routes: authorization redirect and code-exchange callback."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from calsync.config import Settings, get_settings
from calsync.dependencies import get_current_user_id, get_provider_clients, get_repository, get_vault
from calsync.errors import CalendarError, InvalidStateError, ProviderRequestError
from calsync.models.calendar_integration import CalendarIntegration, CalendarProvider
from calsync.schemas.integration import AuthorizationUrlResponse
from calsync.services.calendar_backend import ProviderProfile, TokenSet
from calsync.services.crypto_service import CredentialVault
from calsync.services.integration_repository import IntegrationRepository
from calsync.services.oauth_client import OAuthProviderClient, OAuthState, decode_state, encode_state
from calsync.services.sync_service import ProviderClients
from calsync.services.zoom_service import ZOOM_CALENDAR_ID

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendar/oauth", tags=["calendar-oauth"])

PROVIDER_PATHS = {
    "google": CalendarProvider.GOOGLE,
    "outlook": CalendarProvider.OUTLOOK,
    "zoom": CalendarProvider.ZOOM,
}
DEFAULT_CALENDAR_IDS = {
    CalendarProvider.GOOGLE: "primary",
    CalendarProvider.OUTLOOK: None,
    CalendarProvider.ZOOM: ZOOM_CALENDAR_ID,
}


def _oauth_client(provider: str, clients: ProviderClients) -> OAuthProviderClient:
    if provider not in PROVIDER_PATHS:
        raise ProviderRequestError(f"Unsupported OAuth provider {provider!r}")
    return clients.oauth(PROVIDER_PATHS[provider])


def _frontend_redirect(settings: Settings, **params: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{settings.frontend_url.rstrip('/')}/dashboard/calendar?{urlencode(params)}",
        status_code=302,
    )


def _build_url(provider: str, user_id: uuid.UUID, name: str | None, clients: ProviderClients) -> str:
    client = _oauth_client(provider, clients)
    state = encode_state(
        OAuthState(
            user_id=user_id,
            integration_name=name or client.default_integration_name,
            provider=client.provider.value,
        )
    )
    return client.build_authorization_url(state)


@router.get("/{provider}/url", response_model=AuthorizationUrlResponse)
async def authorization_url(
    provider: str,
    name: str | None = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    clients: ProviderClients = Depends(get_provider_clients),
):
    """Return the provider consent URL for single-page clients."""
    return AuthorizationUrlResponse(url=_build_url(provider, user_id, name, clients))


@router.get("/{provider}")
async def authorize(
    provider: str,
    name: str | None = None,
    user_id: uuid.UUID = Depends(get_current_user_id),
    clients: ProviderClients = Depends(get_provider_clients),
):
    return RedirectResponse(url=_build_url(provider, user_id, name, clients), status_code=302)


async def store_oauth_integration(
    repo: IntegrationRepository,
    vault: CredentialVault,
    state: OAuthState,
    provider: CalendarProvider,
    tokens: TokenSet,
    profile: ProviderProfile,
) -> CalendarIntegration:
    """Create the integration, or reconnect the existing one for this user and provider."""
    expires_at = (
        datetime.now(timezone.utc) + timedelta(seconds=int(tokens.expires_in)) if tokens.expires_in else None
    )
    existing = await repo.find_user_provider_integration(state.user_id, provider)
    if existing is not None:
        existing.encrypted_access_token = vault.encrypt(tokens.access_token)
        if tokens.refresh_token:
            existing.encrypted_refresh_token = vault.encrypt(tokens.refresh_token)
        existing.token_expires_at = expires_at
        existing.provider_account_id = profile.account_id
        existing.provider_account_email = profile.email
        existing.is_active = True
        existing.last_error = None
        existing.auth_failure_count = 0
        await repo.save(existing)
        return existing

    integration = CalendarIntegration(
        user_id=state.user_id,
        provider=provider.value,
        name=state.integration_name,
        encrypted_access_token=vault.encrypt(tokens.access_token),
        encrypted_refresh_token=vault.encrypt_optional(tokens.refresh_token),
        token_expires_at=expires_at,
        provider_account_id=profile.account_id,
        provider_account_email=profile.email,
        calendar_id=DEFAULT_CALENDAR_IDS[provider],
        timezone="UTC",
        is_active=True,
        sync_enabled=True,
        conflict_detection=True,
        auth_failure_count=0,
    )
    return await repo.add_integration(integration)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str | None = None,
    state: str | None = None,
    settings: Settings = Depends(get_settings),
    clients: ProviderClients = Depends(get_provider_clients),
    vault: CredentialVault = Depends(get_vault),
    repo: IntegrationRepository = Depends(get_repository),
):
    """Provider redirect target. Always answers with a redirect back to the dashboard."""
    if not code or not state:
        return _frontend_redirect(settings, error="missing_parameters")

    client = _oauth_client(provider, clients)
    try:
        oauth_state = decode_state(state)
        if oauth_state.provider and oauth_state.provider != client.provider.value:
            raise InvalidStateError("State was issued for another provider")
    except InvalidStateError as e:
        logger.warning("Rejected %s OAuth callback: %s", provider, e)
        return _frontend_redirect(settings, error="invalid_state")

    try:
        tokens = await client.exchange_code(code)
        profile = await client.fetch_profile(tokens.access_token)
        integration = await store_oauth_integration(repo, vault, oauth_state, client.provider, tokens, profile)
    except CalendarError as e:
        logger.warning("%s OAuth callback failed: %s", provider, type(e).__name__)
        return _frontend_redirect(settings, error="authentication_failed")

    if settings.webhook_base_url and client.provider in (CalendarProvider.GOOGLE, CalendarProvider.OUTLOOK):
        from calsync.tasks.sync_tasks import register_push_channel

        register_push_channel.delay(str(integration.id))

    logger.info("Connected %s integration %s", provider, integration.id)
    return _frontend_redirect(settings, success="true", integration=integration.name)
