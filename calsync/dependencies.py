"""FastAPI dependency injection."""

import uuid
from typing import AsyncGenerator

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from calsync.config import Settings, get_settings
from calsync.services.crypto_service import CredentialVault, get_credential_vault
from calsync.services.integration_repository import IntegrationRepository
from calsync.services.locks import IntegrationLocks, LocalIntegrationLocks, RedisIntegrationLocks
from calsync.services.sync_service import ProviderClients, SyncOrchestrator
from calsync.services.webhook_service import WebhookIngestion

# Initialized in lifespan
_engine = None
_session_factory = None
_redis: aioredis.Redis | None = None
_locks: IntegrationLocks | None = None
_clients: ProviderClients | None = None

security = HTTPBearer()


def get_session_factory(settings: Settings = Depends(get_settings)):
    global _engine, _session_factory
    if _session_factory is None:
        init_db(settings)
    return _session_factory


async def get_db(settings: Settings = Depends(get_settings)) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    factory = get_session_factory(settings)
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> uuid.UUID:
    """Extract and validate user_id from a platform-issued access token."""
    token = credentials.credentials
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
        )
        user_id = payload.get("sub")
        if user_id is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token payload",
            )
        return uuid.UUID(user_id)
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from e
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID in token",
        ) from e


def get_vault(settings: Settings = Depends(get_settings)) -> CredentialVault:
    return get_credential_vault(settings)


def get_provider_clients(settings: Settings = Depends(get_settings)) -> ProviderClients:
    global _clients
    if _clients is None:
        _clients = ProviderClients.from_settings(settings)
    return _clients


def get_integration_locks() -> IntegrationLocks:
    global _locks
    if _locks is None:
        # Single-process runs without Redis (e.g. local scripts)
        _locks = LocalIntegrationLocks()
    return _locks


def get_repository(db: AsyncSession = Depends(get_db)) -> IntegrationRepository:
    return IntegrationRepository(db)


def get_orchestrator(
    settings: Settings = Depends(get_settings),
    repo: IntegrationRepository = Depends(get_repository),
    clients: ProviderClients = Depends(get_provider_clients),
    vault: CredentialVault = Depends(get_vault),
    locks: IntegrationLocks = Depends(get_integration_locks),
) -> SyncOrchestrator:
    return SyncOrchestrator(settings, repo, clients, vault, locks)


def _enqueue_refresh(integration_id: uuid.UUID) -> None:
    from calsync.tasks.sync_tasks import refresh_integration

    refresh_integration.delay(str(integration_id))


def get_webhook_ingestion(
    settings: Settings = Depends(get_settings),
    repo: IntegrationRepository = Depends(get_repository),
) -> WebhookIngestion:
    return WebhookIngestion(settings, repo, _enqueue_refresh)


def init_db(settings: Settings) -> tuple:
    """Initialize database engine and session factory. Called from lifespan."""
    global _engine, _session_factory
    _engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine, _session_factory


def init_redis(settings: Settings) -> aioredis.Redis:
    """Create the shared Redis client and Redis-backed integration locks."""
    global _redis, _locks
    _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    _locks = RedisIntegrationLocks(_redis, ttl_seconds=settings.provider_timeout_seconds * 6)
    return _redis


async def shutdown_db():
    """Dispose of the database engine and Redis client. Called from lifespan."""
    global _engine, _redis
    if _engine:
        await _engine.dispose()
    if _redis is not None:
        await _redis.aclose()
        _redis = None
