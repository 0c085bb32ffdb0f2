"""CalSync FastAPI application factory."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

from calsync.config import Settings, get_settings
from calsync.dependencies import get_session_factory, init_db, init_redis, shutdown_db
from calsync.errors import ConfigurationError, register_exception_handlers
from calsync.middleware.error_handler import ErrorHandlerMiddleware
from calsync.middleware.logging import LoggingMiddleware, setup_logging
from calsync.routers import integrations, oauth, sync, webhooks
from calsync.services.crypto_service import get_credential_vault

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    settings = get_settings()
    setup_logging(debug=settings.debug)
    logger.info("Starting CalSync API (env=%s)", settings.app_env)

    # Refuse to start without a usable encryption key
    get_credential_vault(settings)
    init_db(settings)
    app.state.redis = init_redis(settings)

    yield

    await shutdown_db()
    logger.info("CalSync API shutting down")


async def _check_database(settings: Settings) -> str:
    try:
        factory = get_session_factory(settings)
        async with factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        return f"error: {type(e).__name__}"
    return "ok"


async def _check_redis(app: FastAPI) -> str:
    redis = getattr(app.state, "redis", None)
    if redis is None:
        return "error: not initialized"
    try:
        await redis.ping()
    except Exception as e:
        return f"error: {type(e).__name__}"
    return "ok"


def _check_encryption(settings: Settings) -> str:
    try:
        get_credential_vault(settings)
    except ConfigurationError:
        return "error: ConfigurationError"
    return "ok"


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="CalSync",
        description="Calendar integrations and booking synchronization",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    register_exception_handlers(app)

    # Middleware (order matters: outermost first)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(LoggingMiddleware)
    origins = settings.cors_origins
    allow_all = origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins if not allow_all else [],
        allow_origin_regex=r".*" if allow_all else None,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
        max_age=600,
    )

    prefix = settings.api_prefix
    app.include_router(oauth.router, prefix=prefix)
    app.include_router(integrations.router, prefix=prefix)
    app.include_router(sync.router, prefix=prefix)
    app.include_router(webhooks.router, prefix=prefix)

    @app.get("/")
    async def root():
        return {"status": "running", "service": "calsync-api", "version": "1.0.0"}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "calsync-api"}

    @app.get("/health/ready")
    async def health_ready():
        """Deep health check: database, Redis and the credential key."""
        checks = {
            "database": await _check_database(settings),
            "redis": await _check_redis(app),
            "encryption": _check_encryption(settings),
        }
        all_ok = all(v == "ok" for v in checks.values())
        return JSONResponse(
            status_code=200 if all_ok else 503,
            content={"status": "ready" if all_ok else "degraded", "checks": checks},
        )

    instrumentator = Instrumentator(
        excluded_handlers=["/health", "/health/ready", "/docs", "/redoc", "/openapi.json", "/metrics"],
    )
    instrumentator.instrument(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint with multiprocess support."""
        from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest, multiprocess

        multiproc_dir = os.environ.get("PROMETHEUS_MULTIPROC_DIR")
        if multiproc_dir:
            registry = CollectorRegistry()
            multiprocess.MultiProcessCollector(registry)
            data = generate_latest(registry)
        else:
            data = generate_latest()

        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


# Default app instance for uvicorn
app = create_app()
