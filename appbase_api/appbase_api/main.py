"""FastAPI application entry-point for the appbase service."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from appbase_core.state.sqlite_adapter import create_local_tables
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from appbase_api import __version__
from appbase_api.config import APISettings, PlatformEnv, load_api_settings
from appbase_api.dependencies import (
    dispose_engine,
    get_session_factory,
    init_engine,
    init_token_codec,
)
from appbase_api.middleware.logging import RequestLoggingMiddleware
from appbase_api.middleware.prometheus import PrometheusMiddleware
from appbase_api.routers import apps, auth, billing, health
from appbase_api.routers import metrics as metrics_router
from appbase_api.services.session_janitor import SessionJanitor

logger = logging.getLogger(__name__)


def _configure_structured_logging() -> None:
    from appbase_api.middleware.json_formatter import JSONFormatter

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)


# Exceptions that escape a route: (status, public detail, log level).
# The public detail never echoes the exception message.
_ERROR_RESPONSES: dict[type[Exception], tuple[int, str, int]] = {
    ValueError: (400, "Invalid request", logging.WARNING),
    PermissionError: (403, "Permission denied", logging.WARNING),
    SQLAlchemyError: (500, "Internal database error", logging.ERROR),
}


async def _error_response(request: Request, exc: Exception) -> JSONResponse:
    for exc_type, (status_code, detail, level) in _ERROR_RESPONSES.items():
        if isinstance(exc, exc_type):
            break
    else:
        raise exc
    logger.log(
        level,
        "%s on %s: %s",
        type(exc).__name__,
        request.url.path,
        exc,
        exc_info=level >= logging.ERROR,
    )
    return JSONResponse(status_code=status_code, content={"detail": detail})


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create tables in dev or local SQLite mode (production uses Alembic).
    - Bind the session-token pepper.
    - Start the expired-session janitor.

    On shutdown:
    - Stop the janitor and dispose the database engine.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        _configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    if settings.platform_env == PlatformEnv.DEV or is_local:
        # Production schemas, RLS policies included, come from Alembic only.
        await create_local_tables(engine)
        logger.info("Tables ensured without migrations (%s)", settings.platform_env.value)

    init_token_codec(settings)

    janitor = SessionJanitor(get_session_factory(), interval_seconds=settings.session_purge_interval_seconds)
    await janitor.start()

    yield

    await janitor.stop()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="appbase API",
        description="Tenant-scoped end-user sessions and billing entitlements.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(auth.router, prefix="/api/v1")
    app.include_router(apps.router, prefix="/api/v1")
    app.include_router(billing.router, prefix="/api/v1")

    # Outside /api/v1 versioning: Prometheus scrape and readiness probe.
    app.include_router(metrics_router.router)
    app.include_router(health.readiness_router)

    for exc_type in _ERROR_RESPONSES:
        app.add_exception_handler(exc_type, _error_response)

    return app


# Module-level application instance used by ``uvicorn appbase_api.main:app``.
app = create_app()
