"""FastAPI dependency injection for settings, database sessions and end-user sessions."""

from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from appbase_core.sessions.token_codec import TokenCodec
from appbase_core.state.database import get_engine, set_tenant_context, validate_tenant_id
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from appbase_api.config import APISettings, PlatformEnv, load_api_settings
from appbase_api.middleware.login_rate_limiter import LoginRateLimiter
from appbase_api.services.session_service import RequestContext, SessionManager

logger = logging.getLogger(__name__)

UNAUTHENTICATED = "unauthenticated"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that manage their own transactions (the webhook
    endpoint and the session janitor).
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context.

    Only for endpoints that touch no tenant data (health probes).  The
    session commits on clean exit and rolls back on exception.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]


def get_app_id(app_id: str) -> str:
    """Validate the ``{app_id}`` path parameter."""
    try:
        return validate_tenant_id(app_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail="Unknown app") from exc


AppIdDep = Annotated[str, Depends(get_app_id)]


async def get_tenant_session(app_id: AppIdDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` with the RLS tenant context set to the path's app.

    This is the session dependency for every tenant-scoped endpoint.
    """
    session = get_session_factory()()
    try:
        await set_tenant_context(session, app_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------

_token_codec: TokenCodec | None = None


def init_token_codec(settings: APISettings) -> TokenCodec:
    """Create and cache the process-wide :class:`TokenCodec`.

    In ``dev`` an unset pepper is replaced by a random one, which
    invalidates every session on restart.
    """
    global _token_codec  # noqa: PLW0603
    pepper = settings.session_pepper.get_secret_value()
    if not pepper:
        if settings.platform_env != PlatformEnv.DEV:
            raise RuntimeError("APPBASE_SESSION_PEPPER must be set outside dev")
        pepper = secrets.token_urlsafe(32)
        logger.warning("APPBASE_SESSION_PEPPER is not set; using a random per-process pepper")
    _token_codec = TokenCodec(pepper, settings.session_token_bytes)
    return _token_codec


def get_token_codec(settings: SettingsDep) -> TokenCodec:
    """Return the cached codec, creating it on first use."""
    if _token_codec is None:
        return init_token_codec(settings)
    return _token_codec


def get_session_manager(
    session: SessionDep,
    settings: SettingsDep,
    codec: Annotated[TokenCodec, Depends(get_token_codec)],
) -> SessionManager:
    return SessionManager(
        session,
        codec,
        ttl=settings.session_ttl,
        legacy_cookie_name=settings.legacy_session_cookie_name,
    )


SessionManagerDep = Annotated[SessionManager, Depends(get_session_manager)]


async def get_request_context(
    request: Request,
    app_id: AppIdDep,
    manager: SessionManagerDep,
) -> RequestContext:
    """Authenticate the request's session cookie against the path's app.

    Every failure produces the same 401 so a caller cannot tell a missing
    cookie from an expired, forged or foreign-app one.
    """
    context = await manager.validate_request(app_id, request.cookies)
    if context is None:
        raise HTTPException(status_code=401, detail=UNAUTHENTICATED)
    return context


ContextDep = Annotated[RequestContext, Depends(get_request_context)]

# ---------------------------------------------------------------------------
# Login rate limiting
# ---------------------------------------------------------------------------

_login_rate_limiter = LoginRateLimiter()


def get_login_rate_limiter() -> LoginRateLimiter:
    return _login_rate_limiter


RateLimiterDep = Annotated[LoginRateLimiter, Depends(get_login_rate_limiter)]
