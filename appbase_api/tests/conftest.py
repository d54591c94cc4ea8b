"""Shared fixtures for appbase API tests.

Provides an in-memory SQLite database wired into the application's session
factory, deterministic settings and token codec, a Stripe webhook signer,
and an async httpx client bound to the app.
"""

from __future__ import annotations

import hashlib
import hmac
import time
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from appbase_core.sessions.token_codec import TokenCodec
from appbase_core.state.repository import EndUserRepository
from appbase_core.state.sqlite_adapter import create_local_tables
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from appbase_api import dependencies
from appbase_api.config import APISettings
from appbase_api.dependencies import get_login_rate_limiter, get_settings, get_token_codec
from appbase_api.main import create_app
from appbase_api.middleware.login_rate_limiter import LoginRateLimiter

TEST_PEPPER = "test-pepper-for-appbase"
TEST_WEBHOOK_SECRET = "whsec_test_secret"

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        session_pepper=TEST_PEPPER,
        stripe_secret_key="sk_test_appbase",
        stripe_webhook_secret=TEST_WEBHOOK_SECRET,
        legacy_session_cookie_name="sid",
    )


@pytest.fixture()
def codec() -> TokenCodec:
    return TokenCodec(TEST_PEPPER)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def make_end_user(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Return a coroutine function that commits a new end user and returns its id."""

    async def _make(app_id: str = "app-a", display_name: str | None = "Ada", email: str | None = None) -> str:
        async with session_factory() as session:
            user = await EndUserRepository(session, app_id).create(display_name=display_name, primary_email=email)
            await session.commit()
            return user.id

    return _make


# ---------------------------------------------------------------------------
# Stripe webhook signing
# ---------------------------------------------------------------------------


def _sign(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


@pytest.fixture()
def sign_webhook() -> Callable[..., str]:
    """Return a function producing a ``Stripe-Signature`` header for a body."""
    return _sign


@pytest.fixture()
def make_event() -> Callable[..., dict[str, Any]]:
    """Return a factory for Stripe event payloads."""

    def _make(
        event_type: str,
        obj: dict[str, Any],
        *,
        event_id: str = "evt_1",
        created: int = 1_740_830_400,
        account: str | None = None,
    ) -> dict[str, Any]:
        event: dict[str, Any] = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "livemode": False,
            "data": {"object": obj},
        }
        if account is not None:
            event["account"] = account
        return event

    return _make


# ---------------------------------------------------------------------------
# FastAPI client (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def rate_limiter() -> LoginRateLimiter:
    return LoginRateLimiter()


@pytest.fixture()
def app(
    test_settings: APISettings,
    codec: TokenCodec,
    session_factory: async_sessionmaker[AsyncSession],
    rate_limiter: LoginRateLimiter,
    monkeypatch: pytest.MonkeyPatch,
):
    """Create a FastAPI app whose dependencies point at the test database.

    The lifespan does not run under ``ASGITransport``, so the global
    session factory is patched directly.
    """
    monkeypatch.setattr(dependencies, "_session_factory", session_factory)
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_token_codec] = lambda: codec
    application.dependency_overrides[get_login_rate_limiter] = lambda: rate_limiter
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
