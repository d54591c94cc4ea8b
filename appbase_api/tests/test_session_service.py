"""Tests for appbase_api/services/session_service.py

Covers:
- Issue / validate / revoke lifecycle against SQLite
- Tenant isolation of tokens, including the legacy shared cookie
- Uniform ``None`` for missing, expired and tampered tokens
- Cookie attributes per environment
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from appbase_core.sessions.token_codec import TokenCodec
from appbase_core.state.repository import SessionRepository
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import Response

from appbase_api.config import PlatformEnv
from appbase_api.services.session_service import (
    ClientContext,
    SessionManager,
    cookie_name_for,
    cookie_policy,
)


@pytest.fixture()
def manager(session: AsyncSession, codec: TokenCodec) -> SessionManager:
    return SessionManager(session, codec, ttl=timedelta(hours=1), legacy_cookie_name="sid")


# ---------------------------------------------------------------------------
# Issue / validate
# ---------------------------------------------------------------------------


class TestIssueAndValidate:
    """Verify the basic session lifecycle."""

    @pytest.mark.asyncio
    async def test_issue_then_validate(self, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1", ClientContext(ip="10.0.0.1", user_agent="pytest"))
        context = await manager.validate("app-a", issued.raw_token)
        assert context is not None
        assert context.tenant_id == "app-a"
        assert context.subject_id == "user-1"
        assert context.token_digest == issued.token_digest

    @pytest.mark.asyncio
    async def test_only_digest_is_stored(self, manager: SessionManager, session: AsyncSession) -> None:
        """The raw token never reaches the database."""
        issued = await manager.issue("app-a", "user-1")
        row = await SessionRepository(session, "app-a").get_active(issued.token_digest)
        assert row is not None
        assert row.token_digest == issued.token_digest
        assert issued.raw_token != issued.token_digest
        assert await SessionRepository(session, "app-a").get_active(issued.raw_token) is None

    @pytest.mark.asyncio
    async def test_expiry_follows_ttl(self, manager: SessionManager) -> None:
        before = datetime.now(UTC)
        issued = await manager.issue("app-a", "user-1")
        assert before + timedelta(hours=1) <= issued.expires_at <= datetime.now(UTC) + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_each_issue_mints_a_new_token(self, manager: SessionManager) -> None:
        first = await manager.issue("app-a", "user-1")
        second = await manager.issue("app-a", "user-1")
        assert first.raw_token != second.raw_token
        assert await manager.validate("app-a", first.raw_token) is not None
        assert await manager.validate("app-a", second.raw_token) is not None


class TestRejection:
    """Every failure mode is reported the same way."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("token", [None, ""])
    async def test_missing_token(self, manager: SessionManager, token: str | None) -> None:
        assert await manager.validate("app-a", token) is None

    @pytest.mark.asyncio
    async def test_unknown_token(self, manager: SessionManager, codec: TokenCodec) -> None:
        assert await manager.validate("app-a", codec.mint()) is None

    @pytest.mark.asyncio
    async def test_tampered_token(self, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1")
        tampered = ("A" if issued.raw_token[0] != "A" else "B") + issued.raw_token[1:]
        assert await manager.validate("app-a", tampered) is None

    @pytest.mark.asyncio
    async def test_token_from_other_app(self, manager: SessionManager) -> None:
        """A token issued for app A never authenticates against app B."""
        issued = await manager.issue("app-a", "user-1")
        assert await manager.validate("app-b", issued.raw_token) is None

    @pytest.mark.asyncio
    async def test_expired_session(self, manager: SessionManager, session: AsyncSession, codec: TokenCodec) -> None:
        raw = codec.mint()
        now = datetime.now(UTC)
        await SessionRepository(session, "app-a").create(
            token_digest=codec.digest(raw),
            subject_id="user-1",
            issued_at=now - timedelta(hours=2),
            expires_at=now - timedelta(seconds=1),
        )
        assert await manager.validate("app-a", raw) is None

    @pytest.mark.asyncio
    async def test_different_pepper_cannot_validate(self, session: AsyncSession, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1")
        other = SessionManager(session, TokenCodec("another-pepper"), ttl=timedelta(hours=1))
        assert await other.validate("app-a", issued.raw_token) is None


# ---------------------------------------------------------------------------
# Cookies
# ---------------------------------------------------------------------------


class TestRequestCookies:
    """Verify per-app and legacy cookie resolution."""

    def test_candidate_order(self, manager: SessionManager) -> None:
        cookies = {"sid": "legacy", cookie_name_for("app-a"): "scoped", cookie_name_for("app-b"): "other"}
        assert manager.candidate_tokens("app-a", cookies) == ["scoped", "legacy"]

    def test_duplicate_legacy_value_tried_once(self, manager: SessionManager) -> None:
        cookies = {"sid": "same", cookie_name_for("app-a"): "same"}
        assert manager.candidate_tokens("app-a", cookies) == ["same"]

    def test_legacy_disabled(self, session: AsyncSession, codec: TokenCodec) -> None:
        manager = SessionManager(session, codec, ttl=timedelta(hours=1), legacy_cookie_name=None)
        assert manager.candidate_tokens("app-a", {"sid": "legacy"}) == []

    @pytest.mark.asyncio
    async def test_scoped_cookie_authenticates(self, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1")
        context = await manager.validate_request("app-a", {cookie_name_for("app-a"): issued.raw_token})
        assert context is not None and context.subject_id == "user-1"

    @pytest.mark.asyncio
    async def test_legacy_cookie_authenticates_own_app(self, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1")
        assert await manager.validate_request("app-a", {"sid": issued.raw_token}) is not None

    @pytest.mark.asyncio
    async def test_legacy_cookie_does_not_cross_apps(self, manager: SessionManager) -> None:
        """The shared legacy cookie is validated under the requested app."""
        issued = await manager.issue("app-a", "user-1")
        assert await manager.validate_request("app-b", {"sid": issued.raw_token}) is None

    @pytest.mark.asyncio
    async def test_falls_back_when_scoped_cookie_is_stale(self, manager: SessionManager, codec: TokenCodec) -> None:
        issued = await manager.issue("app-a", "user-1")
        cookies = {cookie_name_for("app-a"): codec.mint(), "sid": issued.raw_token}
        assert await manager.validate_request("app-a", cookies) is not None

    @pytest.mark.asyncio
    async def test_foreign_scoped_cookie_ignored(self, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1")
        assert await manager.validate_request("app-b", {cookie_name_for("app-a"): issued.raw_token}) is None


# ---------------------------------------------------------------------------
# Revocation
# ---------------------------------------------------------------------------


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoke_invalidates(self, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1")
        await manager.revoke("app-a", issued.token_digest)
        assert await manager.validate("app-a", issued.raw_token) is None

    @pytest.mark.asyncio
    async def test_revoke_is_idempotent(self, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1")
        await manager.revoke("app-a", issued.token_digest)
        await manager.revoke("app-a", issued.token_digest)

    @pytest.mark.asyncio
    async def test_revoke_under_other_app_is_noop(self, manager: SessionManager) -> None:
        issued = await manager.issue("app-a", "user-1")
        await manager.revoke("app-b", issued.token_digest)
        assert await manager.validate("app-a", issued.raw_token) is not None

    @pytest.mark.asyncio
    async def test_revoke_all_scoped_to_app_and_subject(self, manager: SessionManager) -> None:
        a1 = await manager.issue("app-a", "user-1")
        a2 = await manager.issue("app-a", "user-1")
        other_user = await manager.issue("app-a", "user-2")
        other_app = await manager.issue("app-b", "user-1")

        assert await manager.revoke_all("app-a", "user-1") == 2
        assert await manager.validate("app-a", a1.raw_token) is None
        assert await manager.validate("app-a", a2.raw_token) is None
        assert await manager.validate("app-a", other_user.raw_token) is not None
        assert await manager.validate("app-b", other_app.raw_token) is not None


class TestCookiePolicy:
    """Verify cookie attributes per environment."""

    def test_production_is_cross_site(self) -> None:
        policy = cookie_policy(PlatformEnv.PRODUCTION, "app-a", ttl=timedelta(hours=2))
        assert policy.name == "sid_app-a"
        assert policy.samesite == "none"
        assert policy.secure is True
        assert policy.httponly is True
        assert policy.path == "/"
        assert policy.max_age == 7200

    def test_dev_is_lax_without_secure(self) -> None:
        policy = cookie_policy(PlatformEnv.DEV, "app-a", ttl=timedelta(hours=2))
        assert policy.samesite == "lax"
        assert policy.secure is False
        assert policy.httponly is True

    def test_domain_is_passed_through(self) -> None:
        policy = cookie_policy(PlatformEnv.STAGING, "app-a", ttl=timedelta(hours=1), domain="api.example.com")
        assert policy.domain == "api.example.com"

    def test_set_on_response(self) -> None:
        response = Response()
        cookie_policy(PlatformEnv.PRODUCTION, "app-a", ttl=timedelta(hours=1)).set_on(response, "tok")
        header = response.headers["set-cookie"]
        assert header.startswith("sid_app-a=tok")
        assert "HttpOnly" in header
        assert "Secure" in header
        assert "SameSite=none" in header
        assert "Max-Age=3600" in header

    def test_clear_on_response_keeps_attributes(self) -> None:
        response = Response()
        cookie_policy(PlatformEnv.PRODUCTION, "app-a", ttl=timedelta(hours=1)).clear_on(response)
        header = response.headers["set-cookie"]
        assert header.startswith("sid_app-a=")
        assert "Max-Age=0" in header
        assert "Secure" in header
        assert "SameSite=none" in header
