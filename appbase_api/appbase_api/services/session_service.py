"""Tenant-scoped session issuance, validation and revocation.

Security model:

- Each app (tenant) gets its own cookie, ``sid_<app_id>``, holding an
  opaque random token.  The database stores only the peppered digest.
- A session is found only by ``(tenant, digest)``; the stored tenant is
  compared with the requested one again before the session is trusted.
- A single shared legacy cookie (default ``sid``) is still read for
  older clients, but a token found there is validated under the
  requested tenant like any other.
- Missing, expired, tampered and foreign-tenant tokens are all reported
  as ``None``; callers turn that into one uniform 401.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from appbase_core.billing.reconciler import as_utc
from appbase_core.sessions.token_codec import TokenCodec
from appbase_core.state.repository import SessionRepository
from sqlalchemy.ext.asyncio import AsyncSession

from appbase_api.config import PlatformEnv
from appbase_api.middleware.prometheus import SESSIONS_TOTAL

logger = logging.getLogger(__name__)

_COOKIE_PREFIX = "sid_"


def cookie_name_for(tenant_id: str) -> str:
    """Return the per-tenant session cookie name."""
    return f"{_COOKIE_PREFIX}{tenant_id}"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientContext:
    """Audit metadata captured at login."""

    ip: str | None = None
    user_agent: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IssuedSession:
    """Result of :meth:`SessionManager.issue`.

    ``raw_token`` is the only copy of the token; it goes into the response
    cookie and is never retrievable again.
    """

    raw_token: str
    token_digest: str
    expires_at: datetime


@dataclass(frozen=True)
class RequestContext:
    """Authenticated identity for one request, scoped to one tenant."""

    tenant_id: str
    subject_id: str
    token_digest: str
    expires_at: datetime


@dataclass(frozen=True)
class CookiePolicy:
    """Attributes of the session cookie for one tenant and environment."""

    name: str
    path: str
    domain: str | None
    samesite: str
    secure: bool
    httponly: bool
    max_age: int

    def set_on(self, response: Any, value: str) -> None:
        """Attach the session cookie to a Starlette response."""
        response.set_cookie(
            key=self.name,
            value=value,
            max_age=self.max_age,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )

    def clear_on(self, response: Any) -> None:
        """Expire the session cookie immediately, keeping every other attribute."""
        response.set_cookie(
            key=self.name,
            value="",
            max_age=0,
            expires=0,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )


def cookie_policy(
    host_env: PlatformEnv,
    tenant_id: str,
    *,
    ttl: timedelta,
    domain: str | None = None,
) -> CookiePolicy:
    """Return the cookie attributes for *tenant_id* in *host_env*.

    Outside ``dev`` the consuming app runs on a different origin from the
    API, so the cookie must be sent cross-site: ``SameSite=None; Secure``.
    Local development over plain HTTP uses ``SameSite=Lax`` without
    ``Secure``.
    """
    local = host_env == PlatformEnv.DEV
    return CookiePolicy(
        name=cookie_name_for(tenant_id),
        path="/",
        domain=domain,
        samesite="lax" if local else "none",
        secure=not local,
        httponly=True,
        max_age=int(ttl.total_seconds()),
    )


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------


class SessionManager:
    """Issue, validate and revoke opaque per-tenant sessions.

    Parameters
    ----------
    session:
        Active database session (caller manages the transaction).
    codec:
        Token codec bound to the process pepper.
    ttl:
        Lifetime of new sessions.
    legacy_cookie_name:
        Shared cookie name consulted after the per-tenant cookie, or
        ``None`` to disable the fallback.
    """

    def __init__(
        self,
        session: AsyncSession,
        codec: TokenCodec,
        *,
        ttl: timedelta,
        legacy_cookie_name: str | None = None,
    ) -> None:
        self._session = session
        self._codec = codec
        self._ttl = ttl
        self._legacy_cookie_name = legacy_cookie_name

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def issue(
        self,
        tenant_id: str,
        subject_id: str,
        client_context: ClientContext | None = None,
    ) -> IssuedSession:
        """Create a session for *subject_id* and return its raw token once."""
        ctx = client_context or ClientContext()
        raw_token = self._codec.mint()
        token_digest = self._codec.digest(raw_token)
        issued_at = datetime.now(UTC)
        expires_at = issued_at + self._ttl

        repo = SessionRepository(self._session, tenant_id)
        await repo.create(
            token_digest=token_digest,
            subject_id=subject_id,
            issued_at=issued_at,
            expires_at=expires_at,
            ip=ctx.ip,
            user_agent=ctx.user_agent,
            client_metadata=ctx.extra or None,
        )
        SESSIONS_TOTAL.labels(operation="issue", outcome="ok").inc()
        logger.info("Session issued tenant=%s subject=%s", tenant_id, subject_id)
        return IssuedSession(raw_token=raw_token, token_digest=token_digest, expires_at=expires_at)

    async def validate(self, tenant_id: str, raw_token: str | None) -> RequestContext | None:
        """Return the request context for *raw_token* under *tenant_id*, or ``None``."""
        if not raw_token:
            SESSIONS_TOTAL.labels(operation="validate", outcome="absent").inc()
            return None

        now = datetime.now(UTC)
        token_digest = self._codec.digest(raw_token)
        row = await SessionRepository(self._session, tenant_id).get_active(token_digest, now)
        if row is None:
            SESSIONS_TOTAL.labels(operation="validate", outcome="absent").inc()
            return None

        expires_at = as_utc(row.expires_at)
        if row.tenant_id != tenant_id or row.token_digest != token_digest or expires_at is None or expires_at <= now:
            logger.warning("Session lookup returned a non-matching row for tenant=%s; rejecting", tenant_id)
            SESSIONS_TOTAL.labels(operation="validate", outcome="mismatch").inc()
            return None

        SESSIONS_TOTAL.labels(operation="validate", outcome="ok").inc()
        return RequestContext(
            tenant_id=tenant_id,
            subject_id=row.subject_id,
            token_digest=token_digest,
            expires_at=expires_at,
        )

    def candidate_tokens(self, tenant_id: str, cookies: Mapping[str, str]) -> list[str]:
        """Return the tokens to try for *tenant_id*, per-tenant cookie first."""
        tokens: list[str] = []
        scoped = cookies.get(cookie_name_for(tenant_id))
        if scoped:
            tokens.append(scoped)
        if self._legacy_cookie_name:
            legacy = cookies.get(self._legacy_cookie_name)
            if legacy and legacy not in tokens:
                tokens.append(legacy)
        return tokens

    async def validate_request(self, tenant_id: str, cookies: Mapping[str, str]) -> RequestContext | None:
        """Validate the session cookies of a request against *tenant_id*."""
        for raw_token in self.candidate_tokens(tenant_id, cookies):
            context = await self.validate(tenant_id, raw_token)
            if context is not None:
                return context
        return None

    async def revoke(self, tenant_id: str, token_digest: str) -> None:
        """Delete one session.  Idempotent."""
        removed = await SessionRepository(self._session, tenant_id).delete(token_digest)
        SESSIONS_TOTAL.labels(operation="revoke", outcome="ok" if removed else "noop").inc()

    async def revoke_all(self, tenant_id: str, subject_id: str) -> int:
        """Delete every session of *subject_id* in *tenant_id*."""
        removed = await SessionRepository(self._session, tenant_id).delete_all_for_subject(subject_id)
        logger.info("Revoked %d session(s) tenant=%s subject=%s", removed, tenant_id, subject_id)
        return removed
