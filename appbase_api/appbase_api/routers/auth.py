"""End-user authentication endpoints: signup, login, logout.

Security model:

- Each app gets its own HttpOnly session cookie, ``sid_<app_id>``, holding
  an opaque token.  The token is never returned in a response body.
- Cookie attributes come from :func:`cookie_policy`: cross-site
  (``SameSite=None; Secure``) outside dev.
- Login failures are rate limited per ``(app, email, client IP)``.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from appbase_api.config import APISettings
from appbase_api.dependencies import (
    AppIdDep,
    ContextDep,
    RateLimiterDep,
    SessionDep,
    SessionManagerDep,
    SettingsDep,
)
from appbase_api.routers.apps import load_profile
from appbase_api.schemas import SessionResponse
from appbase_api.services.auth_service import AuthError, PasswordAuthService
from appbase_api.services.session_service import ClientContext, IssuedSession, SessionManager, cookie_policy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _get_client_ip(request: Request) -> str:
    """Extract the client IP, respecting X-Forwarded-For for reverse-proxied deployments."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # The leftmost entry is the original client.
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


def _client_context(request: Request) -> ClientContext:
    return ClientContext(ip=_get_client_ip(request), user_agent=request.headers.get("user-agent"))


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for password signup."""

    email: EmailStr = Field(..., description="Email address.")
    password: str = Field(..., min_length=8, max_length=256, description="Password (min 8 characters).")
    display_name: str | None = Field(default=None, max_length=256, description="Display name.")


class LoginRequest(BaseModel):
    """Request body for email/password login."""

    email: EmailStr = Field(..., description="Email address.")
    password: str = Field(..., max_length=256, description="Password.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _session_response(
    session: AsyncSession,
    settings: APISettings,
    app_id: str,
    subject_id: str,
    issued: IssuedSession,
    *,
    status_code: int,
) -> JSONResponse:
    profile = await load_profile(session, app_id, subject_id)
    if profile is None:
        raise HTTPException(status_code=500, detail="End user vanished during login")
    body = SessionResponse(user=profile, expires_at=issued.expires_at)
    response = JSONResponse(content=body.model_dump(mode="json"), status_code=status_code)
    cookie_policy(settings.platform_env, app_id, ttl=settings.session_ttl, domain=settings.cookie_domain).set_on(
        response, issued.raw_token
    )
    return response


def _cleared(settings: APISettings, app_id: str, request: Request, content: dict[str, object]) -> JSONResponse:
    """Expire the app's session cookie, and the legacy shared cookie when the request sent it."""
    response = JSONResponse(content=content)
    policy = cookie_policy(settings.platform_env, app_id, ttl=settings.session_ttl, domain=settings.cookie_domain)
    policy.clear_on(response)
    legacy_name = settings.legacy_session_cookie_name
    if legacy_name and legacy_name in request.cookies:
        replace(policy, name=legacy_name).clear_on(response)
    return response


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/{app_id}/signup", response_model=SessionResponse, status_code=201, summary="Create a password account")
async def signup(
    app_id: AppIdDep,
    body: SignupRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    manager: SessionManagerDep,
) -> JSONResponse:
    """Register an end user of *app_id* and start a session."""
    svc = PasswordAuthService(session)
    try:
        subject_id = await svc.signup(app_id, body.email, body.password, body.display_name)
    except AuthError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    issued = await manager.issue(app_id, subject_id, _client_context(request))
    return await _session_response(session, settings, app_id, subject_id, issued, status_code=201)


@router.post("/{app_id}/login", response_model=SessionResponse, summary="Log in with email and password")
async def login(
    app_id: AppIdDep,
    body: LoginRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    manager: SessionManagerDep,
    limiter: RateLimiterDep,
) -> JSONResponse:
    """Validate credentials and start a session.

    After repeated failures for the same ``(app, email, IP)`` further
    attempts are refused with 429 until the backoff expires.
    """
    client_ip = _get_client_ip(request)

    allowed, retry_after = limiter.check_rate_limit(app_id, body.email, client_ip)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"Too many login attempts. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )

    svc = PasswordAuthService(session)
    try:
        subject_id = await svc.login(app_id, body.email, body.password)
    except AuthError as exc:
        limiter.record_failure(app_id, body.email, client_ip)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    limiter.record_success(app_id, body.email, client_ip)
    issued = await manager.issue(app_id, subject_id, _client_context(request))
    return await _session_response(session, settings, app_id, subject_id, issued, status_code=200)


async def _revoke_current(manager: SessionManager, app_id: str, request: Request) -> None:
    context = await manager.validate_request(app_id, request.cookies)
    if context is not None:
        await manager.revoke(app_id, context.token_digest)


@router.post("/{app_id}/logout", summary="End the current session")
async def logout(
    app_id: AppIdDep,
    request: Request,
    settings: SettingsDep,
    manager: SessionManagerDep,
) -> JSONResponse:
    """Revoke the request's session, if any, and expire the cookie.

    Succeeds without a valid session so clients can always clear state.
    """
    await _revoke_current(manager, app_id, request)
    # Same body whether or not the cookie held a live session.
    return _cleared(settings, app_id, request, {"logged_out": True})


@router.post("/{app_id}/logout-all", summary="End every session of the current user")
async def logout_all(
    context: ContextDep,
    request: Request,
    settings: SettingsDep,
    manager: SessionManagerDep,
) -> JSONResponse:
    """Revoke all sessions of the authenticated end user in this app."""
    removed = await manager.revoke_all(context.tenant_id, context.subject_id)
    return _cleared(settings, context.tenant_id, request, {"logged_out": True, "revoked": removed})
