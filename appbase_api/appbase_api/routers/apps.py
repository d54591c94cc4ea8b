"""Authenticated end-user endpoints of one app: profile and billing.

Every route resolves the :class:`RequestContext` from the app's session
cookie; the context's tenant is the path's ``app_id`` by construction.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from appbase_core.state.repository import EndUserRepository, IdentityRepository
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from appbase_api.dependencies import UNAUTHENTICATED, ContextDep, SessionDep, SettingsDep
from appbase_api.schemas import EndUserResponse, EntitlementResponse, PriceResponse
from appbase_api.services.billing_service import BillingError, BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/apps", tags=["apps"])


class CheckoutRequest(BaseModel):
    """Request body for ``POST /apps/{app_id}/billing/checkout``."""

    price_id: str = Field(..., min_length=1, max_length=255, description="Stripe price id.")
    success_url: str = Field(..., description="Redirect target after a completed checkout.")
    cancel_url: str = Field(..., description="Redirect target after an abandoned checkout.")


class PortalRequest(BaseModel):
    """Request body for ``POST /apps/{app_id}/billing/portal``."""

    return_url: str = Field(..., description="URL to return to after leaving the Stripe portal.")


async def load_profile(session: AsyncSession, app_id: str, subject_id: str) -> EndUserResponse | None:
    """Build the profile response for *subject_id*, or ``None`` if it no longer exists."""
    user = await EndUserRepository(session, app_id).get(subject_id)
    if user is None:
        return None
    identities = await IdentityRepository(session, app_id).list_for_subject(subject_id)
    return EndUserResponse(
        id=user.id,
        app_id=app_id,
        display_name=user.display_name,
        email=user.primary_email,
        email_verified=user.email_verified,
        providers=sorted({identity.provider for identity in identities}),
        created_at=user.created_at,
    )


@router.get("/{app_id}/me", response_model=EndUserResponse)
async def me(context: ContextDep, session: SessionDep) -> EndUserResponse:
    """Return the authenticated end user's profile."""
    profile = await load_profile(session, context.tenant_id, context.subject_id)
    if profile is None:
        # Session outlived its subject.
        raise HTTPException(status_code=401, detail=UNAUTHENTICATED)
    return profile


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


@router.get("/{app_id}/billing/entitlement", response_model=EntitlementResponse)
async def get_entitlement(context: ContextDep, session: SessionDep, settings: SettingsDep) -> EntitlementResponse:
    """Recompute the end user's entitlement from the ledgers and return it."""
    service = BillingService(session, settings, tenant_id=context.tenant_id)
    now = datetime.now(UTC)
    entitlement = await service.recompute_entitlement(context.subject_id, now)
    return EntitlementResponse(
        app_id=context.tenant_id,
        end_user_id=context.subject_id,
        billing_status=entitlement.status.value,
        access_until=entitlement.access_until,
        computed_at=now,
    )


@router.get("/{app_id}/billing/prices", response_model=list[PriceResponse])
async def list_prices(context: ContextDep, session: SessionDep, settings: SettingsDep) -> list[PriceResponse]:
    """List the active prices offered by this app."""
    service = BillingService(session, settings, tenant_id=context.tenant_id)
    return [PriceResponse(**price) for price in await service.list_prices()]


@router.post("/{app_id}/billing/checkout")
async def create_checkout(
    body: CheckoutRequest,
    context: ContextDep,
    session: SessionDep,
    settings: SettingsDep,
) -> dict[str, str]:
    """Start a Stripe Checkout for the authenticated end user."""
    service = BillingService(session, settings, tenant_id=context.tenant_id)
    profile = await load_profile(session, context.tenant_id, context.subject_id)
    try:
        return await service.create_checkout_session(
            context.subject_id,
            body.price_id,
            body.success_url,
            body.cancel_url,
            customer_email=profile.email if profile else None,
        )
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


@router.post("/{app_id}/billing/portal")
async def create_portal(
    body: PortalRequest,
    context: ContextDep,
    session: SessionDep,
    settings: SettingsDep,
) -> dict[str, str]:
    """Open the Stripe Customer Portal for the authenticated end user."""
    service = BillingService(session, settings, tenant_id=context.tenant_id)
    try:
        return await service.create_portal_session(context.subject_id, body.return_url)
    except BillingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
