"""Shared Pydantic response models for API endpoints.

Routers import from here so the OpenAPI document describes one shape per
resource.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# End users
# ---------------------------------------------------------------------------


class EndUserResponse(BaseModel):
    """Profile of the authenticated end user within one app."""

    id: str
    app_id: str
    display_name: str | None = None
    email: str | None = None
    email_verified: bool = False
    providers: list[str] = Field(default_factory=list)
    created_at: datetime | None = None


class SessionResponse(BaseModel):
    """Returned by signup and login; the token itself travels in the cookie."""

    user: EndUserResponse
    expires_at: datetime


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------


class EntitlementResponse(BaseModel):
    """Current billing state of an end user."""

    app_id: str
    end_user_id: str
    billing_status: str
    access_until: datetime | None = None
    computed_at: datetime


class PriceResponse(BaseModel):
    """An active price offered by an app."""

    price_id: str
    product_id: str | None = None
    product_name: str | None = None
    unit_amount: int | None = None
    currency: str | None = None
    recurring: bool = False


class WebhookAck(BaseModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True
    status: str
