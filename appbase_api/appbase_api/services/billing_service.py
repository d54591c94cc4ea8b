"""Stripe billing operations and entitlement recomputation for one tenant.

Every provider object this service creates (checkout sessions and the
subscriptions or payment intents they spawn) is stamped with
``metadata = {"app_id": ..., "end_user_id": ...}``.  Webhook processing
relies on that metadata to attribute events to a tenant and subject.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from appbase_core.billing.reconciler import BillingReconciler, Entitlement
from appbase_core.state.repository import (
    BillingCustomerRepository,
    ConnectedAccountRepository,
    EntitlementRepository,
    PaymentLedgerRepository,
    SubscriptionLedgerRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession

from appbase_api.config import APISettings

logger = logging.getLogger(__name__)

METADATA_TENANT_KEY = "app_id"
METADATA_SUBJECT_KEY = "end_user_id"


class BillingError(Exception):
    """Raised when a billing operation cannot be performed."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def build_reconciler(settings: APISettings) -> BillingReconciler:
    """Return a reconciler using the configured grace and access windows."""
    return BillingReconciler(
        past_due_grace=settings.past_due_grace,
        one_time_access=settings.one_time_access,
    )


def ownership_metadata(tenant_id: str, subject_id: str) -> dict[str, str]:
    return {METADATA_TENANT_KEY: tenant_id, METADATA_SUBJECT_KEY: subject_id}


class BillingService:
    """Billing operations for a single tenant.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings containing Stripe configuration and entitlement windows.
    tenant_id:
        The tenant (app) performing billing operations.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        tenant_id: str,
        reconciler: BillingReconciler | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._tenant_id = tenant_id
        self._reconciler = reconciler or build_reconciler(settings)

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def _request_options(self) -> dict[str, str]:
        """Route provider calls to the tenant's connected account when it has one."""
        account = await ConnectedAccountRepository(self._session, self._tenant_id).get_account_id()
        return {"stripe_account": account} if account else {}

    # ------------------------------------------------------------------
    # Entitlements
    # ------------------------------------------------------------------

    async def recompute_entitlement(self, subject_id: str, now: datetime | None = None) -> Entitlement:
        """Derive the subject's entitlement from the ledgers and persist it."""
        now = now or datetime.now(UTC)
        subscriptions = await SubscriptionLedgerRepository(self._session, self._tenant_id).list_for_subject(subject_id)
        payments = await PaymentLedgerRepository(self._session, self._tenant_id).list_for_subject(subject_id)

        entitlement = self._reconciler.compute(subscriptions, payments, now)
        await EntitlementRepository(self._session, self._tenant_id).upsert(subject_id, entitlement, now)
        logger.info(
            "Entitlement tenant=%s subject=%s status=%s access_until=%s",
            self._tenant_id,
            subject_id,
            entitlement.status.value,
            entitlement.access_until,
        )
        return entitlement

    # ------------------------------------------------------------------
    # Checkout / portal
    # ------------------------------------------------------------------

    async def list_prices(self) -> list[dict[str, Any]]:
        """Return the active prices whose product belongs to this tenant."""
        stripe = self._get_stripe()
        options = await self._request_options()
        prices = stripe.Price.list(active=True, expand=["data.product"], limit=100, **options)
        out: list[dict[str, Any]] = []
        for price in prices["data"]:
            product = price.get("product") or {}
            metadata = product.get("metadata") or {}
            if metadata.get(METADATA_TENANT_KEY) != self._tenant_id:
                continue
            out.append(
                {
                    "price_id": price["id"],
                    "product_id": product.get("id"),
                    "product_name": product.get("name"),
                    "unit_amount": price.get("unit_amount"),
                    "currency": price.get("currency"),
                    "recurring": bool(price.get("recurring")),
                }
            )
        return out

    async def create_checkout_session(
        self,
        subject_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: str | None = None,
    ) -> dict[str, str]:
        """Create a Stripe Checkout session for the subject.

        The mode is ``subscription`` for recurring prices and ``payment``
        otherwise.  The price's product must be tagged with this tenant's
        ``app_id``.

        Returns
        -------
        dict
            Contains ``checkout_url``, ``session_id`` and ``mode``.

        Raises
        ------
        BillingError
            404 when the price does not exist, 400 for an inactive price,
            403 for a price owned by another app.
        """
        stripe = self._get_stripe()
        options = await self._request_options()
        try:
            price = stripe.Price.retrieve(price_id, expand=["product"], **options)
        except stripe.InvalidRequestError as exc:
            raise BillingError("Price not found", status_code=404) from exc

        if not price.get("active"):
            raise BillingError("Price is not active", status_code=400)
        product = price.get("product") or {}
        if (product.get("metadata") or {}).get(METADATA_TENANT_KEY) != self._tenant_id:
            raise BillingError("Price does not belong to this app", status_code=403)

        mode = "subscription" if price.get("recurring") else "payment"
        metadata = ownership_metadata(self._tenant_id, subject_id)
        params: dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": subject_id,
            "metadata": metadata,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}

        customer_id = await BillingCustomerRepository(self._session, self._tenant_id).get_customer_id(subject_id)
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        session = stripe.checkout.Session.create(**params, **options)
        logger.info(
            "Checkout session created tenant=%s subject=%s mode=%s",
            self._tenant_id,
            subject_id,
            mode,
        )
        return {"checkout_url": session["url"], "session_id": session["id"], "mode": mode}

    async def create_portal_session(self, subject_id: str, return_url: str) -> dict[str, str]:
        """Create a Stripe Customer Portal session for the subject.

        Raises
        ------
        BillingError
            404 when the subject has never completed a checkout.
        """
        options = await self._request_options()
        customer_id = await BillingCustomerRepository(self._session, self._tenant_id).get_customer_id(subject_id)
        if not customer_id:
            raise BillingError("No billing customer for this user", status_code=404)

        stripe = self._get_stripe()
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
            **options,
        )
        return {"url": session["url"]}
