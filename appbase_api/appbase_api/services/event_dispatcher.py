"""Route verified Stripe events to ledger updates and entitlement refreshes.

Lifecycle events are attributed to a tenant and subject exclusively through
the ``app_id`` / ``end_user_id`` metadata stamped when the provider object
was created.  Events without it are dropped with an integrity warning and
acknowledged, so the provider stops redelivering something that can never
be attributed.  Connection-level events carry only the connected account id
and are resolved through the ``connected_accounts`` table.

Each handled event runs inside the caller's transaction:
ledger upsert -> reconcile -> entitlement upsert.  Storage errors propagate
so the webhook responds 500 and the provider retries.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from appbase_core.state.database import set_tenant_context, validate_tenant_id
from appbase_core.state.repository import (
    BillingCustomerRepository,
    ConnectedAccountRepository,
    EndUserRepository,
    PaymentLedgerRepository,
    SubscriptionLedgerRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession

from appbase_api.config import APISettings
from appbase_api.middleware.prometheus import WEBHOOK_EVENTS_TOTAL
from appbase_api.services.billing_service import (
    METADATA_SUBJECT_KEY,
    METADATA_TENANT_KEY,
    BillingService,
)

logger = logging.getLogger(__name__)

# Orders event types emitted for the same object within one second.
SUBSCRIPTION_EVENT_RANKS: dict[str, int] = {
    "customer.subscription.created": 0,
    "customer.subscription.updated": 1,
    "customer.subscription.deleted": 2,
}
PAYMENT_EVENT_RANKS: dict[str, int] = {
    "payment_intent.created": 0,
    "payment_intent.payment_failed": 1,
    "payment_intent.canceled": 1,
    "payment_intent.succeeded": 2,
    "charge.refunded": 3,
}

_LOG_ONLY_EVENTS = frozenset(
    {
        "customer.subscription.trial_will_end",
        "charge.dispute.created",
        "invoice.payment_succeeded",
        "invoice.payment_failed",
    }
)

STATUS_PROCESSED = "processed"
STATUS_IGNORED = "ignored"
STATUS_REJECTED = "rejected"
STATUS_STALE = "stale"


class EventRejected(Exception):
    """The event cannot be attributed to a tenant and subject."""


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of dispatching one event."""

    event_id: str
    event_type: str
    status: str
    tenant_id: str | None = None
    subject_id: str | None = None

    def as_response(self) -> dict[str, Any]:
        return {"received": True, "status": self.status}


def _ts(value: Any) -> datetime | None:
    """Convert a Stripe unix timestamp to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _id_of(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be a string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


_Handler = Callable[[dict[str, Any]], Awaitable[DispatchResult]]


class EventDispatcher:
    """Dispatch verified webhook events to their handlers.

    Parameters
    ----------
    session:
        Database session; the caller commits after :meth:`dispatch` returns.
    settings:
        API settings providing the entitlement windows and Stripe key.
    clock:
        Returns the evaluation time used for entitlement recomputation.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))

        self._handlers: dict[str, _Handler] = {
            "checkout.session.completed": self._on_checkout_completed,
            "charge.refunded": self._on_charge_refunded,
            "account.updated": self._on_account_updated,
            "account.application.deauthorized": self._on_account_deauthorized,
        }
        for event_type in SUBSCRIPTION_EVENT_RANKS:
            self._handlers[event_type] = self._on_subscription
        for event_type in PAYMENT_EVENT_RANKS:
            self._handlers.setdefault(event_type, self._on_payment_intent)
        for event_type in _LOG_ONLY_EVENTS:
            self._handlers[event_type] = self._on_log_only

    @property
    def handled_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    async def dispatch(self, event: dict[str, Any]) -> DispatchResult:
        """Process one verified event.

        Returns
        -------
        DispatchResult
            ``processed`` when the ledgers changed, ``stale`` when a newer
            event had already been applied, ``rejected`` for events that
            cannot be attributed, ``ignored`` for unhandled types.

        Raises
        ------
        sqlalchemy.exc.SQLAlchemyError
            Storage failures propagate unchanged.
        """
        event_id = event.get("id", "")
        event_type = event.get("type", "")
        handler = self._handlers.get(event_type)

        if handler is None:
            logger.info("Ignoring unhandled webhook event type=%s id=%s", event_type, event_id)
            result = DispatchResult(event_id, event_type, STATUS_IGNORED)
        else:
            try:
                result = await handler(event)
            except EventRejected as exc:
                logger.warning(
                    "Rejected webhook event type=%s id=%s: %s",
                    event_type,
                    event_id,
                    exc,
                    extra={"webhook": {"event_id": event_id, "event_type": event_type, "reason": str(exc)}},
                )
                result = DispatchResult(event_id, event_type, STATUS_REJECTED)
            except Exception:
                WEBHOOK_EVENTS_TOTAL.labels(event_type=event_type, outcome="error").inc()
                raise

        WEBHOOK_EVENTS_TOTAL.labels(
            event_type=event_type if handler is not None else "other",
            outcome=result.status,
        ).inc()
        return result

    # ------------------------------------------------------------------
    # Attribution
    # ------------------------------------------------------------------

    async def _attribute(self, event: dict[str, Any], metadata: dict[str, Any] | None) -> tuple[str, str]:
        """Resolve ``(tenant_id, subject_id)`` from stamped metadata.

        The tenant must own the connected account the event came from and
        the subject must exist in that tenant.  On success the session's
        tenant context is set for row-level security.
        """
        metadata = metadata or {}
        tenant_id = metadata.get(METADATA_TENANT_KEY)
        subject_id = metadata.get(METADATA_SUBJECT_KEY)
        if not tenant_id or not subject_id:
            raise EventRejected("missing app_id/end_user_id metadata")
        try:
            validate_tenant_id(tenant_id)
        except ValueError as exc:
            raise EventRejected(str(exc)) from exc

        account = event.get("account")
        if account:
            owner = await ConnectedAccountRepository.resolve_tenant(self._session, account)
            if owner != tenant_id:
                raise EventRejected(f"connected account {account} is not owned by app {tenant_id}")

        await set_tenant_context(self._session, tenant_id)
        if await EndUserRepository(self._session, tenant_id).get(subject_id) is None:
            raise EventRejected(f"unknown end user in app {tenant_id}")
        return tenant_id, subject_id

    async def _finish(
        self,
        event: dict[str, Any],
        tenant_id: str,
        subject_id: str,
        applied: bool,
    ) -> DispatchResult:
        entitlement = await BillingService(self._session, self._settings, tenant_id=tenant_id).recompute_entitlement(
            subject_id, self._clock()
        )
        if not applied:
            logger.info(
                "Stale webhook event type=%s id=%s left ledger unchanged",
                event["type"],
                event["id"],
            )
        logger.debug("Recomputed entitlement %s for tenant=%s", entitlement.status.value, tenant_id)
        return DispatchResult(
            event["id"],
            event["type"],
            STATUS_PROCESSED if applied else STATUS_STALE,
            tenant_id=tenant_id,
            subject_id=subject_id,
        )

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    def _payment_intent_metadata(self, payment_intent_id: str, account: str | None) -> dict[str, Any]:
        """Fetch the metadata of a payment intent; charges do not inherit it."""
        stripe = self._get_stripe()
        options = {"stripe_account": account} if account else {}
        intent = stripe.PaymentIntent.retrieve(payment_intent_id, **options)
        return dict(intent.get("metadata") or {})

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _on_subscription(self, event: dict[str, Any]) -> DispatchResult:
        subscription = event["data"]["object"]
        tenant_id, subject_id = await self._attribute(event, subscription.get("metadata"))

        # Newer API versions report billing periods on the subscription item.
        item = _first_item(subscription)
        customer_id = _id_of(subscription.get("customer"))
        applied = await SubscriptionLedgerRepository(self._session, tenant_id).record(
            subscription_id=subscription["id"],
            subject_id=subject_id,
            status=subscription["status"],
            source_event_id=event["id"],
            source_event_at=_ts(event["created"]),  # type: ignore[arg-type]
            source_event_rank=SUBSCRIPTION_EVENT_RANKS[event["type"]],
            customer_id=customer_id,
            current_period_start=_ts(subscription.get("current_period_start") or item.get("current_period_start")),
            current_period_end=_ts(subscription.get("current_period_end") or item.get("current_period_end")),
            cancel_at=_ts(subscription.get("cancel_at")),
            canceled_at=_ts(subscription.get("canceled_at")),
            trial_end=_ts(subscription.get("trial_end")),
            price_id=_id_of(item.get("price")),
        )
        if customer_id:
            await BillingCustomerRepository(self._session, tenant_id).upsert(subject_id, customer_id)
        return await self._finish(event, tenant_id, subject_id, applied)

    async def _on_payment_intent(self, event: dict[str, Any]) -> DispatchResult:
        intent = event["data"]["object"]
        tenant_id, subject_id = await self._attribute(event, intent.get("metadata"))

        succeeded = event["type"] == "payment_intent.succeeded"
        applied = await PaymentLedgerRepository(self._session, tenant_id).record(
            payment_intent_id=intent["id"],
            subject_id=subject_id,
            amount=int(intent.get("amount_received") or intent.get("amount") or 0),
            currency=intent.get("currency") or "",
            status="succeeded" if succeeded else intent["status"],
            source_event_id=event["id"],
            source_event_at=_ts(event["created"]),  # type: ignore[arg-type]
            source_event_rank=PAYMENT_EVENT_RANKS[event["type"]],
            paid_at=_ts(event["created"]) if succeeded else None,
        )
        return await self._finish(event, tenant_id, subject_id, applied)

    async def _on_charge_refunded(self, event: dict[str, Any]) -> DispatchResult:
        charge = event["data"]["object"]
        payment_intent_id = _id_of(charge.get("payment_intent"))

        metadata = charge.get("metadata") or {}
        if not metadata.get(METADATA_TENANT_KEY) and payment_intent_id:
            metadata = self._payment_intent_metadata(payment_intent_id, event.get("account"))
        tenant_id, subject_id = await self._attribute(event, metadata)

        applied = await PaymentLedgerRepository(self._session, tenant_id).record(
            payment_intent_id=payment_intent_id or charge["id"],
            subject_id=subject_id,
            amount=int(charge.get("amount") or 0),
            currency=charge.get("currency") or "",
            status="succeeded" if charge.get("paid") else charge.get("status", "failed"),
            source_event_id=event["id"],
            source_event_at=_ts(event["created"]),  # type: ignore[arg-type]
            source_event_rank=PAYMENT_EVENT_RANKS["charge.refunded"],
            paid_at=_ts(charge.get("created")),
            refunded=bool(charge.get("refunded")),
            refunded_amount=int(charge.get("amount_refunded") or 0),
        )
        return await self._finish(event, tenant_id, subject_id, applied)

    async def _on_checkout_completed(self, event: dict[str, Any]) -> DispatchResult:
        checkout = event["data"]["object"]
        tenant_id, subject_id = await self._attribute(event, checkout.get("metadata"))

        customer_id = _id_of(checkout.get("customer"))
        if customer_id:
            await BillingCustomerRepository(self._session, tenant_id).upsert(subject_id, customer_id)
        logger.info(
            "Checkout completed tenant=%s subject=%s mode=%s",
            tenant_id,
            subject_id,
            checkout.get("mode"),
        )
        # Subscription and payment-intent events carry the ledger facts.
        return await self._finish(event, tenant_id, subject_id, applied=True)

    async def _on_account_updated(self, event: dict[str, Any]) -> DispatchResult:
        account = event["data"]["object"]
        account_id = account.get("id") or event.get("account")
        tenant_id = await ConnectedAccountRepository.resolve_tenant(self._session, account_id) if account_id else None
        if tenant_id is None:
            logger.warning("account.updated for unknown connected account id=%s", event["id"])
            return DispatchResult(event["id"], event["type"], STATUS_IGNORED)

        await set_tenant_context(self._session, tenant_id)
        await ConnectedAccountRepository(self._session, tenant_id).update_status(
            account_id, charges_enabled=bool(account.get("charges_enabled"))
        )
        return DispatchResult(event["id"], event["type"], STATUS_PROCESSED, tenant_id=tenant_id)

    async def _on_account_deauthorized(self, event: dict[str, Any]) -> DispatchResult:
        account_id = event.get("account")
        tenant_id = await ConnectedAccountRepository.resolve_tenant(self._session, account_id) if account_id else None
        if tenant_id is None:
            logger.warning("Deauthorization for unknown connected account id=%s", event["id"])
            return DispatchResult(event["id"], event["type"], STATUS_IGNORED)

        await set_tenant_context(self._session, tenant_id)
        await ConnectedAccountRepository(self._session, tenant_id).mark_deauthorized(
            account_id,  # type: ignore[arg-type]
            _ts(event["created"]),  # type: ignore[arg-type]
        )
        logger.warning("Connected account deauthorized for tenant=%s", tenant_id)
        return DispatchResult(event["id"], event["type"], STATUS_PROCESSED, tenant_id=tenant_id)

    async def _on_log_only(self, event: dict[str, Any]) -> DispatchResult:
        obj = event["data"]["object"]
        logger.info(
            "Webhook event type=%s id=%s object=%s account=%s",
            event["type"],
            event["id"],
            obj.get("id"),
            event.get("account"),
        )
        return DispatchResult(event["id"], event["type"], STATUS_PROCESSED)
