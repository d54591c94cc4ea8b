"""Derive an entitlement snapshot from subscription and payment facts.

The reconciler is a pure function of ledger state and the evaluation time.
It keeps no counters and never reads the previous snapshot, so it can be
re-run at any time (after every webhook, on read, or in bulk) and always
yields the same answer for the same inputs.

Rules, in order:

1. Any ``active`` / ``trialing`` subscription → ``current``.  Access runs to
   the earlier of period end and ``cancel_at`` (active) or trial end and
   period end (trialing).
2. Otherwise the most relevant ``past_due`` subscription → ``past_due``
   with access until period end plus a grace window.
3. Otherwise a terminal subscription (``canceled``, ``unpaid``,
   ``incomplete_expired``) → ``cancelled``; access until the period end
   when known, else *now*.
4. Otherwise fall back to one-time payments: the latest succeeded payment
   that is not fully refunded grants access for a fixed window after
   ``paid_at``.

``incomplete`` and ``paused`` subscriptions never granted access and are
treated as if absent.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

DEFAULT_PAST_DUE_GRACE = timedelta(days=7)
DEFAULT_ONE_TIME_ACCESS = timedelta(days=30)

_ENTITLING_STATUSES: frozenset[str] = frozenset({"active", "trialing"})
_PAST_DUE_STATUSES: frozenset[str] = frozenset({"past_due"})
_TERMINAL_STATUSES: frozenset[str] = frozenset({"canceled", "unpaid", "incomplete_expired"})

# Sort key for datetimes that may be missing; missing sorts oldest.
_MIN_DT = datetime.min.replace(tzinfo=UTC)


class BillingStatus(str, Enum):
    """Externally visible billing states of a subject."""

    CURRENT = "current"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


def as_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime.

    SQLite hands back naive datetimes for ``DateTime(timezone=True)``
    columns; those are interpreted as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class SubscriptionFact:
    """Ledger view of one provider subscription."""

    subscription_id: str
    status: str
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at: datetime | None = None
    canceled_at: datetime | None = None
    trial_end: datetime | None = None
    price_id: str | None = None


@dataclass(frozen=True)
class PaymentFact:
    """Ledger view of one one-time payment intent."""

    payment_intent_id: str
    amount: int
    currency: str
    status: str
    refunded: bool = False
    refunded_amount: int = 0
    paid_at: datetime | None = None

    @property
    def fully_refunded(self) -> bool:
        """True when the payment no longer entitles its payer.

        Partial refunds keep the entitlement.
        """
        return self.refunded or (self.amount > 0 and self.refunded_amount >= self.amount)


@dataclass(frozen=True)
class Entitlement:
    """Derived billing state for a subject."""

    status: BillingStatus
    access_until: datetime | None
    source: str | None = None


def _tier(status: str) -> int:
    if status in _ENTITLING_STATUSES:
        return 0
    if status in _PAST_DUE_STATUSES:
        return 1
    if status in _TERMINAL_STATUSES:
        return 2
    return 3


def _earliest(*values: datetime | None) -> datetime | None:
    present = [v for v in values if v is not None]
    return min(present) if present else None


def most_relevant_subscription(facts: list[SubscriptionFact]) -> SubscriptionFact | None:
    """Pick the subscription that determines the entitlement.

    Order: active/trialing, then past_due, then terminal; within a tier the
    latest period end wins, and the subscription id breaks remaining ties
    so the choice is total and deterministic.  Facts with statuses outside
    these tiers are ignored.
    """
    candidates = [f for f in facts if _tier(f.status) < 3]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda f: (
            _tier(f.status),
            -(as_utc(f.current_period_end) or _MIN_DT).timestamp(),
            f.subscription_id,
        ),
    )


def latest_entitling_payment(payments: list[PaymentFact]) -> PaymentFact | None:
    """Return the most recent succeeded, not fully refunded payment."""
    candidates = [p for p in payments if p.status == "succeeded" and not p.fully_refunded]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda p: ((as_utc(p.paid_at) or _MIN_DT), p.payment_intent_id),
    )


class BillingReconciler:
    """Pure entitlement derivation with configurable windows.

    Parameters
    ----------
    past_due_grace:
        Access extension past the period end while payment is retried.
    one_time_access:
        Access window granted by a one-time payment, counted from ``paid_at``.
    """

    def __init__(
        self,
        past_due_grace: timedelta = DEFAULT_PAST_DUE_GRACE,
        one_time_access: timedelta = DEFAULT_ONE_TIME_ACCESS,
    ) -> None:
        self.past_due_grace = past_due_grace
        self.one_time_access = one_time_access

    def compute(
        self,
        subscriptions: list[SubscriptionFact],
        payments: list[PaymentFact],
        now: datetime,
    ) -> Entitlement:
        """Derive the entitlement for one subject.

        Parameters
        ----------
        subscriptions:
            Every subscription fact recorded for the subject.
        payments:
            Every payment fact recorded for the subject.
        now:
            Evaluation time.  Naive values are taken as UTC.

        Returns
        -------
        Entitlement
            Status, access horizon and the provider id that decided it.
        """
        now = as_utc(now)  # type: ignore[assignment]
        chosen = most_relevant_subscription(subscriptions)

        if chosen is not None:
            period_end = as_utc(chosen.current_period_end)
            if chosen.status == "active":
                return Entitlement(
                    BillingStatus.CURRENT,
                    _earliest(period_end, as_utc(chosen.cancel_at)),
                    chosen.subscription_id,
                )
            if chosen.status == "trialing":
                return Entitlement(
                    BillingStatus.CURRENT,
                    _earliest(as_utc(chosen.trial_end), period_end),
                    chosen.subscription_id,
                )
            if chosen.status in _PAST_DUE_STATUSES:
                base = period_end if period_end is not None else now
                return Entitlement(
                    BillingStatus.PAST_DUE,
                    base + self.past_due_grace,
                    chosen.subscription_id,
                )
            return Entitlement(
                BillingStatus.CANCELLED,
                period_end if period_end is not None else now,
                chosen.subscription_id,
            )

        payment = latest_entitling_payment(payments)
        if payment is None or payment.paid_at is None:
            return Entitlement(BillingStatus.CANCELLED, None)

        horizon = as_utc(payment.paid_at) + self.one_time_access  # type: ignore[operator]
        if horizon > now:
            return Entitlement(BillingStatus.CURRENT, horizon, payment.payment_intent_id)
        return Entitlement(BillingStatus.CANCELLED, horizon, payment.payment_intent_id)
