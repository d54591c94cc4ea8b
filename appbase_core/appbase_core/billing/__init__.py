"""Entitlement derivation from subscription and payment facts."""

from appbase_core.billing.reconciler import (
    BillingReconciler,
    BillingStatus,
    Entitlement,
    PaymentFact,
    SubscriptionFact,
)

__all__ = [
    "BillingReconciler",
    "BillingStatus",
    "Entitlement",
    "PaymentFact",
    "SubscriptionFact",
]
