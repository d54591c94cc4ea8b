"""SQLAlchemy 2.0 ORM table definitions for the appbase state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  Every
table except ``connected_accounts`` is partitioned by ``tenant_id`` and is
covered by a row-level security policy in the PostgreSQL migrations.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all appbase tables."""


# ---------------------------------------------------------------------------
# End users and identities
# ---------------------------------------------------------------------------


class EndUserTable(Base):
    """Subjects (end users) of a tenant app.

    The ``id`` is immutable once created; display name and email are cached
    from the most recent identity that logged in.
    """

    __tablename__ = "end_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    primary_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_end_users_tenant", "tenant_id"),)


class EndUserIdentityTable(Base):
    """External identity-provider profiles linked to a subject.

    ``(tenant_id, provider, provider_user_id)`` is unique so that two logins
    for the same external account always converge on one subject.
    """

    __tablename__ = "end_user_identities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String(320), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    raw_profile: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "provider",
            "provider_user_id",
            name="uq_end_user_identities_tenant_provider_user",
        ),
        Index("ix_end_user_identities_subject", "tenant_id", "subject_id"),
    )


class PasswordCredentialTable(Base):
    """bcrypt password hashes for subjects using the ``password`` provider.

    The plaintext password is never persisted.
    """

    __tablename__ = "password_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    password_hash: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (UniqueConstraint("tenant_id", "subject_id", name="uq_password_credentials_tenant_subject"),)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class EndUserSessionTable(Base):
    """Opaque session records keyed by the peppered token digest.

    Only the digest is stored; raw tokens exist in the response cookie and
    transiently in memory during issuance.  Rows are created on login and
    deleted on logout or expiry, never updated.
    """

    __tablename__ = "end_user_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    token_digest: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_metadata: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "token_digest", name="uq_end_user_sessions_tenant_digest"),
        Index("ix_end_user_sessions_subject", "tenant_id", "subject_id"),
        Index("ix_end_user_sessions_expires", "expires_at"),
    )


# ---------------------------------------------------------------------------
# Stripe connected accounts and customers
# ---------------------------------------------------------------------------


class ConnectedAccountTable(Base):
    """Stripe Connect accounts owned by tenants.

    Used to resolve the tenant of connection-level webhook events, which
    carry the originating account id but no system metadata.
    """

    __tablename__ = "connected_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    stripe_account_id: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    livemode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deauthorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_connected_accounts_tenant", "tenant_id"),)


class BillingCustomerTable(Base):
    """Stripe customer id per subject, recorded on checkout completion."""

    __tablename__ = "billing_customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    stripe_customer_id: Mapped[str] = mapped_column(String(256), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "subject_id", name="uq_billing_customers_tenant_subject"),
        Index("ix_billing_customers_stripe_customer", "stripe_customer_id"),
    )


# ---------------------------------------------------------------------------
# Ledgers
# ---------------------------------------------------------------------------


class SubscriptionFactTable(Base):
    """Latest provider-reported state of each subscription.

    Upserted by provider subscription id, never deleted.  The
    ``source_event_at`` / ``source_event_rank`` pair records which event
    produced the current values so late deliveries cannot regress them.
    """

    __tablename__ = "subscription_facts"

    provider_subscription_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    current_period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trial_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    price_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    source_event_id: Mapped[str] = mapped_column(String(256), nullable=False)
    source_event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source_event_rank: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_subscription_facts_subject", "tenant_id", "subject_id"),)


class PaymentFactTable(Base):
    """Latest provider-reported state of each one-time payment intent."""

    __tablename__ = "payment_facts"

    payment_intent_id: Mapped[str] = mapped_column(String(256), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    refunded_amount: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    source_event_id: Mapped[str] = mapped_column(String(256), nullable=False)
    source_event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source_event_rank: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_payment_facts_subject", "tenant_id", "subject_id"),)


# ---------------------------------------------------------------------------
# Entitlements
# ---------------------------------------------------------------------------


class EntitlementTable(Base):
    """Derived entitlement snapshot per subject.

    Not authoritative: recomputed from the ledgers after every webhook and
    on read, and safe to truncate at any time.
    """

    __tablename__ = "entitlements"

    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(64), nullable=False)
    billing_status: Mapped[str] = mapped_column(String(32), nullable=False)
    access_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("tenant_id", "subject_id"),)
