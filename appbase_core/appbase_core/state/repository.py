"""Repository classes providing tenant-scoped access to the appbase state store.

Each repository takes an ``AsyncSession`` and a ``tenant_id`` at
construction time and operates within the caller's transaction boundary.
Every query filters by that tenant.  The exceptions are
:meth:`ConnectedAccountRepository.resolve_tenant`, which maps a Stripe
account id to its owner before any tenant is known, and
:meth:`ConnectedAccountRepository.link`, which may claim an account its
previous owner deauthorized.

All writes call ``session.flush()``; the caller is responsible for
committing (or relying on the ``get_local_session`` context manager).
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from appbase_core.billing.reconciler import Entitlement, PaymentFact, SubscriptionFact, as_utc
from appbase_core.state.database import validate_tenant_id
from appbase_core.state.tables import (
    BillingCustomerTable,
    ConnectedAccountTable,
    EndUserIdentityTable,
    EndUserSessionTable,
    EndUserTable,
    EntitlementTable,
    PasswordCredentialTable,
    PaymentFactTable,
    SubscriptionFactTable,
)

logger = logging.getLogger(__name__)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
    *,
    where: Callable[[Any], Any] | None = None,
    returning: list[Any] | None = None,
) -> Any:
    """Dialect-aware upsert: PostgreSQL or SQLite ``ON CONFLICT DO UPDATE``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to upsert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.
    update_columns:
        Column names to update when a conflict occurs.
    where:
        Optional guard built from the statement's ``excluded`` namespace.
        When it evaluates false for the conflicting row, the row is left
        untouched and nothing is returned.
    returning:
        Columns to return from the inserted or updated row.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
        set_ = {col: getattr(stmt.excluded, col) for col in update_columns}
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
        set_ = {col: values[col] for col in update_columns}

    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_=set_,
        where=where(stmt.excluded) if where is not None else None,
    )
    if returning:
        stmt = stmt.returning(*returning)
    return await session.execute(stmt)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    *,
    returning: list[Any] | None = None,
) -> Any:
    """Dialect-aware ``INSERT ... ON CONFLICT DO NOTHING``.

    With *returning*, a conflicting insert yields no row, which lets the
    caller tell "inserted" from "already there" in one statement.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)

    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    if returning:
        stmt = stmt.returning(*returning)
    return await session.execute(stmt)


def _event_is_not_older(table: Any) -> Callable[[Any], Any]:
    """Build the last-write-wins guard for ledger upserts.

    The stored row is replaced only by an event from the same tenant whose
    ``(source_event_at, source_event_rank)`` is not older than the one that
    produced it.  Redelivery of the same event therefore rewrites identical
    values, and a late, older event is a no-op.
    """

    def _guard(excluded: Any) -> Any:
        return and_(
            table.tenant_id == excluded.tenant_id,
            or_(
                table.source_event_at < excluded.source_event_at,
                and_(
                    table.source_event_at == excluded.source_event_at,
                    table.source_event_rank <= excluded.source_event_rank,
                ),
            ),
        )

    return _guard


class _TenantScoped:
    """Shared constructor for tenant-scoped repositories."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = validate_tenant_id(tenant_id)

    @property
    def tenant_id(self) -> str:
        return self._tenant_id


# ---------------------------------------------------------------------------
# EndUserRepository
# ---------------------------------------------------------------------------


class EndUserRepository(_TenantScoped):
    """CRUD operations for the ``end_users`` table."""

    async def create(
        self,
        *,
        display_name: str | None = None,
        primary_email: str | None = None,
        email_verified: bool = False,
    ) -> EndUserTable:
        """Create a new subject with a fresh immutable id."""
        row = EndUserTable(
            id=uuid.uuid4().hex,
            tenant_id=self._tenant_id,
            display_name=display_name,
            primary_email=primary_email.lower().strip() if primary_email else None,
            email_verified=email_verified,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, subject_id: str) -> EndUserTable | None:
        stmt = select(EndUserTable).where(
            EndUserTable.tenant_id == self._tenant_id,
            EndUserTable.id == subject_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_profile(
        self,
        subject_id: str,
        *,
        display_name: str | None,
        primary_email: str | None,
        email_verified: bool | None = None,
    ) -> None:
        """Refresh the cached display fields; ``None`` values are left as-is."""
        changes: dict[str, Any] = {}
        if email_verified is not None:
            changes["email_verified"] = email_verified
        if display_name:
            changes["display_name"] = display_name
        if primary_email:
            changes["primary_email"] = primary_email.lower().strip()
        if not changes:
            return
        stmt = (
            update(EndUserTable)
            .where(
                EndUserTable.tenant_id == self._tenant_id,
                EndUserTable.id == subject_id,
            )
            .values(**changes)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def delete(self, subject_id: str) -> int:
        """Delete a subject.  Returns the number of rows removed."""
        stmt = delete(EndUserTable).where(
            EndUserTable.tenant_id == self._tenant_id,
            EndUserTable.id == subject_id,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# IdentityRepository
# ---------------------------------------------------------------------------


class IdentityRepository(_TenantScoped):
    """Access to ``end_user_identities``.

    Identity rows are written only through :meth:`upsert`, whose conflict
    target is ``(tenant_id, provider, provider_user_id)``.  The
    ``subject_id`` of an existing identity is never overwritten.
    """

    async def get(self, provider: str, provider_user_id: str) -> EndUserIdentityTable | None:
        stmt = select(EndUserIdentityTable).where(
            EndUserIdentityTable.tenant_id == self._tenant_id,
            EndUserIdentityTable.provider == provider,
            EndUserIdentityTable.provider_user_id == provider_user_id,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def upsert(
        self,
        *,
        provider: str,
        provider_user_id: str,
        subject_id: str,
        email: str | None = None,
        email_verified: bool | None = None,
        name: str | None = None,
        avatar_url: str | None = None,
        raw_profile: dict[str, Any] | None = None,
    ) -> str:
        """Insert or refresh an identity and return the subject it points at.

        When the identity already exists (including one inserted by a
        concurrent transaction) the returned subject is the stored one,
        not *subject_id*.  Profile fields passed as ``None`` keep their
        stored values.
        """
        now = datetime.now(UTC)
        provided = {
            "email": email,
            "email_verified": email_verified,
            "name": name,
            "avatar_url": avatar_url,
            "raw_profile": raw_profile,
        }
        update_columns = [col for col, value in provided.items() if value is not None]
        result = await _dialect_upsert(
            self._session,
            EndUserIdentityTable,
            values={
                "tenant_id": self._tenant_id,
                "provider": provider,
                "provider_user_id": provider_user_id,
                "subject_id": subject_id,
                "email": email,
                "email_verified": bool(email_verified),
                "name": name,
                "avatar_url": avatar_url,
                "raw_profile": raw_profile,
                "created_at": now,
                "last_login_at": now,
            },
            index_elements=["tenant_id", "provider", "provider_user_id"],
            update_columns=[*update_columns, "last_login_at"],
            returning=[EndUserIdentityTable.subject_id],
        )
        stored_subject = result.scalar_one()
        await self._session.flush()
        return stored_subject

    async def list_for_subject(self, subject_id: str) -> list[EndUserIdentityTable]:
        stmt = (
            select(EndUserIdentityTable)
            .where(
                EndUserIdentityTable.tenant_id == self._tenant_id,
                EndUserIdentityTable.subject_id == subject_id,
            )
            .order_by(EndUserIdentityTable.created_at)
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PasswordCredentialRepository
# ---------------------------------------------------------------------------


class PasswordCredentialRepository(_TenantScoped):
    """bcrypt password storage for the ``password`` identity provider."""

    @staticmethod
    def _hash_password(plaintext: str) -> str:
        """Hash a plaintext password with bcrypt."""
        import bcrypt

        return bcrypt.hashpw(plaintext.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

    @staticmethod
    def _verify_password(plaintext: str, hashed: str) -> bool:
        """Verify a plaintext password against a bcrypt hash."""
        import bcrypt

        return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))

    async def create(self, subject_id: str, plaintext: str) -> bool:
        """Store the first password of *subject_id*.

        Returns ``False``, leaving the stored hash untouched, when the
        subject already has a password.  Signup relies on this: of two
        concurrent signups for one email only the first insert wins.
        """
        now = datetime.now(UTC)
        result = await _dialect_upsert_nothing(
            self._session,
            PasswordCredentialTable,
            values={
                "tenant_id": self._tenant_id,
                "subject_id": subject_id,
                "password_hash": self._hash_password(plaintext),
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "subject_id"],
            returning=[PasswordCredentialTable.id],
        )
        inserted = result.scalar_one_or_none() is not None
        await self._session.flush()
        return inserted

    async def set_password(self, subject_id: str, plaintext: str) -> None:
        """Store or replace the password hash of *subject_id*.

        For a deliberate password change only; new accounts go through
        :meth:`create`.
        """
        now = datetime.now(UTC)
        await _dialect_upsert(
            self._session,
            PasswordCredentialTable,
            values={
                "tenant_id": self._tenant_id,
                "subject_id": subject_id,
                "password_hash": self._hash_password(plaintext),
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["tenant_id", "subject_id"],
            update_columns=["password_hash", "updated_at"],
        )
        await self._session.flush()

    async def has_password(self, subject_id: str) -> bool:
        stmt = select(PasswordCredentialTable.id).where(
            PasswordCredentialTable.tenant_id == self._tenant_id,
            PasswordCredentialTable.subject_id == subject_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def verify(self, subject_id: str | None, plaintext: str) -> bool:
        """Check *plaintext* against the stored hash.

        A bcrypt hash is computed even when there is no subject or no
        stored credential, so unknown accounts take as long to reject as
        wrong passwords.
        """
        stored: str | None = None
        if subject_id is not None:
            stmt = select(PasswordCredentialTable.password_hash).where(
                PasswordCredentialTable.tenant_id == self._tenant_id,
                PasswordCredentialTable.subject_id == subject_id,
            )
            result = await self._session.execute(stmt)
            stored = result.scalar_one_or_none()
        if stored is None:
            self._hash_password("dummy-password-for-timing")
            return False
        return self._verify_password(plaintext, stored)


# ---------------------------------------------------------------------------
# SessionRepository
# ---------------------------------------------------------------------------


class SessionRepository(_TenantScoped):
    """Persistence for ``end_user_sessions``, keyed by ``(tenant, digest)``."""

    async def create(
        self,
        *,
        token_digest: str,
        subject_id: str,
        issued_at: datetime,
        expires_at: datetime,
        ip: str | None = None,
        user_agent: str | None = None,
        client_metadata: dict[str, Any] | None = None,
    ) -> EndUserSessionTable:
        row = EndUserSessionTable(
            tenant_id=self._tenant_id,
            token_digest=token_digest,
            subject_id=subject_id,
            issued_at=issued_at,
            expires_at=expires_at,
            ip=ip,
            user_agent=user_agent,
            client_metadata=client_metadata,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_active(self, token_digest: str, now: datetime | None = None) -> EndUserSessionTable | None:
        """Return the unexpired session for *token_digest* in this tenant."""
        now = now or datetime.now(UTC)
        stmt = select(EndUserSessionTable).where(
            EndUserSessionTable.tenant_id == self._tenant_id,
            EndUserSessionTable.token_digest == token_digest,
            EndUserSessionTable.expires_at > now,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete(self, token_digest: str) -> int:
        """Delete one session.  Deleting a missing session is not an error."""
        stmt = delete(EndUserSessionTable).where(
            EndUserSessionTable.tenant_id == self._tenant_id,
            EndUserSessionTable.token_digest == token_digest,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def delete_all_for_subject(self, subject_id: str) -> int:
        stmt = delete(EndUserSessionTable).where(
            EndUserSessionTable.tenant_id == self._tenant_id,
            EndUserSessionTable.subject_id == subject_id,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Remove this tenant's expired sessions.  Returns the count removed."""
        stmt = delete(EndUserSessionTable).where(
            EndUserSessionTable.tenant_id == self._tenant_id,
            EndUserSessionTable.expires_at <= (now or datetime.now(UTC)),
        ).execution_options(synchronize_session=False)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    @staticmethod
    async def purge_all_expired(session: AsyncSession, now: datetime | None = None) -> int:
        """Remove expired sessions across **all** tenants.

        Maintenance-only: intended for the background janitor, which runs
        outside any tenant context.  Expired rows are unusable for
        validation regardless of tenant, so no tenant data is exposed.
        """
        stmt = delete(EndUserSessionTable).where(
            EndUserSessionTable.expires_at <= (now or datetime.now(UTC)),
        ).execution_options(synchronize_session=False)
        result = await session.execute(stmt)
        await session.flush()
        return result.rowcount  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# ConnectedAccountRepository
# ---------------------------------------------------------------------------


class ConnectedAccountRepository(_TenantScoped):
    """Stripe Connect accounts owned by a tenant."""

    async def link(self, stripe_account_id: str, *, livemode: bool = False) -> None:
        """Record that this tenant owns *stripe_account_id*.

        Re-linking an account reactivates it.  An account deauthorized by
        its previous owner may be claimed by any tenant.

        Raises
        ------
        PermissionError
            If the account is actively linked to another tenant.
        """
        previous = await self.resolve_tenant(self._session, stripe_account_id)
        stmt = (
            update(ConnectedAccountTable)
            .where(
                ConnectedAccountTable.stripe_account_id == stripe_account_id,
                or_(
                    ConnectedAccountTable.tenant_id == self._tenant_id,
                    ConnectedAccountTable.deauthorized_at.is_not(None),
                ),
            )
            .values(
                tenant_id=self._tenant_id,
                livemode=livemode,
                deauthorized_at=None,
                created_at=datetime.now(UTC),
            )
        )
        result = await self._session.execute(stmt)
        if result.rowcount:  # type: ignore[attr-defined]
            if previous != self._tenant_id:
                logger.info(
                    "Stripe account %s moved from deauthorized tenant %s to %s",
                    stripe_account_id,
                    previous,
                    self._tenant_id,
                )
            await self._session.flush()
            return
        if previous is not None:
            raise PermissionError(f"Stripe account {stripe_account_id} is linked to another tenant")
        self._session.add(
            ConnectedAccountTable(
                tenant_id=self._tenant_id,
                stripe_account_id=stripe_account_id,
                livemode=livemode,
            )
        )
        await self._session.flush()

    async def get_account_id(self) -> str | None:
        """Return the tenant's active connected account, if any."""
        stmt = (
            select(ConnectedAccountTable.stripe_account_id)
            .where(
                ConnectedAccountTable.tenant_id == self._tenant_id,
                ConnectedAccountTable.deauthorized_at.is_(None),
            )
            .order_by(ConnectedAccountTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_status(self, stripe_account_id: str, *, charges_enabled: bool) -> None:
        stmt = (
            update(ConnectedAccountTable)
            .where(
                ConnectedAccountTable.tenant_id == self._tenant_id,
                ConnectedAccountTable.stripe_account_id == stripe_account_id,
            )
            .values(charges_enabled=charges_enabled)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_deauthorized(self, stripe_account_id: str, at: datetime) -> None:
        stmt = (
            update(ConnectedAccountTable)
            .where(
                ConnectedAccountTable.tenant_id == self._tenant_id,
                ConnectedAccountTable.stripe_account_id == stripe_account_id,
            )
            .values(deauthorized_at=at, charges_enabled=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    @staticmethod
    async def resolve_tenant(session: AsyncSession, stripe_account_id: str) -> str | None:
        """Return the tenant owning *stripe_account_id*, or ``None``.

        This is the one deliberate cross-tenant read: connection-level
        webhook events carry only the account id.
        """
        stmt = select(ConnectedAccountTable.tenant_id).where(
            ConnectedAccountTable.stripe_account_id == stripe_account_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# BillingCustomerRepository
# ---------------------------------------------------------------------------


class BillingCustomerRepository(_TenantScoped):
    """Stripe customer id per subject."""

    async def get_customer_id(self, subject_id: str) -> str | None:
        stmt = select(BillingCustomerTable.stripe_customer_id).where(
            BillingCustomerTable.tenant_id == self._tenant_id,
            BillingCustomerTable.subject_id == subject_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert(self, subject_id: str, stripe_customer_id: str) -> None:
        await _dialect_upsert(
            self._session,
            BillingCustomerTable,
            values={
                "tenant_id": self._tenant_id,
                "subject_id": subject_id,
                "stripe_customer_id": stripe_customer_id,
                "created_at": datetime.now(UTC),
            },
            index_elements=["tenant_id", "subject_id"],
            update_columns=["stripe_customer_id"],
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# SubscriptionLedgerRepository
# ---------------------------------------------------------------------------


class SubscriptionLedgerRepository(_TenantScoped):
    """Idempotent upsert store for subscription facts.

    Keyed by the provider subscription id.  See :func:`_event_is_not_older`
    for the last-write-wins rule applied to every mutable field.
    """

    _MUTABLE_COLUMNS = [
        "subject_id",
        "customer_id",
        "status",
        "current_period_start",
        "current_period_end",
        "cancel_at",
        "canceled_at",
        "trial_end",
        "price_id",
        "source_event_id",
        "source_event_at",
        "source_event_rank",
        "recorded_at",
    ]

    async def record(
        self,
        *,
        subscription_id: str,
        subject_id: str,
        status: str,
        source_event_id: str,
        source_event_at: datetime,
        source_event_rank: int = 0,
        customer_id: str | None = None,
        current_period_start: datetime | None = None,
        current_period_end: datetime | None = None,
        cancel_at: datetime | None = None,
        canceled_at: datetime | None = None,
        trial_end: datetime | None = None,
        price_id: str | None = None,
    ) -> bool:
        """Upsert one subscription fact.

        Returns
        -------
        bool
            ``True`` when the row was inserted or updated, ``False`` when a
            newer event had already been applied.
        """
        result = await _dialect_upsert(
            self._session,
            SubscriptionFactTable,
            values={
                "provider_subscription_id": subscription_id,
                "tenant_id": self._tenant_id,
                "subject_id": subject_id,
                "customer_id": customer_id,
                "status": status,
                "current_period_start": as_utc(current_period_start),
                "current_period_end": as_utc(current_period_end),
                "cancel_at": as_utc(cancel_at),
                "canceled_at": as_utc(canceled_at),
                "trial_end": as_utc(trial_end),
                "price_id": price_id,
                "source_event_id": source_event_id,
                "source_event_at": as_utc(source_event_at),
                "source_event_rank": source_event_rank,
                "recorded_at": datetime.now(UTC),
            },
            index_elements=["provider_subscription_id"],
            update_columns=self._MUTABLE_COLUMNS,
            where=_event_is_not_older(SubscriptionFactTable),
            returning=[SubscriptionFactTable.provider_subscription_id],
        )
        applied = result.first() is not None
        await self._session.flush()
        return applied

    async def get(self, subscription_id: str) -> SubscriptionFactTable | None:
        stmt = select(SubscriptionFactTable).where(
            SubscriptionFactTable.tenant_id == self._tenant_id,
            SubscriptionFactTable.provider_subscription_id == subscription_id,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_for_subject(self, subject_id: str) -> list[SubscriptionFact]:
        stmt = select(SubscriptionFactTable).where(
            SubscriptionFactTable.tenant_id == self._tenant_id,
            SubscriptionFactTable.subject_id == subject_id,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return [
            SubscriptionFact(
                subscription_id=row.provider_subscription_id,
                status=row.status,
                current_period_start=as_utc(row.current_period_start),
                current_period_end=as_utc(row.current_period_end),
                cancel_at=as_utc(row.cancel_at),
                canceled_at=as_utc(row.canceled_at),
                trial_end=as_utc(row.trial_end),
                price_id=row.price_id,
            )
            for row in result.scalars().all()
        ]


# ---------------------------------------------------------------------------
# PaymentLedgerRepository
# ---------------------------------------------------------------------------


class PaymentLedgerRepository(_TenantScoped):
    """Idempotent upsert store for one-time payment facts.

    Keyed by the provider payment-intent id.  Each event type writes only
    the columns it is authoritative for: payment-intent events never touch
    the refund columns, so a refund recorded earlier is not reset.
    """

    _INTENT_COLUMNS = [
        "subject_id",
        "amount",
        "currency",
        "status",
        "paid_at",
        "source_event_id",
        "source_event_at",
        "source_event_rank",
        "recorded_at",
    ]
    _REFUND_COLUMNS = [*_INTENT_COLUMNS, "refunded", "refunded_amount"]

    async def record(
        self,
        *,
        payment_intent_id: str,
        subject_id: str,
        amount: int,
        currency: str,
        status: str,
        source_event_id: str,
        source_event_at: datetime,
        source_event_rank: int = 0,
        paid_at: datetime | None = None,
        refunded: bool | None = None,
        refunded_amount: int | None = None,
    ) -> bool:
        """Upsert one payment fact.

        Pass *refunded* / *refunded_amount* only from refund events.

        Returns
        -------
        bool
            ``True`` when the row was inserted or updated, ``False`` when a
            newer event had already been applied.
        """
        carries_refund = refunded is not None or refunded_amount is not None
        result = await _dialect_upsert(
            self._session,
            PaymentFactTable,
            values={
                "payment_intent_id": payment_intent_id,
                "tenant_id": self._tenant_id,
                "subject_id": subject_id,
                "amount": amount,
                "currency": currency.lower(),
                "status": status,
                "refunded": bool(refunded),
                "refunded_amount": refunded_amount or 0,
                "paid_at": as_utc(paid_at),
                "source_event_id": source_event_id,
                "source_event_at": as_utc(source_event_at),
                "source_event_rank": source_event_rank,
                "recorded_at": datetime.now(UTC),
            },
            index_elements=["payment_intent_id"],
            update_columns=self._REFUND_COLUMNS if carries_refund else self._INTENT_COLUMNS,
            where=_event_is_not_older(PaymentFactTable),
            returning=[PaymentFactTable.payment_intent_id],
        )
        applied = result.first() is not None
        await self._session.flush()
        return applied

    async def get(self, payment_intent_id: str) -> PaymentFactTable | None:
        stmt = select(PaymentFactTable).where(
            PaymentFactTable.tenant_id == self._tenant_id,
            PaymentFactTable.payment_intent_id == payment_intent_id,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_for_subject(self, subject_id: str) -> list[PaymentFact]:
        stmt = select(PaymentFactTable).where(
            PaymentFactTable.tenant_id == self._tenant_id,
            PaymentFactTable.subject_id == subject_id,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return [
            PaymentFact(
                payment_intent_id=row.payment_intent_id,
                amount=row.amount,
                currency=row.currency,
                status=row.status,
                refunded=row.refunded,
                refunded_amount=row.refunded_amount,
                paid_at=as_utc(row.paid_at),
            )
            for row in result.scalars().all()
        ]


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class EntitlementRepository(_TenantScoped):
    """Derived entitlement snapshots (one row per subject)."""

    async def upsert(self, subject_id: str, entitlement: Entitlement, computed_at: datetime) -> None:
        await _dialect_upsert(
            self._session,
            EntitlementTable,
            values={
                "tenant_id": self._tenant_id,
                "subject_id": subject_id,
                "billing_status": entitlement.status.value,
                "access_until": as_utc(entitlement.access_until),
                "computed_at": as_utc(computed_at),
            },
            index_elements=["tenant_id", "subject_id"],
            update_columns=["billing_status", "access_until", "computed_at"],
        )
        await self._session.flush()

    async def get(self, subject_id: str) -> EntitlementTable | None:
        stmt = select(EntitlementTable).where(
            EntitlementTable.tenant_id == self._tenant_id,
            EntitlementTable.subject_id == subject_id,
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()
