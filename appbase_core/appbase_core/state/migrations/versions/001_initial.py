"""Initial schema: end users, identities, sessions, ledgers, entitlements.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = postgresql.JSONB().with_variant(sa.JSON(), "sqlite")

# Tables carrying a tenant_id column that is enforced by RLS.  The
# connected_accounts table is excluded: webhook tenant resolution reads it
# before any tenant context exists.
_RLS_TABLES = (
    "end_users",
    "end_user_identities",
    "password_credentials",
    "end_user_sessions",
    "billing_customers",
    "subscription_facts",
    "payment_facts",
    "entitlements",
)


def _timestamp(name: str, *, nullable: bool = False, server_default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def upgrade() -> None:
    # -- subjects and identities -------------------------------------------
    op.create_table(
        "end_users",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("display_name", sa.String(256), nullable=True),
        sa.Column("primary_email", sa.String(320), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("created_at", server_default=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_end_users_tenant", "end_users", ["tenant_id"])

    op.create_table(
        "end_user_identities",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("provider", sa.String(64), nullable=False),
        sa.Column("provider_user_id", sa.String(320), nullable=False),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("name", sa.String(256), nullable=True),
        sa.Column("avatar_url", sa.String(1024), nullable=True),
        sa.Column("raw_profile", _JSON, nullable=True),
        _timestamp("created_at", server_default=True),
        _timestamp("last_login_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id",
            "provider",
            "provider_user_id",
            name="uq_end_user_identities_tenant_provider_user",
        ),
    )
    op.create_index("ix_end_user_identities_subject", "end_user_identities", ["tenant_id", "subject_id"])

    op.create_table(
        "password_credentials",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("password_hash", sa.String(256), nullable=False),
        _timestamp("created_at", server_default=True),
        _timestamp("updated_at", server_default=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "subject_id", name="uq_password_credentials_tenant_subject"),
    )

    # -- sessions ------------------------------------------------------------
    op.create_table(
        "end_user_sessions",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("token_digest", sa.String(64), nullable=False),
        sa.Column("subject_id", sa.String(64), nullable=False),
        _timestamp("issued_at", server_default=True),
        _timestamp("expires_at"),
        sa.Column("ip", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("client_metadata", _JSON, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "token_digest", name="uq_end_user_sessions_tenant_digest"),
    )
    op.create_index("ix_end_user_sessions_subject", "end_user_sessions", ["tenant_id", "subject_id"])
    op.create_index("ix_end_user_sessions_expires", "end_user_sessions", ["expires_at"])

    # -- stripe accounts and customers -------------------------------------
    op.create_table(
        "connected_accounts",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("stripe_account_id", sa.String(256), nullable=False),
        sa.Column("livemode", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("charges_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("deauthorized_at", nullable=True),
        _timestamp("created_at", server_default=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_account_id"),
    )
    op.create_index("ix_connected_accounts_tenant", "connected_accounts", ["tenant_id"])

    op.create_table(
        "billing_customers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("stripe_customer_id", sa.String(256), nullable=False),
        _timestamp("created_at", server_default=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "subject_id", name="uq_billing_customers_tenant_subject"),
    )
    op.create_index("ix_billing_customers_stripe_customer", "billing_customers", ["stripe_customer_id"])

    # -- ledgers ---------------------------------------------------------------
    op.create_table(
        "subscription_facts",
        sa.Column("provider_subscription_id", sa.String(256), nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("customer_id", sa.String(256), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        _timestamp("current_period_start", nullable=True),
        _timestamp("current_period_end", nullable=True),
        _timestamp("cancel_at", nullable=True),
        _timestamp("canceled_at", nullable=True),
        _timestamp("trial_end", nullable=True),
        sa.Column("price_id", sa.String(256), nullable=True),
        sa.Column("source_event_id", sa.String(256), nullable=False),
        _timestamp("source_event_at"),
        sa.Column("source_event_rank", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("recorded_at", server_default=True),
        sa.PrimaryKeyConstraint("provider_subscription_id"),
    )
    op.create_index("ix_subscription_facts_subject", "subscription_facts", ["tenant_id", "subject_id"])

    op.create_table(
        "payment_facts",
        sa.Column("payment_intent_id", sa.String(256), nullable=False),
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(8), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("refunded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("refunded_amount", sa.BigInteger(), nullable=False, server_default="0"),
        _timestamp("paid_at", nullable=True),
        sa.Column("source_event_id", sa.String(256), nullable=False),
        _timestamp("source_event_at"),
        sa.Column("source_event_rank", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("recorded_at", server_default=True),
        sa.PrimaryKeyConstraint("payment_intent_id"),
    )
    op.create_index("ix_payment_facts_subject", "payment_facts", ["tenant_id", "subject_id"])

    # -- entitlements ------------------------------------------------------
    op.create_table(
        "entitlements",
        sa.Column("tenant_id", sa.String(128), nullable=False),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("billing_status", sa.String(32), nullable=False),
        _timestamp("access_until", nullable=True),
        _timestamp("computed_at", server_default=True),
        sa.PrimaryKeyConstraint("tenant_id", "subject_id"),
    )

    # -- RLS policies (PostgreSQL only) ------------------------------------
    if op.get_bind().dialect.name != "postgresql":
        return
    for table in _RLS_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(f"""
            CREATE POLICY tenant_isolation_{table} ON {table}
                USING (tenant_id = current_setting('app.tenant_id', true))
                WITH CHECK (tenant_id = current_setting('app.tenant_id', true))
        """)
    # Lets the session janitor delete expired rows of every tenant.
    op.execute("""
        CREATE POLICY session_purge_end_user_sessions ON end_user_sessions
            USING (current_setting('app.maintenance', true) = 'on' AND expires_at <= now())
    """)


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        for table in _RLS_TABLES:
            op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")
        op.execute("DROP POLICY IF EXISTS session_purge_end_user_sessions ON end_user_sessions")

    op.drop_table("entitlements")
    op.drop_index("ix_payment_facts_subject", table_name="payment_facts")
    op.drop_table("payment_facts")
    op.drop_index("ix_subscription_facts_subject", table_name="subscription_facts")
    op.drop_table("subscription_facts")
    op.drop_index("ix_billing_customers_stripe_customer", table_name="billing_customers")
    op.drop_table("billing_customers")
    op.drop_index("ix_connected_accounts_tenant", table_name="connected_accounts")
    op.drop_table("connected_accounts")
    op.drop_index("ix_end_user_sessions_expires", table_name="end_user_sessions")
    op.drop_index("ix_end_user_sessions_subject", table_name="end_user_sessions")
    op.drop_table("end_user_sessions")
    op.drop_table("password_credentials")
    op.drop_index("ix_end_user_identities_subject", table_name="end_user_identities")
    op.drop_table("end_user_identities")
    op.drop_index("ix_end_users_tenant", table_name="end_users")
    op.drop_table("end_users")
