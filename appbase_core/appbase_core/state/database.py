"""Engine construction and per-transaction tenant scoping.

The backend is picked from the URL scheme: ``postgresql+asyncpg://`` gets a
pooled engine whose tables are guarded by row-level security, while
``sqlite+aiosqlite://`` is delegated to :mod:`appbase_core.state.sqlite_adapter`.

Every request-scoped transaction must call :func:`set_tenant_context`
before touching tenant tables.  On PostgreSQL that binds
``app.tenant_id`` for the RLS policies; on SQLite it only validates the id,
and the repositories' explicit ``tenant_id`` predicates do the isolation.
"""

from __future__ import annotations

import logging
import re

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine

logger = logging.getLogger(__name__)

# App ids are used as cookie-name suffixes and RLS settings: keep them tight.
_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")

_PG_SERVER_SETTINGS = {
    "application_name": "appbase",
    "statement_timeout": "15000",
    "lock_timeout": "5000",
}


def validate_tenant_id(tenant_id: str) -> str:
    """Return *tenant_id* unchanged if it is well-formed.

    Raises
    ------
    ValueError
        If the id contains characters outside the allowlist.
    """
    if not isinstance(tenant_id, str) or not _TENANT_ID_RE.match(tenant_id):
        raise ValueError(f"Invalid tenant_id: must match {_TENANT_ID_RE.pattern!r}, got {tenant_id!r}")
    return tenant_id


def _sqlite_path(database_url: str) -> str:
    path = database_url.partition(":///")[2]
    return path or ":memory:"


def get_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Create the async engine for *database_url*.

    Parameters
    ----------
    database_url:
        ``postgresql+asyncpg://...`` or ``sqlite+aiosqlite:///path``.
    pool_size, max_overflow:
        Pool limits for PostgreSQL.  SQLite ignores them.
    """
    if database_url.startswith("sqlite"):
        from appbase_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(_sqlite_path(database_url))

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
        connect_args={"server_settings": dict(_PG_SERVER_SETTINGS)},
    )
    logger.info("PostgreSQL engine ready (pool_size=%d, max_overflow=%d)", pool_size, max_overflow)
    return engine


def _is_sqlite(session: AsyncSession) -> bool:
    dialect = getattr(session.get_bind(), "dialect", None)
    return getattr(dialect, "name", "") == "sqlite"


async def _set_local(session: AsyncSession, name: str, value: str) -> None:
    # set_config(..., true) is SET LOCAL: the value dies with the transaction.
    await session.execute(text("SELECT set_config(:name, :value, true)"), {"name": name, "value": value})


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Scope the current transaction to *tenant_id*.

    Raises
    ------
    ValueError
        If *tenant_id* is malformed.  Nothing is executed in that case.
    """
    validate_tenant_id(tenant_id)
    if _is_sqlite(session):
        return
    await _set_local(session, "app.tenant_id", tenant_id)


async def set_maintenance_context(session: AsyncSession) -> None:
    """Open the cross-tenant session purge policy for this transaction.

    Under ``app.maintenance = 'on'`` only expired ``end_user_sessions`` rows
    are visible, and only for deletion.  The session janitor and the
    ``purge-sessions`` command use it; nothing else should.
    """
    if _is_sqlite(session):
        return
    await _set_local(session, "app.maintenance", "on")
