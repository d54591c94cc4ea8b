"""SQLite backend for local development, the operator CLI and tests.

Uses the same ORM tables as PostgreSQL.  What SQLite does not give us:

* row-level security, so tenant isolation rests on the repositories'
  ``tenant_id`` predicates;
* timezone-aware ``DateTime`` values, which come back naive and are
  normalised to UTC by the callers (see ``billing.reconciler.as_utc``);
* concurrent writers.

An in-memory database lives only as long as its connection, so
``:memory:`` engines share one connection through :class:`StaticPool`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


def get_local_engine(db_path: Path | str = ".appbase/state.db") -> AsyncEngine:
    """Return an aiosqlite engine for *db_path*.

    The parent directory of a file database is created if missing.  Pass
    ``":memory:"`` for a throwaway database.
    """
    if str(db_path) == MEMORY:
        engine = create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(f"sqlite+aiosqlite:///{path}", connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn: object, _record: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        if str(db_path) != MEMORY:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    logger.info("SQLite engine ready at %s", db_path)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create every appbase table that does not exist yet."""
    from appbase_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def get_local_session(engine: AsyncEngine, tenant_id: str | None = None) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error.

    When *tenant_id* is given it is validated before the session is handed
    out, as :func:`~appbase_core.state.database.set_tenant_context` would do
    on PostgreSQL.
    """
    from appbase_core.state.database import set_tenant_context

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        try:
            if tenant_id is not None:
                await set_tenant_context(session, tenant_id)
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
