"""Tests for the SQLite adapter used in local dev mode and tests."""

from __future__ import annotations

from pathlib import Path

import pytest
from appbase_core.state.database import get_engine
from appbase_core.state.repository import EndUserRepository
from appbase_core.state.sqlite_adapter import create_local_tables, get_local_engine, get_local_session
from sqlalchemy import inspect

# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------


class TestGetLocalEngine:
    """Verify SQLite engine creation."""

    def test_creates_in_memory_engine(self) -> None:
        engine = get_local_engine(":memory:")
        assert "sqlite" in str(engine.url)

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "deep" / "state.db"
        get_local_engine(db_path)
        assert db_path.parent.exists()

    def test_get_engine_dispatches_sqlite_urls(self, tmp_path: Path) -> None:
        engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}")
        assert engine.dialect.name == "sqlite"
        assert "state.db" in str(engine.url)


# ---------------------------------------------------------------------------
# Tables and sessions
# ---------------------------------------------------------------------------


class TestCreateLocalTables:
    """Verify the ORM schema can be created in SQLite."""

    @pytest.mark.asyncio
    async def test_creates_all_tables(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)
        async with engine.connect() as conn:
            names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        await engine.dispose()
        assert {
            "end_users",
            "end_user_identities",
            "password_credentials",
            "end_user_sessions",
            "connected_accounts",
            "billing_customers",
            "subscription_facts",
            "payment_facts",
            "entitlements",
        } <= set(names)

    @pytest.mark.asyncio
    async def test_idempotent(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)
        await create_local_tables(engine)
        await engine.dispose()


class TestGetLocalSession:
    """Verify commit and rollback semantics of the session context manager."""

    @pytest.mark.asyncio
    async def test_commits_on_success(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)

        async with get_local_session(engine) as session:
            user = await EndUserRepository(session, "app-a").create(display_name="Ada")
            user_id = user.id

        async with get_local_session(engine) as session:
            assert await EndUserRepository(session, "app-a").get(user_id) is not None
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, tmp_path: Path) -> None:
        engine = get_local_engine(tmp_path / "state.db")
        await create_local_tables(engine)
        user_id = None

        with pytest.raises(RuntimeError):
            async with get_local_session(engine) as session:
                user = await EndUserRepository(session, "app-a").create()
                user_id = user.id
                raise RuntimeError("boom")

        async with get_local_session(engine) as session:
            assert await EndUserRepository(session, "app-a").get(user_id) is None  # type: ignore[arg-type]
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_memory_database_is_shared_between_sessions(self) -> None:
        """Sessions on a ``:memory:`` engine see the same database."""
        engine = get_local_engine(":memory:")
        await create_local_tables(engine)

        async with get_local_session(engine, "app-a") as session:
            user = await EndUserRepository(session, "app-a").create(display_name="Grace")
            user_id = user.id

        async with get_local_session(engine, "app-a") as session:
            assert await EndUserRepository(session, "app-a").get(user_id) is not None
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_rejects_malformed_tenant(self) -> None:
        engine = get_local_engine(":memory:")
        with pytest.raises(ValueError):
            async with get_local_session(engine, "not a tenant"):
                pass
        await engine.dispose()
