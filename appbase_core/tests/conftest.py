"""Shared fixtures for appbase_core tests.

Repository tests run against an in-memory SQLite database holding the full
ORM schema; each test gets a fresh database.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest_asyncio
from appbase_core.state.sqlite_adapter import create_local_tables
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


@pytest_asyncio.fixture()
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
