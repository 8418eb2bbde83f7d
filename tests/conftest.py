"""Pytest fixtures for payouts engine tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payouts_engine.database import create_schema, make_session_factory
from payouts_engine.models import Tenant

# In-memory SQLite shared across connections of one engine.
# Partial unique indexes behave the same as on Postgres.
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh database per test."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def tenants(db: AsyncSession) -> list[Tenant]:
    rows = [
        Tenant(code="US", name="Fractional Partners US", proving_period_hours=24),
        Tenant(code="CA", name="Fractional Partners Canada", proving_period_hours=24),
    ]
    db.add_all(rows)
    await db.commit()
    return rows

