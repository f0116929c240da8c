"""Pytest configuration and fixtures for async testing."""
import os
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from credit_ledger import models  # noqa: F401  registers tables on the metadata
from credit_ledger.config import Settings
from credit_ledger.database import Base, create_engine, create_session_factory
from credit_ledger.factory import CreditLedger, build_ledger
from utils.clock import FrozenClock
from utils.settings import make_settings

# Set to a PostgreSQL URL to run the suite against real row locks
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")


@pytest.fixture(scope="function")
def database_url(tmp_path: Path) -> str:
    """A fresh SQLite file per test unless TEST_DATABASE_URL points elsewhere."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest.fixture(scope="function")
def test_settings(database_url: str) -> Settings:
    """Settings for the test database."""
    return make_settings(database_url)


@pytest_asyncio.fixture(scope="function")
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """
    Engine with an empty schema.

    Yields:
        AsyncEngine: Engine bound to the test database
    """
    engine = create_engine(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory handed to the ledger components."""
    return create_session_factory(engine)


@pytest.fixture(scope="function")
def clock() -> FrozenClock:
    """Deterministic clock starting at START."""
    return FrozenClock()


@pytest.fixture(scope="function")
def ledger(
    session_factory: async_sessionmaker[AsyncSession], test_settings: Settings, clock: FrozenClock
) -> CreditLedger:
    """Every ledger component wired to the test database and clock."""
    return build_ledger(session_factory, test_settings, clock)


@pytest_asyncio.fixture(scope="function")
async def async_client(ledger: CreditLedger) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client with the ledger dependency pointed at the test database.

    Yields:
        AsyncClient: Async HTTP client for API testing
    """
    from credit_ledger.api.deps import get_ledger
    from credit_ledger.main import app

    app.dependency_overrides[get_ledger] = lambda: ledger

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    # Clean up
    app.dependency_overrides.clear()
