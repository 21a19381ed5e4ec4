"""Pytest configuration and shared fixtures.

Every test gets its own SQLite database file under ``tmp_path`` with
NullPool, so no connection outlives the test's event loop.
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set testing mode BEFORE importing settings consumers to use NullPool
os.environ["INSULIN_LEDGER_TESTING"] = "true"

from insulin_ledger.config import settings

settings.testing = True

from insulin_ledger.database import build_engine, build_session_maker, init_database


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"


@pytest_asyncio.fixture
async def db_engine(database_url) -> AsyncGenerator[AsyncEngine, None]:
    """Engine with every ledger table created."""
    engine = build_engine(database_url, testing=True)
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(db_engine)
