"""Database connection and session management.

Uses lazy initialization so the engine is created within the event loop
that first needs it. Every store receives a session maker; stores never
share sessions with each other.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from insulin_ledger.config import settings
from insulin_ledger.logging_config import get_logger
from insulin_ledger.models import Base

logger = get_logger(__name__)

# Engine and session maker - lazily initialized
_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def build_engine(database_url: str, *, testing: bool = False) -> AsyncEngine:
    """Create an async engine for ``database_url``.

    When testing=True, uses NullPool to avoid event loop issues
    with connection pooling across different test event loops.
    """
    options: dict[str, Any] = {"echo": settings.log_format == "text" and not testing}
    if testing:
        options["poolclass"] = NullPool
    elif not database_url.startswith("sqlite"):
        # Connection pooling for server databases
        options.update(pool_size=5, max_overflow=10, pool_pre_ping=True)
    return create_async_engine(database_url, **options)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session maker with the expiry behaviour every store relies on."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Get or create the process-wide database engine."""
    global _engine
    if _engine is None:
        _engine = build_engine(settings.database_url, testing=settings.testing)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Get or create the session maker."""
    global _async_session_maker
    if _async_session_maker is None:
        _async_session_maker = build_session_maker(get_engine())
    return _async_session_maker


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for database sessions."""
    session_maker = get_session_maker()
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_database(engine: AsyncEngine | None = None) -> None:
    """Create every ledger table that does not exist yet."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready", tables=len(Base.metadata.tables))


async def check_database_connection() -> bool:
    """
    Check if the database is reachable.

    Returns:
        True if database is connected, False otherwise.
    """
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.warning("Database connection check failed", error=str(e))
        return False


async def close_database() -> None:
    """Close the database engine and all connections."""
    global _engine, _async_session_maker
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None


async def reset_database() -> None:
    """Reset the database engine for testing.

    This disposes the current engine and clears the references,
    allowing a new engine to be created in a different event loop.
    """
    await close_database()
