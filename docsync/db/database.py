"""
docsync - Database Connection & Session Management
==================================================

Async engine and session factory built from settings.DATABASE_URL.
SQLite (aiosqlite) is the default; any SQLAlchemy async URL works.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docsync.core.config import settings
from docsync.db.models import Base

logger = structlog.get_logger(__name__)


# =============================================================================
# Engine & Session Factory
# =============================================================================

async_engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def _async_url(url: str) -> str:
    """Convert a sync URL to its async driver form."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _enable_sqlite_foreign_keys(engine: AsyncEngine) -> None:
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection."""

    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_engine_for(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine for url with the project's defaults applied."""
    url = _async_url(url)
    engine_kwargs = {"echo": settings.DEBUG}
    if "sqlite" not in url:
        engine_kwargs["pool_pre_ping"] = True
    engine_kwargs.update(kwargs)

    engine = create_async_engine(url, **engine_kwargs)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_foreign_keys(engine)
    return engine


def get_async_engine() -> AsyncEngine:
    """Get or create async database engine."""
    global async_engine

    if async_engine is None:
        async_engine = create_engine_for(settings.DATABASE_URL)
        logger.info(
            "Async database engine created",
            url_type="sqlite" if "sqlite" in settings.DATABASE_URL else "other",
        )

    return async_engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get async session factory."""
    global AsyncSessionLocal

    if AsyncSessionLocal is None:
        AsyncSessionLocal = create_session_factory(get_async_engine())

    return AsyncSessionLocal


@asynccontextmanager
async def async_session_context(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for database session.

    Commits on success and rolls back on error.

    Usage:
        async with async_session_context() as session:
            ...
    """
    factory = session_factory or get_async_session_factory()

    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# =============================================================================
# Database Initialization
# =============================================================================

async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """
    Verify the connection and create tables if needed.

    Schema migrations are out of scope; create_all is idempotent.
    """
    engine = engine or get_async_engine()

    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created/verified")


async def close_db() -> None:
    """
    Close database connections.

    Called during application shutdown.
    """
    global async_engine, AsyncSessionLocal

    if async_engine is not None:
        await async_engine.dispose()
        async_engine = None
        AsyncSessionLocal = None
        logger.info("Async database engine disposed")
