"""
Database configuration and session management.
"""

import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from flowguard.core.config import DatabaseSettings


UTC = timezone.utc


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def new_id() -> str:
    """Primary key generator for engine-owned records."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine(db_settings: DatabaseSettings, echo: bool = False) -> AsyncEngine:
    """Create the async engine for the configured DSN."""
    dsn = db_settings.dsn
    if dsn.startswith("sqlite"):
        # SQLite does not take pool sizing arguments
        return create_async_engine(dsn, echo=echo)
    return create_async_engine(
        dsn,
        echo=echo,
        pool_size=db_settings.pool_size,
        max_overflow=db_settings.max_overflow,
        pool_pre_ping=True,
    )


def setup_database(db_settings: DatabaseSettings, echo: bool = False) -> AsyncEngine:
    """Create the engine and session factory used by the process."""
    global _engine, _session_factory

    _engine = create_engine(db_settings, echo=echo)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the session factory, failing loudly if setup was skipped."""
    if _session_factory is None:
        raise RuntimeError("Database is not initialized; call setup_database() first")
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Get database session for dependency injection.

    Yields:
        AsyncSession: Database session
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Initialize database (create tables if they don't exist)."""
    if _engine is None:
        raise RuntimeError("Database is not initialized; call setup_database() first")

    async with _engine.begin() as conn:
        # Import all models here to ensure they are registered with Base
        from flowguard import models  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
