"""
Database layer for PetWatch using SQLAlchemy Async.

Provides the async engine, session maker, and the key-value state model that
backs both the durable timer state and the pet profile.
"""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from petwatch.core.config import settings
from petwatch.core.logger import logger


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class StateEntry(Base):
    """
    Key-value state storage model.

    One JSON document per key. Writers replace whole documents.
    """

    __tablename__ = "watch_state"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"<StateEntry(key={self.key!r})>"


# Global database engine and session maker
_engine = None
_session_maker = None


def get_db_path() -> Path:
    """Get the database file path."""
    return settings.database_path


async def init_database(db_path: Path | None = None) -> None:
    """
    Initialize the database engine and create tables.

    Must be called in async context (e.g., FastAPI lifespan).
    Sets file permissions to 0o600 on non-Windows systems.
    """
    global _engine, _session_maker

    db_path = db_path or get_db_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    db_url = f"sqlite+aiosqlite:///{db_path}"

    _engine = create_async_engine(
        db_url,
        echo=False,  # Set to True for SQL debugging
        pool_pre_ping=True,
        connect_args={"check_same_thread": False},  # Required for SQLite async
    )

    _session_maker = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if os.name != "nt":
        try:
            os.chmod(db_path, 0o600)
            logger.debug(f"Set database file permissions to 0o600: {db_path}")
        except OSError as e:
            logger.warning(f"Failed to set database permissions: {e}")

    logger.info(f"Database initialized: {db_path}")


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async database session.

    Must be used as async context manager:
        async with get_session() as session:
            ...
    """
    if _session_maker is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    async with _session_maker() as session:
        yield session


async def close_database() -> None:
    """Close the database engine."""
    global _engine, _session_maker
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_maker = None
        logger.info("Database connection closed")
