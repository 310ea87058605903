"""Ultra BMS Auth Database Configuration - Async SQLAlchemy."""

import logging
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from bms_auth.core.config import settings

logger = logging.getLogger(__name__)


def create_engine_from_url(url: str) -> AsyncEngine:
    """Create an async engine.

    Pool sizing (DB_POOL_SIZE, DB_MAX_OVERFLOW, DB_POOL_TIMEOUT,
    DB_POOL_RECYCLE) only applies to server databases; SQLite uses the
    driver's default pool.
    """
    kwargs: dict[str, Any] = {"echo": settings.debug and settings.log_level == "DEBUG"}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


engine = create_engine_from_url(str(settings.database_url))

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

# Base class for the users, user_sessions and token_blacklist tables
Base = declarative_base()


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the running app (tests swap it on app.state)."""
    return getattr(request.app.state, "session_factory", async_session_maker)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; committed on success, rolled back otherwise."""
    async with get_session_factory(request)() as session:
        try:
            yield session
            await session.commit()
        except BaseException:
            # Includes asyncio.CancelledError from a dropped client
            await session.rollback()
            raise


async def check_db_connection(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> bool:
    """Check if database is reachable."""
    factory = session_factory or async_session_maker
    try:
        async with factory() as session:
            await session.execute(text("SELECT 1"))
            return True
    except (OSError, ConnectionError, SQLAlchemyError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False
