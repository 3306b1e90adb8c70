"""Async database session management for SQLAlchemy 2.0+.

Only used when DATABASE_URL is configured; otherwise messages live in the
in-memory store.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from chatguard.app.core.logging import get_logger

logger = get_logger(__name__)


def create_engine_for_url(database_url: str) -> AsyncEngine:
    """Create an async engine suited to the database behind `database_url`.

    In-memory SQLite shares one connection so every session sees the
    same database.
    """
    if "sqlite" in database_url.lower():
        if ":memory:" in database_url:
            engine = create_async_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            engine = create_async_engine(database_url)
        logger.info("Created SQLite async engine")
        return engine

    engine = create_async_engine(
        database_url,
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        pool_recycle=300,
    )
    logger.info("Created async engine for message store")
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables.

    This should be called during application startup.
    """
    from chatguard.app.db.base import Base
    from chatguard.app.db import models  # noqa: F401 - register models

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
