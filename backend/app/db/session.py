# backend/app/db/session.py
"""
Async database engine and transaction management for SQLAlchemy.

Production considerations:
- Uses asyncpg for PostgreSQL
- Uses aiosqlite for SQLite (local development and tests)
- Pool settings differ for SQLite (no pooling) vs PostgreSQL

Nothing here is created at import time. The process entry point builds the
engine from settings, wraps it in a Database and disposes it on shutdown.
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, AsyncAdaptedQueuePool

from backend.app.core.config import Settings
from backend.app.db.base import Base
from backend.app.db.repository import Repository


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """
    Create and configure the async SQLAlchemy engine.

    SQLite (local development):
    - Uses NullPool (SQLite doesn't support connection pooling well)
    - check_same_thread=False for async compatibility

    PostgreSQL (production):
    - AsyncAdaptedQueuePool, pool_size=5, max_overflow=10
    - pool_pre_ping=True: validate connections before checkout
    - pool_recycle=300: recycle connections every 5 minutes

    Returns:
        Configured AsyncEngine instance
    """
    if settings.is_sqlite:
        return create_async_engine(
            settings.DATABASE_URL,
            echo=settings.DATABASE_ECHO,
            poolclass=NullPool,
            connect_args={"check_same_thread": False},
        )

    return create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=300,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: returned rows stay readable after the transaction
    # autoflush=False: explicit flush control, no surprise queries
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class Database:
    """
    Transactional entry point handed to every service.

    Usage:
        async with database.transaction() as repo:
            user = await repo.get_user(user_id, for_update=True)
            ...

    Any exception escaping the block rolls the whole transaction back.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Repository]:
        async with self._session_factory() as session:
            async with session.begin():
                yield Repository(session)

    async def create_all(self) -> None:
        # Import models so every table is registered on Base.metadata
        from backend.app import models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
