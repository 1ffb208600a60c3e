"""
Database session management.

Provides the async SQLAlchemy engine/session factory owned by the application
and the FastAPI dependency that hands out sessions.
"""

from typing import AsyncGenerator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from sso_service.infrastructure.db.models import Base


def normalize_database_url(url: str) -> str:
    """Convert postgresql:// to postgresql+asyncpg:// if needed"""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


class Database:
    """
    Async engine and session factory.

    Constructed at application startup and disposed at shutdown.
    """

    def __init__(self, url: str, echo: bool = False, use_null_pool: bool = False):
        url = normalize_database_url(url)
        engine_kwargs = {"echo": echo}
        if use_null_pool or url.startswith("sqlite"):
            engine_kwargs["poolclass"] = NullPool
        else:
            engine_kwargs["pool_pre_ping"] = True  # Verify connections before using

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Don't expire objects after commit
            autoflush=False,
        )

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> "Database":
        """Wrap an existing engine (used by tests)"""
        database = cls.__new__(cls)
        database.engine = engine
        database.session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
        return database

    async def init_db(self) -> None:
        """
        Create all tables defined in SQLAlchemy models.

        Development/testing only; production uses Alembic migrations.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_db(self) -> None:
        """
        Drop all database tables.

        WARNING: This will delete all data!
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def close(self) -> None:
        """Close database engine and clean up connections."""
        await self.engine.dispose()


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Yields:
        AsyncSession: Database session
    """
    database: Database = request.app.state.database
    async with database.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
