from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from voice_api.config.settings import Settings, get_settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class Database:
    """
    Database connection and session management.

    Background processors open one short session per claimed row through
    ``session_scope``; request handlers use ``get_session``.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        engine_kwargs = {"echo": False}
        # SQLite (tests, local runs) does not accept pool sizing arguments
        if not settings.database_url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_timeout=settings.db_pool_timeout,
                pool_recycle=settings.db_pool_recycle,
                pool_pre_ping=True,
            )
        self.engine = create_async_engine(settings.database_url, **engine_kwargs)
        self.SessionLocal = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """Yield an isolated session, rolling back anything left uncommitted."""
        async with self.SessionLocal() as session:
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create every mapped table (local development and tests)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close database connections."""
        await self.engine.dispose()


# Global database instance
_database: Database | None = None


def get_database(settings: Settings = Depends(get_settings)) -> Database:
    """Get or create the global database instance."""
    global _database
    if _database is None:
        _database = Database(settings)
    return _database


def set_database(database: Database | None) -> None:
    """Replace the global database instance (CLI entrypoints and tests)."""
    global _database
    _database = database


async def get_session(
    database: Database = Depends(get_database),
) -> AsyncGenerator[AsyncSession, None]:
    """Dependency injection for database sessions."""
    async with database.SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# Convenience type alias for dependency injection
SessionDep = Depends(get_session)
