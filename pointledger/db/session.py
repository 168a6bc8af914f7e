"""
Database Session Management - Async SQLAlchemy session factory.

Provides separate read and write database connections. Engines live on a
Database instance owned by whoever starts the process (the FastAPI lifespan
or the maintenance CLI) rather than in module globals.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pointledger.config import Settings


class Database:
    """Owns the primary and replica engines and their session factories."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._write_engine: AsyncEngine | None = None
        self._read_engine: AsyncEngine | None = None
        self._write_session_factory: async_sessionmaker[AsyncSession] | None = None
        self._read_session_factory: async_sessionmaker[AsyncSession] | None = None

    def _create_engine(self, url: str) -> AsyncEngine:
        return create_async_engine(
            url,
            pool_size=self._settings.database_pool_size,
            max_overflow=self._settings.database_max_overflow,
            pool_timeout=self._settings.database_pool_timeout,
            pool_recycle=self._settings.database_pool_recycle,
            echo=self._settings.log_level == "DEBUG",
        )

    @property
    def write_engine(self) -> AsyncEngine:
        """Get or create the write database engine (primary)."""
        if self._write_engine is None:
            self._write_engine = self._create_engine(self._settings.database_url)
        return self._write_engine

    @property
    def read_engine(self) -> AsyncEngine:
        """Get or create the read database engine (replica)."""
        if self._read_engine is None:
            self._read_engine = self._create_engine(self._settings.read_database_url)
        return self._read_engine

    @property
    def write_session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create the write session factory."""
        if self._write_session_factory is None:
            self._write_session_factory = async_sessionmaker(
                self.write_engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._write_session_factory

    @property
    def read_session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get or create the read session factory."""
        if self._read_session_factory is None:
            self._read_session_factory = async_sessionmaker(
                self.read_engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )
        return self._read_session_factory

    @asynccontextmanager
    async def write_session(self) -> AsyncIterator[AsyncSession]:
        """
        Get an async database session for write operations.

        Usage:
            async with database.write_session() as session:
                await session.execute(...)
                await session.commit()
        """
        async with self.write_session_factory() as session:
            try:
                yield session
            finally:
                await session.close()

    @asynccontextmanager
    async def read_session(self) -> AsyncIterator[AsyncSession]:
        """Get an async database session for read operations (from replica)."""
        async with self.read_session_factory() as session:
            try:
                yield session
            finally:
                await session.close()

    async def close(self) -> None:
        """Close all database engines (for graceful shutdown)."""
        if self._write_engine:
            await self._write_engine.dispose()
            self._write_engine = None

        if self._read_engine:
            await self._read_engine.dispose()
            self._read_engine = None


def get_database(request: Request) -> Database:
    """FastAPI dependency returning the Database created in the app lifespan."""
    database: Database = request.app.state.database
    return database


async def get_write_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for write database session.

    Usage:
        @router.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with get_database(request).write_session() as session:
        yield session


async def get_read_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read database session."""
    async with get_database(request).read_session() as session:
        yield session
