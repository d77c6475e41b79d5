"""Async database engine, session management and optimistic-commit helpers."""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm.exc import StaleDataError

from hive.config import Settings
from hive.errors import ConflictError
from hive.storage.models import Base

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    def __init__(self, settings: Settings) -> None:
        engine_kwargs: dict = {"echo": settings.log_level == "debug"}
        if not settings.is_sqlite:
            engine_kwargs["pool_size"] = settings.db_pool_size
            engine_kwargs["max_overflow"] = settings.db_max_overflow
        self.engine = create_async_engine(settings.database_url, **engine_kwargs)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def connect(self) -> None:
        """Create missing tables and verify the connection."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(text("SELECT 1"))

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def disconnect(self) -> None:
        """Dispose of connection pool."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield an async session with automatic cleanup."""
        async with self.session_factory() as session:
            yield session

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.disconnect()


async def commit_or_conflict(session: AsyncSession, what: str) -> None:
    """Commit, turning a lost optimistic-version race into ConflictError."""
    try:
        await session.commit()
    except StaleDataError as e:
        await session.rollback()
        raise ConflictError(f"{what} was modified concurrently, retry the request") from e


async def retry_on_conflict(
    db: Database,
    fn: Callable[[AsyncSession], Awaitable[T]],
    attempts: int = 3,
) -> T:
    """Run ``fn`` in a fresh session and commit, retrying lost version races.

    Meant for append-style writes (history, event logs) where re-reading and
    re-applying is always correct.
    """
    for attempt in range(1, attempts + 1):
        async with db.session() as session:
            result = await fn(session)
            try:
                await session.commit()
                return result
            except StaleDataError:
                await session.rollback()
                if attempt == attempts:
                    raise ConflictError("Record kept changing underneath the update") from None
                logger.debug("Version race on attempt %d/%d, retrying", attempt, attempts)
    raise AssertionError("unreachable")
