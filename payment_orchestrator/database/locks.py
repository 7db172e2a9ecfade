"""
Keyed critical sections backed by the database.

``AdvisoryLock`` serializes callers on a text key across every service
instance sharing the database, using a transaction-scoped PostgreSQL
advisory lock that is released when the transaction ends.
"""
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_orchestrator.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class KeyedLock(ABC):
    """Critical section keyed by a string, yielding a transactional session."""

    @abstractmethod
    def hold(self, key: str) -> "AsyncIterator[AsyncSession]":
        """Async context manager: hold the lock for ``key`` inside a transaction."""

    async def with_lock(self, key: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """
        Run ``fn`` while holding the lock for ``key``.

        Args:
            key: Lock key
            fn: Coroutine function receiving the transactional session

        Returns:
            T: Result of ``fn``
        """
        async with self.hold(key) as db:
            return await fn(db)


class AdvisoryLock(KeyedLock):
    """PostgreSQL ``pg_advisory_xact_lock`` keyed on ``hashtext(key)``."""

    LOCK_SQL = text("SELECT pg_advisory_xact_lock(hashtext(:key))")

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """
        Initialize advisory lock.

        Args:
            session_factory: Factory for sessions on a PostgreSQL engine

        Raises:
            ValueError: If the factory is bound to a non-PostgreSQL engine
        """
        bind = session_factory.kw.get("bind")
        if bind is not None and bind.dialect.name != "postgresql":
            raise ValueError(
                f"Advisory locks require PostgreSQL, got dialect '{bind.dialect.name}'"
            )
        self.session_factory = session_factory

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[AsyncSession]:
        started = time.perf_counter()
        async with self.session_factory() as db:
            async with db.begin():
                await db.execute(self.LOCK_SQL, {"key": key})
                metrics.record_lock_acquired(time.perf_counter() - started)
                logger.debug("payment_lock_acquired", key=key)
                yield db
