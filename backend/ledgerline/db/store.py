"""
Transaction runner over the async session factory.

Every read-check-write sequence in Ledgerline (idempotency guard, versioned
upsert, audit chain growth, outbox / queue claims) runs inside
``DocumentStore.run_transaction``. One attempt is one fresh session and
one database transaction. Optimistic-concurrency losses (stale version
columns, uniqueness races, SQLite lock contention, PostgreSQL
serialization failures) abort the attempt and the whole callable is run
again against freshly read state. Domain errors propagate immediately.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from ledgerline.core.errors import TransactionConflictError

_log = structlog.get_logger(__name__)

T = TypeVar("T")

_CONTENTION_MARKERS = ("locked", "could not serialize", "deadlock", "busy")


def is_contention_error(exc: BaseException) -> bool:
    """True when *exc* means another transaction won a race for the same rows."""
    if isinstance(exc, (StaleDataError, IntegrityError)):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in _CONTENTION_MARKERS)
    return False


class DocumentStore:
    """Owns the session factory and the retrying transaction primitive."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
        retry_base_delay: float = 0.01,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max(1, max_attempts)
        self._retry_base_delay = retry_base_delay

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Read-only session; nothing is committed."""
        async with self._session_factory() as session:
            yield session

    async def run_transaction(
        self,
        fn: Callable[[AsyncSession], Awaitable[T]],
        *,
        name: str = "transaction",
    ) -> T:
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        return await fn(session)
            except (StaleDataError, IntegrityError, OperationalError) as exc:
                if not is_contention_error(exc):
                    raise
                _log.debug(
                    "transaction_retry",
                    transaction=name,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                if attempt < self.max_attempts:
                    delay = self._retry_base_delay * attempt
                    await asyncio.sleep(delay + random.uniform(0, delay))  # noqa: S311

        _log.warning("transaction_conflict", transaction=name, attempts=self.max_attempts)
        raise TransactionConflictError(self.max_attempts)
