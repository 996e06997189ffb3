# fulfillment_hub/services/transactions.py
"""
Transaction Coordinator.

Runs a unit of work inside one database transaction, turns driver failures
into the fulfillment error taxonomy, retries on detected contention and
enforces an optional deadline.
"""
from __future__ import annotations
from typing import Awaitable, Callable, Optional, TypeVar
import asyncio
import logging

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_hub.database import LOCK_WAIT_OPTION
from fulfillment_hub.errors import Contention, FulfillmentError, FulfillmentTimeout, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")
UnitOfWork = Callable[[AsyncSession], Awaitable[T]]

# PostgreSQL: serialization_failure, deadlock_detected, lock_not_available
_CONFLICT_SQLSTATES = {"40001", "40P01", "55P03"}
_SQLITE_LOCK_MARKERS = ("database is locked", "database table is locked", "database schema has changed")


def _sqlstate(exc: BaseException) -> Optional[str]:
    """Dig the SQLSTATE out of a wrapped driver error (asyncpg / psycopg)."""
    seen = set()
    cur: Optional[BaseException] = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        for attr in ("sqlstate", "pgcode"):
            code = getattr(cur, attr, None)
            if isinstance(code, str) and code:
                return code
        cur = getattr(cur, "orig", None) or cur.__cause__
    return None


def is_conflict(exc: DBAPIError) -> bool:
    """True if the driver error means "another transaction got there first"."""
    if _sqlstate(exc) in _CONFLICT_SQLSTATES:
        return True
    message = str(exc.orig if exc.orig is not None else exc).lower()
    if any(marker in message for marker in _SQLITE_LOCK_MARKERS):
        return True
    # two concurrent first-time requests with the same idempotency key
    if isinstance(exc, IntegrityError) and "idempotency_key" in message:
        return True
    return False


def classify_db_error(exc: SQLAlchemyError) -> FulfillmentError:
    if isinstance(exc, DBAPIError) and is_conflict(exc):
        return Contention(f"Concurrent update conflict: {exc.orig}")
    return StorageError(f"Storage failure: {exc}")


class TransactionCoordinator:
    """
    Owns the transactional boundary for fulfillment work.

    `fn` receives a session with an open transaction; returning commits,
    raising rolls everything back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 3,
        retry_backoff: float = 0.05,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    async def run_atomic(self, fn: UnitOfWork[T], deadline: Optional[float] = None) -> T:
        """
        One attempt: all of `fn`'s effects commit together or none do.

        `deadline` (event loop time) caps how long the attempt may wait for
        a database lock before failing with Contention.
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if deadline is not None:
                        remaining = deadline - asyncio.get_running_loop().time()
                        await session.connection(execution_options={LOCK_WAIT_OPTION: remaining})
                    return await fn(session)
        except SQLAlchemyError as e:
            raise classify_db_error(e) from e

    async def _run_with_retry(
        self,
        fn: UnitOfWork[T],
        on_attempt: Optional[Callable[[int], None]],
        deadline: Optional[float] = None,
    ) -> T:
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            attempt += 1
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return await self.run_atomic(fn, deadline)
            except Contention as e:
                if deadline is not None and loop.time() >= deadline:
                    # the lock wait used up the deadline
                    raise asyncio.TimeoutError() from e
                if attempt >= self.max_attempts:
                    logger.warning("Giving up after %d attempts: %s", attempt, e.message)
                    raise Contention(e.message, attempts=attempt) from e
                logger.info("Contention on attempt %d/%d, retrying: %s", attempt, self.max_attempts, e.message)
                if self.retry_backoff:
                    await asyncio.sleep(self.retry_backoff * attempt)

    async def run(
        self,
        fn: UnitOfWork[T],
        timeout: Optional[float] = None,
        on_attempt: Optional[Callable[[int], None]] = None,
    ) -> T:
        """
        Run `fn` atomically, retrying from scratch on contention.

        `timeout` bounds the whole call including retries and lock waits; on
        expiry the in-flight transaction is cancelled (and so rolled back).
        """
        if timeout is None:
            return await self._run_with_retry(fn, on_attempt)
        deadline = asyncio.get_running_loop().time() + timeout
        try:
            return await asyncio.wait_for(self._run_with_retry(fn, on_attempt, deadline), timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Transaction exceeded %.3fs deadline, aborted", timeout)
            raise FulfillmentTimeout(timeout) from e
