"""
Atomic unit-of-work execution with bounded retry.

Every state change goes through AtomicExecutor.run: one fresh session and one
storage transaction per attempt. Storage conflicts (unique violations,
lock/serialization failures) roll the attempt back and re-run the whole unit
of work from scratch. Business errors roll back and propagate at once.
"""
import time
from typing import Awaitable, Callable, TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from parking_core.config import Settings
from parking_core.database.connection import READ_ONLY
from parking_core.domain.errors import BusinessLogicError, TransientConflictError
from parking_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")
UnitOfWork = Callable[[AsyncSession], Awaitable[T]]

# PostgreSQL: serialization_failure, deadlock_detected, unique_violation
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01", "23505"})

_SQLITE_CONFLICT_MARKERS = (
    "database is locked",
    "database is busy",
    "database table is locked",
    "unique constraint failed",
)


class StorageConflict(Exception):
    """An attempt lost a race in storage. Internal to the executor."""

    def __init__(self, original: DBAPIError):
        super().__init__(str(original))
        self.original = original


def is_retryable_conflict(error: DBAPIError) -> bool:
    """
    Classify a storage error for retry logic.

    Args:
        error: Error raised by SQLAlchemy

    Returns:
        bool: True when re-running the unit of work can succeed
    """
    if not isinstance(error, (IntegrityError, OperationalError, DBAPIError)):
        return False

    orig = getattr(error, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True

    message = str(orig if orig is not None else error).lower()
    if isinstance(error, IntegrityError):
        return "unique" in message or "duplicate key" in message
    return any(marker in message for marker in _SQLITE_CONFLICT_MARKERS) or "deadlock" in message


class AtomicExecutor:
    """
    Runs units of work atomically.

    Cancellation before commit rolls the attempt back; once commit returns
    the result stands.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_attempts: int = 4,
        base_delay: float = 0.05,
        max_delay: float = 1.0,
    ):
        """
        Initialize executor.

        Args:
            session_factory: Factory producing fresh sessions
            max_attempts: Attempts per unit of work before giving up
            base_delay: First backoff delay in seconds
            max_delay: Upper bound for a single backoff delay
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    @classmethod
    def from_settings(
        cls, settings: Settings, session_factory: async_sessionmaker[AsyncSession]
    ) -> "AtomicExecutor":
        return cls(
            session_factory,
            max_attempts=settings.transaction_max_attempts,
            base_delay=settings.transaction_retry_base_delay,
            max_delay=settings.transaction_retry_max_delay,
        )

    async def run(self, work: UnitOfWork[T], *, operation: str = "unit_of_work") -> T:
        """
        Execute work inside a single transaction, retrying on conflicts.

        Args:
            work: Coroutine function receiving the session
            operation: Name used in logs and metrics

        Returns:
            Whatever work returned, after commit

        Raises:
            TransientConflictError: If every attempt hit a storage conflict
            ParkingError: Business and validation errors, never retried
        """
        started = time.perf_counter()

        def _before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            metrics.record_transaction_retry(operation)
            logger.warning(
                "transaction_conflict_retrying",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_attempts=self.max_attempts,
                error=str(error),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(StorageConflict),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay)
            + wait_random(0, self.base_delay),
            before_sleep=_before_sleep,
            reraise=False,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._attempt(work)
        except RetryError as e:
            last = e.last_attempt.exception()
            metrics.record_transaction_exhausted(operation)
            logger.error(
                "transaction_retries_exhausted",
                operation=operation,
                attempts=self.max_attempts,
                error=str(last),
            )
            cause = last.original if isinstance(last, StorageConflict) else last
            raise TransientConflictError(operation, self.max_attempts) from cause
        except BusinessLogicError as e:
            metrics.record_rejection(e.code.value)
            logger.info(
                "operation_rejected",
                operation=operation,
                code=e.code.value,
                message=e.message,
            )
            raise
        finally:
            metrics.record_transaction_duration(operation, time.perf_counter() - started)

        return result

    async def read(self, query: UnitOfWork[T], operation: str = "read") -> T:
        """
        Run a read-only query in a short deferred transaction, without retry.

        Raises:
            TransientConflictError: If storage stayed locked past the busy timeout
        """
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    await session.connection(execution_options={READ_ONLY: True})
                    return await query(session)
            except DBAPIError as e:
                if not is_retryable_conflict(e):
                    raise
                metrics.record_transaction_exhausted(operation)
                logger.warning("read_conflict", operation=operation, error=str(e))
                raise TransientConflictError(operation, 1) from e

    async def _attempt(self, work: UnitOfWork[T]) -> T:
        async with self.session_factory() as session:
            try:
                async with session.begin():
                    return await work(session)
            except DBAPIError as e:
                if is_retryable_conflict(e):
                    raise StorageConflict(e) from e
                raise
