"""Transaction runner shared by every ledger mutator.

Each call gets its own session and transaction, bounded lock waits on
PostgreSQL, an overall timeout, and bounded exponential-backoff retries for
transient storage failures. Logical failures pass straight through.
"""
import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from credit_ledger.config import Settings
from credit_ledger.exceptions import BatchLockConflictError, TransientStorageError
from credit_ledger.metrics import ledger_transaction_retries_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# lock_not_available, deadlock_detected
LOCK_CONFLICT_SQLSTATES = {"55P03", "40P01"}
# serialization_failure, query_canceled (statement_timeout), admin_shutdown, cannot_connect_now
TRANSIENT_SQLSTATES = {"40001", "57014", "57P01", "57P03"}


def classify_storage_error(exc: BaseException) -> Optional[TransientStorageError]:
    """
    Map a driver failure onto the ledger's transient error types.

    Args:
        exc: Exception raised while talking to the database

    Returns:
        TransientStorageError to raise in its place, or None if the failure is not transient
    """
    if isinstance(exc, PoolTimeoutError):
        return TransientStorageError(f"Connection pool exhausted: {exc}")

    if not isinstance(exc, DBAPIError):
        return None

    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    message = str(orig).lower()

    if sqlstate in LOCK_CONFLICT_SQLSTATES or "database is locked" in message:
        return BatchLockConflictError(f"Lock not acquired: {orig}")
    if exc.connection_invalidated or sqlstate in TRANSIENT_SQLSTATES:
        return TransientStorageError(f"Storage unavailable: {orig}")
    if isinstance(exc, (OperationalError, InterfaceError)):
        return TransientStorageError(f"Storage unavailable: {orig}")
    return None


async def _apply_timeouts(session: AsyncSession, settings: Settings) -> None:
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(text(f"SET LOCAL lock_timeout = '{int(settings.lock_timeout_ms)}ms'"))
    await session.execute(text(f"SET LOCAL statement_timeout = '{int(settings.statement_timeout_ms)}ms'"))


async def _run_once(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Callable[[AsyncSession], Awaitable[T]],
    name: str,
    settings: Settings,
) -> T:
    try:
        async with session_factory() as session:
            async with session.begin():
                await _apply_timeouts(session, settings)
                return await asyncio.wait_for(operation(session), timeout=settings.operation_timeout_seconds)
    except asyncio.TimeoutError as e:
        raise TransientStorageError(
            f"{name} did not complete within {settings.operation_timeout_seconds}s"
        ) from e
    except (DBAPIError, PoolTimeoutError) as e:
        transient = classify_storage_error(e)
        if transient is None:
            raise
        raise transient from e


def _log_retry(name: str) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        ledger_transaction_retries_total.labels(operation=name).inc()
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "ledger_transaction_retry",
            operation=name,
            attempt=retry_state.attempt_number,
            error_type=type(exc).__name__ if exc else None,
            error=str(exc) if exc else None,
        )

    return before_sleep


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    name: str,
    settings: Settings,
) -> T:
    """
    Run ``operation`` inside one committed transaction, retrying transient failures.

    The operation must be safe to run again from scratch: nothing it did in a
    failed attempt survives the rollback.

    Args:
        session_factory: Session factory for the ledger database
        operation: Coroutine function receiving the open session
        name: Operation name for logs and metrics
        settings: Retry and timeout configuration

    Returns:
        Whatever ``operation`` returned

    Raises:
        TransientStorageError: If every attempt failed transiently
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(settings.max_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_backoff_min_seconds,
            min=settings.retry_backoff_min_seconds,
            max=settings.retry_backoff_max_seconds,
        ),
        retry=retry_if_exception_type(TransientStorageError),
        before_sleep=_log_retry(name),
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            result = await _run_once(session_factory, operation, name, settings)
    return result
