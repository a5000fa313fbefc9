"""
Retry utilities for transient failures.

One RetryPolicy drives every retried operation in the pipeline: object store
calls (network errors, throttling, 5xx) and catalog database writes
(lock contention, dropped connections). Delays grow exponentially with
jitter and are capped; non-retryable errors are re-raised immediately.
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Callable, Optional, Type, TypeVar

from core.errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
DEFAULT_EXPONENTIAL_BASE = 2
DEFAULT_JITTER = 0.25


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters. max_retries counts retries after the first attempt."""

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    exponential_base: float = DEFAULT_EXPONENTIAL_BASE
    jitter: float = DEFAULT_JITTER

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number attempt+1 (attempt is zero-based)."""
        delay = min(self.base_delay * (self.exponential_base**attempt), self.max_delay)
        # Add jitter (±25% by default) to prevent thundering herd
        jitter = delay * self.jitter * (2 * random.random() - 1)
        return max(0.01, delay + jitter)

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        from config import STORE_MAX_RETRIES, STORE_RETRY_BASE_DELAY, STORE_RETRY_MAX_DELAY

        return cls(
            max_retries=STORE_MAX_RETRIES,
            base_delay=STORE_RETRY_BASE_DELAY,
            max_delay=STORE_RETRY_MAX_DELAY,
        )


class DatabaseRetryableError(Exception):
    """Raised when a database operation fails after all retries exhausted."""

    pass


def is_retryable_database_error(exc: BaseException) -> bool:
    """
    Check if an exception is a retryable database error.

    Supports both SQLite and PostgreSQL error patterns.
    """
    error_str = str(exc).lower()

    patterns = [
        # SQLite
        "database is locked",
        "database table is locked",
        "sqlite_busy",
        "sqlite_locked",
        # PostgreSQL
        "deadlock detected",
        "could not serialize access",
        "could not obtain lock",
        "connection refused",
        "connection reset",
        "server closed the connection unexpectedly",
        "lock timeout",
    ]
    for pattern in patterns:
        if pattern in error_str:
            return True

    # asyncpg and psycopg2 may expose SQLSTATE codes
    if getattr(exc, "sqlstate", "") in ("40P01", "40001"):
        return True

    # The databases library wraps underlying driver exceptions
    if exc.__cause__ is not None:
        return is_retryable_database_error(exc.__cause__)

    return False


async def execute_with_retry(
    func: Callable,
    *args,
    policy: Optional[RetryPolicy] = None,
    is_retryable: Callable[[BaseException], bool] = lambda e: isinstance(e, TransientStoreError),
    exhausted_error: Type[Exception] = TransientStoreError,
    description: str = "Operation",
    **kwargs,
) -> T:
    """
    Execute an async function, retrying transient failures with backoff.

    Args:
        func: Async function to execute
        *args: Positional arguments for func
        policy: Backoff parameters (defaults to RetryPolicy())
        is_retryable: Predicate deciding whether an exception is transient
        exhausted_error: Exception class raised once retries run out
        description: Operation name used in log and error messages
        **kwargs: Keyword arguments for func

    Returns:
        Result of the function

    Raises:
        exhausted_error: If all retries are exhausted
        Other exceptions: Non-retryable errors are re-raised immediately
    """
    policy = policy or RetryPolicy()
    last_exception: Optional[BaseException] = None

    for attempt in range(policy.max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e):
                raise

            last_exception = e

            if attempt < policy.max_retries:
                delay = policy.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{policy.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"{description} failed after {policy.max_attempts} attempts, giving up: {e}")

    raise exhausted_error(
        f"{description} failed after {policy.max_attempts} attempts: {last_exception}"
    ) from last_exception


def with_db_retry(policy: Optional[RetryPolicy] = None):
    """
    Decorator adding database retry logic to async functions.

    Usage:
        @with_db_retry()
        async def save_row():
            ...
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            from config import DB_MAX_RETRIES

            return await execute_with_retry(
                func,
                *args,
                policy=policy or RetryPolicy(max_retries=DB_MAX_RETRIES, base_delay=0.1, max_delay=2.0),
                is_retryable=is_retryable_database_error,
                exhausted_error=DatabaseRetryableError,
                description=f"Database operation {func.__name__}",
                **kwargs,
            )

        return wrapper

    return decorator
