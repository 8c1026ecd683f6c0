"""
Retry logic with exponential backoff for failed commits.

A failed commit rolls back the whole unit of work; the caller retries by
rebuilding the transaction from scratch. These helpers drive that loop.
"""

import time
import functools
from typing import Callable, Type, Tuple, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError

from .errors import StaleEntryError


class RetryError(Exception):
    """Raised when all retry attempts are exhausted."""
    pass


def exponential_backoff(
    max_retries: int = 3,
    base_delay: float = 0.05,
    max_delay: float = 5.0,
    exponential_base: float = 2.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable] = None,
):
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts (0 = no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential calculation (delay *= base)
        exceptions: Tuple of exceptions to catch and retry
        should_retry: Optional predicate; a caught exception it rejects is re-raised as is
        on_retry: Optional callback function(attempt, exception, delay)

    Example:
        @exponential_backoff(max_retries=3, exceptions=(CommitError,))
        def record_success(storage):
            with storage.create_transaction() as tx:
                tx.increment_counter("stats:succeeded")
                tx.commit()
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            delay = base_delay

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if should_retry is not None and not should_retry(e):
                        raise

                    # Don't sleep after the last attempt
                    if attempt < max_retries:
                        current_delay = min(delay, max_delay)

                        if on_retry:
                            on_retry(attempt + 1, e, current_delay)

                        time.sleep(current_delay)
                        delay *= exponential_base
                    else:
                        raise RetryError(
                            f"Failed after {max_retries + 1} attempts: {str(e)}"
                        ) from e

        return wrapper
    return decorator


def is_transient_error(exception: BaseException) -> bool:
    """
    Determine if a commit failure is likely transient and worth retrying.

    Concurrency conflicts (a row vanished or a natural key was inserted by
    another process between lookup and flush) and lock/serialization
    failures qualify; anything else is treated as a bug in the batch.

    Args:
        exception: Exception to check (a CommitError's cause is inspected too)

    Returns:
        True if the whole transaction should be rebuilt and committed again
    """
    if isinstance(exception, StaleEntryError):
        return True

    cause = exception.__cause__ if exception.__cause__ is not None else exception
    if isinstance(cause, IntegrityError):
        return _is_key_conflict(cause)
    if isinstance(cause, DBAPIError):
        error_str = str(cause).lower()
        transient_keywords = [
            'database is locked',
            'deadlock',
            'could not serialize',
            'lock wait timeout',
            'connection reset',
            'timeout',
        ]
        return any(keyword in error_str for keyword in transient_keywords)
    return False


def _is_key_conflict(error: IntegrityError) -> bool:
    """
    Tell a duplicate-key race apart from a permanent constraint violation.

    Foreign key, NOT NULL and CHECK failures repeat on every attempt, so only
    unique and primary key conflicts are reported as transient.
    """
    orig = error.orig
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate is not None:
        return sqlstate == "23505"

    error_str = str(orig if orig is not None else error).lower()
    conflict_keywords = [
        'unique constraint',
        'duplicate key',
        'duplicate entry',
        'primary key',
    ]
    return any(keyword in error_str for keyword in conflict_keywords)
