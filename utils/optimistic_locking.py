"""
Optimistic Locking Infrastructure
Version-column conflict detection with bounded retry for ledger writes
"""

import logging
import time
from functools import wraps
from sqlalchemy.orm.exc import StaleDataError

logger = logging.getLogger(__name__)


class OptimisticLockingError(Exception):
    """Raised when a versioned write keeps conflicting after all retries"""
    pass


def with_optimistic_locking(
    max_retries: int = 3,
    retry_delay: float = 0.05,
    backoff_factor: float = 2.0
):
    """
    Re-run a whole unit of work when its versioned UPDATE hit a concurrent writer.

    The wrapped function must open and commit its own transaction, so a retry
    starts from a fresh read of the row.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            current_delay = retry_delay
            last_error = None

            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except StaleDataError as e:
                    last_error = e
                    if attempt >= max_retries:
                        break
                    logger.warning(
                        f"🔒 Version conflict in {func.__name__} "
                        f"(attempt {attempt + 1}/{max_retries + 1}), retrying in {current_delay:.2f}s"
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff_factor

            logger.error(f"❌ {func.__name__} failed after {max_retries + 1} attempts: {last_error}")
            raise OptimisticLockingError(
                f"{func.__name__} could not complete due to concurrent modification"
            ) from last_error

        return wrapper
    return decorator
