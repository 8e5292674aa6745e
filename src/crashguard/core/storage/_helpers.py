"""Helpers shared by the checkpoint store and the signal history repository."""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TypeVar

import structlog
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from crashguard.contracts import StorageError
from crashguard.engine.retry import MaxRetriesExceeded, RetryManager

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def generate_id(prefix: str) -> str:
    """Generate a unique id of the form ``<prefix>-<uuid4 hex>``."""
    return f"{prefix}-{uuid.uuid4().hex}"


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC.

    SQLite has no timezone storage and returns naive values; everything
    is written as UTC, so naive means UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_retryable(error: BaseException) -> bool:
    """Only OperationalError (locked, busy, disk I/O) is transient."""
    return isinstance(error, OperationalError)


def run_storage_operation(retry: RetryManager, operation: str, fn: Callable[[], T]) -> T:
    """Run fn under the retry policy, converting failures to StorageError.

    Raises:
        StorageError: After the last retryable attempt, or at once for
            any other database error
    """

    def on_retry(attempt: int, error: BaseException) -> None:
        logger.warning("Retrying storage operation", operation=operation, attempt=attempt + 1, error=str(error))

    try:
        return retry.execute_with_retry(fn, is_retryable=is_retryable, on_retry=on_retry)
    except MaxRetriesExceeded as e:
        logger.error("Storage operation failed", operation=operation, attempts=e.attempts, error=str(e.last_error))
        raise StorageError(operation, e.attempts, e.last_error) from e
    except SQLAlchemyError as e:
        logger.error("Storage operation failed", operation=operation, attempts=1, error=str(e))
        raise StorageError(operation, 1, e) from e
