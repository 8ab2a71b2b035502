from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from sqlalchemy.exc import OperationalError

from app.surplus.core.config import settings
from app.surplus.core.error_catalog import KIND_INFRASTRUCTURE, AppError, ErrorCatalog

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable_infrastructure_error(exc: Exception) -> bool:
    if isinstance(exc, AppError):
        return exc.error.kind == KIND_INFRASTRUCTURE and exc.retryable
    return isinstance(exc, OperationalError)


def with_retries(
    operation: Callable[[], T],
    *,
    attempts: int | None = None,
    base_delay_ms: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation``, retrying infrastructure failures with exponential backoff.

    Conflicts, validation and authorization failures are raised on the first
    attempt. Once the attempts are spent the last error is raised unchanged,
    except raw driver errors, which surface as ``DB_UNAVAILABLE``.
    """
    max_attempts = max(1, attempts if attempts is not None else settings.RETRY_MAX_ATTEMPTS)
    delay_ms = base_delay_ms if base_delay_ms is not None else settings.RETRY_BASE_DELAY_MS
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except Exception as exc:
            if not is_retryable_infrastructure_error(exc):
                raise
            if attempt == max_attempts:
                if isinstance(exc, AppError):
                    raise
                raise AppError(ErrorCatalog.DB_UNAVAILABLE, details={"type": exc.__class__.__name__}) from exc
            wait_seconds = (delay_ms * (2 ** (attempt - 1))) / 1000
            logger.warning(
                "Retrying after infrastructure failure",
                extra={"attempt": attempt, "wait_seconds": wait_seconds, "error": exc.__class__.__name__},
            )
            sleep(wait_seconds)
    raise AssertionError("unreachable")
