"""
Bounded retry with exponential backoff.

Used at batch granularity for ledger queries and for downstream pushes.
Both are pure reads or idempotent writes, so repeating them is safe.
"""
from __future__ import annotations

import time
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from src.utils.logger import logger

T = TypeVar('T')


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retried call failed."""

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def retry_call(
    func: Callable[..., T],
    *args: Any,
    attempts: int = 3,
    backoff: float = 1.0,
    max_backoff: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    name: str = "call",
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call ``func`` until it succeeds or ``attempts`` are used up.

    Args:
        func: Callable to invoke
        attempts: Total number of tries (>= 1)
        backoff: Initial delay in seconds, doubled after every failure
        max_backoff: Upper bound for a single delay
        retry_on: Exception types that count as transient
        name: Label used in log lines
        sleep: Injected for tests

    Returns:
        Whatever ``func`` returns

    Raises:
        RetryExhaustedError: If every attempt raised a ``retry_on`` exception
    """
    attempts = max(1, int(attempts))
    delay = max(0.0, float(backoff))
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return func(*args, **kwargs)
        except retry_on as e:
            last_error = e
            if attempt >= attempts:
                break
            logger.warning(
                "Retry: %s failed (attempt %d/%d): %s; retrying in %.1fs",
                name, attempt, attempts, e, delay,
            )
            if delay:
                sleep(delay)
            delay = min(max_backoff, delay * 2 if delay else 0.0)

    raise RetryExhaustedError(
        f"{name} failed after {attempts} attempts: {last_error}",
        attempts=attempts,
        last_error=last_error,
    )
