"""Exponential backoff with jitter for database calls.

Retries on transient psycopg errors (connection refused, server closed
the connection, admin shutdown). Logs each retry attempt.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import psycopg

logger = logging.getLogger(__name__)

# psycopg errors that are worth a second attempt
RETRYABLE_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError)


def retry_with_backoff(
    max_retries: int = 2,
    base_delay: float = 0.05,
    max_delay: float = 1.0,
    jitter: float = 0.3,
) -> Callable:
    """Decorator: retry a function with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0).
    """

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return fn(*args, **kwargs)
                except RETRYABLE_ERRORS as e:
                    if attempt == max_retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter)
                    logger.warning(
                        "Retry %d/%d for %s (%s), waiting %.2fs",
                        attempt + 1,
                        max_retries,
                        fn.__name__,
                        type(e).__name__,
                        delay,
                    )
                    time.sleep(delay)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
) -> float:
    """Compute delay with exponential backoff + jitter."""
    delay = min(base_delay * (2**attempt), max_delay)
    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)
    return max(0.01, delay)
