"""
PatternCast — Retry Decorator

Exponential backoff with jitter for transient failures of the record store.
The vision gateway is not retried; a failed model vote falls back
to neutral instead.
"""

from __future__ import annotations

import functools
import random
import time
from typing import Any, Callable, Type

import structlog

log = structlog.get_logger(__name__)

DEFAULT_RETRYABLE: tuple[Type[BaseException], ...] = (ConnectionError, TimeoutError)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 0.2,
    max_delay: float = 5.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    retryable_exceptions: tuple[Type[BaseException], ...] | None = None,
) -> Callable:
    """Retry a synchronous function on transient errors.

    Usage::

        @with_retry(max_attempts=2, retryable_exceptions=(psycopg2.OperationalError,))
        def query(...):
            ...
    """
    retry_on = retryable_exceptions or DEFAULT_RETRYABLE

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except retry_on as exc:
                    if attempt == max_attempts:
                        log.error(
                            "retry.exhausted",
                            func=func.__qualname__,
                            attempts=max_attempts,
                            error=str(exc),
                        )
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, backoff_factor, jitter)
                    log.warning(
                        "retry.attempt",
                        func=func.__qualname__,
                        attempt=attempt,
                        delay=round(delay, 2),
                        error=str(exc),
                    )
                    time.sleep(delay)

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    backoff_factor: float,
    jitter: bool,
) -> float:
    delay = base_delay * (backoff_factor ** (attempt - 1))
    if jitter:
        delay *= random.uniform(0.5, 1.5)
    return min(delay, max_delay)
