"""
Bounded retry with exponential backoff for transient failures.
Delay before attempt k+1: min(initial_delay * multiplier ** (k - 1), max_delay).
"""
import logging
import time
from typing import Any, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS = ("network", "timeout", "econnreset", "enotfound", "econnrefused")


def _status_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_transient_error(exc: BaseException) -> bool:
    """Default predicate: network/timeouts and 5xx are worth another attempt."""
    if isinstance(exc, httpx.TransportError):
        return True
    message = str(exc).lower()
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return True
    status = _status_of(exc)
    return status is not None and 500 <= status < 600


def compute_delay(attempt: int, initial_delay: float, multiplier: float, max_delay: float) -> float:
    return min(initial_delay * (multiplier ** (attempt - 1)), max_delay)


def retry_call(
    fn: Callable[[], T],
    *,
    max_attempts: int = 3,
    initial_delay: float = 0.1,
    max_delay: float = 5.0,
    multiplier: float = 2.0,
    retryable: Callable[[BaseException], bool] | None = None,
    on_retry: Callable[[int, BaseException], Any] | None = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """
    Call fn() up to max_attempts times.
    Non-retryable errors propagate at once; after the last attempt the last error propagates.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    predicate = retryable or is_transient_error

    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            if attempt >= max_attempts or not predicate(e):
                raise
            delay = compute_delay(attempt, initial_delay, multiplier, max_delay)
            logger.info(
                "retry_scheduled",
                extra={
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "delay_seconds": round(delay, 3),
                    "error": str(e)[:200],
                    "error_type": type(e).__name__,
                },
            )
            if on_retry is not None:
                on_retry(attempt, e)
            sleep(delay)
