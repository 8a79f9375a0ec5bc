"""
API key fallback: primary key first, backup key on retryable failure.
Every attempt goes through the shared circuit breaker of the resource.
"""
import logging
from typing import Any, Callable, Sequence, TypeVar

import pybreaker

from dreamlens.services.image_generation.base import GenerationConfigError
from dreamlens.services.image_generation.failure_types import classify_failure

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ApiKeyFallback:
    """
    Tries fn(key) for each configured key in order.
    - success: returned immediately
    - non-retryable failure (safety, validation): raised at once, later keys untouched
    - retryable failure: next key; after the last key the last error is raised
    """

    def __init__(self, keys: Sequence[str], breaker: pybreaker.CircuitBreaker) -> None:
        self.keys = [k for k in keys if k]
        self.breaker = breaker

    def call(self, fn: Callable[[str], T], context: dict[str, Any] | None = None) -> T:
        if not self.keys:
            raise GenerationConfigError("No Gemini API keys configured")
        context = context or {}
        keys_total = len(self.keys)
        last_error: BaseException | None = None

        for index, key in enumerate(self.keys):
            try:
                result = self.breaker.call(fn, key)
                if index > 0:
                    logger.info(
                        "api_key_fallback_succeeded",
                        extra={"key_index": index, "keys_total": keys_total, **context},
                    )
                return result
            except Exception as e:
                last_error = e
                failure_type, retryable = classify_failure(e)
                logger.warning(
                    "api_key_attempt_failed",
                    extra={
                        "key_index": index,
                        "keys_total": keys_total,
                        "retryable": retryable,
                        "error_type": failure_type.value,
                        "error": str(e)[:300],
                        **context,
                    },
                )
                if not retryable:
                    raise
                if index + 1 < keys_total:
                    logger.info(
                        "api_key_fallback_switching",
                        extra={"key_index": index + 1, "keys_total": keys_total, **context},
                    )

        if last_error is not None:
            raise last_error
        raise RuntimeError("ApiKeyFallback: no result and no error")
