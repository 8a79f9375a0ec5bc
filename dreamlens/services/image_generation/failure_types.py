"""
Failure classification for the key fallback.
Retryable: credential- or network-specific (another key or a later call may succeed).
Non-retryable: deterministic for this request (safety, validation).
"""
from enum import Enum
from typing import Any

import pybreaker

from dreamlens.services.image_generation.base import ContentRejectedError, ImageGenerationError


class FailureType(str, Enum):
    TRANSPORT_TRANSIENT = "transport_transient"  # 429, 5xx, timeout, network
    CREDENTIAL = "credential"  # invalid/forbidden key: try the next one
    CIRCUIT_OPEN = "circuit_open"
    PROMPT_BLOCKED = "prompt_blocked"  # promptFeedback.blockReason
    RESPONSE_BLOCKED = "response_blocked"  # finishReason SAFETY and friends
    CLIENT_NON_RETRIABLE = "client_non_retriable"  # 400 validation
    UNKNOWN = "unknown"


# finishReason values that mean the content was refused
BLOCKED_FINISH_REASONS = frozenset({
    "SAFETY",
    "IMAGE_SAFETY",
    "BLOCKLIST",
    "SPII",
    "PROHIBITED_CONTENT",
    "RECITATION",
})

VALIDATION_MARKERS = ("validation", "invalid", "bad request")
KNOWN_VALIDATION_MESSAGES = (
    "недостаточно изображений",
    "неверный тип стиля",
    "unsupported aspect ratio",
    "request payload size exceeds",
)
CREDENTIAL_MARKERS = ("api key", "api_key", "permission denied", "unauthenticated")
TRANSIENT_MARKERS = ("quota", "rate limit", "timeout", "timed out", "network", "connection", "unavailable")


def classify_failure(exc: BaseException) -> tuple[FailureType, bool]:
    """Returns (failure_type, retry_with_next_key)."""
    if isinstance(exc, pybreaker.CircuitBreakerError):
        return (FailureType.CIRCUIT_OPEN, True)

    detail: dict[str, Any] = exc.detail if isinstance(exc, ImageGenerationError) else {}
    message = str(exc).lower()

    if detail.get("block_reason"):
        return (FailureType.PROMPT_BLOCKED, False)
    finish_reason = (detail.get("finish_reason") or "").strip().upper()
    if finish_reason in BLOCKED_FINISH_REASONS or "safety" in message:
        return (FailureType.RESPONSE_BLOCKED, False)

    http_status = detail.get("http_status")
    if http_status is None:
        http_status = getattr(exc, "status_code", None)

    if any(marker in message for marker in CREDENTIAL_MARKERS) or http_status in (401, 403):
        return (FailureType.CREDENTIAL, True)
    if http_status == 429 or (isinstance(http_status, int) and 500 <= http_status < 600):
        return (FailureType.TRANSPORT_TRANSIENT, True)
    if http_status == 400 and any(marker in message for marker in VALIDATION_MARKERS):
        return (FailureType.CLIENT_NON_RETRIABLE, False)
    if isinstance(exc, ContentRejectedError):
        return (FailureType.CLIENT_NON_RETRIABLE, False)
    if any(known in message for known in KNOWN_VALIDATION_MESSAGES):
        return (FailureType.CLIENT_NON_RETRIABLE, False)
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return (FailureType.TRANSPORT_TRANSIENT, True)

    # Generic errors: another key might work
    return (FailureType.UNKNOWN, True)


def is_retryable_error(exc: BaseException) -> bool:
    return classify_failure(exc)[1]
