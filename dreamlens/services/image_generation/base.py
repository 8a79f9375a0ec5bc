"""
Base classes and types for image generation providers.
A provider receives the credential per call so the key fallback can rotate keys.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class InputImage:
    """Reference photo sent to the model (base64 without data: prefix)."""
    data_b64: str
    mime_type: str = "image/jpeg"


@dataclass
class ImageGenerationRequest:
    """Request for image generation."""
    prompt: str
    images: list[InputImage] = field(default_factory=list)
    model: str | None = None
    aspect_ratio: str = "3:4"
    image_size_tier: str = "1K"  # "1K", "2K", "4K" for Gemini imageConfig
    system_instruction: str | None = None


@dataclass
class ImageGenerationResponse:
    """Response from image generation."""
    image_b64: str
    mime_type: str
    model: str
    provider: str
    raw_response_sanitized: dict[str, Any] | None = None

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.image_b64}"


class ImageGenerationError(Exception):
    """Raised when generation fails; detail holds Gemini-specific fields for logging."""
    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}

    @property
    def http_status(self) -> int | None:
        return self.detail.get("http_status")

    @property
    def is_safety_block(self) -> bool:
        reason = (self.detail.get("finish_reason") or self.detail.get("block_reason") or "").upper()
        return "SAFETY" in reason or bool(self.detail.get("block_reason"))


class ContentRejectedError(ImageGenerationError):
    """
    The request itself was refused (safety filter, malformed request).
    Deterministic per request: another key cannot change the outcome,
    and it does not count as a dependency failure for the circuit breaker.
    """


class GenerationConfigError(Exception):
    """No credentials configured for the image provider."""


def build_gemini_error_detail(result: dict[str, Any]) -> dict[str, Any]:
    """
    Extract error-related fields from raw Gemini API response for logging.
    Normalized keys: block_reason, finish_reason, finish_message, safety_ratings.
    """
    detail: dict[str, Any] = {}
    if not result:
        return detail
    prompt_feedback = result.get("promptFeedback") or {}
    if prompt_feedback.get("blockReason"):
        detail["block_reason"] = prompt_feedback.get("blockReason")
    candidates = result.get("candidates") or []
    if candidates:
        c0 = candidates[0]
        if "finishReason" in c0:
            detail["finish_reason"] = c0["finishReason"]
        if "finishMessage" in c0:
            detail["finish_message"] = c0["finishMessage"]
        if "safetyRatings" in c0:
            detail["safety_ratings"] = c0["safetyRatings"]
    return detail


def _sanitize_value(value: Any) -> Any:
    """Recursively replace base64 data with placeholder."""
    if value is None:
        return None
    if isinstance(value, dict):
        if "data" in value and "mimeType" in value:
            return {"mimeType": value.get("mimeType"), "data": "[REDACTED]"}
        return {k: _sanitize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_sanitize_value(v) for v in value]
    return value


def sanitize_gemini_response_for_log(result: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of the Gemini response safe for logging (no base64 image data)."""
    if not result:
        return {}
    out = _sanitize_value(result)
    return out if isinstance(out, dict) else {}


class ImageGenerationProvider(ABC):
    """Base class for image generation providers."""

    name = "base"

    def __init__(self, config: dict) -> None:
        self.config = config

    @abstractmethod
    def generate(self, request: ImageGenerationRequest, api_key: str) -> ImageGenerationResponse:
        """Generate image with the given credential. Raises ImageGenerationError on failure."""
        pass
