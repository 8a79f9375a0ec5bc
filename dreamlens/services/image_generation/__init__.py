"""
Image generation: Gemini provider, key fallback, failure classification.
"""
from .base import (
    ContentRejectedError,
    GenerationConfigError,
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageGenerationError,
    InputImage,
    build_gemini_error_detail,
    sanitize_gemini_response_for_log,
)
from .failure_types import FailureType, classify_failure, is_retryable_error
from .factory import ImageProviderFactory
from .fallback import ApiKeyFallback
from .providers.gemini import GeminiImageProvider

__all__ = [
    "ContentRejectedError",
    "GenerationConfigError",
    "ImageGenerationProvider",
    "ImageGenerationRequest",
    "ImageGenerationResponse",
    "ImageGenerationError",
    "InputImage",
    "build_gemini_error_detail",
    "sanitize_gemini_response_for_log",
    "FailureType",
    "classify_failure",
    "is_retryable_error",
    "ApiKeyFallback",
    "ImageProviderFactory",
    "GeminiImageProvider",
]
