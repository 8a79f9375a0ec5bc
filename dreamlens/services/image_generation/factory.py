"""
Factory for creating the image generation provider from configuration.
"""
import logging

from dreamlens.services.image_generation.base import ImageGenerationProvider
from dreamlens.services.image_generation.providers.gemini import GeminiImageProvider

logger = logging.getLogger(__name__)


class ImageProviderFactory:
    """Factory for creating image generation providers."""

    PROVIDERS = {
        "gemini": GeminiImageProvider,
    }

    @classmethod
    def create(cls, provider_name: str, config: dict) -> ImageGenerationProvider:
        provider_class = cls.PROVIDERS.get(provider_name.lower())
        if not provider_class:
            available = ", ".join(cls.PROVIDERS.keys())
            raise ValueError(f"Unknown provider: {provider_name}. Available providers: {available}")
        logger.info("image_provider_created", extra={"provider": provider_name})
        return provider_class(config)

    @classmethod
    def create_from_settings(cls, settings) -> ImageGenerationProvider:
        """Gemini config from settings; API keys are not part of it (passed per call by the fallback)."""
        config = {
            "api_endpoint": settings.gemini_api_endpoint,
            "timeout": settings.gemini_timeout,
            "model": settings.gemini_image_model,
            "safety_threshold": settings.gemini_safety_threshold,
        }
        return cls.create("gemini", config)
