"""Tests for ApiKeyFallback: key order, retryable vs non-retryable, breaker integration."""
import pytest

from dreamlens.services.circuit_breaker import CircuitBreakerRegistry
from dreamlens.services.image_generation import (
    ApiKeyFallback,
    ContentRejectedError,
    GenerationConfigError,
    ImageGenerationError,
)


@pytest.fixture
def breaker(clock):
    registry = CircuitBreakerRegistry(failure_threshold=5, clock=clock, exclude=[ContentRejectedError])
    return registry.get("gemini-api")


class TestApiKeyFallback:
    def test_primary_success_skips_backup(self, breaker):
        calls = []

        def fn(key):
            calls.append(key)
            return f"image-{key}"

        assert ApiKeyFallback(["k1", "k2"], breaker).call(fn) == "image-k1"
        assert calls == ["k1"]

    def test_retryable_failure_switches_to_backup(self, breaker):
        calls = []

        def fn(key):
            calls.append(key)
            if key == "k1":
                raise ImageGenerationError("Gemini HTTP 503", {"http_status": 503})
            return "image"

        assert ApiKeyFallback(["k1", "k2"], breaker).call(fn, {"user_id": "u1"}) == "image"
        assert calls == ["k1", "k2"]

    def test_invalid_key_switches_to_backup(self, breaker):
        calls = []

        def fn(key):
            calls.append(key)
            if key == "k1":
                raise ImageGenerationError("API key not valid", {"http_status": 400})
            return "image"

        assert ApiKeyFallback(["k1", "k2"], breaker).call(fn) == "image"
        assert calls == ["k1", "k2"]

    def test_non_retryable_failure_never_tries_backup(self, breaker):
        calls = []

        def fn(key):
            calls.append(key)
            raise ContentRejectedError("Prompt blocked: SAFETY", {"block_reason": "SAFETY"})

        with pytest.raises(ContentRejectedError):
            ApiKeyFallback(["k1", "k2"], breaker).call(fn)
        assert calls == ["k1"]

    def test_all_keys_fail_raises_last_error(self, breaker):
        def fn(key):
            raise ImageGenerationError(f"failure on {key}", {"http_status": 500})

        with pytest.raises(ImageGenerationError, match="failure on k2"):
            ApiKeyFallback(["k1", "k2"], breaker).call(fn)

    def test_no_keys(self, breaker):
        with pytest.raises(GenerationConfigError):
            ApiKeyFallback([], breaker).call(lambda key: key)

    def test_blank_keys_are_skipped(self, breaker):
        fallback = ApiKeyFallback(["", "k2"], breaker)
        assert fallback.keys == ["k2"]
        assert fallback.call(lambda key: key) == "k2"

    def test_failures_are_counted_by_breaker(self, breaker):
        def fn(key):
            raise ImageGenerationError("Gemini HTTP 500", {"http_status": 500})

        with pytest.raises(ImageGenerationError):
            ApiKeyFallback(["k1", "k2"], breaker).call(fn)
        assert breaker.fail_counter == 2
