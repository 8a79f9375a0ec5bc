"""
Gemini image provider (Google AI generateContent).
Uses generativelanguage.googleapis.com with the api_key passed per call.
200 OK without an image is never a silent success: it raises with normalized detail.
"""
import logging
import time
from typing import Any

import httpx

from dreamlens.services.image_generation.base import (
    ContentRejectedError,
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    ImageGenerationError,
    build_gemini_error_detail,
    sanitize_gemini_response_for_log,
)
from dreamlens.services.image_generation.failure_types import classify_failure
from dreamlens.utils.metrics import gemini_request_duration_seconds, gemini_requests_total

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-3-pro-image-preview"
SUPPORTED_IMAGE_TIERS = ("1K", "2K", "4K")
# Клиент может прислать enum-имена вместо соотношений сторон
ASPECT_RATIO_ALIASES: dict[str, str] = {
    "SQUARE": "1:1",
    "PORTRAIT": "3:4",
    "LANDSCAPE": "4:3",
    "STORY": "9:16",
    "CINEMATIC": "16:9",
}
SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)


def normalize_aspect_ratio(ratio: str | None) -> str:
    value = (ratio or "").strip().upper()
    if not value:
        return "3:4"
    return ASPECT_RATIO_ALIASES.get(value, value)


def build_safety_settings(threshold: str) -> list[dict[str, str]]:
    return [{"category": category, "threshold": threshold} for category in SAFETY_CATEGORIES]


def _raise_classified(message: str, detail: dict[str, Any], cause: BaseException | None = None) -> None:
    error = ImageGenerationError(message, detail=detail)
    _, retryable = classify_failure(error)
    if not retryable:
        error = ContentRejectedError(message, detail=detail)
    if cause is not None:
        raise error from cause
    raise error


class GeminiImageProvider(ImageGenerationProvider):
    """Gemini image generation via Google AI generateContent API."""

    name = "gemini"

    def __init__(self, config: dict, client: httpx.Client | None = None) -> None:
        super().__init__(config)
        endpoint = (config.get("api_endpoint") or "https://generativelanguage.googleapis.com").rstrip("/")
        self.base_url = f"{endpoint}/v1beta/models"
        self.timeout = float(config.get("timeout", 180.0))
        self.model_name = (config.get("model") or DEFAULT_MODEL).strip()
        self.safety_threshold = config.get("safety_threshold") or "BLOCK_MEDIUM_AND_ABOVE"
        self._client = client

    def build_payload(self, request: ImageGenerationRequest) -> dict[str, Any]:
        parts: list[dict[str, Any]] = [
            {"inlineData": {"mimeType": image.mime_type, "data": image.data_b64}}
            for image in request.images
        ]
        parts.append({"text": request.prompt})

        tier = (request.image_size_tier or "1K").strip().upper()
        if tier not in SUPPORTED_IMAGE_TIERS:
            tier = "1K"
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "responseModalities": ["IMAGE"],
                "imageConfig": {
                    "aspectRatio": normalize_aspect_ratio(request.aspect_ratio),
                    "imageSize": tier,
                },
            },
            "safetySettings": build_safety_settings(self.safety_threshold),
        }
        if request.system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": request.system_instruction}]}
        return payload

    def _post(self, url: str, api_key: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return self._client.post(url, params={"key": api_key}, json=payload, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(url, params={"key": api_key}, json=payload)

    def generate(self, request: ImageGenerationRequest, api_key: str) -> ImageGenerationResponse:
        if not api_key:
            raise ImageGenerationError("Gemini api key is empty", detail={})
        model = (request.model or self.model_name).strip() or self.model_name
        url = f"{self.base_url}/{model}:generateContent"
        payload = self.build_payload(request)

        started = time.monotonic()
        try:
            resp = self._post(url, api_key, payload)
            resp.raise_for_status()
            result = resp.json()
        except httpx.HTTPStatusError as e:
            gemini_requests_total.labels(status=str(e.response.status_code)).inc()
            try:
                err_body = e.response.json()
            except ValueError:
                err_body = {}
            detail = build_gemini_error_detail(err_body)
            detail["http_status"] = e.response.status_code
            if e.response.status_code == 429:
                retry_after = e.response.headers.get("Retry-After")
                if retry_after is not None:
                    detail["retry_after"] = retry_after
            error_info = err_body.get("error") if isinstance(err_body, dict) else None
            msg = (error_info or {}).get("message") or f"Gemini HTTP {e.response.status_code}"
            _raise_classified(msg, detail, cause=e)
        except httpx.HTTPError as e:
            gemini_requests_total.labels(status="transport_error").inc()
            raise ImageGenerationError(f"network error: {e}", detail={"transport_error": type(e).__name__}) from e
        finally:
            gemini_request_duration_seconds.observe(time.monotonic() - started)

        gemini_requests_total.labels(status="200").inc()

        # Block at request level (no candidates)
        prompt_feedback = result.get("promptFeedback") or {}
        if prompt_feedback.get("blockReason"):
            _raise_classified(f"Prompt blocked: {prompt_feedback['blockReason']}", build_gemini_error_detail(result))

        candidates = result.get("candidates") or []
        if not candidates:
            raise ImageGenerationError("No candidates in Gemini response", detail=build_gemini_error_detail(result))

        c0 = candidates[0]
        content = c0.get("content") or {}
        image_b64: str | None = None
        mime_type = "image/png"
        for part in content.get("parts") or []:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and isinstance(inline.get("data"), str):
                image_b64 = inline["data"]
                mime_type = inline.get("mimeType") or inline.get("mime_type") or mime_type
                break

        if not image_b64:
            detail = build_gemini_error_detail(result)
            finish_reason = c0.get("finishReason") or ""
            message = c0.get("finishMessage") or (
                f"No image in Gemini response (finishReason={finish_reason})" if finish_reason
                else "No image in Gemini response"
            )
            _raise_classified(message, detail)

        logger.info(
            "gemini_image_generated",
            extra={"finish_reason": c0.get("finishReason"), "quality": payload["generationConfig"]["imageConfig"]["imageSize"]},
        )
        return ImageGenerationResponse(
            image_b64=image_b64,
            mime_type=mime_type,
            model=model,
            provider=self.name,
            raw_response_sanitized=sanitize_gemini_response_for_log(result),
        )
