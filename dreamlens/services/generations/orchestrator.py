"""
Generation orchestration: quota → charge → generate → reconcile.

Compensation by ordering: tokens are spent before the external call; every failure
path after the charge issues a refund transaction with its own description, so the
ledger shows why money came back.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dreamlens.core.config import settings
from dreamlens.core.errors import AppError, InsufficientTokens, RateLimited, ServiceError, app_error
from dreamlens.models.user import User
from dreamlens.schemas.generation import GenerateImageRequest
from dreamlens.services.cache import TTLCache
from dreamlens.services.circuit_breaker import GEMINI_BREAKER, CircuitBreakerRegistry
from dreamlens.services.generations.prompts import build_generation_prompt
from dreamlens.services.generations.quota import ChargeDecision, QuotaService
from dreamlens.services.generations.service import GenerationService, prepare_images
from dreamlens.services.image_generation import (
    ApiKeyFallback,
    ImageGenerationError,
    ImageGenerationProvider,
    ImageGenerationRequest,
    ImageGenerationResponse,
    InputImage,
)
from dreamlens.services.rate_limit import RateLimiter
from dreamlens.services.tokens.pricing import get_partial_refund
from dreamlens.services.tokens.service import TokenService
from dreamlens.utils.metrics import (
    generation_duration_seconds,
    generations_failed_total,
    generations_started_total,
    generations_succeeded_total,
)

logger = logging.getLogger(__name__)

SAFETY_FILTER_MESSAGE = (
    "Нейросеть посчитала запрос небезопасным (Safety Filter). "
    "Попробуйте выбрать другой стиль или фото."
)
NO_IMAGE_MESSAGE = "Не удалось сгенерировать изображение. Токены возвращены."
RATE_LIMIT_MESSAGE = "Слишком много запросов. Подождите минуту и попробуйте снова."
TOO_LARGE_MESSAGE = "Файлы слишком большие. Попробуйте загрузить меньше фото."
SAFETY_ERROR_MESSAGE = "Сработал фильтр безопасности. Попробуйте сменить стиль или фото."
GENERIC_ERROR_MESSAGE = "Ошибка при генерации изображения. Попробуйте еще раз."
DATABASE_ERROR_MESSAGE = "Ошибка базы данных. Попробуйте позже."

REFUND_DB_INIT = "Refund: Database error during initialization"
REFUND_SAFETY = "Refund: Safety filter"
REFUND_NO_IMAGE = "Refund: Generation failed"
REFUND_API_ERROR = "Refund: API error"


@dataclass(frozen=True)
class FailureOutcome:
    status_code: int
    user_message: str
    refund_description: str
    reason: str


def describe_failure(exc: BaseException) -> FailureOutcome:
    """Map a generation failure to HTTP status, user message and refund description."""
    detail = exc.detail if isinstance(exc, ImageGenerationError) else {}
    message = str(exc)
    http_status = detail.get("http_status")

    # The model answered, but without an image
    if isinstance(exc, ImageGenerationError) and http_status is None and not detail.get("transport_error"):
        if exc.is_safety_block or "SAFETY" in message.upper():
            return FailureOutcome(400, SAFETY_FILTER_MESSAGE, REFUND_SAFETY, "safety")
        return FailureOutcome(500, NO_IMAGE_MESSAGE, REFUND_NO_IMAGE, "no_image")

    if http_status == 429 or "429" in message or "quota" in message.lower():
        return FailureOutcome(429, RATE_LIMIT_MESSAGE, REFUND_API_ERROR, "upstream_rate_limit")
    if http_status == 413 or "413" in message:
        return FailureOutcome(413, TOO_LARGE_MESSAGE, REFUND_API_ERROR, "payload_too_large")
    if "SAFETY" in message.upper():
        return FailureOutcome(400, SAFETY_ERROR_MESSAGE, REFUND_API_ERROR, "safety")
    return FailureOutcome(500, GENERIC_ERROR_MESSAGE, REFUND_API_ERROR, "upstream")


class GenerationOrchestrator:
    def __init__(
        self,
        db: Session,
        cache: TTLCache,
        breakers: CircuitBreakerRegistry,
        provider: ImageGenerationProvider,
        api_keys: list[str],
        rate_limiter: RateLimiter,
        tokens: TokenService | None = None,
        generations: GenerationService | None = None,
        quota: QuotaService | None = None,
        max_workers: int | None = None,
    ):
        self.db = db
        self.provider = provider
        self.fallback = ApiKeyFallback(api_keys, breakers.get(GEMINI_BREAKER))
        self.rate_limiter = rate_limiter
        self.tokens = tokens or TokenService(db, cache)
        self.generations = generations or GenerationService(db)
        self.quota = quota or QuotaService(db, generations=self.generations)
        self.max_workers = max_workers or settings.max_batch_workers

    @property
    def is_configured(self) -> bool:
        return bool(self.fallback.keys)

    # ------------------------------------------------------------------
    # Pre-flight
    # ------------------------------------------------------------------

    def _check_balance(self, user: User, decision: ChargeDecision) -> None:
        if decision.is_free:
            return
        balance = self.tokens.get_balance(user.id)
        if balance < decision.cost:
            generations_failed_total.labels(reason="insufficient_tokens").inc()
            raise InsufficientTokens(required=decision.cost, balance=balance)

    def _check_rate_limit(self, user: User, ip_address: str | None) -> None:
        result = self.rate_limiter.check(
            "generation",
            user.id,
            settings.generation_rate_limit,
            settings.generation_rate_window_seconds,
            ip_address=ip_address if user.is_anonymous else None,
        )
        if not result.allowed:
            generations_failed_total.labels(reason="rate_limit").inc()
            raise RateLimited(wait_seconds=result.reset_in)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _generate_one(self, request: ImageGenerationRequest, context: dict) -> ImageGenerationResponse:
        return self.fallback.call(lambda api_key: self.provider.generate(request, api_key), context)

    def _run_batch(self, request: ImageGenerationRequest, count: int, context: dict) -> list:
        """Runs count independent generations; each slot holds a response or the exception."""
        if count == 1:
            try:
                return [self._generate_one(request, context)]
            except Exception as e:
                return [e]

        outcomes: list = []
        with ThreadPoolExecutor(max_workers=min(count, self.max_workers)) as pool:
            futures = [pool.submit(self._generate_one, request, context) for _ in range(count)]
            for future in futures:
                error = future.exception()
                outcomes.append(error if error is not None else future.result())
        return outcomes

    def _refund(self, user: User, amount: int, description: str, reason: str) -> int:
        if amount <= 0:
            return 0
        try:
            self.tokens.refund(user.id, amount, description, reason=reason)
            return amount
        except SQLAlchemyError:
            # Деньги списаны, но вернуть не смогли: нужна ручная сверка по журналу
            logger.exception(
                "token_refund_failed",
                extra={"user_id": user.id, "amount": amount, "description": description},
            )
            self.db.rollback()
            return 0

    def _mark_failed(self, generation_id: str, error_message: str) -> None:
        try:
            self.generations.mark_failed(generation_id, error_message)
        except SQLAlchemyError:
            logger.exception("generation_mark_failed_error", extra={"generation_id": generation_id})
            self.db.rollback()

    def generate(self, user: User, body: GenerateImageRequest, ip_address: str | None = None) -> dict:
        started = time.monotonic()
        cfg = body.config
        if not self.is_configured:
            raise ServiceError("Сервис генерации не настроен", code="generation_not_configured")

        decision = self.quota.decide(user.id, cfg.quality, cfg.image_count)
        logger.info(
            "generation_options_determined",
            extra={
                "user_id": user.id,
                "is_free": decision.is_free,
                "cost": decision.cost,
                "quality": cfg.quality,
                "image_count": decision.image_count,
            },
        )
        self._check_balance(user, decision)
        self._check_rate_limit(user, ip_address)

        # Usage is recorded before the call so parallel requests see it in the quota
        self.generations.record_usage(user.id, "generation", ip_address, count=decision.image_count)

        cost = decision.cost
        if cost > 0:
            description = f"Generation: {cfg.quality} quality"
            if decision.image_count > 1:
                description += f" x{decision.image_count}"
            spend = self.tokens.spend(user.id, cost, description)
            if not spend.success:
                generations_failed_total.labels(reason="insufficient_tokens").inc()
                raise InsufficientTokens(required=cost, balance=spend.new_balance, error="Недостаточно токенов для генерации")
        generations_started_total.labels(quality=cfg.quality, charged=str(cost > 0).lower()).inc()

        selected = prepare_images(body.user_images)
        system_instruction, prompt = build_generation_prompt(
            cfg.trend, len(selected), user_prompt=cfg.user_prompt, dominant_color=cfg.dominant_color
        )

        try:
            generation = self.generations.create_generation(user.id, prompt, cfg.trend, cfg.quality)
        except SQLAlchemyError:
            logger.exception("generation_record_create_failed", extra={"user_id": user.id})
            self.db.rollback()
            self._refund(user, cost, REFUND_DB_INIT, reason="database")
            generations_failed_total.labels(reason="database").inc()
            raise ServiceError(DATABASE_ERROR_MESSAGE, code="database_error")

        request = ImageGenerationRequest(
            prompt=prompt,
            images=[InputImage(data_b64=img.data, mime_type=img.effective_mime_type) for img in selected],
            aspect_ratio=cfg.ratio,
            image_size_tier=cfg.quality,
            system_instruction=system_instruction,
        )
        context = {"user_id": user.id, "generation_id": generation.id, "trend": cfg.trend, "quality": cfg.quality}

        refunded = 0
        try:
            outcomes = self._run_batch(request, decision.image_count, context)
            images = [o for o in outcomes if isinstance(o, ImageGenerationResponse)]
            errors = [o for o in outcomes if isinstance(o, BaseException)]

            if not images:
                failure = describe_failure(errors[0])
                self._mark_failed(generation.id, str(errors[0]) or failure.user_message)
                refunded = self._refund(user, cost, failure.refund_description, reason=failure.reason)
                generations_failed_total.labels(reason=failure.reason).inc()
                logger.warning(
                    "generation_failed",
                    extra={
                        "user_id": user.id,
                        "generation_id": generation.id,
                        "error": str(errors[0])[:300],
                        "error_type": type(errors[0]).__name__,
                        "status_code": failure.status_code,
                        "refund": refunded,
                    },
                )
                raise app_error(failure.status_code, failure.user_message, code=failure.reason)

            failed_count = len(errors)
            if failed_count:
                partial = get_partial_refund(cost, failed_count, decision.image_count)
                refunded = self._refund(
                    user,
                    partial,
                    f"Refund: Partial batch failure ({failed_count}/{decision.image_count} failed)",
                    reason="partial_batch",
                )
                logger.warning(
                    "generation_partial_failure",
                    extra={
                        "user_id": user.id,
                        "generation_id": generation.id,
                        "failed_count": failed_count,
                        "image_count": decision.image_count,
                        "refund": refunded,
                    },
                )

            self.generations.mark_completed(generation.id, images[0].data_url)
        except AppError:
            raise
        except Exception as e:
            logger.exception("generation_unexpected_error", extra={"user_id": user.id, "generation_id": generation.id})
            self.db.rollback()
            self._mark_failed(generation.id, str(e))
            if not refunded:
                self._refund(user, cost, REFUND_API_ERROR, reason="internal")
            failure = describe_failure(e)
            generations_failed_total.labels(reason=failure.reason).inc()
            raise app_error(failure.status_code, failure.user_message, code=failure.reason) from e

        generations_succeeded_total.labels(quality=cfg.quality).inc()
        generation_duration_seconds.labels(quality=cfg.quality).observe(time.monotonic() - started)
        logger.info(
            "generation_completed",
            extra={
                "user_id": user.id,
                "generation_id": generation.id,
                "image_count": len(images),
                "cost": cost - refunded,
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return {
            "images": [img.data_url for img in images],
            "generationId": generation.id,
            "tokens": {"spent": cost - refunded, "remaining": self.tokens.get_balance(user.id)},
            "isFree": decision.is_free,
            "failedCount": failed_count,
        }
