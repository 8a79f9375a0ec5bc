"""
POST /api/generate/image: генерация фото в выбранном стиле.
Порядок проверок: размер запроса → ключи Gemini → авторизация → валидация тела.

GET /api/generate/status?id=...: статус генерации текущего пользователя.
GET /api/generate/pricing: стоимость по качеству и пакетам 1..5.
"""
import logging

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from dreamlens.api.deps import (
    get_api_keys,
    get_breakers,
    get_cache,
    get_current_user,
    get_db,
    get_image_provider,
    get_rate_limiter,
    limit_payload,
)
from dreamlens.core.errors import BadRequest, NotFound, ServiceError
from dreamlens.models.user import User
from dreamlens.schemas.generation import GenerateImageRequest
from dreamlens.services.auth.identity import get_client_ip
from dreamlens.services.cache import TTLCache
from dreamlens.services.circuit_breaker import CircuitBreakerRegistry
from dreamlens.services.generations.orchestrator import GenerationOrchestrator
from dreamlens.services.generations.service import GenerationService
from dreamlens.services.image_generation import ImageGenerationProvider
from dreamlens.services.rate_limit import RateLimiter
from dreamlens.services.tokens.pricing import get_pricing_table

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/generate", tags=["generate"])


def require_generation_keys(api_keys: list[str] = Depends(get_api_keys)) -> None:
    if not api_keys:
        logger.error("gemini_api_keys_missing")
        raise ServiceError("Сервис генерации временно недоступен", code="configuration_error")


@router.post("/image", dependencies=[Depends(limit_payload), Depends(require_generation_keys)])
def generate_image(
    request: Request,
    user: User = Depends(get_current_user),
    body: GenerateImageRequest = Body(...),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    provider: ImageGenerationProvider = Depends(get_image_provider),
    api_keys: list[str] = Depends(get_api_keys),
) -> dict:
    orchestrator = GenerationOrchestrator(
        db,
        cache,
        breakers,
        provider=provider,
        api_keys=api_keys,
        rate_limiter=rate_limiter,
    )
    result = orchestrator.generate(user, body, ip_address=get_client_ip(request))
    return {"success": True, "data": result}


@router.get("/pricing")
def pricing() -> dict:
    return {"success": True, "data": get_pricing_table()}


@router.get("/status")
def generation_status(
    generation_id: str | None = Query(None, alias="id", max_length=64),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    if not generation_id:
        raise BadRequest("Generation ID is required", code="generation_id_required")
    generation = GenerationService(db).get_generation(user.id, generation_id)
    if generation is None:
        raise NotFound("Generation not found", code="generation_not_found")
    return {
        "success": True,
        "data": {
            "id": generation.id,
            "status": generation.status,
            "imageUrl": generation.image_url,
            "errorMessage": generation.error_message,
            "createdAt": generation.created_at.isoformat() if generation.created_at else None,
            "updatedAt": generation.updated_at.isoformat() if generation.updated_at else None,
        },
    }
