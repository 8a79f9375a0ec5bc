"""
FastAPI dependencies: DB session, process-wide singletons, current user.

Singletons (cache, breaker registry, rate limiter, image provider) are built once in
dreamlens.main and kept on app.state; tests replace them through dependency_overrides.
"""
import logging

from fastapi import Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dreamlens.core.config import settings
from dreamlens.core.errors import PayloadTooLarge, Unauthorized, UnsupportedMediaType
from dreamlens.db.session import get_db
from dreamlens.models.user import User
from dreamlens.services.auth.identity import AuthError, parse_authorization
from dreamlens.services.bonus.service import BonusService
from dreamlens.services.cache import TTLCache
from dreamlens.services.circuit_breaker import CircuitBreakerRegistry
from dreamlens.services.image_generation import ImageGenerationProvider
from dreamlens.services.rate_limit import RateLimiter
from dreamlens.services.users.service import UserService

logger = logging.getLogger(__name__)

__all__ = [
    "get_db",
    "get_cache",
    "get_breakers",
    "get_rate_limiter",
    "get_image_provider",
    "get_api_keys",
    "get_current_user",
    "limit_payload",
    "require_json",
]


def get_cache(request: Request) -> TTLCache:
    return request.app.state.cache


def get_breakers(request: Request) -> CircuitBreakerRegistry:
    return request.app.state.breakers


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_image_provider(request: Request) -> ImageGenerationProvider:
    return request.app.state.image_provider


def get_api_keys() -> list[str]:
    return settings.gemini_api_keys


def get_current_user(
    request: Request,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
) -> User:
    """Authorization header → User; the welcome bonus is ensured on every authenticated request."""
    try:
        identity = parse_authorization(request.headers.get("Authorization"))
    except AuthError as e:
        logger.info("auth_rejected", extra={"error": str(e), "path": request.url.path})
        raise Unauthorized()

    try:
        user = UserService(db).get_or_create(identity)
        BonusService(db, cache).ensure_welcome_bonus(user.id, user.identity_source)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("auth_user_resolve_failed", extra={"auth_type": identity.source})
        raise Unauthorized()
    return user


def _check_content_length(request: Request, limit: int) -> None:
    raw = request.headers.get("content-length")
    if raw is None:
        return
    try:
        length = int(raw)
    except ValueError:
        return
    if length > limit:
        raise PayloadTooLarge(f"Размер запроса превышает {limit // (1024 * 1024) or 1} МБ")


def limit_payload(request: Request) -> None:
    _check_content_length(request, settings.max_payload_bytes)


def require_json(request: Request) -> None:
    content_type = request.headers.get("content-type", "")
    if "application/json" not in content_type.lower():
        raise UnsupportedMediaType()
