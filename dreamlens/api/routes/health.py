from fastapi import APIRouter, Depends, Response
import redis
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dreamlens.api.deps import get_breakers
from dreamlens.core.config import settings
from dreamlens.db.session import get_db
from dreamlens.services.circuit_breaker import CircuitBreakerRegistry


router = APIRouter()


@router.get("/health")
def health(breakers: CircuitBreakerRegistry = Depends(get_breakers)) -> dict:
    """Liveness check - always returns 200 if app is running."""
    return {"status": "ok", "circuitBreakers": {name: breakers.stats(name) for name in breakers.names()}}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """Readiness check - returns 503 if dependencies are unavailable."""
    try:
        # Check database
        db.execute(text("SELECT 1"))

        # Check Redis
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        redis_client.ping()

        return {"status": "ready"}
    except (SQLAlchemyError, redis.RedisError) as e:
        response.status_code = 503
        return {"status": "not_ready", "error": str(e)}
