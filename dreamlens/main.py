"""
Main FastAPI application for DreamLens API.
Serves generation, tokens, payments, user data, admin maintenance, health and metrics.
"""
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dreamlens.api.routes import admin, generate, generations, health, payments, tokens, user
from dreamlens.core.config import settings
from dreamlens.core.errors import AppError
from dreamlens.core.logging import configure_logging
from dreamlens.services.cache import TTLCache
from dreamlens.services.circuit_breaker import CircuitBreakerRegistry
from dreamlens.services.image_generation import ContentRejectedError, ImageProviderFactory
from dreamlens.services.rate_limit import RateLimiter
from dreamlens.utils.metrics import router as metrics_router


configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="DreamLens API",
    description="AI photo stylization backend",
    version="1.0.0",
)

# Process-wide singletons
app.state.cache = TTLCache(max_entries=settings.cache_max_entries, default_ttl=settings.token_balance_cache_ttl)
app.state.breakers = CircuitBreakerRegistry.from_settings(exclude=[ContentRejectedError])
app.state.rate_limiter = RateLimiter()
app.state.image_provider = ImageProviderFactory.create_from_settings(settings)

# CORS
origins = settings.cors_origins_list
if not origins:
    origins = ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", extra={"path": request.url.path, "status_code": exc.status_code, "error": exc.error})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Некорректные данные запроса", "code": "validation_error", "details": details},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", extra={"path": request.url.path, "method": request.method})
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Внутренняя ошибка сервера", "code": "internal_error"},
    )


# Routers
app.include_router(health.router, tags=["health"])
app.include_router(generate.router)
app.include_router(tokens.router)
app.include_router(payments.router)
app.include_router(user.router)
app.include_router(generations.router)
app.include_router(admin.router)
app.include_router(metrics_router)
