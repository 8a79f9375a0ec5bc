"""
Application errors with HTTP status and a user-facing (Russian) message.
Internal detail goes to logs only; the handlers in dreamlens.main render the envelope
{"success": false, "error": ..., "message": ..., "code": ...}.
"""
from typing import Any


class AppError(Exception):
    """Base exception for all errors that map to an HTTP response."""

    status_code = 500
    code = "internal_error"
    default_message = "Внутренняя ошибка сервера"

    def __init__(
        self,
        error: str | None = None,
        message: str | None = None,
        code: str | None = None,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.error = error or self.default_message
        self.message = message
        if code is not None:
            self.code = code
        self.extra = extra or {}
        self.headers = headers
        super().__init__(self.error)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.error, "code": self.code}
        if self.message:
            body["message"] = self.message
        body.update(self.extra)
        return body


class BadRequest(AppError):
    status_code = 400
    code = "validation_error"
    default_message = "Некорректный запрос"


class Unauthorized(AppError):
    status_code = 401
    code = "unauthorized"
    default_message = "Unauthorized"

    def __init__(self, error: str | None = None, **kwargs: Any):
        kwargs.setdefault("message", "Authentication required")
        super().__init__(error, **kwargs)


class InsufficientTokens(AppError):
    status_code = 402
    code = "insufficient_tokens"
    default_message = "Недостаточно токенов для генерации"

    def __init__(self, required: int, balance: int, error: str | None = None):
        super().__init__(
            error or f"Недостаточно токенов. Требуется {required}, доступно {balance}",
            extra={"required": required, "balance": balance},
        )


class Forbidden(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"


class NotFound(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Not Found"


class PayloadTooLarge(AppError):
    status_code = 413
    code = "payload_too_large"
    default_message = "Payload too large"


class UnsupportedMediaType(AppError):
    status_code = 415
    code = "unsupported_media_type"
    default_message = "Content-Type must be application/json"


class RateLimited(AppError):
    status_code = 429
    code = "rate_limited"
    default_message = "Rate limit exceeded"

    def __init__(self, wait_seconds: int | None = None, error: str | None = None):
        message = f"Please wait {wait_seconds} seconds" if wait_seconds else "Too many requests"
        super().__init__(
            error,
            message=message,
            extra={"waitTime": wait_seconds} if wait_seconds else {},
            headers={"Retry-After": str(wait_seconds)} if wait_seconds else None,
        )


class ServiceError(AppError):
    status_code = 500
    code = "internal_error"


class BadGateway(AppError):
    status_code = 502
    code = "upstream_error"
    default_message = "Ошибка платёжного провайдера"


def app_error(status_code: int, error: str, code: str | None = None) -> AppError:
    """Build an AppError with an arbitrary status (used for upstream-error mapping)."""
    err = AppError(error, code=code)
    err.status_code = status_code
    return err
