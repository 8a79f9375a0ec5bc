import json
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone

from dreamlens.core.config import settings


class JsonFormatter(logging.Formatter):
    """JSON log formatter with support for extra fields."""

    # Fields to extract from log record's extra dict
    EXTRA_FIELDS = (
        "user_id", "request_id", "path", "method", "status_code", "latency_ms",
        "error", "error_type", "auth_type", "generation_id", "quality", "trend",
        "amount", "balance", "new_balance", "tx_type", "description", "cost",
        "is_free", "image_count", "failed_count", "refund",
        "breaker_name", "old_state", "new_state",
        "key_index", "keys_total", "attempt", "max_attempts", "delay_seconds",
        "finish_reason", "block_reason", "http_status", "retryable",
        "payment_id", "event", "package", "tokens", "result", "deleted",
        "ip", "count", "limit", "provider", "dry_run",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Extract extra fields from record
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        # Include exception info if present
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    formatter = JsonFormatter()
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    handlers = [handler]
    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    root.handlers = handlers
    # httpx логирует URL запроса целиком, а в query-параметре лежит ключ Gemini
    logging.getLogger("httpx").setLevel(logging.WARNING)
