"""
Payments: YooKassa (packages, create, webhook) and Telegram Stars (invoice, bot webhook).
"""
import logging

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from dreamlens.api.deps import get_cache, get_current_user, get_db, require_json
from dreamlens.core.config import settings
from dreamlens.core.errors import BadGateway, BadRequest, Forbidden, NotFound, PayloadTooLarge, ServiceError, Unauthorized
from dreamlens.models.user import User
from dreamlens.schemas.payments import CreatePaymentRequest, TelegramUpdate, YooKassaWebhook
from dreamlens.services.cache import TTLCache
from dreamlens.services.payments.service import (
    InvalidSignature,
    InvalidWebhook,
    PaymentConfigError,
    PaymentProviderError,
    PaymentService,
    TOKEN_PACKAGES,
    verify_signature,
)
from dreamlens.services.payments.telegram_stars import STARS_PACKAGES, TelegramStarsService, verify_webhook_secret
from dreamlens.utils.metrics import payment_webhooks_total

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.get("/packages")
def list_packages() -> dict:
    return {"success": True, "data": [p.as_dict() for p in TOKEN_PACKAGES.values()]}


@router.post("/create")
def create_payment(
    body: CreatePaymentRequest = Body(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
) -> dict:
    service = PaymentService(db, cache)
    try:
        result = service.create_payment(user.id, body.package, return_url=body.return_url)
    except PaymentConfigError:
        logger.error("yookassa_not_configured")
        raise ServiceError("Платёжная система не настроена", code="payments_not_configured")
    except PaymentProviderError:
        raise BadGateway("Не удалось создать платёж. Попробуйте позже.")
    return {"success": True, "data": result}


def _process(db: Session, cache: TTLCache, webhook: YooKassaWebhook) -> str:
    return PaymentService(db, cache).process_webhook(webhook)


@router.post("/webhook", dependencies=[Depends(require_json)])
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    """
    Уведомления YooKassa. 200 подтверждает приём; 5xx только при ошибке БД,
    чтобы провайдер повторил уведомление.
    """
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.max_webhook_payload_bytes:
        raise PayloadTooLarge()
    raw = await request.body()
    if len(raw) > settings.max_webhook_payload_bytes:
        raise PayloadTooLarge()

    try:
        verify_signature(raw, request.headers.get("x-yookassa-signature"))
    except InvalidSignature as e:
        logger.warning("payment_webhook_signature_rejected", extra={"error": str(e)})
        payment_webhooks_total.labels(event="unknown", result="bad_signature").inc()
        raise Unauthorized(str(e).capitalize())

    try:
        webhook = YooKassaWebhook.model_validate_json(raw)
    except ValidationError:
        raise BadRequest("Invalid webhook data")

    try:
        await run_in_threadpool(_process, db, cache, webhook)
    except InvalidWebhook as e:
        logger.warning("payment_webhook_invalid", extra={"payment_id": webhook.object.id, "error": str(e)})
        raise BadRequest("Invalid webhook data")
    except SQLAlchemyError:
        logger.exception("payment_webhook_db_error", extra={"payment_id": webhook.object.id})
        payment_webhooks_total.labels(event=webhook.event, result="db_error").inc()
        return JSONResponse(status_code=500, content={"success": False, "error": "Webhook processing failed"})
    except Exception:
        # Повтор не поможет: подтверждаем приём, разбираемся по логам
        logger.exception("payment_webhook_failed", extra={"payment_id": webhook.object.id})
        payment_webhooks_total.labels(event=webhook.event, result="error").inc()
    return {"received": True}


# ----------------------------------------------------------------------
# Telegram Stars
# ----------------------------------------------------------------------


@router.get("/telegram-stars/packages")
def list_stars_packages() -> dict:
    return {"success": True, "data": [p.as_dict() for p in STARS_PACKAGES.values()]}


@router.post("/telegram-stars")
def create_stars_invoice(
    body: CreatePaymentRequest = Body(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
) -> dict:
    if user.identity_source != "telegram":
        raise Forbidden("Оплата звёздами доступна только в Telegram", code="telegram_only")
    try:
        result = TelegramStarsService(db, cache).create_invoice(user.id, body.package)
    except PaymentConfigError:
        logger.error("telegram_stars_not_configured")
        raise ServiceError("Платёжная система не настроена", code="payments_not_configured")
    except PaymentProviderError:
        raise BadGateway("Не удалось создать счёт. Попробуйте позже.")
    return {"success": True, "data": result}


def _process_telegram(db: Session, cache: TTLCache, update: TelegramUpdate) -> str:
    return TelegramStarsService(db, cache).process_update(update)


@router.post("/telegram-webhook", dependencies=[Depends(require_json)])
async def telegram_webhook(
    request: Request,
    db: Session = Depends(get_db),
    cache: TTLCache = Depends(get_cache),
):
    """
    Bot API updates: pre_checkout_query и successful_payment.
    5xx только при ошибке БД, чтобы Telegram повторил доставку.
    """
    try:
        verify_webhook_secret(request.headers.get("x-telegram-bot-api-secret-token"))
    except InvalidSignature as e:
        logger.warning("telegram_webhook_secret_rejected", extra={"error": str(e)})
        payment_webhooks_total.labels(event="telegram", result="bad_signature").inc()
        raise Unauthorized()

    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.max_webhook_payload_bytes:
        raise PayloadTooLarge()
    raw = await request.body()
    if len(raw) > settings.max_webhook_payload_bytes:
        raise PayloadTooLarge()

    try:
        update = TelegramUpdate.model_validate_json(raw)
    except ValidationError:
        raise BadRequest("Invalid update data")

    try:
        outcome = await run_in_threadpool(_process_telegram, db, cache, update)
    except InvalidWebhook as e:
        logger.warning("telegram_webhook_invalid", extra={"error": str(e)})
        raise BadRequest("Invalid payment data")
    except LookupError:
        raise NotFound("User not found", code="user_not_found")
    except SQLAlchemyError:
        logger.exception("telegram_webhook_db_error")
        payment_webhooks_total.labels(event="telegram", result="db_error").inc()
        return JSONResponse(status_code=500, content={"success": False, "error": "Webhook processing failed"})
    except Exception:
        logger.exception("telegram_webhook_failed")
        payment_webhooks_total.labels(event="telegram", result="error").inc()
        return {"received": True}
    return {"received": True, "result": outcome}
