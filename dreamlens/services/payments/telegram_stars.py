"""
Оплата токенов через Telegram Stars (валюта XTR).

- create_invoice: Bot API createInvoiceLink, строка payments (pending)
- answer_pre_checkout: проверка пакета и суммы до списания звёзд
- process_update: successful_payment идемпотентно по telegram_payment_charge_id
"""
import hmac
import json
import logging
from dataclasses import dataclass
from uuid import uuid4

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from dreamlens.core.config import settings
from dreamlens.models.payment import Payment
from dreamlens.schemas.payments import PreCheckoutQuery, TelegramMessage, TelegramUpdate
from dreamlens.services.cache import TTLCache
from dreamlens.services.payments.service import InvalidSignature, InvalidWebhook, PaymentConfigError, PaymentProviderError
from dreamlens.services.retry import is_transient_error, retry_call
from dreamlens.services.tokens.service import TokenService
from dreamlens.services.users.service import UserService
from dreamlens.utils.metrics import payment_webhooks_total

logger = logging.getLogger(__name__)

STARS_CURRENCY = "XTR"
CHARGE_ID_PREFIX = "telegram_stars_"


@dataclass(frozen=True)
class StarsPackage:
    name: str
    tokens: int
    stars: int

    def as_dict(self) -> dict:
        return {"id": self.name, "tokens": self.tokens, "stars": self.stars, "currency": STARS_CURRENCY}


# 1 звезда ≈ 1.6 RUB, цены выровнены с рублёвыми пакетами
STARS_PACKAGES: dict[str, StarsPackage] = {
    "small": StarsPackage("small", 10, 75),
    "medium": StarsPackage("medium", 50, 300),
    "large": StarsPackage("large", 100, 500),
}


def verify_webhook_secret(header_value: str | None, secret: str | None = None, require: bool | None = None) -> None:
    """
    Telegram echoes the setWebhook secret_token in X-Telegram-Bot-Api-Secret-Token.
    Without a configured secret the check is skipped outside production.
    """
    secret = settings.telegram_webhook_secret if secret is None else secret
    require = settings.is_production if require is None else require
    if not secret:
        if require:
            raise InvalidSignature("telegram webhook secret not configured")
        return
    if not header_value or not hmac.compare_digest(secret, header_value):
        raise InvalidSignature("invalid telegram webhook secret")


def parse_invoice_payload(raw: str) -> tuple[str, StarsPackage]:
    """invoice_payload → (user_id, package); tokens in the payload must match the package."""
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        raise InvalidWebhook("invoice payload is not JSON")
    if not isinstance(payload, dict):
        raise InvalidWebhook("invoice payload is not an object")
    user_id = payload.get("user_id")
    package = STARS_PACKAGES.get(str(payload.get("package") or ""))
    if not user_id or package is None:
        raise InvalidWebhook("missing required payment data")
    if payload.get("tokens") is not None and str(payload["tokens"]) != str(package.tokens):
        raise InvalidWebhook("tokens do not match package")
    return str(user_id), package


_SETTLE_SQL = text(
    """
    INSERT INTO payments (user_id, external_payment_id, amount, currency, status, token_package, tokens_amount)
    VALUES (:user_id, :payment_id, :amount, 'XTR', 'succeeded', :package, :tokens)
    ON CONFLICT (external_payment_id) DO UPDATE
    SET status = 'succeeded'
    WHERE payments.status <> 'succeeded'
    RETURNING user_id
    """
)


class TelegramStarsService:
    def __init__(self, db: Session, cache: TTLCache, client: httpx.Client | None = None):
        self.db = db
        self.tokens = TokenService(db, cache)
        self.users = UserService(db)
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(settings.telegram_bot_token)

    def list_packages(self) -> list[dict]:
        return [p.as_dict() for p in STARS_PACKAGES.values()]

    def _bot_call(self, method: str, payload: dict):
        client = self._client or httpx.Client(timeout=settings.telegram_bot_api_timeout)
        url = f"{settings.telegram_bot_api_url.rstrip('/')}/bot{settings.telegram_bot_token}/{method}"
        try:
            response = client.post(url, json=payload)
            response.raise_for_status()
            data = response.json()
        finally:
            if self._client is None:
                client.close()
        if not data.get("ok"):
            raise PaymentProviderError(f"telegram {method} failed: {data.get('description')}")
        return data.get("result")

    def create_invoice(self, user_id: str, package_name: str) -> dict:
        if not self.is_configured:
            raise PaymentConfigError("Telegram bot token not configured")
        package = STARS_PACKAGES[package_name]
        payload = json.dumps({"user_id": user_id, "package": package.name, "tokens": package.tokens})
        invoice = {
            "title": f"DreamLens AI: {package.tokens} токенов",
            "description": f"Покупка {package.tokens} токенов для генерации изображений",
            "payload": payload,
            "provider_token": "",
            "currency": STARS_CURRENCY,
            "prices": [{"label": f"{package.tokens} токенов", "amount": package.stars}],
        }
        try:
            link = retry_call(
                lambda: self._bot_call("createInvoiceLink", invoice),
                max_attempts=settings.retry_max_attempts,
                initial_delay=settings.retry_initial_delay,
                max_delay=settings.retry_max_delay,
                retryable=is_transient_error,
            )
        except httpx.HTTPError as e:
            # Токен бота входит в URL: в лог только тип ошибки
            logger.error(
                "telegram_invoice_failed",
                extra={"user_id": user_id, "package": package.name, "error": type(e).__name__},
            )
            raise PaymentProviderError(type(e).__name__) from e
        if not link:
            raise PaymentProviderError("createInvoiceLink returned no link")

        self.db.add(
            Payment(
                user_id=user_id,
                external_payment_id=f"{CHARGE_ID_PREFIX}invoice_{uuid4().hex}",
                amount=package.stars,
                currency=STARS_CURRENCY,
                status="pending",
                token_package=package.name,
                tokens_amount=package.tokens,
            )
        )
        self.db.commit()
        logger.info("telegram_invoice_created", extra={"user_id": user_id, "package": package.name})
        return {"invoiceLink": link, "package": package.name, "stars": package.stars, "tokens": package.tokens}

    def answer_pre_checkout(self, query: PreCheckoutQuery) -> bool:
        """Approve only a known package paid in XTR with the exact price."""
        error_message = None
        try:
            _, package = parse_invoice_payload(query.invoice_payload)
            if query.currency != STARS_CURRENCY or query.total_amount != package.stars:
                error_message = "Сумма платежа не совпадает с пакетом"
        except InvalidWebhook:
            error_message = "Неизвестный пакет токенов"

        answer: dict = {"pre_checkout_query_id": query.id, "ok": error_message is None}
        if error_message:
            answer["error_message"] = error_message
            logger.warning("telegram_pre_checkout_rejected", extra={"error": error_message})
        self._bot_call("answerPreCheckoutQuery", answer)
        return error_message is None

    def process_successful_payment(self, message: TelegramMessage) -> str:
        """
        Settles a successful_payment: one conditional upsert of the payment row plus
        the credit, in one transaction. A repeated charge id returns "duplicate".
        LookupError when the Telegram user is unknown; InvalidWebhook on bad data.
        """
        payment = message.successful_payment
        if payment is None or message.from_user is None:
            raise InvalidWebhook("invalid payment data")
        user_id, package = parse_invoice_payload(payment.invoice_payload)
        if payment.currency != STARS_CURRENCY:
            raise InvalidWebhook("unexpected currency")

        user = self.users.get_by_identity("telegram", str(message.from_user.id))
        if user is None:
            raise LookupError("telegram user not found")
        if user.id != user_id:
            raise InvalidWebhook("user id mismatch")

        payment_id = f"{CHARGE_ID_PREFIX}{payment.telegram_payment_charge_id}"
        try:
            row = self.db.execute(
                _SETTLE_SQL,
                {
                    "user_id": user_id,
                    "payment_id": payment_id,
                    "amount": payment.total_amount,
                    "package": package.name,
                    "tokens": package.tokens,
                },
            ).first()
            if row is None:
                self.db.rollback()
                logger.info("payment_already_processed", extra={"payment_id": payment_id})
                return "duplicate"
            self.tokens.add_tokens(
                user_id,
                package.tokens,
                tx_type="purchase",
                description=f"Telegram Stars purchase: {package.name} package ({package.tokens} tokens)",
                commit=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        finally:
            self.tokens.ledger.invalidate(user_id)
        logger.info(
            "payment_tokens_credited",
            extra={"user_id": user_id, "payment_id": payment_id, "amount": package.tokens, "provider": "telegram_stars"},
        )
        return "credited"

    def process_update(self, update: TelegramUpdate) -> str:
        if update.message is not None and update.message.successful_payment is not None:
            event = "telegram.successful_payment"
            outcome = self.process_successful_payment(update.message)
        elif update.pre_checkout_query is not None:
            event = "telegram.pre_checkout_query"
            outcome = "approved" if self.answer_pre_checkout(update.pre_checkout_query) else "rejected"
        else:
            event = "telegram.other"
            outcome = "ignored"
        payment_webhooks_total.labels(event=event, result=outcome).inc()
        logger.info("telegram_update_processed", extra={"event": event, "result": outcome})
        return outcome
