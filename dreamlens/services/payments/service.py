"""
PaymentService: платежи YooKassa.

- create_payment: POST /v3/payments, сохраняем строку payments (pending)
- verify_signature: HMAC-SHA256 тела webhook
- process_webhook: идемпотентное начисление токенов при payment.succeeded
"""
import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

import httpx
from sqlalchemy import text
from sqlalchemy.orm import Session

from dreamlens.core.config import settings
from dreamlens.models.payment import Payment
from dreamlens.schemas.payments import YooKassaWebhook
from dreamlens.services.cache import TTLCache
from dreamlens.services.retry import is_transient_error, retry_call
from dreamlens.services.tokens.service import TokenService
from dreamlens.utils.metrics import payment_webhooks_total

logger = logging.getLogger(__name__)

SIGNATURE_RE = re.compile(r"^[a-fA-F0-9]{64}$")


@dataclass(frozen=True)
class TokenPackage:
    name: str
    tokens: int
    price: Decimal  # RUB

    @property
    def price_per_token(self) -> Decimal:
        return (self.price / self.tokens).quantize(Decimal("0.01"))

    def as_dict(self) -> dict:
        return {
            "id": self.name,
            "tokens": self.tokens,
            "price": float(self.price),
            "currency": "RUB",
            "pricePerToken": float(self.price_per_token),
        }


TOKEN_PACKAGES: dict[str, TokenPackage] = {
    "small": TokenPackage("small", 10, Decimal("99.00")),
    "medium": TokenPackage("medium", 50, Decimal("399.00")),
    "large": TokenPackage("large", 100, Decimal("699.00")),
}


class PaymentConfigError(Exception):
    """YooKassa credentials are not configured."""


class PaymentProviderError(Exception):
    """YooKassa rejected the request or was unreachable."""


class InvalidWebhook(Exception):
    """Webhook body lacks the data needed to credit tokens."""


class InvalidSignature(Exception):
    pass


def compute_signature(body: bytes, secret_key: str) -> str:
    return hmac.new(secret_key.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    signature: str | None,
    secret_key: str | None = None,
    require: bool | None = None,
) -> None:
    """
    Raises InvalidSignature when the signature is missing (and required), malformed
    or does not match. Outside production an absent signature is accepted.
    """
    secret_key = settings.yookassa_secret_key if secret_key is None else secret_key
    require = settings.is_production if require is None else require

    if require:
        if not signature or not secret_key:
            raise InvalidSignature("webhook signature required")
        if not SIGNATURE_RE.match(signature):
            raise InvalidSignature("invalid webhook signature format")
    if signature and secret_key:
        expected = compute_signature(body, secret_key)
        if not hmac.compare_digest(expected, signature.lower()):
            raise InvalidSignature("invalid webhook signature")


_MARK_SUCCEEDED_SQL = text(
    """
    UPDATE payments
    SET status = 'succeeded'
    WHERE external_payment_id = :payment_id
      AND (status IS NULL OR status <> 'succeeded')
    RETURNING user_id, token_package, tokens_amount
    """
)

_MARK_CANCELED_SQL = text(
    """
    UPDATE payments
    SET status = 'canceled'
    WHERE external_payment_id = :payment_id AND status <> 'succeeded'
    """
)


class PaymentService:
    def __init__(self, db: Session, cache: TTLCache, client: httpx.Client | None = None):
        self.db = db
        self.tokens = TokenService(db, cache)
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(settings.yookassa_shop_id and settings.yookassa_secret_key)

    def list_packages(self) -> list[dict]:
        return [p.as_dict() for p in TOKEN_PACKAGES.values()]

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _post_payment(self, payload: dict, idempotence_key: str) -> dict:
        client = self._client or httpx.Client(timeout=settings.yookassa_timeout)
        try:
            response = client.post(
                f"{settings.yookassa_api_url.rstrip('/')}/payments",
                json=payload,
                auth=(settings.yookassa_shop_id, settings.yookassa_secret_key),
                headers={"Idempotence-Key": idempotence_key},
            )
            response.raise_for_status()
            return response.json()
        finally:
            if self._client is None:
                client.close()

    def create_payment(self, user_id: str, package_name: str, return_url: str | None = None) -> dict:
        if not self.is_configured:
            raise PaymentConfigError("YooKassa credentials not configured")
        package = TOKEN_PACKAGES[package_name]
        return_url = return_url or f"{settings.public_base_url.rstrip('/')}/payment/success"
        payload = {
            "amount": {"value": f"{package.price:.2f}", "currency": "RUB"},
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": return_url},
            "description": f"DreamLens AI: {package.tokens} токенов",
            "metadata": {"user_id": user_id, "package": package.name, "tokens": str(package.tokens)},
        }
        # Один ключ на все попытки: повтор не создаст второй платёж
        idempotence_key = f"{user_id}-{uuid4()}"
        try:
            result = retry_call(
                lambda: self._post_payment(payload, idempotence_key),
                max_attempts=settings.retry_max_attempts,
                initial_delay=settings.retry_initial_delay,
                max_delay=settings.retry_max_delay,
                retryable=is_transient_error,
            )
        except httpx.HTTPError as e:
            logger.error(
                "yookassa_create_payment_failed",
                extra={"user_id": user_id, "package": package.name, "error": str(e)[:300]},
            )
            raise PaymentProviderError(str(e)) from e

        external_id = result.get("id")
        if not external_id:
            raise PaymentProviderError("YooKassa response without payment id")
        status = result.get("status") or "pending"
        self.db.add(
            Payment(
                user_id=user_id,
                external_payment_id=external_id,
                amount=package.price,
                currency="RUB",
                status=status,
                token_package=package.name,
                tokens_amount=package.tokens,
            )
        )
        self.db.commit()
        logger.info(
            "payment_created",
            extra={"user_id": user_id, "payment_id": external_id, "package": package.name},
        )
        return {
            "paymentId": external_id,
            "confirmationUrl": (result.get("confirmation") or {}).get("confirmation_url"),
            "status": status,
        }

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def process_webhook(self, webhook: YooKassaWebhook) -> str:
        """
        Returns the outcome label (credited / duplicate / canceled / ignored).
        Database errors propagate so the provider retries the notification.
        """
        obj = webhook.object
        if webhook.event == "payment.succeeded" and obj.status == "succeeded":
            if not obj.metadata.get("user_id"):
                payment_webhooks_total.labels(event=webhook.event, result="invalid").inc()
                raise InvalidWebhook("missing user_id in webhook metadata")
            outcome = self._credit(obj.id, obj.metadata)
        elif webhook.event == "payment.canceled":
            self.db.execute(_MARK_CANCELED_SQL, {"payment_id": obj.id})
            self.db.commit()
            outcome = "canceled"
        else:
            outcome = "ignored"
        payment_webhooks_total.labels(event=webhook.event, result=outcome).inc()
        logger.info("payment_webhook_processed", extra={"payment_id": obj.id, "event": webhook.event, "result": outcome})
        return outcome

    def _credit(self, payment_id: str, metadata: dict) -> str:
        row = self.db.execute(_MARK_SUCCEEDED_SQL, {"payment_id": payment_id}).mappings().first()
        if row is None:
            # Уже succeeded или платёж не наш
            self.db.rollback()
            logger.info("payment_already_processed", extra={"payment_id": payment_id})
            return "duplicate"

        package_name = row["token_package"] or metadata.get("package")
        tokens = row["tokens_amount"] or int(metadata.get("tokens") or 0)
        user_id = row["user_id"]
        try:
            # Статус и начисление в одной транзакции
            self.tokens.add_tokens(
                user_id,
                tokens,
                tx_type="purchase",
                description=f"Purchase: {package_name} package ({tokens} tokens)",
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
            extra={"user_id": user_id, "payment_id": payment_id, "amount": tokens},
        )
        return "credited"
