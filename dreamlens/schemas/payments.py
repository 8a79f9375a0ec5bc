from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


PackageName = Literal["small", "medium", "large"]


class CreatePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    package: PackageName
    return_url: str | None = Field(default=None, max_length=2048, alias="returnUrl")


class WebhookAmount(BaseModel):
    value: str
    currency: str


class WebhookObject(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    amount: WebhookAmount | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class YooKassaWebhook(BaseModel):
    """Notification body: {"type": "notification", "event": "payment.succeeded", "object": {...}}"""
    model_config = ConfigDict(extra="allow")

    type: str = "notification"
    event: str
    object: WebhookObject


# Telegram Bot API updates (only the fields payments need)

class TelegramFrom(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int


class SuccessfulPayment(BaseModel):
    model_config = ConfigDict(extra="allow")

    currency: str
    total_amount: int
    invoice_payload: str
    telegram_payment_charge_id: str
    provider_payment_charge_id: str | None = None


class TelegramMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    message_id: int | None = None
    from_user: TelegramFrom | None = Field(default=None, alias="from")
    successful_payment: SuccessfulPayment | None = None


class PreCheckoutQuery(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    from_user: TelegramFrom = Field(alias="from")
    currency: str
    total_amount: int
    invoice_payload: str


class TelegramUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    update_id: int
    message: TelegramMessage | None = None
    pre_checkout_query: PreCheckoutQuery | None = None
