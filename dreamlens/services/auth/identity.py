"""
Authorization header → identity.

  Telegram <initData>  подпись WebApp initData (HMAC-SHA256 от bot token)
  Device <device_id>   анонимный пользователь без регистрации
  Bearer <jwt>         Clerk, больше не поддерживается
"""
import hashlib
import hmac
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import parse_qsl

from starlette.requests import Request

from dreamlens.core.config import settings

logger = logging.getLogger(__name__)

DEVICE_ID_RE = re.compile(r"^device_[a-zA-Z0-9_-]+$")
DEVICE_ID_MIN_LENGTH = 20
DEVICE_ID_MAX_LENGTH = 255

PROFILE_FIELDS = ("first_name", "last_name", "username", "photo_url", "language_code")


class AuthError(Exception):
    """Credentials missing, malformed or not verifiable."""


@dataclass(frozen=True)
class Identity:
    source: str  # telegram / clerk / device
    external_id: str
    profile: dict[str, Any] = field(default_factory=dict)


def is_valid_device_id(device_id: str | None) -> bool:
    if not device_id:
        return False
    if len(device_id) < DEVICE_ID_MIN_LENGTH or len(device_id) > DEVICE_ID_MAX_LENGTH:
        return False
    return bool(DEVICE_ID_RE.match(device_id))


def _data_check_string(pairs: dict[str, str]) -> str:
    return "\n".join(f"{k}={pairs[k]}" for k in sorted(pairs) if k != "hash")


def sign_telegram_init_data(pairs: dict[str, str], bot_token: str) -> str:
    """Hex hash Telegram would put into initData for these pairs."""
    secret = hmac.new(b"WebAppData", bot_token.encode(), hashlib.sha256).digest()
    return hmac.new(secret, _data_check_string(pairs).encode(), hashlib.sha256).hexdigest()


def verify_telegram_init_data(
    init_data: str,
    bot_token: str | None = None,
    max_age_seconds: int | None = None,
    clock_skew_seconds: int | None = None,
    now: Callable[[], float] = time.time,
) -> Identity:
    """
    Проверка initData Telegram WebApp. Возвращает Identity с telegram id и профилем.
    Raises AuthError on any mismatch.
    """
    bot_token = bot_token if bot_token is not None else settings.telegram_bot_token
    if not bot_token:
        raise AuthError("telegram bot token not configured")
    max_age = settings.telegram_auth_max_age_seconds if max_age_seconds is None else max_age_seconds
    skew = settings.telegram_auth_clock_skew_seconds if clock_skew_seconds is None else clock_skew_seconds

    pairs = dict(parse_qsl(init_data, keep_blank_values=True))
    received_hash = pairs.get("hash")
    if not received_hash:
        raise AuthError("initData hash missing")
    expected = sign_telegram_init_data(pairs, bot_token)
    if not hmac.compare_digest(expected, received_hash):
        raise AuthError("initData signature mismatch")

    try:
        auth_date = int(pairs.get("auth_date", ""))
    except ValueError:
        raise AuthError("initData auth_date invalid")
    age = now() - auth_date
    if age > max_age + skew or age < -skew:
        raise AuthError("initData expired")

    try:
        user = json.loads(pairs.get("user") or "{}")
    except json.JSONDecodeError:
        raise AuthError("initData user invalid")
    if not isinstance(user, dict) or user.get("id") is None:
        raise AuthError("initData user missing")

    profile = {k: user.get(k) for k in PROFILE_FIELDS if user.get(k) is not None}
    return Identity(source="telegram", external_id=str(user["id"]), profile=profile)


def parse_authorization(header: str | None) -> Identity:
    if not header:
        raise AuthError("authorization header missing")
    scheme, _, credentials = header.strip().partition(" ")
    credentials = credentials.strip()
    scheme = scheme.lower()
    if scheme == "telegram":
        return verify_telegram_init_data(credentials)
    if scheme == "device":
        if not is_valid_device_id(credentials):
            raise AuthError("invalid device id")
        return Identity(source="device", external_id=credentials)
    if scheme == "bearer":
        raise AuthError("bearer auth is no longer supported")
    raise AuthError(f"unsupported auth scheme: {scheme[:20]}")


def get_client_ip(request: Request) -> str:
    """Client IP (supports X-Forwarded-For from proxy)."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and settings.is_production:
        trusted = settings.trusted_proxy_ips_set
        if trusted and request.client and request.client.host in trusted:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "127.0.0.1"
