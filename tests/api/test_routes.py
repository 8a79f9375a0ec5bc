"""HTTP surface via TestClient: envelopes, status codes, check order, webhook handling."""
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from dreamlens.api.deps import get_api_keys, get_current_user, get_db
from dreamlens.core.config import settings
from dreamlens.core.errors import InsufficientTokens, RateLimited
from dreamlens.main import app
from dreamlens.models.user import User
from dreamlens.services.bonus.service import BonusClaim
from dreamlens.services.payments.service import compute_signature

USER = User(id="u1", telegram_id="42", first_name="Anna")

GENERATE_BODY = {
    "userImages": [{"base64": "data:image/jpeg;base64,AAAA", "qualityScore": 80}] * 3,
    "config": {"trend": "MAGAZINE", "quality": "2K"},
}


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_api_keys] = lambda: ["k1"]
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def authed(client):
    app.dependency_overrides[get_current_user] = lambda: USER
    return client


class TestHealth:
    def test_liveness(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "generations_started" in response.text


class TestAuth:
    def test_missing_header(self, client):
        response = client.get("/api/tokens")
        assert response.status_code == 401
        assert response.json() == {
            "success": False,
            "error": "Unauthorized",
            "code": "unauthorized",
            "message": "Authentication required",
        }

    def test_bearer_is_rejected(self, client):
        response = client.get("/api/user", headers={"Authorization": "Bearer token"})
        assert response.status_code == 401


class TestTokens:
    def test_get(self, authed):
        with patch("dreamlens.api.routes.tokens.TokenService") as token_service, patch(
            "dreamlens.api.routes.tokens.QuotaService"
        ) as quota_service:
            info = token_service.return_value.get_token_info.return_value
            info.balance = 12
            info.last_bonus_date = None
            info.server_date.isoformat.return_value = "2026-10-16"
            info.can_claim_bonus = True
            quota = quota_service.return_value.get_free_generations.return_value
            quota.as_dict.return_value = {"remaining": 0, "total": 0, "maxQuality": "1K", "unlimited": False}
            quota.plan = "free"
            response = authed.get("/api/tokens")

        assert response.status_code == 200
        assert "no-store" in response.headers["Cache-Control"]
        data = response.json()["data"]
        assert data["balance"] == 12
        assert data["serverDate"] == "2026-10-16"
        assert data["canClaimBonus"] is True
        assert data["plan"] == "free"

    def test_claim_bonus(self, authed):
        with patch("dreamlens.api.routes.tokens.BonusService") as bonus_service:
            bonus_service.return_value.claim_daily_bonus.return_value = BonusClaim(claimed=True, amount=7, new_balance=12)
            response = authed.post("/api/tokens")
        assert response.status_code == 200
        assert response.json()["data"] == {"tokensAwarded": 7, "newBalance": 12, "message": "Получено 7 токенов!"}

    def test_bonus_already_claimed(self, authed):
        with patch("dreamlens.api.routes.tokens.BonusService") as bonus_service:
            bonus_service.return_value.claim_daily_bonus.return_value = BonusClaim(claimed=False, amount=0)
            response = authed.post("/api/tokens")
        assert response.status_code == 400
        assert response.json()["error"] == "Ежедневный бонус уже получен сегодня"

    def test_bonus_without_token_row(self, authed):
        with patch("dreamlens.api.routes.tokens.BonusService") as bonus_service:
            bonus_service.return_value.ledger.get_token_balance.return_value = None
            response = authed.post("/api/tokens")
        assert response.status_code == 404


class TestGenerate:
    def test_missing_keys_checked_before_auth(self, client):
        app.dependency_overrides[get_api_keys] = lambda: []
        response = client.post("/api/generate/image", json=GENERATE_BODY)
        assert response.status_code == 500
        assert response.json()["code"] == "configuration_error"

    def test_payload_limit(self, client):
        with patch.object(settings, "max_payload_bytes", 10):
            response = client.post("/api/generate/image", json=GENERATE_BODY)
        assert response.status_code == 413

    def test_auth_before_validation(self, client):
        response = client.post("/api/generate/image", json={"userImages": []})
        assert response.status_code == 401

    def test_validation_error(self, authed):
        response = authed.post("/api/generate/image", json={**GENERATE_BODY, "config": {"trend": "MAGAZINE", "imageCount": 9}})
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        assert any(d["field"] == "config.imageCount" for d in body["details"])

    def test_success(self, authed):
        result = {"images": ["data:image/png;base64,AA"], "generationId": "g1", "tokens": {"spent": 2, "remaining": 8}, "isFree": False, "failedCount": 0}
        with patch("dreamlens.api.routes.generate.GenerationOrchestrator") as orchestrator:
            orchestrator.return_value.generate.return_value = result
            response = authed.post("/api/generate/image", json=GENERATE_BODY)
        assert response.status_code == 200
        assert response.json() == {"success": True, "data": result}

    def test_insufficient_tokens(self, authed):
        with patch("dreamlens.api.routes.generate.GenerationOrchestrator") as orchestrator:
            orchestrator.return_value.generate.side_effect = InsufficientTokens(required=3, balance=1)
            response = authed.post("/api/generate/image", json=GENERATE_BODY)
        assert response.status_code == 402
        assert response.json()["required"] == 3
        assert response.json()["balance"] == 1

    def test_rate_limited(self, authed):
        with patch("dreamlens.api.routes.generate.GenerationOrchestrator") as orchestrator:
            orchestrator.return_value.generate.side_effect = RateLimited(wait_seconds=42)
            response = authed.post("/api/generate/image", json=GENERATE_BODY)
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["waitTime"] == 42


class TestPayments:
    BODY = b'{"type":"notification","event":"payment.succeeded","object":{"id":"p1","status":"succeeded","metadata":{"user_id":"u1"}}}'

    def _post(self, client, body=None, signature=None, content_type="application/json"):
        headers = {"Content-Type": content_type}
        if signature:
            headers["x-yookassa-signature"] = signature
        return client.post("/api/payments/webhook", content=body or self.BODY, headers=headers)

    def test_packages(self, client):
        data = client.get("/api/payments/packages").json()["data"]
        assert [p["id"] for p in data] == ["small", "medium", "large"]

    def test_content_type_required(self, client):
        assert self._post(client, content_type="text/plain").status_code == 415

    def test_bad_signature(self, client):
        with patch.object(settings, "yookassa_secret_key", "secret"):
            response = self._post(client, signature="0" * 64)
        assert response.status_code == 401

    def test_processed(self, client):
        with patch.object(settings, "yookassa_secret_key", "secret"), patch(
            "dreamlens.api.routes.payments.PaymentService"
        ) as service:
            service.return_value.process_webhook.return_value = "credited"
            response = self._post(client, signature=compute_signature(self.BODY, "secret"))
        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_db_error_asks_for_retry(self, client):
        with patch("dreamlens.api.routes.payments.PaymentService") as service:
            service.return_value.process_webhook.side_effect = OperationalError("UPDATE", {}, Exception("down"))
            response = self._post(client)
        assert response.status_code == 500

    def test_other_errors_are_acknowledged(self, client):
        with patch("dreamlens.api.routes.payments.PaymentService") as service:
            service.return_value.process_webhook.side_effect = RuntimeError("unexpected")
            response = self._post(client)
        assert response.status_code == 200

    def test_malformed_body(self, client):
        assert self._post(client, body=b'{"event": 1}').status_code == 400


class TestAdmin:
    def test_requires_secret(self, client):
        with patch.object(settings, "admin_secret", "s3cret"):
            assert client.post("/api/admin/cleanup-users").status_code == 403
            assert client.post("/api/admin/cleanup-users", headers={"X-Admin-Secret": "wrong"}).status_code == 403

    def test_dry_run(self, client):
        with patch.object(settings, "admin_secret", "s3cret"), patch(
            "dreamlens.api.routes.admin.UserService"
        ) as user_service:
            user_service.return_value.cleanup_anonymous_users.return_value = 4
            response = client.post("/api/admin/cleanup-users?dryRun=true", headers={"X-Admin-Secret": "s3cret"})
        assert response.status_code == 200
        assert response.json()["data"] == {"dryRun": True, "deleted": 0, "matched": 4}
        user_service.return_value.cleanup_anonymous_users.assert_called_once_with(dry_run=True)


class TestHistory:
    def test_limit_capped_by_plan(self, authed):
        with patch("dreamlens.api.routes.generations.SubscriptionService") as subscriptions, patch(
            "dreamlens.api.routes.generations.GenerationService"
        ) as generations:
            subscriptions.return_value.get_user_plan.return_value = "free"
            generations.return_value.list_generations.return_value = []
            response = authed.get("/api/generations?limit=50")
        assert response.status_code == 200
        generations.return_value.list_generations.assert_called_once_with("u1", limit=10)

    def test_unlimited_plan_capped_at_hundred(self, authed):
        with patch("dreamlens.api.routes.generations.SubscriptionService") as subscriptions, patch(
            "dreamlens.api.routes.generations.GenerationService"
        ) as generations:
            subscriptions.return_value.get_user_plan.return_value = "premium"
            generations.return_value.list_generations.return_value = []
            authed.get("/api/generations")
        generations.return_value.list_generations.assert_called_once_with("u1", limit=100)

    def test_limit_out_of_range(self, authed):
        assert authed.get("/api/generations?limit=500").status_code == 400


class TestUserProfile:
    def test_profile(self, authed):
        with patch("dreamlens.api.routes.user.SubscriptionService") as subscriptions, patch(
            "dreamlens.api.routes.user.QuotaService"
        ) as quota_service:
            subscriptions.return_value.get_user_subscription.return_value = None
            quota = quota_service.return_value.get_free_generations.return_value
            quota.plan = "free"
            quota.used_today = 0
            quota.limits.as_dict.return_value = {"dailyGenerations": 0, "maxHistory": 10, "quality": "1K"}
            quota.as_dict.return_value = {"remaining": 0, "total": 0, "maxQuality": "1K", "unlimited": False}
            response = authed.get("/api/user")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["authType"] == "telegram"
        assert data["firstName"] == "Anna"
        assert data["subscription"] == {"plan": "free", "status": None, "currentPeriodEnd": None}
        assert data["usage"]["generationsToday"] == 0


class TestGenerationStatus:
    def test_found(self, authed):
        generation = MagicMock(id="g1", status="completed", image_url="data:image/png;base64,AA", error_message=None)
        generation.created_at = None
        generation.updated_at = None
        with patch("dreamlens.api.routes.generate.GenerationService") as service:
            service.return_value.get_generation.return_value = generation
            response = authed.get("/api/generate/status?id=g1")
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"
        service.return_value.get_generation.assert_called_once_with("u1", "g1")

    def test_not_found(self, authed):
        with patch("dreamlens.api.routes.generate.GenerationService") as service:
            service.return_value.get_generation.return_value = None
            response = authed.get("/api/generate/status?id=missing")
        assert response.status_code == 404

    def test_id_required(self, authed):
        assert authed.get("/api/generate/status").status_code == 400


def test_pricing_table(client):
    data = client.get("/api/generate/pricing").json()["data"]
    assert data["qualities"] == {"1K": 1, "2K": 2, "4K": 3}
    assert [b["discount"] for b in data["batches"]] == [0, 5, 10, 15, 20]
    assert data["batches"][2]["costs"]["2K"] == 6


class TestTelegramStars:
    UPDATE = {"update_id": 1, "pre_checkout_query": {"id": "q", "from": {"id": 42}, "currency": "XTR", "total_amount": 75, "invoice_payload": "{}"}}

    def test_invoice_requires_telegram_user(self, client):
        app.dependency_overrides[get_current_user] = lambda: User(id="u2", device_id="device_" + "a" * 20)
        response = client.post("/api/payments/telegram-stars", json={"package": "small"})
        assert response.status_code == 403

    def test_invoice_created(self, authed):
        with patch("dreamlens.api.routes.payments.TelegramStarsService") as service:
            service.return_value.create_invoice.return_value = {"invoiceLink": "https://t.me/$x", "package": "small", "stars": 75, "tokens": 10}
            response = authed.post("/api/payments/telegram-stars", json={"package": "small"})
        assert response.status_code == 200
        service.return_value.create_invoice.assert_called_once_with("u1", "small")

    def test_webhook_secret_checked(self, client):
        with patch.object(settings, "telegram_webhook_secret", "s3cret"):
            response = client.post(
                "/api/payments/telegram-webhook",
                json=self.UPDATE,
                headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"},
            )
        assert response.status_code == 401

    def test_webhook_processed(self, client):
        with patch.object(settings, "telegram_webhook_secret", "s3cret"), patch(
            "dreamlens.api.routes.payments.TelegramStarsService"
        ) as service:
            service.return_value.process_update.return_value = "approved"
            response = client.post(
                "/api/payments/telegram-webhook",
                json=self.UPDATE,
                headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
            )
        assert response.status_code == 200
        assert response.json() == {"received": True, "result": "approved"}

    def test_unknown_user(self, client):
        with patch("dreamlens.api.routes.payments.TelegramStarsService") as service:
            service.return_value.process_update.side_effect = LookupError("telegram user not found")
            response = client.post("/api/payments/telegram-webhook", json=self.UPDATE)
        assert response.status_code == 404

    def test_db_error_asks_for_retry(self, client):
        with patch("dreamlens.api.routes.payments.TelegramStarsService") as service:
            service.return_value.process_update.side_effect = OperationalError("INSERT", {}, Exception("down"))
            response = client.post("/api/payments/telegram-webhook", json=self.UPDATE)
        assert response.status_code == 500
