"""
Tests for API Routes.

Route handlers are exercised through the TestClient with the database,
principal and upstream clients overridden and the services patched.
"""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from license_portal.api.dependencies import (
    get_genzauth_client,
    get_payment_provider,
    get_uid_client,
)
from license_portal.db.models import Uid
from license_portal.exceptions import EntitlementDeniedError, InsufficientCreditsError
from license_portal.models.domain import DenialReason, Role
from license_portal.services.chat import ChatStats
from license_portal.services.payments import WebhookOutcome
from tests.conftest import make_user


def make_uid(**overrides) -> Uid:
    now = datetime.now(UTC)
    values = {
        "id": 1,
        "uid": "12345678",
        "username": "alice",
        "package_key": "7days",
        "duration_hours": 168,
        "credits_spent": 5,
        "is_guest_pass": False,
        "expires_at": now + timedelta(days=7),
        "created_at": now,
    }
    values.update(overrides)
    return Uid(**values)


@pytest.fixture
def upstreams(app):
    async def override_client():
        yield MagicMock()

    app.dependency_overrides[get_uid_client] = override_client
    app.dependency_overrides[get_genzauth_client] = override_client
    app.dependency_overrides[get_payment_provider] = override_client


class TestAuthentication:
    def test_anonymous_is_rejected(self, client):
        response = client.get("/api/uids")
        assert response.status_code == 401

    def test_reseller_cannot_use_user_routes(self, client, as_principal, reseller_principal):
        as_principal(reseller_principal)
        assert client.get("/api/uids").status_code == 403

    def test_user_cannot_reach_admin_routes(self, client, as_principal, user_principal):
        as_principal(user_principal)
        assert client.get("/api/admin/users").status_code == 403


class TestUidRoutes:
    def test_create_uid(self, client, as_principal, user_principal, upstreams):
        as_principal(user_principal)
        with patch("license_portal.api.routes.ProvisioningService") as service_cls:
            service_cls.return_value.create_uid = AsyncMock(return_value=make_uid())
            response = client.post("/api/uids", json={"uid": "12345678", "package": "7days"})

        assert response.status_code == 201
        body = response.json()
        assert body["uid"]["uid"] == "12345678"
        assert body["uid"]["status"] == "active"
        service_cls.return_value.create_uid.assert_awaited_once_with("alice", "12345678", "7days")

    def test_insufficient_credits_is_402(self, client, as_principal, user_principal, upstreams):
        as_principal(user_principal)
        with patch("license_portal.api.routes.ProvisioningService") as service_cls:
            service_cls.return_value.create_uid = AsyncMock(
                side_effect=InsufficientCreditsError(required=5, available=1)
            )
            response = client.post("/api/uids", json={"uid": "12345678", "package": "7days"})

        assert response.status_code == 402
        assert response.json()["detail"]["available"] == 1

    def test_guest_pass_denied_is_403(self, client, as_principal, guest_principal, upstreams):
        as_principal(guest_principal)
        with patch("license_portal.api.routes.ProvisioningService") as service_cls:
            service_cls.return_value.create_uid = AsyncMock(
                side_effect=EntitlementDeniedError(DenialReason.GUEST_PASS_USED, "Free pass used")
            )
            response = client.post("/api/uids", json={"uid": "12345678", "package": "1day"})

        assert response.status_code == 403
        assert response.json()["detail"]["reason"] == "guest_pass_used"

    def test_guest_cannot_delete(self, client, as_principal, guest_principal, upstreams):
        as_principal(guest_principal)
        with patch("license_portal.api.routes.ProvisioningService") as service_cls:
            response = client.delete("/api/uids/12345678")

        assert response.status_code == 403
        service_cls.return_value.delete_uid.assert_not_called()

    def test_list_uids(self, client, as_principal, user_principal):
        as_principal(user_principal)
        with patch("license_portal.api.routes.ProvisioningService") as service_cls:
            service_cls.return_value.list_uids = AsyncMock(
                return_value=[make_uid(expires_at=datetime.now(UTC) - timedelta(hours=1))]
            )
            response = client.get("/api/uids")

        assert response.status_code == 200
        assert response.json()[0]["status"] == "expired"


class TestPaymentWebhook:
    def test_credited(self, client, upstreams):
        with patch("license_portal.api.payment_routes.PaymentService") as service_cls:
            service_cls.return_value.apply_webhook = AsyncMock(return_value=WebhookOutcome.CREDITED)
            response = client.post(
                "/api/payment/webhook", json={"payment_id": 123, "payment_status": "finished"}
            )

        assert response.status_code == 200
        assert response.json() == {"status": "credited", "payment_id": "123"}
        event = service_cls.return_value.apply_webhook.call_args[0][0]
        assert event.payment_id == "123"
        assert event.status == "finished"

    def test_redelivery(self, client, upstreams):
        with patch("license_portal.api.payment_routes.PaymentService") as service_cls:
            service_cls.return_value.apply_webhook = AsyncMock(
                return_value=WebhookOutcome.ALREADY_PROCESSED
            )
            response = client.post(
                "/api/payment/webhook", json={"payment_id": "pay_1", "payment_status": "finished"}
            )

        assert response.json()["status"] == "already_processed"


class TestChatRoutes:
    def test_stats_for_admin(self, client, as_principal, admin_principal):
        as_principal(admin_principal)
        with patch("license_portal.api.chat_routes.ChatService") as service_cls:
            service_cls.return_value.stats = AsyncMock(
                return_value=ChatStats(total_messages=4, unread_messages=1, conversations=["alice"])
            )
            response = client.get("/api/chat/stats")

        assert response.status_code == 200
        assert response.json()["conversations"] == ["alice"]

    def test_stats_rejects_client(self, client, as_principal, client_principal):
        as_principal(client_principal)
        assert client.get("/api/chat/stats").status_code == 403


class TestAdminRoutes:
    def test_tier_flags_collapse_to_one_role(self, client, as_principal, bootstrap_principal):
        as_principal(bootstrap_principal)
        with patch("license_portal.api.admin_routes.AccountAdminService") as service_cls:
            service_cls.return_value.create_account = AsyncMock(
                return_value=make_user("newowner", role=Role.OWNER)
            )
            response = client.post(
                "/api/admin/users",
                json={
                    "username": "newowner",
                    "password": "secret123",
                    "is_owner": True,
                    "is_limited_admin": True,
                },
            )

        assert response.status_code == 201
        assert service_cls.return_value.create_account.call_args[1]["role"] == Role.OWNER

    def test_limited_admin_cannot_manage_config(self, client, as_principal, limited_admin_principal):
        as_principal(limited_admin_principal)
        assert client.get("/api/admin/api-config").status_code == 403
