"""
Tests for PaymentService.

The webhook must credit an account exactly once however often the
provider redelivers it.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from license_portal.db.models import Invoice
from license_portal.exceptions import (
    ProvisioningNotConfiguredError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from license_portal.models.domain import InvoiceStatus, InvoiceType
from license_portal.services.payment_provider import PaymentResult, WebhookEvent
from license_portal.services.payments import PaymentService, WebhookOutcome
from tests.conftest import make_user


def make_invoice(status: InvoiceStatus = InvoiceStatus.PENDING, username: str = "alice") -> Invoice:
    return Invoice(
        id=3,
        invoice_number="INV-2026-000003",
        username=username,
        invoice_type=InvoiceType.CREDIT_PURCHASE.value,
        status=status.value,
        description="Purchase of 20 credits",
        credits=20,
        subtotal=Decimal("20.00"),
        tax=Decimal("0.00"),
        total=Decimal("20.00"),
        currency="USDT",
        payment_id="pay_1",
        payment_method="crypto",
    )


def make_provider(configured: bool = True) -> MagicMock:
    provider = MagicMock()
    provider.is_configured = configured
    provider.create_payment = AsyncMock(
        return_value=PaymentResult(
            payment_id="pay_1",
            status="waiting",
            pay_address="TXYZ",
            pay_amount=20.0,
            pay_currency="usdttrc20",
        )
    )
    provider.get_payment_status = AsyncMock(return_value="finished")
    return provider


def make_service(db_session, invoice: Invoice | None, provider: MagicMock | None = None):
    service = PaymentService(db_session, provider or make_provider())
    service.invoices.find_by_payment_id = AsyncMock(return_value=invoice)
    service.activity.log = AsyncMock()
    return service


class TestCreatePayment:
    @pytest.mark.asyncio
    async def test_records_pending_invoice(self, db_session):
        provider = make_provider()
        service = make_service(db_session, None, provider)
        service.invoices.record_pending_payment = AsyncMock()

        result = await service.create_payment("alice", 20)

        assert result.payment_id == "pay_1"
        intent = provider.create_payment.call_args[0][0]
        assert intent.credits == 20
        assert intent.order_id.startswith("alice-")
        service.invoices.record_pending_payment.assert_awaited_once_with("alice", 20, 20.0, "pay_1")
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("credits", [0, -5, 100_001])
    async def test_rejects_out_of_range(self, db_session, credits):
        with pytest.raises(ValidationFailedError):
            await make_service(db_session, None).create_payment("alice", credits)

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, db_session):
        service = make_service(db_session, None, make_provider(configured=False))
        with pytest.raises(ProvisioningNotConfiguredError):
            await service.create_payment("alice", 10)


class TestApplyWebhook:
    @pytest.mark.asyncio
    async def test_completed_payment_credits_once(self, db_session):
        invoice = make_invoice()
        user = make_user(credits=5)
        service = make_service(db_session, invoice)

        with patch.object(service, "_lock_user", AsyncMock(return_value=user)):
            first = await service.apply_webhook(WebhookEvent("pay_1", "finished"))
            second = await service.apply_webhook(WebhookEvent("pay_1", "finished"))

        assert first == WebhookOutcome.CREDITED
        assert second == WebhookOutcome.ALREADY_PROCESSED
        assert user.credits == 25
        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.paid_at is not None

    @pytest.mark.asyncio
    async def test_failed_payment_cancels_invoice(self, db_session):
        invoice = make_invoice()
        service = make_service(db_session, invoice)

        outcome = await service.apply_webhook(WebhookEvent("pay_1", "expired"))

        assert outcome == WebhookOutcome.CANCELLED
        assert invoice.status == InvoiceStatus.CANCELLED.value
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_intermediate_status_ignored(self, db_session):
        service = make_service(db_session, make_invoice())

        outcome = await service.apply_webhook(WebhookEvent("pay_1", "confirming"))

        assert outcome == WebhookOutcome.IGNORED
        service.invoices.find_by_payment_id.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_payment(self, db_session):
        service = make_service(db_session, None)

        outcome = await service.apply_webhook(WebhookEvent("nope", "finished"))

        assert outcome == WebhookOutcome.UNKNOWN_PAYMENT

    @pytest.mark.asyncio
    async def test_cancelled_invoice_never_credited(self, db_session):
        user = make_user(credits=5)
        service = make_service(db_session, make_invoice(InvoiceStatus.CANCELLED))

        with patch.object(service, "_lock_user", AsyncMock(return_value=user)) as lock:
            outcome = await service.apply_webhook(WebhookEvent("pay_1", "finished"))

        assert outcome == WebhookOutcome.ALREADY_PROCESSED
        lock.assert_not_called()
        assert user.credits == 5

    @pytest.mark.asyncio
    async def test_webhook_locks_invoice_row(self, db_session):
        service = make_service(db_session, None)

        await service.apply_webhook(WebhookEvent("pay_1", "finished"))

        service.invoices.find_by_payment_id.assert_awaited_once_with("pay_1", lock=True)


class TestStatus:
    @pytest.mark.asyncio
    async def test_owner_sees_status(self, db_session):
        service = make_service(db_session, make_invoice())

        result = await service.status("alice", "pay_1")

        assert result.payment_status == "finished"
        assert result.invoice_status == "pending"
        assert result.credits == 20

    @pytest.mark.asyncio
    async def test_other_users_payment_is_hidden(self, db_session):
        service = make_service(db_session, make_invoice(username="bob"))

        with pytest.raises(ResourceNotFoundError):
            await service.status("alice", "pay_1")

    @pytest.mark.asyncio
    async def test_admin_sees_any_payment(self, db_session):
        service = make_service(db_session, make_invoice(username="bob"))

        result = await service.status("boss", "pay_1", is_admin=True)

        assert result.credits == 20
