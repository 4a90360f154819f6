"""
Payment Service - Crypto credit purchases.

A purchase creates a pending invoice keyed by the provider's payment id.
The webhook flips it to paid and credits the account exactly once: the
invoice row is locked and only a `pending` invoice is ever credited.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import User
from license_portal.exceptions import (
    ProvisioningNotConfiguredError,
    ResourceNotFoundError,
    ValidationFailedError,
)
from license_portal.models.domain import InvoiceStatus
from license_portal.observability.metrics import metrics
from license_portal.services.activity import ActivityService
from license_portal.services.invoices import InvoiceService
from license_portal.services.payment_provider import (
    PaymentIntent,
    PaymentProvider,
    PaymentResult,
    WebhookEvent,
)

logger = get_logger(__name__)

MAX_CREDITS_PER_PURCHASE = 100_000


class WebhookOutcome(str, Enum):
    CREDITED = "credited"
    ALREADY_PROCESSED = "already_processed"
    CANCELLED = "cancelled"
    IGNORED = "ignored"
    UNKNOWN_PAYMENT = "unknown_payment"


@dataclass(frozen=True)
class PaymentStatus:
    payment_status: str
    invoice_status: str
    credits: int


class PaymentService:
    """Creates crypto payments and applies their webhooks."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        self.session = session
        self.provider = provider
        self.invoices = InvoiceService(session)
        self.activity = ActivityService(session)

    async def create_payment(self, username: str, credits: int) -> PaymentResult:
        """
        Ask the provider for a deposit address and record a pending invoice.

        Raises:
            ValidationFailedError: credits out of range
            ProvisioningNotConfiguredError: no NOWPayments API key
            PaymentProviderError: provider rejected the request
        """
        if not 1 <= credits <= MAX_CREDITS_PER_PURCHASE:
            raise ValidationFailedError("Invalid credit amount")
        if not self.provider.is_configured:
            raise ProvisioningNotConfiguredError("nowpayments")

        amount_usd = round(credits * settings.usd_per_credit, 2)
        order_id = f"{username}-{int(datetime.now(UTC).timestamp() * 1000)}"
        result = await self.provider.create_payment(
            PaymentIntent(
                amount_usd=amount_usd,
                credits=credits,
                order_id=order_id,
                description=f"{credits} credits for {username}",
                callback_url=settings.payment_callback_url,
            )
        )

        await self.invoices.record_pending_payment(username, credits, amount_usd, result.payment_id)
        await self.activity.log(
            username, "payment", f"Initiated crypto payment for {credits} credits"
        )
        await self.session.commit()

        metrics.record_payment("created")
        logger.info(
            "payment_created",
            username=username,
            payment_id=result.payment_id,
            credits=credits,
            amount_usd=amount_usd,
        )
        return result

    async def apply_webhook(self, event: WebhookEvent) -> WebhookOutcome:
        """Idempotent: redelivery of a completed payment never credits twice."""
        if not (event.is_completed or event.is_failed):
            logger.info("payment_webhook_ignored", payment_id=event.payment_id, status=event.status)
            return WebhookOutcome.IGNORED

        invoice = await self.invoices.find_by_payment_id(event.payment_id, lock=True)
        if invoice is None:
            logger.warning("payment_webhook_unknown", payment_id=event.payment_id)
            return WebhookOutcome.UNKNOWN_PAYMENT

        if invoice.status != InvoiceStatus.PENDING.value:
            await self.session.rollback()
            logger.info(
                "payment_webhook_duplicate",
                payment_id=event.payment_id,
                invoice_status=invoice.status,
            )
            return WebhookOutcome.ALREADY_PROCESSED

        if event.is_failed:
            invoice.status = InvoiceStatus.CANCELLED.value
            await self.session.commit()
            metrics.record_payment("failed")
            logger.warning("payment_failed", payment_id=event.payment_id, status=event.status)
            return WebhookOutcome.CANCELLED

        user = await self._lock_user(invoice.username)
        user.credits += invoice.credits
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = datetime.now(UTC)
        await self.activity.log(
            invoice.username, "payment", f"Payment confirmed: {invoice.credits} credits added"
        )
        await self.session.commit()

        metrics.record_payment("completed", invoice.credits)
        logger.info(
            "payment_credited",
            payment_id=event.payment_id,
            username=invoice.username,
            credits=invoice.credits,
            balance=user.credits,
        )
        return WebhookOutcome.CREDITED

    async def status(self, username: str, payment_id: str, is_admin: bool = False) -> PaymentStatus:
        invoice = await self.invoices.find_by_payment_id(payment_id)
        if invoice is None or (invoice.username != username and not is_admin):
            raise ResourceNotFoundError("Payment", payment_id)
        provider_status = await self.provider.get_payment_status(payment_id)
        return PaymentStatus(
            payment_status=provider_status,
            invoice_status=invoice.status,
            credits=invoice.credits,
        )

    async def _lock_user(self, username: str) -> User:
        stmt = select(User).where(User.username == username).with_for_update()
        user = (await self.session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise ResourceNotFoundError("User", username)
        return user
