"""
Payment API routes - Crypto credit purchases and the processor webhook.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.api.dependencies import get_payment_provider, http_error, require_user
from license_portal.db.session import get_write_db
from license_portal.exceptions import PortalError
from license_portal.models.api import (
    CreatePaymentRequest,
    PaymentResponse,
    PaymentStatusResponse,
    PaymentWebhookRequest,
    PaymentWebhookResponse,
)
from license_portal.models.domain import Principal
from license_portal.services.nowpayments_provider import NowPaymentsProvider
from license_portal.services.payment_provider import WebhookEvent
from license_portal.services.payments import PaymentService

logger = get_logger(__name__)
router = APIRouter(prefix="/api/payment", tags=["payment"])


@router.post("/create", response_model=PaymentResponse)
async def create_payment(
    body: CreatePaymentRequest,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
    provider: NowPaymentsProvider = Depends(get_payment_provider),
) -> PaymentResponse:
    """Start a crypto purchase. Credits are added only when the webhook confirms it."""
    try:
        result = await PaymentService(db, provider).create_payment(principal.username, body.credits)
    except PortalError as exc:
        raise http_error(exc, "create_payment") from exc
    return PaymentResponse(
        message="Payment created",
        payment_id=result.payment_id,
        status=result.status,
        pay_address=result.pay_address,
        pay_amount=result.pay_amount,
        pay_currency=result.pay_currency,
    )


@router.post("/webhook", response_model=PaymentWebhookResponse)
async def payment_webhook(
    body: PaymentWebhookRequest,
    db: AsyncSession = Depends(get_write_db),
    provider: NowPaymentsProvider = Depends(get_payment_provider),
) -> PaymentWebhookResponse:
    """
    Processor callback.

    Always answers 200 for known outcomes so the processor stops retrying;
    redelivery of a finished payment is a no-op.
    """
    logger.info(
        "nowpayments_webhook_received",
        payment_id=body.payment_id,
        payment_status=body.payment_status,
    )
    try:
        outcome = await PaymentService(db, provider).apply_webhook(
            WebhookEvent(payment_id=body.payment_id, status=body.payment_status)
        )
    except PortalError as exc:
        raise http_error(exc, "payment_webhook") from exc
    return PaymentWebhookResponse(status=outcome.value, payment_id=body.payment_id)


@router.get("/status/{payment_id}", response_model=PaymentStatusResponse)
async def payment_status(
    payment_id: str,
    principal: Principal = Depends(require_user),
    db: AsyncSession = Depends(get_write_db),
    provider: NowPaymentsProvider = Depends(get_payment_provider),
) -> PaymentStatusResponse:
    try:
        current = await PaymentService(db, provider).status(
            principal.username, payment_id, is_admin=principal.is_admin
        )
    except PortalError as exc:
        raise http_error(exc, "payment_status") from exc
    return PaymentStatusResponse(
        payment_id=payment_id,
        payment_status=current.payment_status,
        invoice_status=current.invoice_status,
        credits=current.credits,
    )
