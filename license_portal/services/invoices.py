"""
Invoice Service - Append-only credit ledger.

Invoices are added to the caller's transaction and never committed here, so
an invoice always lands together with the debit it describes.
"""

import re
import time
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from license_portal.config import settings
from license_portal.db.models import Invoice
from license_portal.exceptions import WriteVerificationError
from license_portal.models.domain import InvoiceStatus, InvoiceType

logger = get_logger(__name__)

_INVOICE_RE = re.compile(r"^INV-(\d{4})-(\d+)$")
_CENTS = Decimal("0.01")
# First key of the two-key advisory lock that serialises numbering per year
INVOICE_LOCK_CLASS = 0x494E56


def format_invoice_number(year: int, sequence: int) -> str:
    return f"INV-{year}-{sequence:06d}"


def parse_invoice_sequence(invoice_number: str, year: int) -> int | None:
    """Sequence part of `INV-<year>-<seq>`, or None for another year or format."""
    match = _INVOICE_RE.match(invoice_number)
    if not match or int(match.group(1)) != year:
        return None
    return int(match.group(2))


def fallback_sequence(timestamp_ms: int) -> int:
    """Last six digits of a millisecond timestamp."""
    return int(str(timestamp_ms)[-6:])


def compute_amounts(
    credits: int, credit_value: int, tax_rate_percent: int
) -> tuple[Decimal, Decimal, Decimal]:
    """(subtotal, tax, total) for a credit-denominated invoice."""
    subtotal = Decimal(credits * credit_value).quantize(_CENTS)
    tax = (subtotal * Decimal(tax_rate_percent) / Decimal(100)).quantize(_CENTS, ROUND_HALF_UP)
    return subtotal, tax, subtotal + tax


class InvoiceService:
    """Creates and lists invoices."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def next_invoice_number(self, now: datetime | None = None) -> str:
        """
        Next number in this year's sequence.

        Takes a transaction-scoped advisory lock for the year before reading,
        so writers from different accounts queue until the holder commits or
        rolls back. Falls back to a timestamp-derived sequence if the counter
        read fails.
        """
        now = now or datetime.now(UTC)
        year = now.year
        try:
            async with self.session.begin_nested():
                await self.session.execute(
                    select(func.pg_advisory_xact_lock(INVOICE_LOCK_CLASS, year))
                )
                stmt = (
                    select(Invoice.invoice_number)
                    .where(Invoice.invoice_number.like(f"INV-{year}-%"))
                    .order_by(Invoice.invoice_number.desc())
                    .limit(1)
                )
                result = await self.session.execute(stmt)
                last = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.warning("invoice_counter_read_failed", error=str(e))
            return format_invoice_number(year, fallback_sequence(int(time.time() * 1000)))

        last_sequence = parse_invoice_sequence(last, year) if last else None
        return format_invoice_number(year, (last_sequence or 0) + 1)

    async def record(
        self,
        username: str,
        invoice_type: InvoiceType,
        credits: int,
        description: str,
        status: InvoiceStatus = InvoiceStatus.PAID,
        payment_method: str | None = "credits",
    ) -> Invoice:
        """Add a credit-denominated invoice to the current transaction."""
        subtotal, tax, total = compute_amounts(
            credits, settings.credit_value, settings.tax_rate_percent
        )
        now = datetime.now(UTC)
        invoice = Invoice(
            invoice_number=await self.next_invoice_number(now),
            username=username,
            invoice_type=invoice_type.value,
            status=status.value,
            description=description,
            credits=credits,
            subtotal=subtotal,
            tax=tax,
            total=total,
            currency=settings.invoice_currency,
            payment_method=payment_method,
            paid_at=now if status == InvoiceStatus.PAID else None,
        )
        self.session.add(invoice)
        await self.session.flush()

        if invoice.id is None:
            raise WriteVerificationError(f"Invoice {invoice.invoice_number} not persisted")

        logger.info(
            "invoice_recorded",
            invoice_number=invoice.invoice_number,
            username=username,
            invoice_type=invoice_type.value,
            credits=credits,
        )
        return invoice

    async def record_pending_payment(
        self, username: str, credits: int, amount_usd: float, payment_id: str
    ) -> Invoice:
        """Pending crypto purchase, keyed by the provider's payment id."""
        amount = Decimal(str(amount_usd)).quantize(_CENTS)
        invoice = Invoice(
            invoice_number=await self.next_invoice_number(),
            username=username,
            invoice_type=InvoiceType.CREDIT_PURCHASE.value,
            status=InvoiceStatus.PENDING.value,
            description=f"Purchase of {credits} credits",
            credits=credits,
            subtotal=amount,
            tax=Decimal("0.00"),
            total=amount,
            currency="USDT",
            payment_id=payment_id,
            payment_method="crypto",
        )
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def find_by_payment_id(self, payment_id: str, lock: bool = False) -> Invoice | None:
        stmt = select(Invoice).where(Invoice.payment_id == payment_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for(self, username: str | None, limit: int = 100) -> list[Invoice]:
        """Newest first; `None` lists every account's invoices."""
        stmt = select(Invoice).order_by(Invoice.created_at.desc()).limit(limit)
        if username is not None:
            stmt = stmt.where(Invoice.username == username)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
