"""
Tests for InvoiceService and the invoice numbering helpers.
"""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from license_portal.exceptions import WriteVerificationError
from license_portal.models.domain import InvoiceStatus, InvoiceType
from license_portal.services.invoices import (
    INVOICE_LOCK_CLASS,
    InvoiceService,
    compute_amounts,
    fallback_sequence,
    format_invoice_number,
    parse_invoice_sequence,
)
from tests.conftest import make_result


def nested_transaction() -> MagicMock:
    return MagicMock(return_value=AsyncMock())


class TestNumbering:
    def test_format_pads_to_six_digits(self):
        assert format_invoice_number(2026, 1) == "INV-2026-000001"
        assert format_invoice_number(2026, 1234567) == "INV-2026-1234567"

    def test_parse_same_year(self):
        assert parse_invoice_sequence("INV-2026-000042", 2026) == 42

    def test_parse_other_year_is_none(self):
        assert parse_invoice_sequence("INV-2025-000042", 2026) is None

    def test_parse_garbage_is_none(self):
        assert parse_invoice_sequence("RCPT-1", 2026) is None

    def test_fallback_uses_last_six_digits(self):
        assert fallback_sequence(1767225600123) == 600123

    @given(year=st.integers(2000, 2999), seq=st.integers(1, 999_999))
    def test_parse_inverts_format(self, year, seq):
        assert parse_invoice_sequence(format_invoice_number(year, seq), year) == seq


class TestAmounts:
    def test_no_tax(self):
        assert compute_amounts(5, 1, 0) == (Decimal("5.00"), Decimal("0.00"), Decimal("5.00"))

    def test_tax_rounds_half_up(self):
        subtotal, tax, total = compute_amounts(3, 1, 5)
        assert subtotal == Decimal("3.00")
        assert tax == Decimal("0.15")
        assert total == Decimal("3.15")


class TestNextInvoiceNumber:
    async def test_first_invoice_of_year(self, db_session):
        db_session.begin_nested = nested_transaction()
        db_session.execute.return_value = make_result(scalar=None)

        number = await InvoiceService(db_session).next_invoice_number(datetime(2026, 5, 1, tzinfo=UTC))

        assert number == "INV-2026-000001"

    async def test_increments_last_number(self, db_session):
        db_session.begin_nested = nested_transaction()
        db_session.execute.return_value = make_result(scalar="INV-2026-000041")

        number = await InvoiceService(db_session).next_invoice_number(datetime(2026, 5, 1, tzinfo=UTC))

        assert number == "INV-2026-000042"

    async def test_year_lock_taken_before_reading_last_number(self, db_session):
        db_session.begin_nested = nested_transaction()
        db_session.execute = AsyncMock(
            side_effect=[make_result(), make_result(scalar="INV-2026-000041")]
        )

        number = await InvoiceService(db_session).next_invoice_number(datetime(2026, 5, 1, tzinfo=UTC))

        assert number == "INV-2026-000042"
        lock_stmt, read_stmt = (call.args[0] for call in db_session.execute.await_args_list)
        lock_sql = lock_stmt.compile(dialect=postgresql.dialect())
        assert "pg_advisory_xact_lock" in str(lock_sql)
        assert sorted(lock_sql.params.values()) == sorted([INVOICE_LOCK_CLASS, 2026])
        assert "invoice_number" in str(read_stmt.compile(dialect=postgresql.dialect()))

    async def test_counter_failure_falls_back_to_timestamp(self, db_session):
        db_session.begin_nested = nested_transaction()
        db_session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))

        number = await InvoiceService(db_session).next_invoice_number(datetime(2026, 5, 1, tzinfo=UTC))

        assert number.startswith("INV-2026-")
        assert len(number.split("-")[2]) == 6


class TestRecord:
    async def test_record_adds_paid_invoice(self, db_session):
        db_session.begin_nested = nested_transaction()
        db_session.execute.return_value = make_result(scalar=None)

        async def assign_id():
            db_session.add.call_args[0][0].id = 10

        db_session.flush.side_effect = assign_id

        invoice = await InvoiceService(db_session).record(
            "alice", InvoiceType.UID_CREATION, 5, "UID Creation - 7 Days"
        )

        assert invoice.status == InvoiceStatus.PAID.value
        assert invoice.credits == 5
        assert invoice.paid_at is not None
        assert invoice.payment_method == "credits"
        db_session.commit.assert_not_called()

    async def test_record_raises_when_not_persisted(self, db_session):
        db_session.begin_nested = nested_transaction()
        db_session.execute.return_value = make_result(scalar=None)

        with pytest.raises(WriteVerificationError):
            await InvoiceService(db_session).record("alice", InvoiceType.UID_CREATION, 1, "x")

    async def test_pending_payment(self, db_session):
        db_session.begin_nested = nested_transaction()
        db_session.execute.return_value = make_result(scalar=None)

        invoice = await InvoiceService(db_session).record_pending_payment("alice", 20, 10.0, "pay_1")

        assert invoice.status == InvoiceStatus.PENDING.value
        assert invoice.payment_id == "pay_1"
        assert invoice.total == Decimal("10.00")
        assert invoice.paid_at is None
