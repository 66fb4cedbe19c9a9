"""
Tests for payment application.

Validates:
- partial then full payment moves sent -> partial -> paid
- amount_due = max(0, total - amount_paid)
- clamp-and-flag overpayment
- closed invoices and settled invoices reject payments
- invalid amounts and methods
"""

from dataclasses import replace
from datetime import date, datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_kernel.exceptions import ConflictError, PaymentConflictError, ValidationError
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    Invoice,
    InvoiceStatus,
    LineItem,
    PaymentMethod,
)
from billing_modules.invoicing.payments import apply_payment
from billing_modules.invoicing.workflows import cancel_invoice, recalculate, send_invoice

NOW = datetime(2024, 1, 20, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def sent_invoice() -> Invoice:
    """A sent invoice for 100.00."""
    draft = recalculate(Invoice(
        id=uuid4(),
        organization_id=uuid4(),
        issue_date=date(2024, 1, 15),
        due_date=date(2024, 2, 14),
        items=(LineItem(name="Consulting", quantity=1, unit_price=Decimal("100.00")),),
    ))
    return send_invoice(
        draft,
        customer=CustomerSnapshot(email="ada@example.com"),
        invoice_number="INV-00001",
        now=NOW,
    )


class TestPartialAndFull:

    def test_partial_then_full(self, sent_invoice):
        partial, first = apply_payment(sent_invoice, Decimal("40"), PaymentMethod.CASH, NOW)
        assert partial.status is InvoiceStatus.PARTIAL
        assert partial.amount_paid == Decimal("40.00")
        assert partial.amount_due == Decimal("60.00")
        assert partial.paid_at is None
        assert first.amount == Decimal("40.00")
        assert first.excess_amount == Decimal("0.00")

        paid, _ = apply_payment(partial, "60", "bank_transfer", NOW)
        assert paid.status is InvoiceStatus.PAID
        assert paid.amount_due == Decimal("0.00")
        assert paid.paid_at == NOW
        assert len(paid.payments) == 2

    def test_payment_on_draft_is_allowed(self, sent_invoice):
        draft = replace(sent_invoice, status=InvoiceStatus.DRAFT)
        updated, _ = apply_payment(draft, Decimal("10.00"), PaymentMethod.MANUAL, NOW)
        assert updated.status is InvoiceStatus.PARTIAL

    def test_record_carries_details(self, sent_invoice):
        _, record = apply_payment(
            sent_invoice, Decimal("25.50"), PaymentMethod.GATEWAY, NOW,
            note="webhook", external_transaction_id="ch_1",
        )
        assert record.invoice_id == sent_invoice.id
        assert record.method is PaymentMethod.GATEWAY
        assert record.external_transaction_id == "ch_1"
        assert record.recorded_at == NOW


class TestOverpayment:
    """Clamp-and-flag: amount_due stops at zero, the excess is recorded."""

    def test_excess_is_flagged(self, sent_invoice, captured_logs):
        paid, record = apply_payment(sent_invoice, Decimal("130.00"), PaymentMethod.CHECK, NOW)
        assert paid.status is InvoiceStatus.PAID
        assert paid.amount_due == Decimal("0.00")
        assert paid.amount_paid == Decimal("130.00")
        assert paid.overpaid_amount == Decimal("30.00")
        assert record.excess_amount == Decimal("30.00")

        flagged = [r for r in captured_logs() if r["message"] == "invoice_overpayment_flagged"]
        assert flagged and flagged[0]["excess_amount"] == "30.00"

    def test_settled_invoice_rejects_more_money(self, sent_invoice):
        paid, _ = apply_payment(sent_invoice, Decimal("100.00"), PaymentMethod.CASH, NOW)
        with pytest.raises(PaymentConflictError) as exc_info:
            apply_payment(paid, Decimal("1.00"), PaymentMethod.CASH, NOW)
        assert exc_info.value.reason == "nothing is due"


class TestRejections:

    def test_cancelled_invoice_conflict_leaves_amount_paid(self, sent_invoice):
        cancelled = cancel_invoice(sent_invoice, NOW)
        with pytest.raises(ConflictError):
            apply_payment(cancelled, Decimal("10.00"), PaymentMethod.CASH, NOW)
        assert cancelled.amount_paid == Decimal("0.00")

    def test_refunded_invoice_conflict(self, sent_invoice):
        refunded = replace(sent_invoice, status=InvoiceStatus.REFUNDED)
        with pytest.raises(PaymentConflictError) as exc_info:
            apply_payment(refunded, Decimal("10.00"), PaymentMethod.CASH, NOW)
        assert exc_info.value.status == "refunded"

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00")])
    def test_non_positive_amount(self, sent_invoice, amount):
        with pytest.raises(ValidationError) as exc_info:
            apply_payment(sent_invoice, amount, PaymentMethod.CASH, NOW)
        assert exc_info.value.guard == "payment_amount"

    @pytest.mark.parametrize("amount", ["NaN", "Infinity", Decimal("NaN"), "lots"])
    def test_non_numeric_amount(self, sent_invoice, amount):
        with pytest.raises(ValidationError) as exc_info:
            apply_payment(sent_invoice, amount, PaymentMethod.CASH, NOW)
        assert exc_info.value.guard == "payment_amount"

    def test_float_amount_rejected(self, sent_invoice):
        with pytest.raises(ValidationError):
            apply_payment(sent_invoice, 10.5, PaymentMethod.CASH, NOW)

    def test_unknown_method(self, sent_invoice):
        with pytest.raises(ValidationError) as exc_info:
            apply_payment(sent_invoice, Decimal("10"), "barter", NOW)
        assert exc_info.value.guard == "payment_method"
