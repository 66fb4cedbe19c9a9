"""
Tests for payment reminder selection.
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_modules.invoicing.models import Invoice, InvoiceStatus
from billing_modules.invoicing.reminders import ReminderKind, reminder_kind, reminder_message

TODAY = date(2024, 6, 10)


def _invoice(due_date, status=InvoiceStatus.SENT, amount_due=Decimal("80.00")) -> Invoice:
    return Invoice(
        id=uuid4(),
        organization_id=uuid4(),
        issue_date=date(2024, 5, 1),
        due_date=due_date,
        status=status,
        invoice_number="INV-00007",
        total=Decimal("80.00"),
        amount_due=amount_due,
    )


class TestReminderKind:

    @pytest.mark.parametrize(
        ("due", "expected"),
        [
            (date(2024, 6, 10), ReminderKind.DUE_SOON),
            (date(2024, 6, 13), ReminderKind.DUE_SOON),
            (date(2024, 6, 14), None),
            (date(2024, 6, 9), ReminderKind.OVERDUE),
            (date(2024, 5, 12), ReminderKind.OVERDUE),
            (date(2024, 5, 11), None),
        ],
    )
    def test_windows(self, due, expected):
        assert reminder_kind(_invoice(due), TODAY, lead_days=3, overdue_max_days=30) is expected

    @pytest.mark.parametrize(
        "status", [InvoiceStatus.DRAFT, InvoiceStatus.PAID, InvoiceStatus.CANCELLED]
    )
    def test_closed_and_draft_invoices_skipped(self, status):
        invoice = _invoice(TODAY, status=status)
        assert reminder_kind(invoice, TODAY, 3, 30) is None

    def test_settled_balance_skipped(self):
        invoice = _invoice(TODAY, status=InvoiceStatus.PARTIAL, amount_due=Decimal("0.00"))
        assert reminder_kind(invoice, TODAY, 3, 30) is None

    def test_partial_with_balance_reminded(self):
        invoice = _invoice(TODAY, status=InvoiceStatus.PARTIAL)
        assert reminder_kind(invoice, TODAY, 3, 30) is ReminderKind.DUE_SOON


class TestReminderMessage:

    def test_overdue_message_counts_days(self):
        invoice = _invoice(date(2024, 6, 5))
        subject, body = reminder_message(invoice, ReminderKind.OVERDUE, TODAY)
        assert subject == "Overdue: invoice INV-00007"
        assert "USD 80.00" in body
        assert "5 day(s) overdue" in body

    def test_due_soon_message(self):
        invoice = replace(_invoice(date(2024, 6, 12)), invoice_number=None)
        subject, _ = reminder_message(invoice, ReminderKind.DUE_SOON, TODAY)
        assert str(invoice.id) in subject
        assert "2024-06-12" in subject
