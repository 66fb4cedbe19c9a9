"""
Tests for the Invoicing Module Service.

Validates:
- Drafts: totals, numbering, product prefill, whole-list item replacement,
  deletion of drafts only
- Send: snapshot frozen from manual fields plus the contact, numbering,
  mailer failure does not roll back the send, rejected sends keep numbers
- Payments: partial/full, overpayment, cancelled invoices, gateway charge,
  payment links and idempotent webhook payments, also under a race
- Payment listing: newest first, filters, pages
- Organization scoping of every lookup
"""

from __future__ import annotations

import inspect
from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from billing_config import BillingSettings
from billing_kernel.exceptions import (
    DocumentNotFoundError,
    ExternalServiceError,
    IllegalTransitionError,
    OptimisticLockError,
    PaymentConflictError,
    ValidationError,
)
from billing_modules.invoicing.models import (
    InvoiceStatus,
    LineItem,
    PaymentMethod,
    StructuredAddress,
)
from billing_modules.invoicing.service import InvoiceService

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def draft(invoice_service, org_id, customer, consulting_items):
    """A persisted draft for 150.00 (two named items, one blank row)."""
    return invoice_service.create_draft(org_id, items=consulting_items, customer=customer)


@pytest.fixture
def sent(invoice_service, org_id, draft):
    return invoice_service.send(org_id, draft.id).invoice


# =============================================================================
# Structural Tests
# =============================================================================


class TestInvoiceServiceStructure:
    """Verify InvoiceService follows the module service pattern."""

    def test_constructor_signature(self):
        params = list(inspect.signature(InvoiceService.__init__).parameters)
        for name in ("session", "clock", "settings", "contacts", "gateway", "mailer"):
            assert name in params

    def test_has_public_methods(self):
        for name in (
            "create_draft", "update_draft", "send", "resend", "record_payment",
            "charge_invoice", "create_payment_link", "record_gateway_payment",
            "cancel", "refund", "mark_viewed", "list_invoices",
            "delete_draft", "list_payments",
        ):
            assert callable(getattr(InvoiceService, name))


# =============================================================================
# Drafts
# =============================================================================


class TestDrafts:

    def test_create_computes_totals_and_number(self, draft, clock):
        assert draft.status is InvoiceStatus.DRAFT
        assert draft.invoice_number == "INV-00001"
        assert draft.subtotal == Decimal("150.00")
        assert draft.total == Decimal("150.00")
        assert draft.amount_due == Decimal("150.00")
        assert draft.issue_date == clock.today()
        assert draft.due_date == date(2024, 2, 14)
        assert len(draft.items) == 3

    def test_numbers_are_sequential(self, invoice_service, org_id, draft, consulting_items):
        second = invoice_service.create_draft(org_id, items=consulting_items)
        assert second.invoice_number == "INV-00002"

    def test_numbering_is_per_organization(self, invoice_service, draft, consulting_items):
        other = invoice_service.create_draft(uuid4(), items=consulting_items)
        assert other.invoice_number == "INV-00001"

    def test_update_replaces_items(self, invoice_service, org_id, draft):
        updated = invoice_service.update_draft(
            org_id, draft.id,
            items=[LineItem(name="Audit", quantity=3, unit_price=Decimal("20.00"))],
            tax_rate=Decimal("5"),
        )
        assert [item.name for item in updated.items] == ["Audit"]
        assert updated.subtotal == Decimal("60.00")
        assert updated.total == Decimal("63.00")
        assert invoice_service.get_invoice(org_id, draft.id).items == updated.items

    def test_same_items_build_independent_drafts(
        self, invoice_service, org_id, draft, consulting_items,
    ):
        second = invoice_service.create_draft(org_id, items=consulting_items)
        assert second.total == draft.total
        assert {i.id for i in second.items}.isdisjoint({i.id for i in draft.items})

    def test_update_keeps_own_item_rows(self, invoice_service, org_id, draft):
        edited = [replace(item, quantity=item.quantity + 1) for item in draft.items]
        updated = invoice_service.update_draft(org_id, draft.id, items=edited)
        assert [i.id for i in updated.items] == [i.id for i in draft.items]
        assert updated.subtotal == Decimal("250.00")

    def test_update_with_items_of_another_invoice(self, invoice_service, org_id, draft):
        other = invoice_service.create_draft(
            org_id, items=[LineItem(name="Hosting", unit_price=Decimal("9.00"))],
        )
        updated = invoice_service.update_draft(org_id, draft.id, items=other.items)
        assert updated.items[0].id != other.items[0].id
        assert invoice_service.get_invoice(org_id, other.id).items == other.items

    def test_delete_draft(self, invoice_service, org_id, draft, captured_logs):
        invoice_service.delete_draft(org_id, draft.id)
        with pytest.raises(DocumentNotFoundError):
            invoice_service.get_invoice(org_id, draft.id)
        assert invoice_service.list_invoices(org_id) == []

        deleted = [r for r in captured_logs() if r["message"] == "invoice_draft_deleted"]
        assert deleted[0]["invoice_number"] == "INV-00001"

    def test_deleted_number_is_not_reused(
        self, invoice_service, org_id, draft, consulting_items,
    ):
        invoice_service.delete_draft(org_id, draft.id)
        second = invoice_service.create_draft(org_id, items=consulting_items)
        assert second.invoice_number == "INV-00002"

    def test_delete_sent_invoice_is_illegal(self, invoice_service, org_id, sent):
        with pytest.raises(IllegalTransitionError):
            invoice_service.delete_draft(org_id, sent.id)
        assert invoice_service.get_invoice(org_id, sent.id).status is InvoiceStatus.SENT

    def test_delete_with_stale_version(self, invoice_service, org_id, draft):
        invoice_service.update_draft(org_id, draft.id, notes="revised")
        with pytest.raises(OptimisticLockError):
            invoice_service.delete_draft(org_id, draft.id, expected_version=draft.version)
        assert invoice_service.get_invoice(org_id, draft.id).notes == "revised"

    def test_delete_other_organization(self, invoice_service, draft):
        with pytest.raises(DocumentNotFoundError):
            invoice_service.delete_draft(uuid4(), draft.id)

    def test_update_sent_invoice_is_illegal(self, invoice_service, org_id, sent):
        with pytest.raises(IllegalTransitionError):
            invoice_service.update_draft(org_id, sent.id, notes="too late")

    def test_line_item_from_product(self, invoice_service, org_id, products):
        product = products.add(name="Widget", price=Decimal("12.50"), description="Blue")
        item = invoice_service.line_item_from_product(org_id, product.id, quantity=4)
        assert item.name == "Widget"
        assert item.unit_price == Decimal("12.50")
        assert item.product_id == product.id
        assert item.line_total == Decimal("50.00")

    def test_unknown_product(self, invoice_service, org_id):
        with pytest.raises(DocumentNotFoundError):
            invoice_service.line_item_from_product(org_id, uuid4())

    def test_list_filters_by_status(self, invoice_service, org_id, sent, consulting_items):
        invoice_service.create_draft(org_id, items=consulting_items)
        assert [i.id for i in invoice_service.list_invoices(org_id, status="sent")] == [sent.id]
        assert len(invoice_service.list_invoices(org_id)) == 2


# =============================================================================
# Sending
# =============================================================================


class TestSend:

    def test_snapshot_merges_manual_fields_and_contact(
        self, invoice_service, org_id, contacts, consulting_items, mailer,
    ):
        contact = contacts.add(
            name="Contact Co",
            email="billing@contact.example",
            phone="555-0100",
            address={"street": "1 Main St", "city": "Springfield"},
        )
        draft = invoice_service.create_draft(
            org_id, items=consulting_items, contact_id=contact.id,
            customer={"name": "Manual Name"},
        )
        result = invoice_service.send(org_id, draft.id)

        assert result.email_sent
        invoice = result.invoice
        assert invoice.status is InvoiceStatus.SENT
        assert invoice.customer.name == "Manual Name"
        assert invoice.customer.email == "billing@contact.example"
        assert invoice.customer.address == StructuredAddress(street="1 Main St", city="Springfield")
        assert invoice.sent_at is not None
        assert mailer.sent[0][1] == "Invoice INV-00001"

    def test_contact_edits_do_not_change_sent_invoice(
        self, invoice_service, org_id, contacts, consulting_items,
    ):
        contact = contacts.add(name="Old Name", email="old@example.com")
        draft = invoice_service.create_draft(org_id, items=consulting_items, contact_id=contact.id)
        invoice_service.send(org_id, draft.id)
        contacts.add(id=contact.id, name="New Name", email="new@example.com")

        resent = invoice_service.resend(org_id, draft.id).invoice
        assert resent.customer.name == "Old Name"
        assert resent.customer.email == "old@example.com"

    def test_mailer_failure_keeps_send(self, invoice_service, org_id, draft, mailer, captured_logs):
        mailer.raise_with = RuntimeError("smtp down")
        result = invoice_service.send(org_id, draft.id)
        assert not result.email_sent
        assert result.email_error == "smtp down"
        assert invoice_service.get_invoice(org_id, draft.id).status is InvoiceStatus.SENT
        assert any(r["message"] == "invoice_email_failed" for r in captured_logs())

    def test_send_without_email_stays_draft(self, invoice_service, org_id, consulting_items):
        draft = invoice_service.create_draft(org_id, items=consulting_items)
        with pytest.raises(ValidationError) as exc_info:
            invoice_service.send(org_id, draft.id)
        assert exc_info.value.guard == "recipient_resolvable"
        assert invoice_service.get_invoice(org_id, draft.id).status is InvoiceStatus.DRAFT

    def test_rejected_send_does_not_consume_number(
        self, session, clock, contacts, mailer, org_id, consulting_items,
    ):
        service = InvoiceService(
            session, clock=clock, contacts=contacts, mailer=mailer,
            settings=BillingSettings(assign_number_on_create=False),
        )
        draft = service.create_draft(org_id, items=consulting_items)
        assert draft.invoice_number is None
        with pytest.raises(ValidationError):
            service.send(org_id, draft.id)

        service.update_draft(org_id, draft.id, customer={"email": "ada@example.com"})
        sent = service.send(org_id, draft.id).invoice
        assert sent.invoice_number == "INV-00001"

    def test_send_without_valid_items(self, invoice_service, org_id, customer):
        draft = invoice_service.create_draft(
            org_id, items=[LineItem(name=" ", unit_price=Decimal("5.00"))], customer=customer,
        )
        with pytest.raises(ValidationError) as exc_info:
            invoice_service.send(org_id, draft.id)
        assert exc_info.value.guard == "has_valid_line_items"

    def test_resend_draft_is_illegal(self, invoice_service, org_id, draft):
        with pytest.raises(IllegalTransitionError):
            invoice_service.resend(org_id, draft.id)

    def test_resend_partial_keeps_status(self, invoice_service, org_id, sent, mailer):
        invoice_service.record_payment(org_id, sent.id, Decimal("50.00"))
        result = invoice_service.resend(org_id, sent.id, subject="Friendly reminder")
        assert result.invoice.status is InvoiceStatus.PARTIAL
        assert result.invoice.amount_paid == Decimal("50.00")
        assert mailer.sent[-1][1] == "Friendly reminder"

    def test_mark_viewed_once(self, invoice_service, org_id, sent, clock):
        viewed = invoice_service.mark_viewed(org_id, sent.id)
        assert viewed.status is InvoiceStatus.VIEWED
        first_view = viewed.viewed_at
        clock.advance(3600)
        assert invoice_service.mark_viewed(org_id, sent.id).viewed_at == first_view

    def test_overdue_is_displayed_not_stored(self, invoice_service, org_id, sent, clock):
        clock.set_date(date(2024, 2, 15))
        invoice = invoice_service.get_invoice(org_id, sent.id)
        assert invoice_service.display_status(invoice) == "overdue"
        assert invoice.status is InvoiceStatus.SENT


# =============================================================================
# Payments
# =============================================================================


class TestPayments:

    def test_partial_then_full(self, invoice_service, org_id, sent):
        partial, _ = invoice_service.record_payment(org_id, sent.id, Decimal("50.00"), "cash")
        assert partial.status is InvoiceStatus.PARTIAL
        assert partial.amount_due == Decimal("100.00")

        paid, record = invoice_service.record_payment(
            org_id, sent.id, Decimal("100.00"), PaymentMethod.BANK_TRANSFER, note="wire",
        )
        assert paid.status is InvoiceStatus.PAID
        assert paid.amount_due == Decimal("0.00")
        assert paid.paid_at is not None
        assert record.note == "wire"

        stored = invoice_service.get_invoice(org_id, sent.id)
        assert [p.amount for p in stored.payments] == [Decimal("50.00"), Decimal("100.00")]

    def test_overpayment_is_flagged(self, invoice_service, org_id, sent):
        paid, record = invoice_service.record_payment(org_id, sent.id, Decimal("175.00"))
        assert paid.status is InvoiceStatus.PAID
        assert paid.amount_due == Decimal("0.00")
        assert paid.overpaid_amount == Decimal("25.00")
        assert record.excess_amount == Decimal("25.00")

    def test_cancelled_invoice_rejects_payment(self, invoice_service, org_id, sent):
        invoice_service.cancel(org_id, sent.id)
        with pytest.raises(PaymentConflictError):
            invoice_service.record_payment(org_id, sent.id, Decimal("10.00"))
        stored = invoice_service.get_invoice(org_id, sent.id)
        assert stored.status is InvoiceStatus.CANCELLED
        assert stored.amount_paid == Decimal("0.00")
        assert stored.payments == ()

    def test_paid_invoice_cannot_be_cancelled(self, invoice_service, org_id, sent):
        invoice_service.record_payment(org_id, sent.id, Decimal("150.00"))
        with pytest.raises(IllegalTransitionError):
            invoice_service.cancel(org_id, sent.id)
        refunded = invoice_service.refund(org_id, sent.id)
        assert refunded.status is InvoiceStatus.REFUNDED
        assert len(refunded.payments) == 1

    def test_gateway_charge(self, invoice_service, org_id, sent, gateway):
        paid, record = invoice_service.charge_invoice(org_id, sent.id)
        assert gateway.charged == [sent.id]
        assert paid.status is InvoiceStatus.PAID
        assert record.method is PaymentMethod.GATEWAY
        assert record.external_transaction_id == "ch_1"

    def test_declined_charge_leaves_invoice(self, invoice_service, org_id, sent, gateway):
        gateway.decline_with = "card_declined"
        with pytest.raises(ExternalServiceError) as exc_info:
            invoice_service.charge_invoice(org_id, sent.id)
        assert exc_info.value.service == "payment_gateway"
        stored = invoice_service.get_invoice(org_id, sent.id)
        assert stored.status is InvoiceStatus.SENT
        assert stored.payments == ()

    def test_gateway_error_is_wrapped(self, invoice_service, org_id, sent, gateway):
        gateway.raise_with = ConnectionError("gateway unreachable")
        with pytest.raises(ExternalServiceError):
            invoice_service.charge_invoice(org_id, sent.id)

    def test_payment_link(self, invoice_service, org_id, sent):
        url = invoice_service.create_payment_link(org_id, sent.id)
        assert str(sent.id) in url
        assert "amount=150.00" in url

    def test_payment_link_for_paid_invoice(self, invoice_service, org_id, sent):
        invoice_service.record_payment(org_id, sent.id, Decimal("150.00"))
        with pytest.raises(PaymentConflictError):
            invoice_service.create_payment_link(org_id, sent.id)

    def test_webhook_payment_is_idempotent(self, invoice_service, org_id, sent):
        first, record = invoice_service.record_gateway_payment(
            org_id, sent.id, "40.00", external_transaction_id="txn_1",
        )
        again, duplicate = invoice_service.record_gateway_payment(
            org_id, sent.id, "40.00", external_transaction_id="txn_1",
        )
        assert duplicate.id == record.id
        assert again.amount_paid == Decimal("40.00")
        assert len(again.payments) == 1
        assert first.status is InvoiceStatus.PARTIAL

    def test_concurrent_webhook_delivery_returns_first_payment(
        self, invoice_service, org_id, sent, monkeypatch, captured_logs,
    ):
        _, first = invoice_service.record_gateway_payment(
            org_id, sent.id, "40.00", external_transaction_id="txn_1",
        )
        # The second delivery looked before the first one committed
        lookup = InvoiceService._payment_by_transaction
        calls = []

        def late_lookup(service, organization_id, external_transaction_id):
            calls.append(external_transaction_id)
            if len(calls) == 1:
                return None
            return lookup(service, organization_id, external_transaction_id)

        monkeypatch.setattr(InvoiceService, "_payment_by_transaction", late_lookup)
        again, duplicate = invoice_service.record_gateway_payment(
            org_id, sent.id, "40.00", external_transaction_id="txn_1",
        )

        assert calls == ["txn_1", "txn_1"]
        assert duplicate.id == first.id
        assert again.amount_paid == Decimal("40.00")
        assert len(again.payments) == 1
        messages = [r["message"] for r in captured_logs()]
        assert "gateway_payment_duplicate_ignored" in messages

    def test_webhook_payment_needs_transaction_id(self, invoice_service, org_id, sent):
        with pytest.raises(ValidationError):
            invoice_service.record_gateway_payment(org_id, sent.id, "40.00", "")

    def test_no_gateway_configured(self, session, clock, org_id):
        service = InvoiceService(session, clock=clock, settings=BillingSettings())
        with pytest.raises(ExternalServiceError):
            service.charge_invoice(org_id, uuid4())


# =============================================================================
# Payment listing
# =============================================================================


class TestPaymentListing:

    @pytest.fixture
    def two_payments(self, invoice_service, org_id, sent, consulting_items, customer, clock):
        """50.00 cash on INV-00001, then 20.00 by bank transfer on INV-00002."""
        invoice_service.record_payment(org_id, sent.id, Decimal("50.00"), "cash")
        clock.advance(60)
        other = invoice_service.create_draft(
            org_id, items=consulting_items, customer=customer,
        )
        other = invoice_service.send(org_id, other.id).invoice
        invoice_service.record_payment(
            org_id, other.id, Decimal("20.00"), PaymentMethod.BANK_TRANSFER,
        )
        return sent, other

    def test_newest_first_with_invoice_numbers(self, invoice_service, org_id, two_payments):
        entries = invoice_service.list_payments(org_id)
        assert [e.payment.amount for e in entries] == [Decimal("20.00"), Decimal("50.00")]
        assert [e.invoice_number for e in entries] == ["INV-00002", "INV-00001"]

    def test_filter_by_method(self, invoice_service, org_id, two_payments):
        entries = invoice_service.list_payments(org_id, method="cash")
        assert [e.payment.method for e in entries] == [PaymentMethod.CASH]
        entries = invoice_service.list_payments(org_id, method=PaymentMethod.BANK_TRANSFER)
        assert [e.invoice_number for e in entries] == ["INV-00002"]

    def test_filter_by_invoice(self, invoice_service, org_id, two_payments):
        first, _ = two_payments
        entries = invoice_service.list_payments(org_id, invoice_id=first.id)
        assert [e.payment.invoice_id for e in entries] == [first.id]

    def test_pages(self, invoice_service, org_id, two_payments):
        page = invoice_service.list_payments(org_id, limit=1, offset=1)
        assert [e.invoice_number for e in page] == ["INV-00001"]
        assert invoice_service.list_payments(org_id, limit=1, offset=2) == []

    def test_invalid_page(self, invoice_service, org_id):
        with pytest.raises(ValidationError):
            invoice_service.list_payments(org_id, limit=0)
        with pytest.raises(ValidationError):
            invoice_service.list_payments(org_id, offset=-1)

    def test_scoped_to_organization(self, invoice_service, two_payments):
        assert invoice_service.list_payments(uuid4()) == []


# =============================================================================
# Organization scoping
# =============================================================================


class TestOrganizationScoping:

    def test_other_organization_cannot_read(self, invoice_service, draft):
        with pytest.raises(DocumentNotFoundError) as exc_info:
            invoice_service.get_invoice(uuid4(), draft.id)
        assert exc_info.value.document_type == "invoice"

    def test_other_organization_cannot_send(self, invoice_service, draft):
        with pytest.raises(DocumentNotFoundError):
            invoice_service.send(uuid4(), draft.id)

    def test_other_organization_cannot_pay(self, invoice_service, org_id, sent):
        with pytest.raises(DocumentNotFoundError):
            invoice_service.record_payment(uuid4(), sent.id, Decimal("10.00"))
        assert invoice_service.get_invoice(org_id, sent.id).amount_paid == Decimal("0.00")

    def test_listing_is_scoped(self, invoice_service, draft):
        assert invoice_service.list_invoices(uuid4()) == []

