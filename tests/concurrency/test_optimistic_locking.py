"""
Optimistic locking on invoices, estimates and templates.

Two writers that read the same version cannot both win: the second one
either fails the ``expected_version`` check up front or matches zero rows
on UPDATE, and in both cases sees ``OptimisticLockError`` with nothing
written.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from billing_kernel.exceptions import OptimisticLockError
from billing_modules._persistence import finish, load_document
from billing_modules.invoicing.models import InvoiceStatus
from billing_modules.invoicing.orm import InvoiceModel


@pytest.fixture
def draft(invoice_service, org_id, customer, consulting_items):
    return invoice_service.create_draft(org_id, items=consulting_items, customer=customer)


def _bump_version(session, invoice_id) -> None:
    """Simulate another writer committing a change to the invoice row."""
    table = InvoiceModel.__table__
    session.connection().execute(
        table.update().where(table.c.id == invoice_id).values(version=table.c.version + 1)
    )


class TestExpectedVersion:

    def test_stale_expected_version_rejected(self, invoice_service, org_id, draft, captured_logs):
        invoice_service.update_draft(org_id, draft.id, expected_version=draft.version, notes="first")
        with pytest.raises(OptimisticLockError) as exc_info:
            invoice_service.update_draft(
                org_id, draft.id, expected_version=draft.version, notes="second",
            )
        assert exc_info.value.entity_type == "invoice"
        assert invoice_service.get_invoice(org_id, draft.id).notes == "first"
        assert any(r["message"] == "optimistic_lock_conflict" for r in captured_logs())

    def test_every_write_bumps_version(self, invoice_service, org_id, draft):
        sent = invoice_service.send(org_id, draft.id, expected_version=draft.version).invoice
        assert sent.version == draft.version + 1
        paid, _ = invoice_service.record_payment(
            org_id, draft.id, Decimal("150.00"), expected_version=sent.version,
        )
        assert paid.version == sent.version + 1
        assert paid.status is InvoiceStatus.PAID

    def test_stale_payment_leaves_invoice_unpaid(self, invoice_service, org_id, draft):
        sent = invoice_service.send(org_id, draft.id).invoice
        invoice_service.record_payment(org_id, draft.id, Decimal("50.00"))
        with pytest.raises(OptimisticLockError):
            invoice_service.record_payment(
                org_id, draft.id, Decimal("100.00"), expected_version=sent.version,
            )
        stored = invoice_service.get_invoice(org_id, draft.id)
        assert stored.amount_paid == Decimal("50.00")
        assert stored.status is InvoiceStatus.PARTIAL

    def test_template_versions(self, recurring_service, org_id, clock, consulting_items):
        template = recurring_service.create_template(
            org_id, template_name="Versioned", frequency="monthly",
            start_date=clock.today(), items=consulting_items,
        )
        recurring_service.pause(org_id, template.id, expected_version=template.version)
        with pytest.raises(OptimisticLockError):
            recurring_service.resume(org_id, template.id, expected_version=template.version)

    def test_estimate_versions(self, estimate_service, org_id, customer, consulting_items):
        estimate = estimate_service.create_estimate(org_id, items=consulting_items, customer=customer)
        estimate_service.send(org_id, estimate.id, expected_version=estimate.version)
        with pytest.raises(OptimisticLockError):
            estimate_service.update_draft(
                org_id, estimate.id, expected_version=estimate.version, notes="late",
            )


class TestConcurrentUpdate:

    def test_update_after_concurrent_commit_fails(self, session, org_id, draft):
        row = load_document(session, InvoiceModel, org_id, draft.id, "invoice")
        _bump_version(session, draft.id)
        row.notes = "lost update"
        with pytest.raises(OptimisticLockError):
            finish(session, "invoice", draft.id, commit=False)

        session.expire_all()
        reloaded = load_document(session, InvoiceModel, org_id, draft.id, "invoice")
        assert reloaded.notes is None
