"""
Estimate -> invoice conversion.

Pure: returns a new draft invoice built from the estimate.  The estimate is
not modified; the link lives on the invoice (``source_estimate_id``).
"""

from __future__ import annotations

from datetime import date
from uuid import UUID, uuid4

from billing_modules.estimates.models import Estimate
from billing_modules.estimates.workflows import ESTIMATE_WORKFLOW
from billing_modules.invoicing.calculator import due_date_for
from billing_modules.invoicing.models import Invoice, number_items
from billing_modules.invoicing.workflows import recalculate


def convert_to_invoice(
    estimate: Estimate,
    *,
    issue_date: date,
    invoice_id: UUID | None = None,
) -> Invoice:
    """
    Copy snapshot, items, tax and discount into a new draft invoice.

    Line items get fresh ids.  The invoice is dated ``issue_date`` and due
    ``payment_terms`` days later.

    Raises:
        IllegalTransitionError: the estimate is draft, declined or expired.
    """
    ESTIMATE_WORKFLOW.require(
        estimate.status.value,
        "convert",
        document_type="estimate",
        document_id=str(estimate.id),
    )
    invoice = Invoice(
        id=invoice_id or uuid4(),
        organization_id=estimate.organization_id,
        issue_date=issue_date,
        due_date=due_date_for(issue_date, estimate.payment_terms),
        contact_id=estimate.contact_id,
        business_id=estimate.business_id,
        customer=estimate.customer,
        payment_terms=estimate.payment_terms,
        currency=estimate.currency,
        tax_rate=estimate.tax_rate,
        discount_type=estimate.discount_type,
        discount_value=estimate.discount_value,
        items=number_items(estimate.items),
        notes=estimate.notes,
        terms_and_conditions=estimate.terms_and_conditions,
        source_estimate_id=estimate.id,
    )
    return recalculate(invoice)
