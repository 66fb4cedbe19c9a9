"""
Invoice generation from a recurring template.

Pure: builds the new draft invoice and the advanced template.  The caller
persists both in one transaction.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID, uuid4

from billing_kernel.exceptions import ValidationError
from billing_modules.invoicing.calculator import due_date_for
from billing_modules.invoicing.models import Invoice, number_items
from billing_modules.invoicing.workflows import recalculate
from billing_modules.recurring.models import RecurringTemplate
from billing_modules.recurring.schedule import TEMPLATE_WORKFLOW, advance_template


def build_invoice(
    template: RecurringTemplate,
    *,
    run_date: date,
    issue_date: date,
    invoice_id: UUID | None = None,
) -> Invoice:
    """
    A draft invoice reproducing ``template`` for ``run_date``.

    Line items are copied with fresh ids.  The invoice is dated
    ``issue_date`` (the generation day, not the run date) and is due
    ``payment_terms`` days later.
    """
    items = number_items(template.items)
    invoice = Invoice(
        id=invoice_id or uuid4(),
        organization_id=template.organization_id,
        issue_date=issue_date,
        due_date=due_date_for(issue_date, template.payment_terms),
        contact_id=template.contact_id,
        business_id=template.business_id,
        customer=template.customer,
        payment_terms=template.payment_terms,
        currency=template.currency,
        tax_rate=template.tax_rate,
        discount_type=template.discount_type,
        discount_value=template.discount_value,
        items=items,
        notes=template.notes,
        terms_and_conditions=template.terms_and_conditions,
        recurring_template_id=template.id,
        recurring_run_date=run_date,
    )
    return recalculate(invoice)


def generate_invoice(
    template: RecurringTemplate,
    *,
    issue_date: date,
    generated_at: datetime,
    invoice_id: UUID | None = None,
) -> tuple[Invoice, RecurringTemplate]:
    """
    Produce the invoice for the template's current ``next_run_date``.

    Returns the draft invoice and the template advanced past that run date
    (or completed).

    Raises:
        IllegalTransitionError: the template is completed.
        ValidationError: the template has no run date or no valid items.
    """
    TEMPLATE_WORKFLOW.require(
        template.status.value,
        "generate",
        document_type="recurring_template",
        document_id=str(template.id),
    )
    if template.next_run_date is None:
        raise ValidationError("next_run_date", "template has no pending run date")
    if not any(item.is_valid for item in template.items):
        raise ValidationError(
            "has_valid_line_items", "template must have at least one named line item"
        )
    run_date = template.next_run_date
    invoice = build_invoice(
        template, run_date=run_date, issue_date=issue_date, invoice_id=invoice_id
    )
    return invoice, advance_template(template, run_date, generated_at)
