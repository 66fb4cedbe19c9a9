"""
Invoice Workflow (``billing_modules.invoicing.workflows``).

State machine for the invoice lifecycle plus the pure transition functions
that apply each action's side effects.

States: draft, sent, viewed, partial, paid, cancelled, refunded.
``overdue`` is a read-time projection (``display_status``) and is never
stored.  cancelled and refunded are terminal.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Any

from billing_kernel.domain.workflow import Guard, Transition, Workflow
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger
from billing_modules.invoicing.calculator import (
    amount_due_for,
    coerce_amount,
    coerce_discount_type,
    compute_totals,
    due_date_for,
)
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    Invoice,
    InvoiceStatus,
)

logger = get_logger("modules.invoicing.workflows")

OVERDUE = "overdue"


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

HAS_VALID_ITEMS = Guard(
    name="has_valid_line_items",
    description="At least one line item has a non-empty name",
)

VALID_ITEM_QUANTITIES = Guard(
    name="valid_line_item_quantities",
    description="Every valid line item has quantity >= 1",
)

RECIPIENT_RESOLVABLE = Guard(
    name="recipient_resolvable",
    description="A customer email is known (manual or from the contact)",
)

PAYMENT_LEAVES_BALANCE = Guard(
    name="payment_leaves_balance",
    description="amount_paid stays below total",
)

PAYMENT_SETTLES_BALANCE = Guard(
    name="payment_settles_balance",
    description="amount_paid reaches total",
)


# -----------------------------------------------------------------------------
# Invoice Workflow
# -----------------------------------------------------------------------------

_OPEN = ("sent", "viewed", "partial")

INVOICE_WORKFLOW = Workflow(
    name="billing_invoice",
    description="Customer invoice lifecycle",
    initial_state="draft",
    states=tuple(s.value for s in InvoiceStatus),
    transitions=(
        Transition("draft", None, action="edit"),
        Transition("draft", None, action="delete"),
        Transition("draft", "sent", action="send", guard=HAS_VALID_ITEMS),
        *(Transition(s, None, action="resend", guard=RECIPIENT_RESOLVABLE) for s in _OPEN),
        Transition("sent", "viewed", action="mark_viewed"),
        *(
            Transition(s, "partial", action="apply_payment", guard=PAYMENT_LEAVES_BALANCE)
            for s in ("draft", *_OPEN)
        ),
        *(
            Transition(s, "paid", action="apply_payment", guard=PAYMENT_SETTLES_BALANCE)
            for s in ("draft", *_OPEN)
        ),
        *(Transition(s, "cancelled", action="cancel") for s in ("draft", *_OPEN)),
        *(Transition(s, "refunded", action="refund") for s in (*_OPEN, "paid")),
    ),
    terminal_states=("cancelled", "refunded"),
)


def display_status(status: InvoiceStatus | str, due_date: date | None, today: date) -> str:
    """
    Status as shown to users.

    Open invoices (sent, viewed, partial) past their due date read as
    ``overdue``; every other status is returned unchanged.
    """
    value = status.value if isinstance(status, InvoiceStatus) else status
    if value in _OPEN and due_date is not None and due_date < today:
        return OVERDUE
    return value


def is_overdue(invoice: Invoice, today: date) -> bool:
    return display_status(invoice.status, invoice.due_date, today) == OVERDUE


# -----------------------------------------------------------------------------
# Pure transitions
# -----------------------------------------------------------------------------


def recalculate(invoice: Invoice) -> Invoice:
    """Recompute totals and amount due from items, tax and discount."""
    totals = compute_totals(
        invoice.items,
        invoice.tax_rate,
        invoice.discount_type,
        invoice.discount_value,
    )
    return replace(
        invoice,
        subtotal=totals.subtotal,
        tax_amount=totals.tax_amount,
        discount_amount=totals.discount_amount,
        total=totals.total,
        amount_due=amount_due_for(totals.total, invoice.amount_paid),
    )


_DRAFT_FIELDS = frozenset({
    "contact_id",
    "business_id",
    "customer",
    "issue_date",
    "due_date",
    "payment_terms",
    "currency",
    "tax_rate",
    "discount_type",
    "discount_value",
    "items",
    "notes",
    "terms_and_conditions",
})


def revise_draft(invoice: Invoice, changes: dict[str, Any]) -> Invoice:
    """
    Apply edits to a draft invoice.

    ``items`` replaces the whole line-item sequence.  An explicit
    ``due_date`` marks the due date as overridden; otherwise it follows
    ``issue_date + payment_terms``.

    Raises:
        IllegalTransitionError: the invoice is no longer a draft.
        ValidationError: unknown field or invalid value.
    """
    INVOICE_WORKFLOW.require(
        invoice.status.value,
        "edit",
        document_type="invoice",
        document_id=str(invoice.id),
    )

    unknown = set(changes) - _DRAFT_FIELDS
    if unknown:
        raise ValidationError("draft_fields", f"cannot edit {', '.join(sorted(unknown))}")

    values = dict(changes)
    if "items" in values:
        values["items"] = tuple(values["items"])
    if "discount_type" in values:
        values["discount_type"] = coerce_discount_type(values["discount_type"])
    if "customer" in values and not isinstance(values["customer"], CustomerSnapshot):
        values["customer"] = CustomerSnapshot(**values["customer"])
    for name in ("tax_rate", "discount_value"):
        if name in values:
            values[name] = coerce_amount(name, values[name])

    if "due_date" in values:
        overridden = values["due_date"] is not None
        values["due_date_overridden"] = overridden
        if not overridden:
            del values["due_date"]
    revised = replace(invoice, **values)

    if not revised.due_date_overridden:
        revised = replace(
            revised, due_date=due_date_for(revised.issue_date, revised.payment_terms)
        )
    return recalculate(revised)


def check_sendable(document) -> None:
    """
    Evaluate the send guards that depend only on the line items of an
    invoice or estimate.

    Raises:
        ValidationError: naming the first failing guard.
    """
    valid = document.valid_items
    if not valid:
        raise ValidationError(
            HAS_VALID_ITEMS.name, "document must have at least one named line item"
        )
    if any(item.quantity < 1 for item in valid):
        raise ValidationError(
            VALID_ITEM_QUANTITIES.name, "every line item must have a quantity of at least 1"
        )


def check_send(invoice: Invoice, customer: CustomerSnapshot) -> None:
    """
    Every precondition of draft -> sent, for the resolved ``customer``.

    Raises:
        IllegalTransitionError: the invoice is not a draft.
        ValidationError: a send guard failed.
    """
    INVOICE_WORKFLOW.require(
        invoice.status.value,
        "send",
        document_type="invoice",
        document_id=str(invoice.id),
    )
    check_sendable(invoice)
    if not customer.email:
        raise ValidationError(
            RECIPIENT_RESOLVABLE.name, "customer email is required to send an invoice"
        )


def check_delete(invoice: Invoice) -> None:
    """
    Only drafts may be deleted; an issued invoice is kept for the record
    and is cancelled or refunded instead.

    Raises:
        IllegalTransitionError: the invoice is no longer a draft.
    """
    INVOICE_WORKFLOW.require(
        invoice.status.value,
        "delete",
        document_type="invoice",
        document_id=str(invoice.id),
    )


def send_invoice(
    invoice: Invoice,
    *,
    customer: CustomerSnapshot,
    invoice_number: str,
    now: datetime,
) -> Invoice:
    """
    draft -> sent.

    Freezes ``customer`` as the stored snapshot, keeps an existing invoice
    number, and stamps ``sent_at``/``last_sent_at``.

    Raises:
        IllegalTransitionError: the invoice is not a draft.
        ValidationError: a send guard failed.
    """
    check_send(invoice, customer)

    sent = recalculate(replace(
        invoice,
        status=InvoiceStatus.SENT,
        customer=customer,
        invoice_number=invoice.invoice_number or invoice_number,
        sent_at=now,
        last_sent_at=now,
    ))
    logger.info("invoice_send_applied", extra={
        "invoice_id": str(invoice.id),
        "invoice_number": sent.invoice_number,
        "total": str(sent.total),
    })
    return sent


def resend_invoice(invoice: Invoice, now: datetime) -> Invoice:
    """Resend an open invoice: status, ``sent_at`` and payments are kept."""
    INVOICE_WORKFLOW.require(
        invoice.status.value,
        "resend",
        document_type="invoice",
        document_id=str(invoice.id),
    )
    if not invoice.customer.email:
        raise ValidationError(
            RECIPIENT_RESOLVABLE.name, "customer email is required to resend an invoice"
        )
    return replace(invoice, last_sent_at=now)


def mark_viewed(invoice: Invoice, now: datetime) -> Invoice:
    INVOICE_WORKFLOW.require(
        invoice.status.value,
        "mark_viewed",
        document_type="invoice",
        document_id=str(invoice.id),
    )
    return replace(invoice, status=InvoiceStatus.VIEWED, viewed_at=now)


def cancel_invoice(invoice: Invoice, now: datetime) -> Invoice:
    """Any non-paid open state -> cancelled (terminal)."""
    INVOICE_WORKFLOW.require(
        invoice.status.value,
        "cancel",
        document_type="invoice",
        document_id=str(invoice.id),
    )
    return replace(invoice, status=InvoiceStatus.CANCELLED, cancelled_at=now)


def refund_invoice(invoice: Invoice, now: datetime) -> Invoice:
    """Issued invoice -> refunded (terminal).  Payment records are kept."""
    INVOICE_WORKFLOW.require(
        invoice.status.value,
        "refund",
        document_type="invoice",
        document_id=str(invoice.id),
    )
    return replace(invoice, status=InvoiceStatus.REFUNDED, refunded_at=now)
