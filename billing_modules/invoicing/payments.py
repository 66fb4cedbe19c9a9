"""
Payment Application (``billing_modules.invoicing.payments``).

Applies a recorded or gateway-confirmed payment to an invoice.

Overpayment policy: clamp-and-flag.  ``amount_due`` never goes below zero;
the part of a payment beyond the outstanding balance is stored as the
payment record's ``excess_amount`` and accumulated on
``Invoice.overpaid_amount`` so it can be refunded or credited by a person.
It is never silently discarded.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from billing_kernel.domain.money import ZERO, round_money, to_decimal
from billing_kernel.exceptions import PaymentConflictError, ValidationError
from billing_kernel.logging_config import get_logger
from billing_modules.invoicing.calculator import amount_due_for
from billing_modules.invoicing.models import (
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    PaymentRecord,
)
from billing_modules.invoicing.workflows import INVOICE_WORKFLOW

logger = get_logger("modules.invoicing.payments")

_CLOSED = (InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED)


def apply_payment(
    invoice: Invoice,
    amount: Decimal | int | str,
    method: PaymentMethod | str,
    recorded_at: datetime,
    note: str | None = None,
    external_transaction_id: str | None = None,
    payment_id: UUID | None = None,
) -> tuple[Invoice, PaymentRecord]:
    """
    Apply ``amount`` to ``invoice``.

    Postconditions:
        - ``amount_paid`` grows by ``amount``.
        - ``amount_due = max(0, total - amount_paid)``.
        - status is ``paid`` (with ``paid_at``) once the balance is settled,
          otherwise ``partial``.
        - the returned invoice carries the new payment record appended.

    Raises:
        ValidationError: ``amount <= 0`` or unknown method.
        PaymentConflictError: invoice is cancelled, refunded or has nothing due.
    """
    try:
        value = round_money(to_decimal(amount))
    except (TypeError, ValueError) as e:
        raise ValidationError("payment_amount", str(e)) from e
    if value <= 0:
        raise ValidationError("payment_amount", "payment amount must be positive")
    if not isinstance(method, PaymentMethod):
        try:
            method = PaymentMethod(method)
        except ValueError as e:
            raise ValidationError("payment_method", f"unknown payment method {method!r}") from e

    if invoice.status in _CLOSED:
        raise PaymentConflictError(
            invoice_id=str(invoice.id),
            status=invoice.status.value,
            reason="invoice is closed",
        )
    if invoice.amount_due <= 0:
        raise PaymentConflictError(
            invoice_id=str(invoice.id),
            status=invoice.status.value,
            reason="nothing is due",
        )

    excess = max(ZERO, value - invoice.amount_due)
    amount_paid = invoice.amount_paid + value
    amount_due = amount_due_for(invoice.total, amount_paid)
    settled = amount_due == ZERO
    target = InvoiceStatus.PAID if settled else InvoiceStatus.PARTIAL

    INVOICE_WORKFLOW.require(
        invoice.status.value,
        "apply_payment",
        document_type="invoice",
        document_id=str(invoice.id),
        to_state=target.value,
    )

    record = PaymentRecord(
        id=payment_id or uuid4(),
        invoice_id=invoice.id,
        amount=value,
        method=method,
        recorded_at=recorded_at,
        note=note,
        external_transaction_id=external_transaction_id,
        excess_amount=excess,
    )
    updated = replace(
        invoice,
        status=target,
        amount_paid=amount_paid,
        amount_due=amount_due,
        overpaid_amount=invoice.overpaid_amount + excess,
        paid_at=recorded_at if settled else invoice.paid_at,
        payments=(*invoice.payments, record),
    )

    if excess > 0:
        logger.warning("invoice_overpayment_flagged", extra={
            "invoice_id": str(invoice.id),
            "payment_id": str(record.id),
            "amount": str(value),
            "excess_amount": str(excess),
        })
    logger.info("payment_applied", extra={
        "invoice_id": str(invoice.id),
        "payment_id": str(record.id),
        "amount": str(value),
        "method": method.value,
        "status": target.value,
        "amount_due": str(amount_due),
    })
    return updated, record
