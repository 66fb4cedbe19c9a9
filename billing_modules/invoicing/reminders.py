"""
Payment reminder selection.

Pure: decides whether an invoice is due for a reminder on a given day.
Open invoices with a balance qualify when their due date is within the
lead window, or when they are overdue by no more than the cut-off.
"""

from __future__ import annotations

from datetime import date
from enum import Enum

from billing_kernel.domain.dates import add_days
from billing_modules.invoicing.models import Invoice, InvoiceStatus

_REMINDABLE = (InvoiceStatus.SENT, InvoiceStatus.VIEWED, InvoiceStatus.PARTIAL)


class ReminderKind(Enum):
    DUE_SOON = "due_soon"
    OVERDUE = "overdue"


def reminder_kind(
    invoice: Invoice,
    today: date,
    lead_days: int,
    overdue_max_days: int,
) -> ReminderKind | None:
    """
    ``DUE_SOON`` for ``today <= due_date <= today + lead_days``,
    ``OVERDUE`` for ``today - overdue_max_days < due_date < today``,
    otherwise ``None``.
    """
    if invoice.status not in _REMINDABLE or invoice.amount_due <= 0:
        return None
    if today <= invoice.due_date <= add_days(today, lead_days):
        return ReminderKind.DUE_SOON
    if add_days(today, -overdue_max_days) < invoice.due_date < today:
        return ReminderKind.OVERDUE
    return None


def reminder_message(invoice: Invoice, kind: ReminderKind, today: date) -> tuple[str, str]:
    """Subject and body of a reminder e-mail."""
    number = invoice.invoice_number or str(invoice.id)
    amount = f"{invoice.currency} {invoice.amount_due}"
    if kind is ReminderKind.OVERDUE:
        days = (today - invoice.due_date).days
        return (
            f"Overdue: invoice {number}",
            f"Invoice {number} for {amount} is {days} day(s) overdue.",
        )
    return (
        f"Reminder: invoice {number} is due {invoice.due_date.isoformat()}",
        f"Invoice {number} for {amount} is due on {invoice.due_date.isoformat()}.",
    )
