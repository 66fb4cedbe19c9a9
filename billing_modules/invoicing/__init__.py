"""
Invoicing Module.

Line items, totals, the invoice lifecycle and payment application.
Estimates and recurring templates reuse the line item, snapshot and
calculator defined here.
"""

from billing_modules.invoicing.calculator import Totals, compute_totals
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    DiscountType,
    Invoice,
    InvoiceStatus,
    LineItem,
    PaymentMethod,
    PaymentRecord,
    PlainAddress,
    StructuredAddress,
    normalize_address,
)
from billing_modules.invoicing.payments import apply_payment
from billing_modules.invoicing.workflows import INVOICE_WORKFLOW, display_status

__all__ = [
    "CustomerSnapshot",
    "DiscountType",
    "INVOICE_WORKFLOW",
    "Invoice",
    "InvoiceStatus",
    "LineItem",
    "PaymentMethod",
    "PaymentRecord",
    "PlainAddress",
    "StructuredAddress",
    "Totals",
    "apply_payment",
    "compute_totals",
    "display_status",
    "normalize_address",
]
