"""
Recurring Module.

Templates that reproduce an invoice on a weekly, monthly, quarterly or
yearly schedule, and the generation of those invoices.
"""

from billing_modules.recurring.generation import build_invoice, generate_invoice
from billing_modules.recurring.models import Frequency, RecurringTemplate, TemplateStatus
from billing_modules.recurring.schedule import (
    TEMPLATE_WORKFLOW,
    advance,
    compute_next_run_date,
    is_due,
)

__all__ = [
    "Frequency",
    "RecurringTemplate",
    "TEMPLATE_WORKFLOW",
    "TemplateStatus",
    "advance",
    "build_invoice",
    "compute_next_run_date",
    "generate_invoice",
    "is_due",
]
