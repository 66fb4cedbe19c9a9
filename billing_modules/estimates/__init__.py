"""
Estimates Module.

Quotes with the invoice's commercial shape, their lifecycle and their
conversion into invoices.
"""

from billing_modules.estimates.conversion import convert_to_invoice
from billing_modules.estimates.models import Estimate, EstimateStatus
from billing_modules.estimates.workflows import ESTIMATE_WORKFLOW, is_expired

__all__ = [
    "ESTIMATE_WORKFLOW",
    "Estimate",
    "EstimateStatus",
    "convert_to_invoice",
    "is_expired",
]
