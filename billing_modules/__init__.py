"""
Billing Modules.

Thin orchestration layers over the billing kernel.  Each module contains:
- Domain models (the nouns)
- Pure rules (calculator, workflows, schedule, conversion)
- ORM models
- A service owning the transaction boundary

Modules:
- Invoicing: line items, totals, invoice lifecycle, payments
- Recurring: templates and scheduled invoice generation
- Estimates: quotes, acceptance, expiry, conversion to invoices
"""

from billing_modules import estimates, invoicing, recurring

__all__ = ["estimates", "invoicing", "recurring"]
