"""
Recurring Domain Models (``billing_modules.recurring.models``).

Responsibility
--------------
Frozen dataclass definition of a recurring invoice template: the invoice
shape to reproduce plus its schedule (frequency, start, optional end and
the next run date).

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Line items and
the customer snapshot are the invoicing module's types.

Invariants enforced
-------------------
* ``next_run_date`` is ``None`` only when the template is completed.
* ``invoices_generated`` counts invoices produced from this template and
  only ever grows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from billing_modules.invoicing.models import CustomerSnapshot, DiscountType, LineItem


class Frequency(Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class TemplateStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class RecurringTemplate:
    """
    A schedule that produces invoices.

    ``start_date`` is the first run date; every later run date is derived
    from the previous one by ``frequency``.
    """
    id: UUID
    organization_id: UUID
    template_name: str
    frequency: Frequency
    start_date: date
    status: TemplateStatus = TemplateStatus.ACTIVE
    end_date: date | None = None
    next_run_date: date | None = None
    contact_id: UUID | None = None
    business_id: UUID | None = None
    customer: CustomerSnapshot = field(default_factory=CustomerSnapshot)
    items: tuple[LineItem, ...] = ()
    payment_terms: int = 30
    currency: str = "USD"
    tax_rate: Decimal = Decimal("0")
    discount_type: DiscountType = DiscountType.FIXED
    discount_value: Decimal = Decimal("0")
    notes: str | None = None
    terms_and_conditions: str | None = None
    auto_send: bool = False
    last_generated_at: datetime | None = None
    invoices_generated: int = 0
    source_invoice_id: UUID | None = None
    version: int = 0

    @property
    def is_completed(self) -> bool:
        return self.status is TemplateStatus.COMPLETED
