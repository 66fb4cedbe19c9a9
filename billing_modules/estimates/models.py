"""
Estimate Domain Models (``billing_modules.estimates.models``).

An estimate (quote) has the invoice's commercial shape without payments.
Line items and the customer snapshot are the invoicing module's types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from billing_kernel.domain.money import ZERO
from billing_modules.invoicing.models import CustomerSnapshot, DiscountType, LineItem


class EstimateStatus(Enum):
    DRAFT = "draft"
    SENT = "sent"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Estimate:
    """A quote sent to a customer; may later become an invoice."""
    id: UUID
    organization_id: UUID
    issue_date: date
    valid_until: date
    status: EstimateStatus = EstimateStatus.DRAFT
    estimate_number: str | None = None
    contact_id: UUID | None = None
    business_id: UUID | None = None
    customer: CustomerSnapshot = field(default_factory=CustomerSnapshot)
    payment_terms: int = 30
    currency: str = "USD"
    tax_rate: Decimal = Decimal("0")
    discount_type: DiscountType = DiscountType.FIXED
    discount_value: Decimal = Decimal("0")
    items: tuple[LineItem, ...] = ()
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    total: Decimal = ZERO
    notes: str | None = None
    terms_and_conditions: str | None = None
    sent_at: datetime | None = None
    accepted_at: datetime | None = None
    declined_at: datetime | None = None
    expired_at: datetime | None = None
    version: int = 0

    @property
    def valid_items(self) -> tuple[LineItem, ...]:
        return tuple(item for item in self.items if item.is_valid)
