"""
Money/LineItem Calculator (``billing_modules.invoicing.calculator``).

Responsibility
--------------
Turns line items + a flat tax rate + a discount into subtotal, tax,
discount and total.  Shared by invoices, estimates and recurring templates.

Architecture position
---------------------
**Modules layer** -- pure functions, ZERO I/O.

Invariants enforced
-------------------
* ``subtotal = Σ quantity × unit_price`` over items whose trimmed name is
  non-empty; other items contribute nothing.
* ``tax_amount = subtotal × tax_rate / 100``.
* ``discount_amount`` is ``discount_value`` (fixed) or
  ``subtotal × discount_value / 100`` (percent), capped at
  ``subtotal + tax_amount`` so ``total`` is never negative.
* Arithmetic runs on integer cents; each derived figure is rounded half-up
  once, so recomputation is idempotent and never drifts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable

from billing_kernel.domain.dates import add_days
from billing_kernel.domain.money import (
    ZERO,
    from_minor_units,
    percent_of_minor,
    to_decimal,
    to_minor_units,
)
from billing_kernel.exceptions import ValidationError
from billing_modules.invoicing.models import DiscountType, LineItem


@dataclass(frozen=True)
class Totals:
    """Derived monetary figures of a document."""
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    total: Decimal = ZERO


def valid_items(items: Iterable[LineItem]) -> tuple[LineItem, ...]:
    """Items that count toward totals."""
    return tuple(item for item in items if item.is_valid)


def coerce_discount_type(value: DiscountType | str | None) -> DiscountType:
    """Accept the enum or its value; ``None`` means a fixed discount."""
    if value is None:
        return DiscountType.FIXED
    if isinstance(value, DiscountType):
        return value
    try:
        return DiscountType(value)
    except ValueError as e:
        raise ValidationError("discount_type", f"unknown discount type {value!r}") from e


def coerce_amount(guard: str, value: Decimal | int | str) -> Decimal:
    """``to_decimal`` that reports bad input as a ``ValidationError`` on ``guard``."""
    try:
        return to_decimal(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(guard, str(e)) from e


def compute_totals(
    items: Iterable[LineItem],
    tax_rate: Decimal | int | str = Decimal("0"),
    discount_type: DiscountType | str | None = DiscountType.FIXED,
    discount_value: Decimal | int | str = Decimal("0"),
) -> Totals:
    """
    Compute document totals.

    Zero (or zero valid) items yield all-zero totals.

    Raises:
        ValidationError: tax rate outside 0-100 or not a number, negative or
            non-numeric discount value, or unknown discount type.
    """
    rate = coerce_amount("tax_rate", tax_rate)
    if not Decimal(0) <= rate <= Decimal(100):
        raise ValidationError("tax_rate", "tax rate must be between 0 and 100")
    discount = coerce_amount("discount_value", discount_value)
    if discount < 0:
        raise ValidationError("discount_value", "discount must not be negative")
    kind = coerce_discount_type(discount_type)

    subtotal = sum(
        (to_minor_units(item.unit_price) * item.quantity for item in valid_items(items)),
        0,
    )
    tax = percent_of_minor(subtotal, rate)

    if kind is DiscountType.PERCENT:
        raw_discount = percent_of_minor(subtotal, discount)
    else:
        raw_discount = to_minor_units(discount)
    discount_minor = min(raw_discount, subtotal + tax)

    return Totals(
        subtotal=from_minor_units(subtotal),
        tax_amount=from_minor_units(tax),
        discount_amount=from_minor_units(discount_minor),
        total=from_minor_units(subtotal + tax - discount_minor),
    )


def amount_due_for(total: Decimal, amount_paid: Decimal) -> Decimal:
    """``max(0, total - amount_paid)`` in cents."""
    due = to_minor_units(total) - to_minor_units(amount_paid)
    return from_minor_units(max(0, due))


def due_date_for(issue_date: date, payment_terms: int) -> date:
    """Issue date plus payment terms (0 = due on receipt)."""
    if payment_terms < 0:
        raise ValidationError("payment_terms", "payment terms must not be negative")
    return add_days(issue_date, payment_terms)
