"""
Invoicing Domain Models (``billing_modules.invoicing.models``).

Responsibility
--------------
Frozen dataclass value objects for the nouns of invoicing: line items,
customer snapshots (with their address variants), invoices and payment
records.

Architecture position
---------------------
**Modules layer** -- pure data definitions with ZERO I/O.  Consumed by the
calculator, the invoice workflow, payment application and
``InvoiceService``.  Reused by estimates and recurring templates, which
carry the same line-item and snapshot shapes.

Invariants enforced
-------------------
* All models are ``frozen=True`` (immutable after construction).
* All monetary fields use ``Decimal`` -- NEVER ``float``.
* ``LineItem.unit_price`` is quantised to cents on construction.
* Addresses are normalised at the boundary into ``PlainAddress`` or
  ``StructuredAddress``; the core never sees a loosely-typed record.

Failure modes
-------------
* Invalid line item values raise ``ValidationError`` naming the field.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Iterable, Union
from uuid import UUID, uuid4

from billing_kernel.domain.money import ZERO, round_money, to_decimal
from billing_kernel.exceptions import ValidationError


class InvoiceStatus(Enum):
    """Persisted invoice lifecycle states.  ``overdue`` is derived, never stored."""
    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    PARTIAL = "partial"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class DiscountType(Enum):
    FIXED = "fixed"
    PERCENT = "percent"


class PaymentMethod(Enum):
    MANUAL = "manual"
    CASH = "cash"
    CHECK = "check"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    GATEWAY = "gateway"
    OTHER = "other"


# -----------------------------------------------------------------------------
# Addresses
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PlainAddress:
    """Free-text address exactly as the user typed it."""
    kind: ClassVar[str] = "plain"

    text: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "text": self.text}

    def format(self) -> str:
        return self.text


@dataclass(frozen=True)
class StructuredAddress:
    """Address split into postal fields."""
    kind: ClassVar[str] = "structured"

    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": self.kind,
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "country": self.country,
        }

    def format(self) -> str:
        locality = " ".join(p for p in (self.state, self.postal_code) if p)
        parts = [self.street, self.city, locality, self.country]
        return ", ".join(p for p in parts if p)


Address = Union[PlainAddress, StructuredAddress]

_STRUCTURED_ALIASES = {
    "street": "street",
    "line1": "street",
    "address1": "street",
    "city": "city",
    "state": "state",
    "region": "state",
    "zip": "postal_code",
    "postal_code": "postal_code",
    "country": "country",
}


def normalize_address(value: Any) -> Address | None:
    """
    Normalise a loosely-typed address into ``PlainAddress | StructuredAddress``.

    Accepts ``None``, an existing address variant, a string, or a mapping --
    either a tagged mapping produced by ``to_dict()`` or a contact-style
    record (``street``/``city``/``state``/``zip``/``country``).  Blank input
    yields ``None``.

    Raises:
        ValidationError: for any other type, or an unknown ``kind`` tag.
    """
    if value is None:
        return None
    if isinstance(value, (PlainAddress, StructuredAddress)):
        return value
    if isinstance(value, str):
        text = value.strip()
        return PlainAddress(text=text) if text else None
    if isinstance(value, dict):
        kind = value.get("kind")
        if kind == PlainAddress.kind:
            return normalize_address(value.get("text") or "")
        if kind not in (None, StructuredAddress.kind):
            raise ValidationError("address_shape", f"unknown address kind {kind!r}")
        parts: dict[str, str] = {}
        for key, raw in value.items():
            target = _STRUCTURED_ALIASES.get(key)
            if target is None or raw is None:
                continue
            text = str(raw).strip()
            if text and target not in parts:
                parts[target] = text
        return StructuredAddress(**parts) if parts else None
    raise ValidationError(
        "address_shape", f"address must be a string or mapping, got {type(value).__name__}"
    )


# -----------------------------------------------------------------------------
# Customer snapshot
# -----------------------------------------------------------------------------


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class CustomerSnapshot:
    """
    Customer contact data stored on a document.

    Captured from the contact directory when the document is sent so that
    later contact edits never alter an issued document.
    """
    name: str | None = None
    email: str | None = None
    phone: str | None = None
    address: Address | None = None

    def __post_init__(self):
        object.__setattr__(self, "name", _clean(self.name))
        object.__setattr__(self, "email", _clean(self.email))
        object.__setattr__(self, "phone", _clean(self.phone))
        object.__setattr__(self, "address", normalize_address(self.address))

    def filled_from(
        self,
        name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        address: Any = None,
    ) -> CustomerSnapshot:
        """Return a snapshot where blank fields take the given values."""
        return CustomerSnapshot(
            name=self.name or name,
            email=self.email or email,
            phone=self.phone or phone,
            address=self.address or address,
        )


# -----------------------------------------------------------------------------
# Line items
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class LineItem:
    """
    One billable row.

    Items with a blank name are kept for display but excluded from totals.
    ``tax_rate`` is informational; the document-level rate governs tax.
    """
    name: str
    quantity: int = 1
    unit_price: Decimal = ZERO
    description: str = ""
    tax_rate: Decimal = Decimal("0")
    product_id: UUID | None = None
    sort_order: int = 0
    id: UUID = field(default_factory=uuid4)

    def __post_init__(self):
        if self.name is None:
            object.__setattr__(self, "name", "")
        if isinstance(self.quantity, bool) or not isinstance(self.quantity, int):
            raise ValidationError("line_item_quantity", "quantity must be an integer")
        if self.quantity < 0:
            raise ValidationError("line_item_quantity", "quantity must not be negative")
        try:
            price = to_decimal(self.unit_price)
            rate = to_decimal(self.tax_rate)
        except (TypeError, ValueError) as e:
            raise ValidationError("line_item_amount", str(e)) from e
        if price < 0:
            raise ValidationError("line_item_unit_price", "unit price must not be negative")
        if not Decimal(0) <= rate <= Decimal(100):
            raise ValidationError("line_item_tax_rate", "tax rate must be between 0 and 100")
        object.__setattr__(self, "unit_price", round_money(price))
        object.__setattr__(self, "tax_rate", rate)
        object.__setattr__(self, "description", self.description or "")

    @property
    def is_valid(self) -> bool:
        """Counts toward totals (name is non-empty after trimming)."""
        return bool(self.name.strip())

    @property
    def line_total(self) -> Decimal:
        return round_money(self.unit_price * self.quantity)


# -----------------------------------------------------------------------------
# Payments
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentRecord:
    """
    An applied payment.  Append-only.

    ``excess_amount`` is the part of ``amount`` beyond what was still due;
    it is flagged, not discarded.
    """
    id: UUID
    invoice_id: UUID
    amount: Decimal
    method: PaymentMethod
    recorded_at: datetime
    note: str | None = None
    external_transaction_id: str | None = None
    excess_amount: Decimal = ZERO


# -----------------------------------------------------------------------------
# Invoice
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Invoice:
    """A customer invoice."""
    id: UUID
    organization_id: UUID
    issue_date: date
    due_date: date
    status: InvoiceStatus = InvoiceStatus.DRAFT
    invoice_number: str | None = None
    contact_id: UUID | None = None
    business_id: UUID | None = None
    customer: CustomerSnapshot = field(default_factory=CustomerSnapshot)
    payment_terms: int = 30
    due_date_overridden: bool = False
    currency: str = "USD"
    tax_rate: Decimal = Decimal("0")
    discount_type: DiscountType = DiscountType.FIXED
    discount_value: Decimal = Decimal("0")
    items: tuple[LineItem, ...] = ()
    subtotal: Decimal = ZERO
    tax_amount: Decimal = ZERO
    discount_amount: Decimal = ZERO
    total: Decimal = ZERO
    amount_paid: Decimal = ZERO
    amount_due: Decimal = ZERO
    overpaid_amount: Decimal = ZERO
    notes: str | None = None
    terms_and_conditions: str | None = None
    sent_at: datetime | None = None
    last_sent_at: datetime | None = None
    viewed_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None
    refunded_at: datetime | None = None
    is_recurring_source: bool = False
    recurring_template_id: UUID | None = None
    recurring_run_date: date | None = None
    source_estimate_id: UUID | None = None
    payments: tuple[PaymentRecord, ...] = ()
    version: int = 0

    @property
    def valid_items(self) -> tuple[LineItem, ...]:
        return tuple(item for item in self.items if item.is_valid)


def number_items(items, keep_ids: Iterable[UUID] = ()) -> tuple[LineItem, ...]:
    """
    Prepare ``items`` for one document.

    ``sort_order`` becomes the position.  An item keeps its id only when the
    id is in ``keep_ids`` (rows the document already owns) and appears once;
    every other item gets a fresh id, so two documents never share a line
    item row.
    """
    keep = set(keep_ids)
    numbered: list[LineItem] = []
    for index, item in enumerate(items):
        if item.id in keep:
            keep.discard(item.id)
        else:
            item = replace(item, id=uuid4())
        if item.sort_order != index:
            item = replace(item, sort_order=index)
        numbered.append(item)
    return tuple(numbered)
