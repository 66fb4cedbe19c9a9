"""
Invoicing ORM Models (``billing_modules.invoicing.orm``).

Responsibility
--------------
SQLAlchemy persistence models for invoices, their line items and their
payment records.  Maps the frozen domain dataclasses from ``models.py`` to
database tables.

Architecture position
---------------------
**Modules layer** -- persistence.  Imports from ``billing_kernel.db`` and
sibling ``models.py``.  MUST NOT be imported by ``billing_kernel``.

Invariants enforced
-------------------
* ``(organization_id, invoice_number)`` is unique.
* ``(recurring_template_id, recurring_run_date)`` is unique, so a template
  run date can never materialise twice.
* ``source_estimate_id`` is unique: one invoice per converted estimate.
* Payment records are append-only (``AppendOnly``); the customer snapshot
  and number are frozen once the invoice is sent (``FrozenOnIssue``).
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, TypeVar
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, VersionedBase
from billing_kernel.db.immutability import AppendOnly, FrozenOnIssue
from billing_kernel.db.types import RateColumn
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    DiscountType,
    Invoice,
    InvoiceStatus,
    LineItem,
    PaymentMethod,
    PaymentRecord,
    normalize_address,
)

_M = TypeVar("_M")


def sync_children(
    current: list[_M],
    dtos: Iterable[Any],
    build: Callable[[Any], _M],
    update: Callable[[_M, Any], None],
) -> None:
    """
    Make ``current`` mirror ``dtos`` by id, in order.

    Rows whose id is still present are updated in place, new ids are built,
    and missing ids are removed (``delete-orphan`` deletes them).
    """
    by_id = {row.id: row for row in current}
    desired: list[_M] = []
    for dto in dtos:
        row = by_id.get(dto.id)
        if row is None:
            row = build(dto)
        else:
            update(row, dto)
        desired.append(row)
    current[:] = desired


def address_to_json(snapshot: CustomerSnapshot) -> dict[str, str] | None:
    return snapshot.address.to_dict() if snapshot.address is not None else None


# ---------------------------------------------------------------------------
# 1. Line items (shared shape)
# ---------------------------------------------------------------------------


class LineItemColumns:
    """Column set shared by invoice, estimate and template line items."""

    product_id: Mapped[UUID | None] = mapped_column(nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    tax_rate: Mapped[Decimal] = mapped_column(RateColumn, nullable=False, default=Decimal("0"))
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def to_dto(self) -> LineItem:
        return LineItem(
            id=self.id,
            product_id=self.product_id,
            name=self.name,
            description=self.description,
            quantity=self.quantity,
            unit_price=self.unit_price,
            tax_rate=self.tax_rate,
            sort_order=self.sort_order,
        )

    def update_from_dto(self, dto: LineItem) -> None:
        self.product_id = dto.product_id
        self.name = dto.name
        self.description = dto.description
        self.quantity = dto.quantity
        self.unit_price = dto.unit_price
        self.tax_rate = dto.tax_rate
        self.sort_order = dto.sort_order


class InvoiceLineItemModel(LineItemColumns, TrackedBase):
    """
    ORM model for invoice line items.

    Owned exclusively by ``InvoiceModel``: created, replaced and destroyed
    with the invoice's edit operation.
    """

    __tablename__ = "billing_invoice_line_items"

    __table_args__ = (
        Index("idx_billing_invoice_line_items_invoice_id", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_invoices.id"), nullable=False
    )

    invoice: Mapped[InvoiceModel] = relationship(back_populates="items")

    @classmethod
    def from_dto(cls, dto: LineItem, organization_id: UUID) -> InvoiceLineItemModel:
        model = cls(id=dto.id, organization_id=organization_id)
        model.update_from_dto(dto)
        return model

    def __repr__(self) -> str:
        return f"<InvoiceLineItemModel {self.name!r} x{self.quantity}>"


# ---------------------------------------------------------------------------
# 2. Payment records
# ---------------------------------------------------------------------------


class InvoicePaymentModel(TrackedBase, AppendOnly):
    """
    ORM model for applied payments.  Append-only.

    Guarantees:
        - external_transaction_id is unique per organization, which makes
          gateway webhook delivery idempotent.
    """

    __tablename__ = "billing_invoice_payments"

    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "external_transaction_id",
            name="uq_billing_invoice_payments_external_txn",
        ),
        Index("idx_billing_invoice_payments_invoice_id", "invoice_id"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_invoices.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    excess_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    invoice: Mapped[InvoiceModel] = relationship(back_populates="payments")

    def to_dto(self) -> PaymentRecord:
        return PaymentRecord(
            id=self.id,
            invoice_id=self.invoice_id,
            amount=self.amount,
            method=PaymentMethod(self.method),
            recorded_at=self.recorded_at,
            note=self.note,
            external_transaction_id=self.external_transaction_id,
            excess_amount=self.excess_amount,
        )

    @classmethod
    def from_dto(cls, dto: PaymentRecord, organization_id: UUID) -> InvoicePaymentModel:
        return cls(
            id=dto.id,
            organization_id=organization_id,
            invoice_id=dto.invoice_id,
            amount=dto.amount,
            method=dto.method.value,
            recorded_at=dto.recorded_at,
            note=dto.note,
            external_transaction_id=dto.external_transaction_id,
            excess_amount=dto.excess_amount,
        )

    def __repr__(self) -> str:
        return f"<InvoicePaymentModel {self.amount} via {self.method}>"


# ---------------------------------------------------------------------------
# 3. Invoices
# ---------------------------------------------------------------------------


class InvoiceModel(VersionedBase, FrozenOnIssue):
    """
    ORM model for invoices.

    Maps to the ``Invoice`` frozen dataclass.  Line items and payments live
    in child tables.  ``version`` is the optimistic-lock counter.
    """

    __tablename__ = "billing_invoices"

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "invoice_number", name="uq_billing_invoices_number"
        ),
        UniqueConstraint(
            "recurring_template_id",
            "recurring_run_date",
            name="uq_billing_invoices_recurring_run",
        ),
        UniqueConstraint("source_estimate_id", name="uq_billing_invoices_source_estimate"),
        Index("idx_billing_invoices_status", "organization_id", "status"),
        Index("idx_billing_invoices_due_date", "due_date"),
        Index("idx_billing_invoices_contact_id", "contact_id"),
    )

    __frozen_fields__ = (
        "invoice_number",
        "customer_name",
        "customer_email",
        "customer_phone",
        "customer_address",
    )

    invoice_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    contact_id: Mapped[UUID | None] = mapped_column(nullable=True)
    business_id: Mapped[UUID | None] = mapped_column(nullable=True)

    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    customer_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    payment_terms: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    due_date_overridden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    tax_rate: Mapped[Decimal] = mapped_column(RateColumn, nullable=False)
    discount_type: Mapped[str] = mapped_column(String(10), nullable=False, default="fixed")
    discount_value: Mapped[Decimal] = mapped_column(RateColumn, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total: Mapped[Decimal] = mapped_column(nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(nullable=False)
    amount_due: Mapped[Decimal] = mapped_column(nullable=False)
    overpaid_amount: Mapped[Decimal] = mapped_column(nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    viewed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    is_recurring_source: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    recurring_template_id: Mapped[UUID | None] = mapped_column(nullable=True)
    recurring_run_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    source_estimate_id: Mapped[UUID | None] = mapped_column(nullable=True)

    items: Mapped[list[InvoiceLineItemModel]] = relationship(
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLineItemModel.sort_order",
        lazy="selectin",
    )
    payments: Mapped[list[InvoicePaymentModel]] = relationship(
        back_populates="invoice",
        cascade="save-update, merge",
        order_by="InvoicePaymentModel.recorded_at",
        lazy="selectin",
    )

    def to_dto(self) -> Invoice:
        """Convert ORM model to frozen dataclass."""
        return Invoice(
            id=self.id,
            organization_id=self.organization_id,
            status=InvoiceStatus(self.status),
            invoice_number=self.invoice_number,
            contact_id=self.contact_id,
            business_id=self.business_id,
            customer=CustomerSnapshot(
                name=self.customer_name,
                email=self.customer_email,
                phone=self.customer_phone,
                address=normalize_address(self.customer_address),
            ),
            issue_date=self.issue_date,
            due_date=self.due_date,
            payment_terms=self.payment_terms,
            due_date_overridden=self.due_date_overridden,
            currency=self.currency,
            tax_rate=self.tax_rate,
            discount_type=DiscountType(self.discount_type),
            discount_value=self.discount_value,
            items=tuple(item.to_dto() for item in self.items),
            subtotal=self.subtotal,
            tax_amount=self.tax_amount,
            discount_amount=self.discount_amount,
            total=self.total,
            amount_paid=self.amount_paid,
            amount_due=self.amount_due,
            overpaid_amount=self.overpaid_amount,
            notes=self.notes,
            terms_and_conditions=self.terms_and_conditions,
            sent_at=self.sent_at,
            last_sent_at=self.last_sent_at,
            viewed_at=self.viewed_at,
            paid_at=self.paid_at,
            cancelled_at=self.cancelled_at,
            refunded_at=self.refunded_at,
            is_recurring_source=self.is_recurring_source,
            recurring_template_id=self.recurring_template_id,
            recurring_run_date=self.recurring_run_date,
            source_estimate_id=self.source_estimate_id,
            payments=tuple(p.to_dto() for p in self.payments),
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto: Invoice) -> InvoiceModel:
        """Create ORM model from frozen dataclass."""
        model = cls(id=dto.id, organization_id=dto.organization_id)
        model.update_from_dto(dto)
        return model

    def update_from_dto(self, dto: Invoice) -> None:
        """Write every mutable field of ``dto`` onto this row."""
        # Unchanged values are skipped so FrozenOnIssue only sees real edits.
        scalars: dict[str, Any] = {
            "status": dto.status.value,
            "invoice_number": dto.invoice_number,
            "contact_id": dto.contact_id,
            "business_id": dto.business_id,
            "customer_name": dto.customer.name,
            "customer_email": dto.customer.email,
            "customer_phone": dto.customer.phone,
            "customer_address": address_to_json(dto.customer),
            "issue_date": dto.issue_date,
            "due_date": dto.due_date,
            "payment_terms": dto.payment_terms,
            "due_date_overridden": dto.due_date_overridden,
            "currency": dto.currency,
            "tax_rate": dto.tax_rate,
            "discount_type": dto.discount_type.value,
            "discount_value": dto.discount_value,
            "subtotal": dto.subtotal,
            "tax_amount": dto.tax_amount,
            "discount_amount": dto.discount_amount,
            "total": dto.total,
            "amount_paid": dto.amount_paid,
            "amount_due": dto.amount_due,
            "overpaid_amount": dto.overpaid_amount,
            "notes": dto.notes,
            "terms_and_conditions": dto.terms_and_conditions,
            "sent_at": dto.sent_at,
            "last_sent_at": dto.last_sent_at,
            "viewed_at": dto.viewed_at,
            "paid_at": dto.paid_at,
            "cancelled_at": dto.cancelled_at,
            "refunded_at": dto.refunded_at,
            "is_recurring_source": dto.is_recurring_source,
            "recurring_template_id": dto.recurring_template_id,
            "recurring_run_date": dto.recurring_run_date,
            "source_estimate_id": dto.source_estimate_id,
        }
        for name, value in scalars.items():
            if getattr(self, name, None) != value:
                setattr(self, name, value)

        sync_children(
            self.items,
            sorted(dto.items, key=lambda i: i.sort_order),
            lambda item: InvoiceLineItemModel.from_dto(item, self.organization_id),
            lambda row, item: row.update_from_dto(item),
        )
        known = {p.id for p in self.payments}
        for payment in dto.payments:
            if payment.id not in known:
                self.payments.append(
                    InvoicePaymentModel.from_dto(payment, self.organization_id)
                )

    def __repr__(self) -> str:
        return f"<InvoiceModel {self.invoice_number or self.id} [{self.status}]>"
