"""
Estimate ORM Models (``billing_modules.estimates.orm``).

Responsibility
--------------
SQLAlchemy persistence for estimates and their line items.

Invariants enforced
-------------------
* ``(organization_id, estimate_number)`` is unique.
* The customer snapshot and number are frozen once the estimate is sent.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Date, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, VersionedBase
from billing_kernel.db.immutability import FrozenOnIssue
from billing_kernel.db.types import RateColumn
from billing_modules.estimates.models import Estimate, EstimateStatus
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    DiscountType,
    LineItem,
    normalize_address,
)
from billing_modules.invoicing.orm import LineItemColumns, address_to_json, sync_children


class EstimateLineItemModel(LineItemColumns, TrackedBase):
    __tablename__ = "billing_estimate_line_items"

    __table_args__ = (
        Index("idx_billing_estimate_line_items_estimate_id", "estimate_id"),
    )

    estimate_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_estimates.id"), nullable=False
    )

    estimate: Mapped[EstimateModel] = relationship(back_populates="items")

    @classmethod
    def from_dto(cls, dto: LineItem, organization_id: UUID) -> EstimateLineItemModel:
        model = cls(id=dto.id, organization_id=organization_id)
        model.update_from_dto(dto)
        return model


class EstimateModel(VersionedBase, FrozenOnIssue):
    """
    ORM model for estimates.

    Maps to the ``Estimate`` frozen dataclass.  Expiry scans run on
    ``(status, valid_until)``.
    """

    __tablename__ = "billing_estimates"

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "estimate_number", name="uq_billing_estimates_number"
        ),
        Index("idx_billing_estimates_expiry", "status", "valid_until"),
        Index("idx_billing_estimates_contact_id", "contact_id"),
    )

    __frozen_fields__ = (
        "estimate_number",
        "customer_name",
        "customer_email",
        "customer_phone",
        "customer_address",
    )

    estimate_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    contact_id: Mapped[UUID | None] = mapped_column(nullable=True)
    business_id: Mapped[UUID | None] = mapped_column(nullable=True)

    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    customer_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    valid_until: Mapped[date] = mapped_column(Date, nullable=False)
    payment_terms: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    tax_rate: Mapped[Decimal] = mapped_column(RateColumn, nullable=False)
    discount_type: Mapped[str] = mapped_column(String(10), nullable=False, default="fixed")
    discount_value: Mapped[Decimal] = mapped_column(RateColumn, nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total: Mapped[Decimal] = mapped_column(nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(nullable=True)

    items: Mapped[list[EstimateLineItemModel]] = relationship(
        back_populates="estimate",
        cascade="all, delete-orphan",
        order_by="EstimateLineItemModel.sort_order",
        lazy="selectin",
    )

    def to_dto(self) -> Estimate:
        return Estimate(
            id=self.id,
            organization_id=self.organization_id,
            status=EstimateStatus(self.status),
            estimate_number=self.estimate_number,
            contact_id=self.contact_id,
            business_id=self.business_id,
            customer=CustomerSnapshot(
                name=self.customer_name,
                email=self.customer_email,
                phone=self.customer_phone,
                address=normalize_address(self.customer_address),
            ),
            issue_date=self.issue_date,
            valid_until=self.valid_until,
            payment_terms=self.payment_terms,
            currency=self.currency,
            tax_rate=self.tax_rate,
            discount_type=DiscountType(self.discount_type),
            discount_value=self.discount_value,
            items=tuple(item.to_dto() for item in self.items),
            subtotal=self.subtotal,
            tax_amount=self.tax_amount,
            discount_amount=self.discount_amount,
            total=self.total,
            notes=self.notes,
            terms_and_conditions=self.terms_and_conditions,
            sent_at=self.sent_at,
            accepted_at=self.accepted_at,
            declined_at=self.declined_at,
            expired_at=self.expired_at,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto: Estimate) -> EstimateModel:
        model = cls(id=dto.id, organization_id=dto.organization_id)
        model.update_from_dto(dto)
        return model

    def update_from_dto(self, dto: Estimate) -> None:
        scalars: dict[str, Any] = {
            "status": dto.status.value,
            "estimate_number": dto.estimate_number,
            "contact_id": dto.contact_id,
            "business_id": dto.business_id,
            "customer_name": dto.customer.name,
            "customer_email": dto.customer.email,
            "customer_phone": dto.customer.phone,
            "customer_address": address_to_json(dto.customer),
            "issue_date": dto.issue_date,
            "valid_until": dto.valid_until,
            "payment_terms": dto.payment_terms,
            "currency": dto.currency,
            "tax_rate": dto.tax_rate,
            "discount_type": dto.discount_type.value,
            "discount_value": dto.discount_value,
            "subtotal": dto.subtotal,
            "tax_amount": dto.tax_amount,
            "discount_amount": dto.discount_amount,
            "total": dto.total,
            "notes": dto.notes,
            "terms_and_conditions": dto.terms_and_conditions,
            "sent_at": dto.sent_at,
            "accepted_at": dto.accepted_at,
            "declined_at": dto.declined_at,
            "expired_at": dto.expired_at,
        }
        for name, value in scalars.items():
            if getattr(self, name, None) != value:
                setattr(self, name, value)

        sync_children(
            self.items,
            sorted(dto.items, key=lambda i: i.sort_order),
            lambda item: EstimateLineItemModel.from_dto(item, self.organization_id),
            lambda row, item: row.update_from_dto(item),
        )

    def __repr__(self) -> str:
        return f"<EstimateModel {self.estimate_number or self.id} [{self.status}]>"
