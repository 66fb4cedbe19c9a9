"""
Recurring ORM Models (``billing_modules.recurring.orm``).

Responsibility
--------------
SQLAlchemy persistence for recurring templates and their line items.

Architecture position
---------------------
**Modules layer** -- persistence.  Reuses the line-item column set and the
child synchronisation helper from the invoicing ORM.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, Date, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from billing_kernel.db.base import TrackedBase, VersionedBase
from billing_kernel.db.types import RateColumn
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    DiscountType,
    LineItem,
    normalize_address,
)
from billing_modules.invoicing.orm import LineItemColumns, address_to_json, sync_children
from billing_modules.recurring.models import Frequency, RecurringTemplate, TemplateStatus


class RecurringTemplateItemModel(LineItemColumns, TrackedBase):
    """Line item of a recurring template; copied onto every generated invoice."""

    __tablename__ = "billing_recurring_template_items"

    __table_args__ = (
        Index("idx_billing_recurring_template_items_template_id", "template_id"),
    )

    template_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_recurring_templates.id"), nullable=False
    )

    template: Mapped[RecurringTemplateModel] = relationship(back_populates="items")

    @classmethod
    def from_dto(cls, dto: LineItem, organization_id: UUID) -> RecurringTemplateItemModel:
        model = cls(id=dto.id, organization_id=organization_id)
        model.update_from_dto(dto)
        return model


class RecurringTemplateModel(VersionedBase):
    """
    ORM model for recurring invoice templates.

    Maps to the ``RecurringTemplate`` frozen dataclass.  The scheduler
    query runs on ``(status, next_run_date)``.
    """

    __tablename__ = "billing_recurring_templates"

    __table_args__ = (
        Index("idx_billing_recurring_templates_due", "status", "next_run_date"),
    )

    template_name: Mapped[str] = mapped_column(String(255), nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_run_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    contact_id: Mapped[UUID | None] = mapped_column(nullable=True)
    business_id: Mapped[UUID | None] = mapped_column(nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    customer_address: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    payment_terms: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    tax_rate: Mapped[Decimal] = mapped_column(RateColumn, nullable=False)
    discount_type: Mapped[str] = mapped_column(String(10), nullable=False, default="fixed")
    discount_value: Mapped[Decimal] = mapped_column(RateColumn, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    terms_and_conditions: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_send: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    last_generated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    invoices_generated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_invoice_id: Mapped[UUID | None] = mapped_column(nullable=True)

    items: Mapped[list[RecurringTemplateItemModel]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="RecurringTemplateItemModel.sort_order",
        lazy="selectin",
    )

    def to_dto(self) -> RecurringTemplate:
        return RecurringTemplate(
            id=self.id,
            organization_id=self.organization_id,
            template_name=self.template_name,
            frequency=Frequency(self.frequency),
            status=TemplateStatus(self.status),
            start_date=self.start_date,
            end_date=self.end_date,
            next_run_date=self.next_run_date,
            contact_id=self.contact_id,
            business_id=self.business_id,
            customer=CustomerSnapshot(
                name=self.customer_name,
                email=self.customer_email,
                phone=self.customer_phone,
                address=normalize_address(self.customer_address),
            ),
            items=tuple(item.to_dto() for item in self.items),
            payment_terms=self.payment_terms,
            currency=self.currency,
            tax_rate=self.tax_rate,
            discount_type=DiscountType(self.discount_type),
            discount_value=self.discount_value,
            notes=self.notes,
            terms_and_conditions=self.terms_and_conditions,
            auto_send=self.auto_send,
            last_generated_at=self.last_generated_at,
            invoices_generated=self.invoices_generated,
            source_invoice_id=self.source_invoice_id,
            version=self.version,
        )

    @classmethod
    def from_dto(cls, dto: RecurringTemplate) -> RecurringTemplateModel:
        model = cls(id=dto.id, organization_id=dto.organization_id)
        model.update_from_dto(dto)
        return model

    def update_from_dto(self, dto: RecurringTemplate) -> None:
        scalars: dict[str, Any] = {
            "template_name": dto.template_name,
            "frequency": dto.frequency.value,
            "status": dto.status.value,
            "start_date": dto.start_date,
            "end_date": dto.end_date,
            "next_run_date": dto.next_run_date,
            "contact_id": dto.contact_id,
            "business_id": dto.business_id,
            "customer_name": dto.customer.name,
            "customer_email": dto.customer.email,
            "customer_phone": dto.customer.phone,
            "customer_address": address_to_json(dto.customer),
            "payment_terms": dto.payment_terms,
            "currency": dto.currency,
            "tax_rate": dto.tax_rate,
            "discount_type": dto.discount_type.value,
            "discount_value": dto.discount_value,
            "notes": dto.notes,
            "terms_and_conditions": dto.terms_and_conditions,
            "auto_send": dto.auto_send,
            "last_generated_at": dto.last_generated_at,
            "invoices_generated": dto.invoices_generated,
            "source_invoice_id": dto.source_invoice_id,
        }
        for name, value in scalars.items():
            if getattr(self, name, None) != value:
                setattr(self, name, value)

        sync_children(
            self.items,
            sorted(dto.items, key=lambda i: i.sort_order),
            lambda item: RecurringTemplateItemModel.from_dto(item, self.organization_id),
            lambda row, item: row.update_from_dto(item),
        )

    def __repr__(self) -> str:
        return f"<RecurringTemplateModel {self.template_name!r} [{self.status}]>"
