"""
Estimates Module Service -- orchestrates estimate operations.

Same shape as ``InvoiceService``: load the row scoped to the organization,
call the pure workflow or conversion function, write back, commit.

Conversion creates the invoice through an ``InvoiceService`` that shares
this session and transaction.  A second conversion of the same estimate
raises ``AlreadyConvertedError``; the unique ``source_estimate_id`` column
guarantees it under concurrency.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from billing_config import BillingSettings, get_active_settings
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.dates import add_days
from billing_kernel.exceptions import AlreadyConvertedError, ValidationError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.sequence_service import SequenceService
from billing_modules._delivery import deliver_document
from billing_modules._persistence import check_version, finish, load_document
from billing_modules.estimates.conversion import convert_to_invoice
from billing_modules.estimates.models import Estimate, EstimateStatus
from billing_modules.estimates.orm import EstimateModel
from billing_modules.estimates.workflows import (
    accept_estimate,
    check_delete,
    check_send,
    decline_estimate,
    expire_estimate,
    recalculate,
    resend_estimate,
    revise_draft,
    send_estimate,
)
from billing_modules.invoicing.calculator import coerce_amount, coerce_discount_type
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    Invoice,
    LineItem,
    number_items,
)
from billing_modules.invoicing.orm import InvoiceModel
from billing_modules.invoicing.service import InvoiceService
from billing_services.collaborators import ContactDirectory, DocumentMailer

logger = get_logger("modules.estimates.service")


@dataclass(frozen=True)
class EstimateSendResult:
    estimate: Estimate
    email_sent: bool
    email_error: str | None = None


class EstimateService:
    """Orchestrates estimate drafting, sending, decisions, expiry and conversion."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: BillingSettings | None = None,
        contacts: ContactDirectory | None = None,
        mailer: DocumentMailer | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or get_active_settings()
        self._contacts = contacts
        self._mailer = mailer
        self._auto_commit = auto_commit
        self._sequences = SequenceService(session)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_estimate(self, organization_id: UUID, estimate_id: UUID) -> Estimate:
        return load_document(
            self._session, EstimateModel, organization_id, estimate_id, "estimate",
            for_update=False,
        ).to_dto()

    def list_estimates(
        self,
        organization_id: UUID,
        status: EstimateStatus | str | None = None,
        contact_id: UUID | None = None,
    ) -> list[Estimate]:
        stmt = select(EstimateModel).where(EstimateModel.organization_id == organization_id)
        if status is not None:
            value = status.value if isinstance(status, EstimateStatus) else status
            stmt = stmt.where(EstimateModel.status == value)
        if contact_id is not None:
            stmt = stmt.where(EstimateModel.contact_id == contact_id)
        stmt = stmt.order_by(EstimateModel.issue_date.desc(), EstimateModel.estimate_number.desc())
        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    def converted_invoice(self, organization_id: UUID, estimate_id: UUID) -> Invoice | None:
        """The invoice created from this estimate, if any."""
        row = self._session.execute(
            select(InvoiceModel).where(
                InvoiceModel.organization_id == organization_id,
                InvoiceModel.source_estimate_id == estimate_id,
            )
        ).scalar_one_or_none()
        return row.to_dto() if row is not None else None

    # =========================================================================
    # Drafts
    # =========================================================================

    def create_estimate(
        self,
        organization_id: UUID,
        *,
        items: Sequence[LineItem],
        contact_id: UUID | None = None,
        business_id: UUID | None = None,
        customer: CustomerSnapshot | dict | None = None,
        issue_date: date | None = None,
        valid_until: date | None = None,
        payment_terms: int | None = None,
        currency: str | None = None,
        tax_rate: Decimal | int | str = Decimal("0"),
        discount_type: Any = None,
        discount_value: Decimal | int | str = Decimal("0"),
        notes: str | None = None,
        terms_and_conditions: str | None = None,
    ) -> Estimate:
        """
        Create a draft estimate.

        ``valid_until`` defaults to ``issue_date + estimate_validity_days``.
        """
        if customer is None:
            customer = CustomerSnapshot()
        elif isinstance(customer, dict):
            customer = CustomerSnapshot(**customer)
        issued = issue_date or self._clock.today()
        until = valid_until or add_days(issued, self._settings.estimate_validity_days)
        if until < issued:
            raise ValidationError("valid_until", "valid until must not be before the issue date")
        estimate = recalculate(Estimate(
            id=uuid4(),
            organization_id=organization_id,
            issue_date=issued,
            valid_until=until,
            contact_id=contact_id,
            business_id=business_id,
            customer=customer,
            payment_terms=(
                self._settings.default_payment_terms_days
                if payment_terms is None
                else payment_terms
            ),
            currency=currency or self._settings.default_currency,
            tax_rate=coerce_amount("tax_rate", tax_rate),
            discount_type=coerce_discount_type(discount_type),
            discount_value=coerce_amount("discount_value", discount_value),
            items=number_items(items),
            notes=notes,
            terms_and_conditions=terms_and_conditions,
        ))
        try:
            if self._settings.assign_number_on_create:
                estimate = replace(
                    estimate, estimate_number=self._next_number(organization_id)
                )
            row = EstimateModel.from_dto(estimate)
            self._session.add(row)
            finish(self._session, "estimate", row.id, commit=self._auto_commit)
            created = row.to_dto()
            logger.info("estimate_created", extra={
                "organization_id": str(organization_id),
                "estimate_id": str(created.id),
                "estimate_number": created.estimate_number,
                "total": str(created.total),
                "valid_until": created.valid_until,
            })
            return created
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise

    def update_draft(
        self,
        organization_id: UUID,
        estimate_id: UUID,
        expected_version: int | None = None,
        **changes: Any,
    ) -> Estimate:
        try:
            row = self._load(organization_id, estimate_id, expected_version)
            if "items" in changes:
                changes["items"] = number_items(
                    changes["items"], keep_ids=[item.id for item in row.items]
                )
            revised = revise_draft(row.to_dto(), changes)
            row.update_from_dto(revised)
            finish(self._session, "estimate", estimate_id, commit=self._auto_commit)
            logger.info("estimate_draft_updated", extra={
                "estimate_id": str(estimate_id),
                "fields": sorted(changes),
                "total": str(revised.total),
            })
            return row.to_dto()
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise

    def delete_draft(
        self,
        organization_id: UUID,
        estimate_id: UUID,
        expected_version: int | None = None,
    ) -> None:
        """Delete a draft estimate and its line items.  Sent estimates are kept."""
        try:
            row = self._load(organization_id, estimate_id, expected_version)
            check_delete(row.to_dto())
            number = row.estimate_number
            self._session.delete(row)
            finish(self._session, "estimate", estimate_id, commit=self._auto_commit)
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise
        logger.info("estimate_draft_deleted", extra={
            "estimate_id": str(estimate_id),
            "estimate_number": number,
        })

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def send(
        self,
        organization_id: UUID,
        estimate_id: UUID,
        subject: str | None = None,
        message: str | None = None,
        cc_emails: Sequence[str] = (),
        expected_version: int | None = None,
    ) -> EstimateSendResult:
        """
        Send a draft (freezing its snapshot and numbering it) or resend a
        sent estimate.  E-mail failures do not undo the send.
        """
        with LogContext.bind(organization_id=organization_id, document_id=estimate_id):
            try:
                row = self._load(organization_id, estimate_id, expected_version)
                estimate = row.to_dto()
                if estimate.status is EstimateStatus.DRAFT:
                    customer = self._resolve_customer(estimate)
                    check_send(estimate, customer)
                    updated = send_estimate(
                        estimate,
                        customer=customer,
                        estimate_number=(
                            estimate.estimate_number or self._next_number(organization_id)
                        ),
                        now=self._clock.now(),
                    )
                    event = "estimate_sent"
                else:
                    updated = resend_estimate(estimate)
                    event = "estimate_resent"
                row.update_from_dto(updated)
                finish(self._session, "estimate", estimate_id, commit=self._auto_commit)
                sent = row.to_dto()
                logger.info(event, extra={
                    "estimate_id": str(estimate_id),
                    "estimate_number": sent.estimate_number,
                    "total": str(sent.total),
                })
            except Exception:
                if self._auto_commit:
                    self._session.rollback()
                raise

            delivery = deliver_document(
                self._mailer,
                sent,
                document_type="estimate",
                subject=subject or f"Estimate {sent.estimate_number}",
                message=message or (
                    f"Please find estimate {sent.estimate_number} for "
                    f"{sent.currency} {sent.total}, valid until "
                    f"{sent.valid_until.isoformat()}."
                ),
                cc_emails=cc_emails,
            )
            return EstimateSendResult(
                estimate=sent,
                email_sent=delivery.email_sent,
                email_error=delivery.email_error,
            )

    def accept(
        self,
        organization_id: UUID,
        estimate_id: UUID,
        expected_version: int | None = None,
    ) -> Estimate:
        return self._apply(
            organization_id, estimate_id, expected_version,
            lambda estimate: accept_estimate(estimate, self._clock.now()),
            "estimate_accepted",
        )

    def decline(
        self,
        organization_id: UUID,
        estimate_id: UUID,
        expected_version: int | None = None,
    ) -> Estimate:
        return self._apply(
            organization_id, estimate_id, expected_version,
            lambda estimate: decline_estimate(estimate, self._clock.now()),
            "estimate_declined",
        )

    def expire_due(
        self,
        as_of: date | None = None,
        organization_id: UUID | None = None,
    ) -> list[Estimate]:
        """
        Mark sent estimates with ``valid_until < as_of`` as expired.

        Scans every organization unless ``organization_id`` is given.
        All expirations of one call commit together.
        """
        as_of = as_of or self._clock.today()
        stmt = select(EstimateModel).where(
            EstimateModel.status == EstimateStatus.SENT.value,
            EstimateModel.valid_until < as_of,
        )
        if organization_id is not None:
            stmt = stmt.where(EstimateModel.organization_id == organization_id)
        stmt = stmt.order_by(EstimateModel.valid_until, EstimateModel.id).with_for_update()

        try:
            rows = list(self._session.execute(stmt).scalars())
            if not rows:
                if self._auto_commit:
                    self._session.rollback()
                return []
            now = self._clock.now()
            for row in rows:
                row.update_from_dto(expire_estimate(row.to_dto(), as_of, now))
            finish(self._session, "estimate", rows[0].id, commit=self._auto_commit)
            expired = [row.to_dto() for row in rows]
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise

        for estimate in expired:
            logger.info("estimate_expired", extra={
                "organization_id": str(estimate.organization_id),
                "estimate_id": str(estimate.id),
                "estimate_number": estimate.estimate_number,
                "valid_until": estimate.valid_until,
            })
        return expired

    # =========================================================================
    # Conversion
    # =========================================================================

    def convert_to_invoice(self, organization_id: UUID, estimate_id: UUID) -> Invoice:
        """
        Create a draft invoice from a sent or accepted estimate.

        Raises:
            IllegalTransitionError: the estimate is draft, declined or expired.
            AlreadyConvertedError: an invoice already exists for it.
        """
        with LogContext.bind(organization_id=organization_id, document_id=estimate_id):
            invoices = InvoiceService(
                self._session,
                clock=self._clock,
                settings=self._settings,
                contacts=self._contacts,
                auto_commit=False,
            )
            try:
                row = self._load(organization_id, estimate_id)
                existing = self.converted_invoice(organization_id, estimate_id)
                if existing is not None:
                    raise AlreadyConvertedError(str(estimate_id), str(existing.id))
                invoice = convert_to_invoice(row.to_dto(), issue_date=self._clock.today())
                try:
                    created = invoices.create_invoice(invoice)
                except IntegrityError as e:
                    if not self._auto_commit:
                        raise
                    self._session.rollback()
                    winner = self.converted_invoice(organization_id, estimate_id)
                    if winner is None:
                        raise
                    raise AlreadyConvertedError(str(estimate_id), str(winner.id)) from e
                finish(self._session, "invoice", created.id, commit=self._auto_commit)
            except Exception:
                if self._auto_commit:
                    self._session.rollback()
                raise

            logger.info("estimate_converted", extra={
                "estimate_id": str(estimate_id),
                "invoice_id": str(created.id),
                "invoice_number": created.invoice_number,
                "total": str(created.total),
            })
            return created

    # =========================================================================
    # Internal
    # =========================================================================

    def _load(
        self,
        organization_id: UUID,
        estimate_id: UUID,
        expected_version: int | None = None,
    ) -> EstimateModel:
        row = load_document(self._session, EstimateModel, organization_id, estimate_id, "estimate")
        check_version(row, expected_version, "estimate")
        return row

    def _next_number(self, organization_id: UUID) -> str:
        return self._sequences.next_number(
            organization_id,
            SequenceService.ESTIMATE,
            self._settings.estimate_prefix,
            self._settings.number_padding,
        )

    def _resolve_customer(self, estimate: Estimate) -> CustomerSnapshot:
        if estimate.contact_id is None or self._contacts is None:
            return estimate.customer
        contact = self._contacts.get_contact(estimate.organization_id, estimate.contact_id)
        if contact is None:
            return estimate.customer
        return estimate.customer.filled_from(
            name=contact.name,
            email=contact.email,
            phone=contact.phone,
            address=contact.address,
        )

    def _apply(self, organization_id, estimate_id, expected_version, transition, event):
        try:
            row = self._load(organization_id, estimate_id, expected_version)
            updated = transition(row.to_dto())
            row.update_from_dto(updated)
            finish(self._session, "estimate", estimate_id, commit=self._auto_commit)
            logger.info(event, extra={"estimate_id": str(estimate_id)})
            return row.to_dto()
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise
