"""
Invoicing Module Service -- orchestrates invoice operations.

Thin glue layer that:
1. Loads the invoice row (scoped to the caller's organization, locked)
2. Converts it to a frozen ``Invoice`` and calls the pure calculator,
   workflow and payment functions
3. Writes the result back and commits
4. Talks to collaborators (contacts, products, gateway, mailer)

All rules live in ``calculator``, ``workflows`` and ``payments``.
This service owns the transaction boundary: it commits on success and rolls
back on failure, unless constructed with ``auto_commit=False`` by another
service that owns the boundary (recurring generation, estimate conversion).

Usage:
    service = InvoiceService(session, clock=clock, mailer=mailer)
    invoice = service.create_draft(
        organization_id=org_id,
        items=[LineItem(name="Consulting", quantity=2, unit_price=Decimal("50.00"))],
        customer=CustomerSnapshot(name="Ada", email="ada@example.com"),
    )
    result = service.send(org_id, invoice.id)
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
from billing_kernel.exceptions import (
    DocumentNotFoundError,
    ExternalServiceError,
    PaymentConflictError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.sequence_service import SequenceService
from billing_modules._delivery import deliver_document
from billing_modules._persistence import check_version, finish, load_document
from billing_modules.invoicing.calculator import (
    coerce_amount,
    coerce_discount_type,
    due_date_for,
)
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    Invoice,
    InvoiceStatus,
    LineItem,
    PaymentMethod,
    PaymentRecord,
    number_items,
)
from billing_modules.invoicing.orm import InvoiceModel, InvoicePaymentModel
from billing_modules.invoicing.payments import apply_payment
from billing_modules.invoicing.workflows import (
    INVOICE_WORKFLOW,
    cancel_invoice,
    check_delete,
    check_send,
    display_status,
    mark_viewed,
    recalculate,
    refund_invoice,
    resend_invoice,
    revise_draft,
    send_invoice,
)
from billing_services.collaborators import (
    ContactDirectory,
    DocumentMailer,
    PaymentGateway,
    ProductCatalog,
)

logger = get_logger("modules.invoicing.service")


@dataclass(frozen=True)
class SendResult:
    """
    Outcome of sending an invoice.

    The send transition is committed even when e-mail delivery fails;
    ``email_sent``/``email_error`` report the notification separately.
    """
    invoice: Invoice
    email_sent: bool
    email_error: str | None = None


@dataclass(frozen=True)
class PaymentEntry:
    """A recorded payment with the number of the invoice it was applied to."""
    payment: PaymentRecord
    invoice_number: str | None


class InvoiceService:
    """
    Orchestrates invoice drafting, sending, payments and closing.

    Every operation takes an explicit ``organization_id``; there is no
    ambient organization.  Mutating operations accept ``expected_version``
    to reject writes based on a stale read.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: BillingSettings | None = None,
        contacts: ContactDirectory | None = None,
        products: ProductCatalog | None = None,
        gateway: PaymentGateway | None = None,
        mailer: DocumentMailer | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or get_active_settings()
        self._contacts = contacts
        self._products = products
        self._gateway = gateway
        self._mailer = mailer
        self._auto_commit = auto_commit
        self._sequences = SequenceService(session)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_invoice(self, organization_id: UUID, invoice_id: UUID) -> Invoice:
        return load_document(
            self._session, InvoiceModel, organization_id, invoice_id, "invoice",
            for_update=False,
        ).to_dto()

    def list_invoices(
        self,
        organization_id: UUID,
        status: InvoiceStatus | str | None = None,
        contact_id: UUID | None = None,
    ) -> list[Invoice]:
        """Invoices of one organization, newest issue date first."""
        stmt = select(InvoiceModel).where(InvoiceModel.organization_id == organization_id)
        if status is not None:
            value = status.value if isinstance(status, InvoiceStatus) else status
            stmt = stmt.where(InvoiceModel.status == value)
        if contact_id is not None:
            stmt = stmt.where(InvoiceModel.contact_id == contact_id)
        stmt = stmt.order_by(InvoiceModel.issue_date.desc(), InvoiceModel.invoice_number.desc())
        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    def list_payments(
        self,
        organization_id: UUID,
        method: PaymentMethod | str | None = None,
        invoice_id: UUID | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[PaymentEntry]:
        """
        Payments recorded in one organization, newest first, one page at a
        time.  Each entry carries the invoice number of its invoice.
        """
        if limit < 1 or offset < 0:
            raise ValidationError("page", "limit must be positive and offset not negative")
        stmt = (
            select(InvoicePaymentModel, InvoiceModel.invoice_number)
            .join(InvoiceModel, InvoicePaymentModel.invoice_id == InvoiceModel.id)
            .where(InvoicePaymentModel.organization_id == organization_id)
        )
        if method is not None:
            value = method.value if isinstance(method, PaymentMethod) else method
            stmt = stmt.where(InvoicePaymentModel.method == value)
        if invoice_id is not None:
            stmt = stmt.where(InvoicePaymentModel.invoice_id == invoice_id)
        stmt = (
            stmt.order_by(
                InvoicePaymentModel.recorded_at.desc(),
                InvoicePaymentModel.created_at.desc(),
            )
            .limit(limit)
            .offset(offset)
        )
        return [
            PaymentEntry(payment=payment.to_dto(), invoice_number=number)
            for payment, number in self._session.execute(stmt)
        ]

    def display_status(self, invoice: Invoice) -> str:
        """Status as shown to users today (``overdue`` is derived here)."""
        return display_status(invoice.status, invoice.due_date, self._clock.today())

    # =========================================================================
    # Drafts
    # =========================================================================

    def line_item_from_product(
        self,
        organization_id: UUID,
        product_id: UUID,
        quantity: int = 1,
    ) -> LineItem:
        """Prefill a line item from the product catalog."""
        if self._products is None:
            raise ExternalServiceError("product_catalog", "no product catalog configured")
        product = self._products.get_product(organization_id, product_id)
        if product is None:
            raise DocumentNotFoundError("product", str(product_id))
        return LineItem(
            name=product.name,
            description=product.description,
            quantity=quantity,
            unit_price=product.price,
            tax_rate=product.tax_rate,
            product_id=product.id,
        )

    def build_draft(
        self,
        organization_id: UUID,
        *,
        items: Sequence[LineItem],
        contact_id: UUID | None = None,
        business_id: UUID | None = None,
        customer: CustomerSnapshot | dict | None = None,
        issue_date: date | None = None,
        due_date: date | None = None,
        payment_terms: int | None = None,
        currency: str | None = None,
        tax_rate: Decimal | int | str = Decimal("0"),
        discount_type: Any = None,
        discount_value: Decimal | int | str = Decimal("0"),
        notes: str | None = None,
        terms_and_conditions: str | None = None,
        **links: Any,
    ) -> Invoice:
        """Build (but do not persist) a draft invoice with computed totals."""
        if customer is None:
            customer = CustomerSnapshot()
        elif isinstance(customer, dict):
            customer = CustomerSnapshot(**customer)
        issued = issue_date or self._clock.today()
        terms = (
            self._settings.default_payment_terms_days
            if payment_terms is None
            else payment_terms
        )
        invoice_id = links.pop("invoice_id", None) or uuid4()
        invoice = Invoice(
            id=invoice_id,
            organization_id=organization_id,
            issue_date=issued,
            due_date=due_date or due_date_for(issued, terms),
            due_date_overridden=due_date is not None,
            contact_id=contact_id,
            business_id=business_id,
            customer=customer,
            payment_terms=terms,
            currency=currency or self._settings.default_currency,
            tax_rate=coerce_amount("tax_rate", tax_rate),
            discount_type=coerce_discount_type(discount_type),
            discount_value=coerce_amount("discount_value", discount_value),
            items=number_items(items),
            notes=notes,
            terms_and_conditions=terms_and_conditions,
            **links,
        )
        return recalculate(invoice)

    def create_draft(self, organization_id: UUID, **fields: Any) -> Invoice:
        """
        Create and persist a draft invoice.

        Accepts the keyword arguments of ``build_draft``.
        """
        return self.create_invoice(self.build_draft(organization_id, **fields))

    def create_invoice(self, invoice: Invoice) -> Invoice:
        """
        Persist a prebuilt draft invoice, assigning its number if configured.

        Used directly by recurring generation and estimate conversion.
        """
        try:
            if invoice.invoice_number is None and self._settings.assign_number_on_create:
                invoice = replace(
                    invoice, invoice_number=self._next_number(invoice.organization_id)
                )
            row = InvoiceModel.from_dto(invoice)
            self._session.add(row)
            finish(self._session, "invoice", row.id, commit=self._auto_commit)
            created = row.to_dto()
            logger.info("invoice_created", extra={
                "organization_id": str(created.organization_id),
                "invoice_id": str(created.id),
                "invoice_number": created.invoice_number,
                "total": str(created.total),
                "recurring_template_id": (
                    str(created.recurring_template_id)
                    if created.recurring_template_id else None
                ),
            })
            return created
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise

    def update_draft(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        expected_version: int | None = None,
        **changes: Any,
    ) -> Invoice:
        """
        Edit a draft.  ``items`` replaces all line items atomically and
        totals and due date are recomputed.
        """
        try:
            row = self._load(organization_id, invoice_id, expected_version)
            if "items" in changes:
                changes["items"] = number_items(
                    changes["items"], keep_ids=[item.id for item in row.items]
                )
            revised = revise_draft(row.to_dto(), changes)
            row.update_from_dto(revised)
            finish(self._session, "invoice", invoice_id, commit=self._auto_commit)
            logger.info("invoice_draft_updated", extra={
                "invoice_id": str(invoice_id),
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
        invoice_id: UUID,
        expected_version: int | None = None,
    ) -> None:
        """
        Delete a draft together with its line items.

        Issued invoices are never deleted; cancel or refund them instead.
        The draft's number is not reused.
        """
        try:
            row = self._load(organization_id, invoice_id, expected_version)
            check_delete(row.to_dto())
            number = row.invoice_number
            self._session.delete(row)
            finish(self._session, "invoice", invoice_id, commit=self._auto_commit)
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise
        logger.info("invoice_draft_deleted", extra={
            "invoice_id": str(invoice_id),
            "invoice_number": number,
        })

    # =========================================================================
    # Sending
    # =========================================================================

    def send(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        subject: str | None = None,
        message: str | None = None,
        cc_emails: Sequence[str] = (),
        expected_version: int | None = None,
        notify: bool = True,
    ) -> SendResult:
        """
        Issue the invoice (draft -> sent) or resend an open one.

        A draft is validated, its customer snapshot is frozen (manual fields
        first, blanks filled from the contact directory) and it is numbered.
        Sent, viewed and partial invoices are resent without a status change.
        The state change is committed before e-mail delivery is attempted.
        With ``notify=False`` nothing is delivered; a caller that owns the
        transaction calls ``deliver`` after it commits.
        """
        with LogContext.bind(organization_id=organization_id, document_id=invoice_id):
            try:
                row = self._load(organization_id, invoice_id, expected_version)
                invoice = row.to_dto()
                now = self._clock.now()
                if invoice.status is InvoiceStatus.DRAFT:
                    customer = self._resolve_customer(invoice)
                    # Guards first: a rejected send must not consume a number.
                    check_send(invoice, customer)
                    updated = send_invoice(
                        invoice,
                        customer=customer,
                        invoice_number=(
                            invoice.invoice_number or self._next_number(organization_id)
                        ),
                        now=now,
                    )
                    event = "invoice_sent"
                else:
                    updated = resend_invoice(invoice, now)
                    event = "invoice_resent"
                row.update_from_dto(updated)
                finish(self._session, "invoice", invoice_id, commit=self._auto_commit)
                sent = row.to_dto()
                logger.info(event, extra={
                    "invoice_id": str(invoice_id),
                    "invoice_number": sent.invoice_number,
                    "status": sent.status.value,
                    "amount_due": str(sent.amount_due),
                })
            except Exception:
                if self._auto_commit:
                    self._session.rollback()
                raise

            if not notify:
                return SendResult(invoice=sent, email_sent=False)
            return self.deliver(sent, subject, message, cc_emails)

    def deliver(
        self,
        invoice: Invoice,
        subject: str | None = None,
        message: str | None = None,
        cc_emails: Sequence[str] = (),
    ) -> SendResult:
        """E-mail the invoice.  Failures are reported, never raised."""
        delivery = deliver_document(
            self._mailer,
            invoice,
            document_type="invoice",
            subject=subject or f"Invoice {invoice.invoice_number}",
            message=message or (
                f"Please find invoice {invoice.invoice_number} for "
                f"{invoice.currency} {invoice.amount_due} due {invoice.due_date.isoformat()}."
            ),
            cc_emails=cc_emails,
        )
        return SendResult(
            invoice=invoice,
            email_sent=delivery.email_sent,
            email_error=delivery.email_error,
        )

    def resend(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        subject: str | None = None,
        message: str | None = None,
        cc_emails: Sequence[str] = (),
    ) -> SendResult:
        """Resend an open invoice; drafts must go through ``send``."""
        invoice = self.get_invoice(organization_id, invoice_id)
        INVOICE_WORKFLOW.require(
            invoice.status.value,
            "resend",
            document_type="invoice",
            document_id=str(invoice_id),
        )
        return self.send(organization_id, invoice_id, subject, message, cc_emails)

    def mark_viewed(self, organization_id: UUID, invoice_id: UUID) -> Invoice:
        """Record the first customer view.  Later views change nothing."""
        try:
            row = self._load(organization_id, invoice_id)
            invoice = row.to_dto()
            if not INVOICE_WORKFLOW.can(invoice.status.value, "mark_viewed"):
                logger.debug("invoice_view_ignored", extra={
                    "invoice_id": str(invoice_id),
                    "status": invoice.status.value,
                })
                return invoice
            row.update_from_dto(mark_viewed(invoice, self._clock.now()))
            finish(self._session, "invoice", invoice_id, commit=self._auto_commit)
            logger.info("invoice_viewed", extra={"invoice_id": str(invoice_id)})
            return row.to_dto()
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise

    # =========================================================================
    # Payments
    # =========================================================================

    def record_payment(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        amount: Decimal | int | str,
        method: PaymentMethod | str = PaymentMethod.MANUAL,
        note: str | None = None,
        external_transaction_id: str | None = None,
        expected_version: int | None = None,
    ) -> tuple[Invoice, PaymentRecord]:
        """Apply a manually recorded payment."""
        with LogContext.bind(organization_id=organization_id, document_id=invoice_id):
            try:
                row = self._load(organization_id, invoice_id, expected_version)
                updated, record = apply_payment(
                    row.to_dto(),
                    amount,
                    method,
                    recorded_at=self._clock.now(),
                    note=note,
                    external_transaction_id=external_transaction_id,
                )
                row.update_from_dto(updated)
                finish(self._session, "invoice", invoice_id, commit=self._auto_commit)
                return row.to_dto(), record
            except Exception:
                if self._auto_commit:
                    self._session.rollback()
                raise

    def charge_invoice(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        expected_version: int | None = None,
    ) -> tuple[Invoice, PaymentRecord]:
        """
        Charge the outstanding balance through the payment gateway.

        A declined or failed charge raises ``ExternalServiceError`` and
        leaves the invoice untouched.
        """
        gateway = self._require_gateway()
        with LogContext.bind(organization_id=organization_id, document_id=invoice_id):
            try:
                row = self._load(organization_id, invoice_id, expected_version)
                invoice = row.to_dto()
                self._require_payable(invoice)
                try:
                    result = gateway.charge(invoice)
                except Exception as e:
                    raise ExternalServiceError("payment_gateway", str(e)) from e
                if not result.success:
                    logger.warning("invoice_charge_declined", extra={
                        "invoice_id": str(invoice_id),
                        "error": result.error,
                    })
                    raise ExternalServiceError(
                        "payment_gateway", result.error or "charge was not successful"
                    )
                updated, record = apply_payment(
                    invoice,
                    invoice.amount_due,
                    PaymentMethod.GATEWAY,
                    recorded_at=self._clock.now(),
                    external_transaction_id=result.external_transaction_id,
                )
                row.update_from_dto(updated)
                finish(self._session, "invoice", invoice_id, commit=self._auto_commit)
                logger.info("invoice_charged", extra={
                    "invoice_id": str(invoice_id),
                    "external_transaction_id": result.external_transaction_id,
                    "amount": str(record.amount),
                })
                return row.to_dto(), record
            except Exception:
                if self._auto_commit:
                    self._session.rollback()
                raise

    def create_payment_link(self, organization_id: UUID, invoice_id: UUID) -> str:
        """Ask the gateway for a hosted checkout link for the balance due."""
        gateway = self._require_gateway()
        invoice = self.get_invoice(organization_id, invoice_id)
        self._require_payable(invoice)
        try:
            url = gateway.create_payment_link(invoice)
        except Exception as e:
            raise ExternalServiceError("payment_gateway", str(e)) from e
        logger.info("invoice_payment_link_created", extra={
            "invoice_id": str(invoice_id),
            "amount_due": str(invoice.amount_due),
        })
        return url

    def record_gateway_payment(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        amount: Decimal | int | str,
        external_transaction_id: str,
        note: str | None = None,
    ) -> tuple[Invoice, PaymentRecord]:
        """
        Apply a payment confirmed by a gateway webhook.

        Idempotent by ``external_transaction_id``: a redelivered webhook
        returns the already-recorded payment without applying it again.
        Two deliveries racing past the lookup are settled by the unique
        constraint; the loser gets the winner's payment back.
        """
        if not external_transaction_id:
            raise ValidationError(
                "external_transaction_id", "gateway payments need a transaction id"
            )
        existing = self._payment_by_transaction(organization_id, external_transaction_id)
        if existing is None:
            try:
                return self.record_payment(
                    organization_id,
                    invoice_id,
                    amount,
                    PaymentMethod.GATEWAY,
                    note=note,
                    external_transaction_id=external_transaction_id,
                )
            except IntegrityError:
                # record_payment has already rolled back when it owns the commit
                if not self._auto_commit:
                    raise
                existing = self._payment_by_transaction(
                    organization_id, external_transaction_id
                )
                if existing is None:
                    raise

        logger.info("gateway_payment_duplicate_ignored", extra={
            "invoice_id": str(existing.invoice_id),
            "external_transaction_id": external_transaction_id,
        })
        return self.get_invoice(organization_id, existing.invoice_id), existing.to_dto()

    # =========================================================================
    # Closing
    # =========================================================================

    def cancel(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        expected_version: int | None = None,
    ) -> Invoice:
        """Cancel a non-paid invoice.  Not reversible."""
        return self._close(organization_id, invoice_id, expected_version, cancel_invoice)

    def refund(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        expected_version: int | None = None,
    ) -> Invoice:
        """Mark an issued invoice refunded.  Payment records are kept."""
        return self._close(organization_id, invoice_id, expected_version, refund_invoice)

    # =========================================================================
    # Internal
    # =========================================================================

    def _load(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        expected_version: int | None = None,
    ) -> InvoiceModel:
        row = load_document(self._session, InvoiceModel, organization_id, invoice_id, "invoice")
        check_version(row, expected_version, "invoice")
        return row

    def _payment_by_transaction(
        self, organization_id: UUID, external_transaction_id: str,
    ) -> InvoicePaymentModel | None:
        return self._session.execute(
            select(InvoicePaymentModel).where(
                InvoicePaymentModel.organization_id == organization_id,
                InvoicePaymentModel.external_transaction_id == external_transaction_id,
            )
        ).scalar_one_or_none()

    def _next_number(self, organization_id: UUID) -> str:
        return self._sequences.next_number(
            organization_id,
            SequenceService.INVOICE,
            self._settings.invoice_prefix,
            self._settings.number_padding,
        )

    def _resolve_customer(self, invoice: Invoice) -> CustomerSnapshot:
        """Manual snapshot fields win; blanks are filled from the contact."""
        if invoice.contact_id is None or self._contacts is None:
            return invoice.customer
        contact = self._contacts.get_contact(invoice.organization_id, invoice.contact_id)
        if contact is None:
            return invoice.customer
        return invoice.customer.filled_from(
            name=contact.name,
            email=contact.email,
            phone=contact.phone,
            address=contact.address,
        )

    def _require_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            raise ExternalServiceError("payment_gateway", "no payment gateway configured")
        return self._gateway

    @staticmethod
    def _require_payable(invoice: Invoice) -> None:
        if invoice.status in (InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED):
            raise PaymentConflictError(
                invoice_id=str(invoice.id),
                status=invoice.status.value,
                reason="invoice is closed",
            )
        if invoice.amount_due <= 0:
            raise PaymentConflictError(
                invoice_id=str(invoice.id),
                status=invoice.status.value,
                reason="nothing is due",
            )

    def _close(self, organization_id, invoice_id, expected_version, transition) -> Invoice:
        try:
            row = self._load(organization_id, invoice_id, expected_version)
            updated = transition(row.to_dto(), self._clock.now())
            row.update_from_dto(updated)
            finish(self._session, "invoice", invoice_id, commit=self._auto_commit)
            logger.info(f"invoice_{updated.status.value}", extra={
                "invoice_id": str(invoice_id),
                "amount_paid": str(updated.amount_paid),
            })
            return row.to_dto()
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise
