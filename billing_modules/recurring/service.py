"""
Recurring Module Service -- orchestrates template operations and
invoice generation.

Generation runs in one transaction: the new invoice, its number and the
advanced template are committed together.  The idempotency key
``(template_id, run_date)`` is checked before insert and enforced by the
``uq_billing_invoices_recurring_run`` constraint, so a run date never
materialises twice even if two workers race.

Usage:
    service = RecurringService(session, clock=clock)
    template = service.create_template(
        org_id,
        template_name="Monthly retainer",
        frequency="monthly",
        start_date=date(2024, 1, 31),
        items=[LineItem(name="Retainer", unit_price=Decimal("500.00"))],
    )
    result = service.generate_now(org_id, template.id)
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
    DuplicateGenerationError,
    IllegalTransitionError,
    ValidationError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.utils.idempotency import recurring_run_key
from billing_modules._persistence import check_version, finish, load_document
from billing_modules.invoicing.calculator import (
    coerce_amount,
    coerce_discount_type,
    compute_totals,
)
from billing_modules.invoicing.models import (
    CustomerSnapshot,
    Invoice,
    InvoiceStatus,
    LineItem,
    number_items,
)
from billing_modules.invoicing.orm import InvoiceModel
from billing_modules.invoicing.service import InvoiceService, SendResult
from billing_modules.recurring.generation import generate_invoice
from billing_modules.recurring.models import Frequency, RecurringTemplate, TemplateStatus
from billing_modules.recurring.orm import RecurringTemplateModel
from billing_modules.recurring.schedule import (
    check_schedule,
    coerce_frequency,
    is_due,
    pause_template,
    resume_template,
    revise_template,
)
from billing_services.collaborators import ContactDirectory, DocumentMailer

logger = get_logger("modules.recurring.service")


@dataclass(frozen=True)
class GenerationResult:
    """One generated run: the new invoice and the advanced template."""
    template: RecurringTemplate
    invoice: Invoice
    run_key: str
    email_sent: bool = False
    email_error: str | None = None


class RecurringService:
    """
    Orchestrates recurring templates and invoice generation.

    Every operation takes an explicit ``organization_id`` except
    ``due_templates``, which the job runner uses to scan all organizations.
    """

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

    # =========================================================================
    # Queries
    # =========================================================================

    def get_template(self, organization_id: UUID, template_id: UUID) -> RecurringTemplate:
        return load_document(
            self._session, RecurringTemplateModel, organization_id, template_id,
            "recurring_template", for_update=False,
        ).to_dto()

    def list_templates(
        self,
        organization_id: UUID,
        status: TemplateStatus | str | None = None,
    ) -> list[RecurringTemplate]:
        stmt = select(RecurringTemplateModel).where(
            RecurringTemplateModel.organization_id == organization_id
        )
        if status is not None:
            value = status.value if isinstance(status, TemplateStatus) else status
            stmt = stmt.where(RecurringTemplateModel.status == value)
        stmt = stmt.order_by(RecurringTemplateModel.next_run_date, RecurringTemplateModel.template_name)
        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    def due_templates(self, as_of: date | None = None) -> list[RecurringTemplate]:
        """Active templates with ``next_run_date <= as_of``, across organizations."""
        as_of = as_of or self._clock.today()
        stmt = (
            select(RecurringTemplateModel)
            .where(
                RecurringTemplateModel.status == TemplateStatus.ACTIVE.value,
                RecurringTemplateModel.next_run_date.is_not(None),
                RecurringTemplateModel.next_run_date <= as_of,
            )
            .order_by(RecurringTemplateModel.next_run_date, RecurringTemplateModel.id)
        )
        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    def history(self, organization_id: UUID, template_id: UUID) -> list[Invoice]:
        """Invoices generated from a template, oldest run first."""
        load_document(
            self._session, RecurringTemplateModel, organization_id, template_id,
            "recurring_template", for_update=False,
        )
        stmt = (
            select(InvoiceModel)
            .where(
                InvoiceModel.organization_id == organization_id,
                InvoiceModel.recurring_template_id == template_id,
            )
            .order_by(InvoiceModel.recurring_run_date)
        )
        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    # =========================================================================
    # Templates
    # =========================================================================

    def create_template(self, organization_id: UUID, **fields: Any) -> RecurringTemplate:
        """
        Create an active template whose first run date is ``start_date``.

        Accepts the keyword arguments of ``build_template``.
        """
        template = self.build_template(organization_id, **fields)
        try:
            row = RecurringTemplateModel.from_dto(template)
            self._session.add(row)
            finish(self._session, "recurring_template", row.id, commit=self._auto_commit)
            created = row.to_dto()
            self._log_created(created)
            return created
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise

    def build_template(
        self,
        organization_id: UUID,
        *,
        template_name: str,
        frequency: Frequency | str,
        start_date: date,
        items: Sequence[LineItem],
        end_date: date | None = None,
        contact_id: UUID | None = None,
        business_id: UUID | None = None,
        customer: CustomerSnapshot | dict | None = None,
        payment_terms: int | None = None,
        currency: str | None = None,
        tax_rate: Decimal | int | str = Decimal("0"),
        discount_type: Any = None,
        discount_value: Decimal | int | str = Decimal("0"),
        notes: str | None = None,
        terms_and_conditions: str | None = None,
        auto_send: bool = False,
        source_invoice_id: UUID | None = None,
    ) -> RecurringTemplate:
        """
        Build (but do not persist) a validated active template.

        Raises:
            ValidationError: blank name, unknown frequency, missing start
                date, end before start, or no named line item.
        """
        name = (template_name or "").strip()
        if not name:
            raise ValidationError("template_name", "template name is required")
        check_schedule(start_date, end_date)
        numbered = number_items(items)
        if not any(item.is_valid for item in numbered):
            raise ValidationError(
                "has_valid_line_items", "template must have at least one named line item"
            )
        if isinstance(customer, dict):
            customer = CustomerSnapshot(**customer)
        terms = (
            self._settings.default_payment_terms_days
            if payment_terms is None
            else payment_terms
        )
        if terms < 0:
            raise ValidationError("payment_terms", "payment terms must not be negative")

        template = RecurringTemplate(
            id=uuid4(),
            organization_id=organization_id,
            template_name=name,
            frequency=coerce_frequency(frequency),
            start_date=start_date,
            end_date=end_date,
            next_run_date=start_date,
            contact_id=contact_id,
            business_id=business_id,
            customer=customer or CustomerSnapshot(),
            items=numbered,
            payment_terms=terms,
            currency=currency or self._settings.default_currency,
            tax_rate=coerce_amount("tax_rate", tax_rate),
            discount_type=coerce_discount_type(discount_type),
            discount_value=coerce_amount("discount_value", discount_value),
            notes=notes,
            terms_and_conditions=terms_and_conditions,
            auto_send=auto_send,
            source_invoice_id=source_invoice_id,
        )
        compute_totals(
            template.items, template.tax_rate, template.discount_type, template.discount_value
        )
        return template

    def create_template_from_invoice(
        self,
        organization_id: UUID,
        invoice_id: UUID,
        *,
        template_name: str,
        frequency: Frequency | str,
        start_date: date,
        end_date: date | None = None,
        auto_send: bool = False,
    ) -> RecurringTemplate:
        """
        Turn an existing invoice into a template and flag it as the source.

        The template and the flag on the invoice are committed together.

        Raises:
            IllegalTransitionError: the invoice is cancelled or refunded.
            ValidationError: the invoice has no named line items, or the
                schedule is invalid.
        """
        try:
            source = load_document(
                self._session, InvoiceModel, organization_id, invoice_id, "invoice"
            )
            invoice = source.to_dto()
            if invoice.status in (InvoiceStatus.CANCELLED, InvoiceStatus.REFUNDED):
                raise IllegalTransitionError(
                    document_type="invoice",
                    document_id=str(invoice_id),
                    status=invoice.status.value,
                    action="make_recurring",
                )
            if not invoice.valid_items:
                raise ValidationError(
                    "has_valid_line_items", "invoice has no line items to repeat"
                )
            template = self.build_template(
                organization_id,
                template_name=template_name,
                frequency=frequency,
                start_date=start_date,
                end_date=end_date,
                items=invoice.items,
                contact_id=invoice.contact_id,
                business_id=invoice.business_id,
                customer=invoice.customer,
                payment_terms=invoice.payment_terms,
                currency=invoice.currency,
                tax_rate=invoice.tax_rate,
                discount_type=invoice.discount_type,
                discount_value=invoice.discount_value,
                notes=invoice.notes,
                terms_and_conditions=invoice.terms_and_conditions,
                auto_send=auto_send,
                source_invoice_id=invoice_id,
            )
            row = RecurringTemplateModel.from_dto(template)
            self._session.add(row)
            source.update_from_dto(replace(invoice, is_recurring_source=True))
            finish(self._session, "recurring_template", row.id, commit=self._auto_commit)
            created = row.to_dto()
            self._log_created(created)
            return created
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise

    def update_template(
        self,
        organization_id: UUID,
        template_id: UUID,
        expected_version: int | None = None,
        **changes: Any,
    ) -> RecurringTemplate:
        """Edit an active or paused template; scheduled run dates are kept."""
        return self._apply(
            organization_id, template_id, expected_version,
            lambda template: revise_template(template, changes),
            "recurring_template_updated",
        )

    def pause(
        self,
        organization_id: UUID,
        template_id: UUID,
        expected_version: int | None = None,
    ) -> RecurringTemplate:
        return self._apply(
            organization_id, template_id, expected_version,
            pause_template, "recurring_template_paused",
        )

    def resume(
        self,
        organization_id: UUID,
        template_id: UUID,
        expected_version: int | None = None,
    ) -> RecurringTemplate:
        """paused -> active.  ``next_run_date`` is preserved, even if past."""
        return self._apply(
            organization_id, template_id, expected_version,
            resume_template, "recurring_template_resumed",
        )

    def delete_template(
        self,
        organization_id: UUID,
        template_id: UUID,
        expected_version: int | None = None,
    ) -> None:
        """
        Delete a template and its line items, whatever its status.

        Invoices already generated from it are untouched and keep their
        ``recurring_template_id``.
        """
        try:
            row = self._load(organization_id, template_id, expected_version)
            generated = row.invoices_generated
            self._session.delete(row)
            finish(self._session, "recurring_template", template_id, commit=self._auto_commit)
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise
        logger.info("recurring_template_deleted", extra={
            "template_id": str(template_id),
            "invoices_generated": generated,
        })

    # =========================================================================
    # Generation
    # =========================================================================

    def generate_due(
        self,
        organization_id: UUID,
        template_id: UUID,
        as_of: date | None = None,
    ) -> GenerationResult | None:
        """
        Scheduled generation: produce the invoice for the pending run date
        if the template is still due on ``as_of``.

        Returns ``None`` when another worker already advanced or paused the
        template since it was scanned.
        """
        return self._generate(organization_id, template_id, as_of or self._clock.today(), True)

    def generate_now(self, organization_id: UUID, template_id: UUID) -> GenerationResult:
        """
        Manual generation for an active or paused template, regardless of
        its run date.  The pending run date is consumed and the schedule
        advances exactly as a scheduled run would.

        Raises:
            IllegalTransitionError: the template is completed.
        """
        return self._generate(organization_id, template_id, self._clock.today(), False)

    def _generate(
        self,
        organization_id: UUID,
        template_id: UUID,
        as_of: date,
        scheduled: bool,
    ) -> GenerationResult | None:
        with LogContext.bind(organization_id=organization_id, document_id=template_id):
            invoices = InvoiceService(
                self._session,
                clock=self._clock,
                settings=self._settings,
                contacts=self._contacts,
                mailer=self._mailer,
                auto_commit=False,
            )
            try:
                row = self._load(organization_id, template_id)
                template = row.to_dto()
                if scheduled and not is_due(template, as_of):
                    logger.info("recurring_template_not_due", extra={
                        "template_id": str(template_id),
                        "status": template.status.value,
                        "next_run_date": template.next_run_date,
                    })
                    if self._auto_commit:
                        self._session.rollback()
                    return None

                run_date = template.next_run_date
                run_key = recurring_run_key(template_id, run_date) if run_date else None
                if run_date is not None and self._run_exists(template_id, run_date):
                    raise DuplicateGenerationError(str(template_id), run_date.isoformat())

                invoice, advanced = generate_invoice(
                    template,
                    issue_date=self._clock.today(),
                    generated_at=self._clock.now(),
                )
                try:
                    created = invoices.create_invoice(invoice)
                except IntegrityError as e:
                    raise DuplicateGenerationError(str(template_id), run_date.isoformat()) from e

                send_result = None
                if template.auto_send:
                    send_result = self._auto_send(invoices, created)
                    if send_result is not None:
                        created = send_result.invoice

                row.update_from_dto(advanced)
                finish(self._session, "recurring_template", template_id, commit=self._auto_commit)
                updated = row.to_dto()
            except DuplicateGenerationError as e:
                if self._auto_commit:
                    self._session.rollback()
                logger.warning("recurring_generation_duplicate", extra={
                    "template_id": str(template_id),
                    "run_date": e.run_date,
                })
                raise
            except Exception:
                if self._auto_commit:
                    self._session.rollback()
                raise

            logger.info("recurring_invoice_generated", extra={
                "template_id": str(template_id),
                "invoice_id": str(created.id),
                "invoice_number": created.invoice_number,
                "run_key": run_key,
                "manual": not scheduled,
                "invoices_generated": updated.invoices_generated,
                "next_run_date": updated.next_run_date,
                "template_status": updated.status.value,
            })

            result = GenerationResult(template=updated, invoice=created, run_key=run_key)
            if send_result is not None:
                delivery = invoices.deliver(created)
                result = replace(
                    result,
                    email_sent=delivery.email_sent,
                    email_error=delivery.email_error,
                )
            return result

    def _auto_send(self, invoices: InvoiceService, invoice: Invoice) -> SendResult | None:
        """Send a generated invoice; a failed guard leaves it as a draft."""
        try:
            return invoices.send(invoice.organization_id, invoice.id, notify=False)
        except ValidationError as e:
            logger.warning("recurring_auto_send_skipped", extra={
                "invoice_id": str(invoice.id),
                "guard": e.guard,
                "detail": e.detail,
            })
            return None

    # =========================================================================
    # Internal
    # =========================================================================

    def _load(
        self,
        organization_id: UUID,
        template_id: UUID,
        expected_version: int | None = None,
    ) -> RecurringTemplateModel:
        row = load_document(
            self._session, RecurringTemplateModel, organization_id, template_id,
            "recurring_template",
        )
        check_version(row, expected_version, "recurring_template")
        return row

    def _log_created(self, template: RecurringTemplate) -> None:
        logger.info("recurring_template_created", extra={
            "organization_id": str(template.organization_id),
            "template_id": str(template.id),
            "frequency": template.frequency.value,
            "next_run_date": template.next_run_date,
            "source_invoice_id": (
                str(template.source_invoice_id) if template.source_invoice_id else None
            ),
        })

    def _run_exists(self, template_id: UUID, run_date: date) -> bool:
        stmt = select(InvoiceModel.id).where(
            InvoiceModel.recurring_template_id == template_id,
            InvoiceModel.recurring_run_date == run_date,
        )
        return self._session.execute(stmt).first() is not None

    def _apply(self, organization_id, template_id, expected_version, transition, event):
        try:
            row = self._load(organization_id, template_id, expected_version)
            updated = transition(row.to_dto())
            row.update_from_dto(updated)
            finish(self._session, "recurring_template", template_id, commit=self._auto_commit)
            logger.info(event, extra={
                "template_id": str(template_id),
                "status": updated.status.value,
                "next_run_date": updated.next_run_date,
            })
            return row.to_dto()
        except Exception:
            if self._auto_commit:
                self._session.rollback()
            raise
