"""
InvoiceJobRunner -- background billing jobs.

Contract:
    ``run_recurring_generation`` generates one invoice per due template,
    each in its own session and transaction.  A failing template is logged
    and skipped; the rest of the batch still runs.
    ``run_estimate_expiry`` expires sent estimates past ``valid_until``.
    ``send_payment_reminders`` e-mails reminders for invoices that are due
    soon or recently overdue.  ``run_all`` runs the three in that order.

Architecture: billing_services.  Drives ``billing_modules`` services; all
    dates come from the injected Clock.

Non-goals:
    - NOT a distributed job queue (no leader election); concurrent runners
      are safe because generation is idempotent per template run date.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from billing_config import BillingSettings, get_active_settings
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import DuplicateGenerationError
from billing_kernel.logging_config import LogContext, get_logger
from billing_modules._delivery import deliver_document
from billing_modules.estimates.service import EstimateService
from billing_modules.invoicing.models import Invoice, InvoiceStatus
from billing_modules.invoicing.orm import InvoiceModel
from billing_modules.invoicing.reminders import ReminderKind, reminder_kind, reminder_message
from billing_modules.recurring.service import RecurringService
from billing_services.collaborators import ContactDirectory, DocumentMailer

logger = get_logger("services.invoice_jobs")

_OPEN_STATUSES = (
    InvoiceStatus.SENT.value,
    InvoiceStatus.VIEWED.value,
    InvoiceStatus.PARTIAL.value,
)


@dataclass(frozen=True)
class GenerationOutcome:
    """Result of one template in a generation batch."""
    template_id: UUID
    organization_id: UUID
    invoice_id: UUID | None = None
    invoice_number: str | None = None
    skipped: bool = False
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.invoice_id is not None


@dataclass(frozen=True)
class ReminderOutcome:
    invoice_id: UUID
    kind: ReminderKind
    email_sent: bool
    email_error: str | None = None


@dataclass(frozen=True)
class JobRunSummary:
    as_of: date
    generated: tuple[GenerationOutcome, ...] = ()
    expired_estimate_ids: tuple[UUID, ...] = ()
    reminders: tuple[ReminderOutcome, ...] = ()
    errors: tuple[str, ...] = ()


class InvoiceJobRunner:
    """Runs the billing background jobs against sessions from ``session_factory``."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        settings: BillingSettings | None = None,
        contacts: ContactDirectory | None = None,
        mailer: DocumentMailer | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._settings = settings or get_active_settings()
        self._contacts = contacts
        self._mailer = mailer

    # -------------------------------------------------------------------------
    # Recurring generation
    # -------------------------------------------------------------------------

    def run_recurring_generation(self, as_of: date | None = None) -> list[GenerationOutcome]:
        """Generate exactly one invoice per due template."""
        as_of = as_of or self._clock.today()
        session = self._session_factory()
        try:
            due = self._recurring(session).due_templates(as_of)
            session.rollback()
        finally:
            session.close()

        logger.info("recurring_generation_started", extra={
            "as_of": as_of,
            "due_templates": len(due),
        })
        outcomes = [
            self._generate_one(template.organization_id, template.id, as_of)
            for template in due
        ]
        logger.info("recurring_generation_completed", extra={
            "as_of": as_of,
            "generated": sum(1 for o in outcomes if o.succeeded),
            "skipped": sum(1 for o in outcomes if o.skipped),
            "failed": sum(1 for o in outcomes if o.error is not None),
        })
        return outcomes

    def _generate_one(
        self,
        organization_id: UUID,
        template_id: UUID,
        as_of: date,
    ) -> GenerationOutcome:
        session = self._session_factory()
        try:
            result = self._recurring(session).generate_due(organization_id, template_id, as_of)
        except DuplicateGenerationError as e:
            return GenerationOutcome(
                template_id=template_id,
                organization_id=organization_id,
                skipped=True,
                error=str(e),
            )
        except Exception as e:
            logger.exception("recurring_generation_failed", extra={
                "organization_id": str(organization_id),
                "template_id": str(template_id),
            })
            return GenerationOutcome(
                template_id=template_id,
                organization_id=organization_id,
                error=str(e),
            )
        finally:
            session.close()

        if result is None:
            return GenerationOutcome(
                template_id=template_id, organization_id=organization_id, skipped=True
            )
        return GenerationOutcome(
            template_id=template_id,
            organization_id=organization_id,
            invoice_id=result.invoice.id,
            invoice_number=result.invoice.invoice_number,
        )

    # -------------------------------------------------------------------------
    # Estimate expiry
    # -------------------------------------------------------------------------

    def run_estimate_expiry(self, as_of: date | None = None) -> list[UUID]:
        """Expire sent estimates with ``valid_until < as_of``; returns their ids."""
        as_of = as_of or self._clock.today()
        session = self._session_factory()
        try:
            service = EstimateService(
                session, clock=self._clock, settings=self._settings, contacts=self._contacts
            )
            expired = service.expire_due(as_of)
        finally:
            session.close()
        logger.info("estimate_expiry_completed", extra={
            "as_of": as_of,
            "expired": len(expired),
        })
        return [estimate.id for estimate in expired]

    # -------------------------------------------------------------------------
    # Payment reminders
    # -------------------------------------------------------------------------

    def find_invoices_needing_reminders(
        self,
        organization_id: UUID | None = None,
        as_of: date | None = None,
    ) -> list[tuple[Invoice, ReminderKind]]:
        """
        Open invoices with a balance and a recipient that are due within
        ``reminder_lead_days`` or overdue by at most
        ``overdue_reminder_max_days``, earliest due date first.
        """
        as_of = as_of or self._clock.today()
        session = self._session_factory()
        try:
            stmt = select(InvoiceModel).where(InvoiceModel.status.in_(_OPEN_STATUSES))
            if organization_id is not None:
                stmt = stmt.where(InvoiceModel.organization_id == organization_id)
            stmt = stmt.order_by(InvoiceModel.due_date, InvoiceModel.invoice_number)
            invoices = [row.to_dto() for row in session.execute(stmt).scalars()]
            session.rollback()
        finally:
            session.close()

        found: list[tuple[Invoice, ReminderKind]] = []
        for invoice in invoices:
            kind = reminder_kind(
                invoice,
                as_of,
                self._settings.reminder_lead_days,
                self._settings.overdue_reminder_max_days,
            )
            if kind is not None and self._has_recipient(invoice):
                found.append((invoice, kind))
        return found

    def send_payment_reminders(
        self,
        organization_id: UUID | None = None,
        as_of: date | None = None,
    ) -> list[ReminderOutcome]:
        """E-mail a reminder for every invoice found by ``find_invoices_needing_reminders``."""
        as_of = as_of or self._clock.today()
        outcomes: list[ReminderOutcome] = []
        for invoice, kind in self.find_invoices_needing_reminders(organization_id, as_of):
            subject, message = reminder_message(invoice, kind, as_of)
            with LogContext.bind(
                organization_id=invoice.organization_id, document_id=invoice.id
            ):
                delivery = deliver_document(
                    self._mailer,
                    invoice,
                    document_type="payment_reminder",
                    subject=subject,
                    message=message,
                )
            outcomes.append(ReminderOutcome(
                invoice_id=invoice.id,
                kind=kind,
                email_sent=delivery.email_sent,
                email_error=delivery.email_error,
            ))
        logger.info("payment_reminders_completed", extra={
            "as_of": as_of,
            "found": len(outcomes),
            "sent": sum(1 for o in outcomes if o.email_sent),
        })
        return outcomes

    # -------------------------------------------------------------------------
    # All jobs
    # -------------------------------------------------------------------------

    def run_all(self, as_of: date | None = None) -> JobRunSummary:
        """
        Run generation, expiry and reminders in sequence.

        A job that fails entirely is logged and recorded in ``errors``;
        the remaining jobs still run.
        """
        as_of = as_of or self._clock.today()
        logger.info("invoice_jobs_started", extra={"as_of": as_of})
        errors: list[str] = []
        generated: list[GenerationOutcome] = []
        expired: list[UUID] = []
        reminders: list[ReminderOutcome] = []

        for name, job in (
            ("recurring_generation", lambda: generated.extend(self.run_recurring_generation(as_of))),
            ("estimate_expiry", lambda: expired.extend(self.run_estimate_expiry(as_of))),
            ("payment_reminders", lambda: reminders.extend(self.send_payment_reminders(None, as_of))),
        ):
            try:
                with LogContext.bind(job=name):
                    job()
            except Exception as e:
                logger.exception("invoice_job_failed", extra={"job": name})
                errors.append(f"{name}: {e}")

        summary = JobRunSummary(
            as_of=as_of,
            generated=tuple(generated),
            expired_estimate_ids=tuple(expired),
            reminders=tuple(reminders),
            errors=tuple(errors),
        )
        logger.info("invoice_jobs_completed", extra={
            "as_of": as_of,
            "generated": sum(1 for o in summary.generated if o.succeeded),
            "expired_estimates": len(summary.expired_estimate_ids),
            "reminders": len(summary.reminders),
            "errors": len(summary.errors),
        })
        return summary

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _recurring(self, session: Session) -> RecurringService:
        return RecurringService(
            session,
            clock=self._clock,
            settings=self._settings,
            contacts=self._contacts,
            mailer=self._mailer,
        )

    def _has_recipient(self, invoice: Invoice) -> bool:
        if invoice.customer.email:
            return True
        if invoice.contact_id is None or self._contacts is None:
            return False
        contact = self._contacts.get_contact(invoice.organization_id, invoice.contact_id)
        return bool(contact is not None and contact.email)
