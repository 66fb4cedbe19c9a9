"""
Pure schedule evaluation for recurring templates.

Contract:
    ``compute_next_run_date()``, ``is_due()`` and the template transitions
    are PURE -- no I/O, no clock reads.  Callers pass the dates.

Architecture: billing_modules/recurring.  ZERO I/O.

Month arithmetic clamps overflowing days to the end of the target month and
the clamped day is what gets carried forward: a template starting on
2024-01-31 runs on 2024-02-29, then 2024-03-29.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Any

from billing_kernel.domain.dates import add_days, add_months, add_years
from billing_kernel.domain.workflow import Transition, Workflow
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger
from billing_modules.invoicing.calculator import (
    coerce_amount,
    coerce_discount_type,
    compute_totals,
)
from billing_modules.invoicing.models import CustomerSnapshot, number_items
from billing_modules.recurring.models import Frequency, RecurringTemplate, TemplateStatus

logger = get_logger("modules.recurring.schedule")


# =============================================================================
# Template workflow
# =============================================================================

TEMPLATE_WORKFLOW = Workflow(
    name="billing_recurring_template",
    description="Recurring invoice template lifecycle",
    initial_state="active",
    states=tuple(s.value for s in TemplateStatus),
    transitions=(
        Transition("active", "paused", action="pause"),
        Transition("paused", "active", action="resume"),
        Transition("active", None, action="generate"),
        Transition("paused", None, action="generate"),
        Transition("active", "completed", action="complete"),
        Transition("paused", "completed", action="complete"),
        Transition("active", None, action="edit"),
        Transition("paused", None, action="edit"),
    ),
    terminal_states=("completed",),
)


# =============================================================================
# Date arithmetic
# =============================================================================


def advance(day: date, frequency: Frequency) -> date:
    """One period after ``day``."""
    if frequency is Frequency.WEEKLY:
        return add_days(day, 7)
    if frequency is Frequency.MONTHLY:
        return add_months(day, 1)
    if frequency is Frequency.QUARTERLY:
        return add_months(day, 3)
    if frequency is Frequency.YEARLY:
        return add_years(day, 1)
    raise ValueError(f"Unknown frequency: {frequency}")


def compute_next_run_date(template: RecurringTemplate, from_date: date) -> date | None:
    """
    The run date following ``from_date``, or ``None`` past ``end_date``.

    A result equal to ``end_date`` is still a run date.
    """
    next_date = advance(from_date, template.frequency)
    if template.end_date is not None and next_date > template.end_date:
        return None
    return next_date


def is_due(template: RecurringTemplate, as_of: date) -> bool:
    """Scheduler predicate: active with a run date on or before ``as_of``."""
    return (
        template.status is TemplateStatus.ACTIVE
        and template.next_run_date is not None
        and template.next_run_date <= as_of
    )


# =============================================================================
# Pure transitions
# =============================================================================


def _require(template: RecurringTemplate, action: str) -> None:
    TEMPLATE_WORKFLOW.require(
        template.status.value,
        action,
        document_type="recurring_template",
        document_id=str(template.id),
    )


def advance_template(
    template: RecurringTemplate,
    run_date: date,
    generated_at: datetime,
) -> RecurringTemplate:
    """
    Record one generated run and move the schedule past ``run_date``.

    Completes the template when no run date remains before ``end_date``.

    Raises:
        IllegalTransitionError: the template is completed.
    """
    _require(template, "generate")
    next_run = compute_next_run_date(template, run_date)
    advanced = replace(
        template,
        next_run_date=next_run,
        last_generated_at=generated_at,
        invoices_generated=template.invoices_generated + 1,
    )
    if next_run is None:
        _require(advanced, "complete")
        advanced = replace(advanced, status=TemplateStatus.COMPLETED)
        logger.info("recurring_template_completed", extra={
            "template_id": str(template.id),
            "invoices_generated": advanced.invoices_generated,
        })
    return advanced


def pause_template(template: RecurringTemplate) -> RecurringTemplate:
    """active -> paused.  ``next_run_date`` is untouched."""
    _require(template, "pause")
    return replace(template, status=TemplateStatus.PAUSED)


def resume_template(template: RecurringTemplate) -> RecurringTemplate:
    """
    paused -> active, keeping ``next_run_date``.

    A run date that passed while paused is picked up by the next scheduler
    tick: one invoice per tick, never a burst of catch-up invoices.
    """
    _require(template, "resume")
    return replace(template, status=TemplateStatus.ACTIVE)


# =============================================================================
# Validation and edits
# =============================================================================


def coerce_frequency(value: Frequency | str | None) -> Frequency:
    if isinstance(value, Frequency):
        return value
    try:
        return Frequency(value)
    except ValueError:
        raise ValidationError(
            "frequency", "frequency must be weekly, monthly, quarterly or yearly"
        ) from None


def check_schedule(start_date: date | None, end_date: date | None) -> None:
    """
    Raises:
        ValidationError: missing start date, or an end date before it.
    """
    if start_date is None:
        raise ValidationError("start_date", "start date is required")
    if end_date is not None and end_date < start_date:
        raise ValidationError("end_date", "end date must not be before the start date")


_EDITABLE_FIELDS = frozenset({
    "template_name",
    "frequency",
    "end_date",
    "contact_id",
    "business_id",
    "customer",
    "items",
    "payment_terms",
    "currency",
    "tax_rate",
    "discount_type",
    "discount_value",
    "notes",
    "terms_and_conditions",
    "auto_send",
})


def revise_template(template: RecurringTemplate, changes: dict[str, Any]) -> RecurringTemplate:
    """
    Apply edits to an active or paused template.

    The run dates already scheduled are kept.  Moving ``end_date`` before
    the pending run date completes the template.

    Raises:
        IllegalTransitionError: the template is completed.
        ValidationError: unknown field or invalid value.
    """
    _require(template, "edit")
    unknown = set(changes) - _EDITABLE_FIELDS
    if unknown:
        raise ValidationError("template_fields", f"cannot edit {', '.join(sorted(unknown))}")

    values = dict(changes)
    if "template_name" in values:
        name = (values["template_name"] or "").strip()
        if not name:
            raise ValidationError("template_name", "template name is required")
        values["template_name"] = name
    if "frequency" in values:
        values["frequency"] = coerce_frequency(values["frequency"])
    if "items" in values:
        items = number_items(values["items"], keep_ids=[item.id for item in template.items])
        if not any(item.is_valid for item in items):
            raise ValidationError(
                "has_valid_line_items", "template must have at least one named line item"
            )
        values["items"] = items
    if "customer" in values and not isinstance(values["customer"], CustomerSnapshot):
        values["customer"] = CustomerSnapshot(**(values["customer"] or {}))
    if "discount_type" in values:
        values["discount_type"] = coerce_discount_type(values["discount_type"])
    for name in ("tax_rate", "discount_value"):
        if name in values:
            values[name] = coerce_amount(name, values[name])
    if values.get("payment_terms") is not None and values["payment_terms"] < 0:
        raise ValidationError("payment_terms", "payment terms must not be negative")

    revised = replace(template, **values)
    check_schedule(revised.start_date, revised.end_date)
    # Totals are validated the same way the generated invoices will be.
    compute_totals(
        revised.items, revised.tax_rate, revised.discount_type, revised.discount_value
    )

    if (
        revised.end_date is not None
        and revised.next_run_date is not None
        and revised.next_run_date > revised.end_date
    ):
        _require(revised, "complete")
        revised = replace(revised, status=TemplateStatus.COMPLETED, next_run_date=None)
    return revised
