"""
Estimate Workflow (``billing_modules.estimates.workflows``).

States: draft, sent, accepted, declined, expired.  declined and expired are
terminal.  Conversion to an invoice is a self-transition from sent or
accepted: the estimate itself never changes.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date, datetime
from typing import Any

from billing_kernel.domain.workflow import Guard, Transition, Workflow
from billing_kernel.exceptions import ValidationError
from billing_kernel.logging_config import get_logger
from billing_modules.estimates.models import Estimate, EstimateStatus
from billing_modules.invoicing.calculator import (
    coerce_amount,
    coerce_discount_type,
    compute_totals,
)
from billing_modules.invoicing.models import CustomerSnapshot
from billing_modules.invoicing.workflows import (
    HAS_VALID_ITEMS,
    RECIPIENT_RESOLVABLE,
    check_sendable,
)

logger = get_logger("modules.estimates.workflows")

VALID_UNTIL_PASSED = Guard(
    name="valid_until_passed",
    description="valid_until is before today",
)

ESTIMATE_WORKFLOW = Workflow(
    name="billing_estimate",
    description="Customer estimate lifecycle",
    initial_state="draft",
    states=tuple(s.value for s in EstimateStatus),
    transitions=(
        Transition("draft", None, action="edit"),
        Transition("draft", None, action="delete"),
        Transition("draft", "sent", action="send", guard=HAS_VALID_ITEMS),
        Transition("sent", None, action="resend", guard=RECIPIENT_RESOLVABLE),
        Transition("sent", "accepted", action="accept"),
        Transition("sent", "declined", action="decline"),
        Transition("sent", "expired", action="expire", guard=VALID_UNTIL_PASSED),
        Transition("sent", None, action="convert"),
        Transition("accepted", None, action="convert"),
    ),
    terminal_states=("declined", "expired"),
)


def _require(estimate: Estimate, action: str) -> None:
    ESTIMATE_WORKFLOW.require(
        estimate.status.value,
        action,
        document_type="estimate",
        document_id=str(estimate.id),
    )


def recalculate(estimate: Estimate) -> Estimate:
    totals = compute_totals(
        estimate.items,
        estimate.tax_rate,
        estimate.discount_type,
        estimate.discount_value,
    )
    return replace(
        estimate,
        subtotal=totals.subtotal,
        tax_amount=totals.tax_amount,
        discount_amount=totals.discount_amount,
        total=totals.total,
    )


def is_expired(estimate: Estimate, today: date) -> bool:
    """A sent estimate whose ``valid_until`` has passed."""
    return estimate.status is EstimateStatus.SENT and estimate.valid_until < today


def check_delete(estimate: Estimate) -> None:
    """Only draft estimates may be deleted."""
    _require(estimate, "delete")


_DRAFT_FIELDS = frozenset({
    "contact_id",
    "business_id",
    "customer",
    "issue_date",
    "valid_until",
    "payment_terms",
    "currency",
    "tax_rate",
    "discount_type",
    "discount_value",
    "items",
    "notes",
    "terms_and_conditions",
})


def revise_draft(estimate: Estimate, changes: dict[str, Any]) -> Estimate:
    """
    Apply edits to a draft estimate; ``items`` replaces the whole sequence.

    Raises:
        IllegalTransitionError: the estimate is no longer a draft.
        ValidationError: unknown field or invalid value.
    """
    _require(estimate, "edit")
    unknown = set(changes) - _DRAFT_FIELDS
    if unknown:
        raise ValidationError("draft_fields", f"cannot edit {', '.join(sorted(unknown))}")

    values = dict(changes)
    if "items" in values:
        values["items"] = tuple(values["items"])
    if "discount_type" in values:
        values["discount_type"] = coerce_discount_type(values["discount_type"])
    if "customer" in values and not isinstance(values["customer"], CustomerSnapshot):
        values["customer"] = CustomerSnapshot(**(values["customer"] or {}))
    for name in ("tax_rate", "discount_value"):
        if name in values:
            values[name] = coerce_amount(name, values[name])
    if "valid_until" in values and values["valid_until"] is None:
        raise ValidationError("valid_until", "valid until date is required")

    revised = replace(estimate, **values)
    if revised.valid_until < revised.issue_date:
        raise ValidationError("valid_until", "valid until must not be before the issue date")
    return recalculate(revised)


def check_send(estimate: Estimate, customer: CustomerSnapshot) -> None:
    """
    Raises:
        IllegalTransitionError: the estimate is not a draft.
        ValidationError: a send guard failed.
    """
    _require(estimate, "send")
    check_sendable(estimate)
    if not customer.email:
        raise ValidationError(
            RECIPIENT_RESOLVABLE.name, "customer email is required to send an estimate"
        )


def send_estimate(
    estimate: Estimate,
    *,
    customer: CustomerSnapshot,
    estimate_number: str,
    now: datetime,
) -> Estimate:
    """draft -> sent.  Same guards as an invoice; the snapshot is frozen."""
    check_send(estimate, customer)
    sent = recalculate(replace(
        estimate,
        status=EstimateStatus.SENT,
        customer=customer,
        estimate_number=estimate.estimate_number or estimate_number,
        sent_at=now,
    ))
    logger.info("estimate_send_applied", extra={
        "estimate_id": str(estimate.id),
        "estimate_number": sent.estimate_number,
        "total": str(sent.total),
    })
    return sent


def resend_estimate(estimate: Estimate) -> Estimate:
    _require(estimate, "resend")
    if not estimate.customer.email:
        raise ValidationError(
            RECIPIENT_RESOLVABLE.name, "customer email is required to resend an estimate"
        )
    return estimate


def accept_estimate(estimate: Estimate, now: datetime) -> Estimate:
    _require(estimate, "accept")
    return replace(estimate, status=EstimateStatus.ACCEPTED, accepted_at=now)


def decline_estimate(estimate: Estimate, now: datetime) -> Estimate:
    _require(estimate, "decline")
    return replace(estimate, status=EstimateStatus.DECLINED, declined_at=now)


def expire_estimate(estimate: Estimate, today: date, now: datetime) -> Estimate:
    """
    sent -> expired once ``valid_until`` has passed.

    Raises:
        IllegalTransitionError: the estimate is not sent.
        ValidationError: ``valid_until`` is today or later.
    """
    _require(estimate, "expire")
    if not estimate.valid_until < today:
        raise ValidationError(
            VALID_UNTIL_PASSED.name,
            f"estimate is valid until {estimate.valid_until.isoformat()}",
        )
    return replace(estimate, status=EstimateStatus.EXPIRED, expired_at=now)
