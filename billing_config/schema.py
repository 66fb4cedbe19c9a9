"""
Configuration Schema (``billing_config.schema``).

Responsibility
--------------
Frozen dataclass describing every tunable of the billing engine.  Values
come from YAML (``billing_config.loader``); defaults mirror
``billing_config/defaults.yaml``.

Invariants enforced
-------------------
* Immutable after construction (``frozen=True``).
* ``validate()`` rejects out-of-range values with ``ConfigurationError``
  naming the offending setting.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, fields

from billing_kernel.exceptions import ConfigurationError

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True)
class BillingSettings:
    """Runtime settings for document numbering, terms, reminders and scheduling."""

    invoice_prefix: str = "INV-"
    estimate_prefix: str = "EST-"
    number_padding: int = 5
    default_payment_terms_days: int = 30
    default_currency: str = "USD"
    estimate_validity_days: int = 30
    reminder_lead_days: int = 3
    overdue_reminder_max_days: int = 30
    assign_number_on_create: bool = True
    scheduler_tick_seconds: int = 3600

    def validate(self) -> BillingSettings:
        """Return self, or raise ``ConfigurationError`` for the first bad value."""
        for name in ("invoice_prefix", "estimate_prefix"):
            if not isinstance(getattr(self, name), str):
                raise ConfigurationError(name, "must be a string")
        if self.invoice_prefix == self.estimate_prefix:
            raise ConfigurationError(
                "estimate_prefix", "must differ from invoice_prefix"
            )

        for name in (
            "number_padding",
            "default_payment_terms_days",
            "estimate_validity_days",
            "reminder_lead_days",
            "overdue_reminder_max_days",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ConfigurationError(name, f"must be a non-negative integer, got {value!r}")

        if not 1 <= self.number_padding <= 12:
            raise ConfigurationError("number_padding", "must be between 1 and 12")
        if (
            isinstance(self.scheduler_tick_seconds, bool)
            or not isinstance(self.scheduler_tick_seconds, int)
            or self.scheduler_tick_seconds <= 0
        ):
            raise ConfigurationError("scheduler_tick_seconds", "must be a positive integer")
        if not isinstance(self.assign_number_on_create, bool):
            raise ConfigurationError("assign_number_on_create", "must be true or false")
        if not isinstance(self.default_currency, str) or not _CURRENCY_RE.match(
            self.default_currency
        ):
            raise ConfigurationError(
                "default_currency", f"must be an ISO 4217 code, got {self.default_currency!r}"
            )
        return self

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))
