"""
Idempotency key generation utilities.

A recurring template may generate at most one invoice per run date, even
under retries and overlapping scheduler ticks.  The key is logged with every
generation attempt; the database enforces the same pair through a unique
constraint on ``(recurring_template_id, recurring_run_date)``.
"""

from datetime import date
from uuid import UUID


def recurring_run_key(template_id: UUID | str, run_date: date) -> str:
    """
    Generate the idempotency key for one template run.

    Format: template_id:YYYY-MM-DD

    Example:
        >>> recurring_run_key(uuid, date(2024, 2, 29))
        "550e8400-e29b-41d4-a716-446655440000:2024-02-29"
    """
    return f"{template_id}:{run_date.isoformat()}"


def parse_recurring_run_key(key: str) -> tuple[UUID, date]:
    """
    Parse a recurring run key into (template_id, run_date).

    Raises:
        ValueError: If key format is invalid.
    """
    template_part, sep, date_part = key.rpartition(":")
    if not sep or not template_part:
        raise ValueError(f"Invalid recurring run key format: {key}")
    return UUID(template_part), date.fromisoformat(date_part)
