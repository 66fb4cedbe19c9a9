"""
Money -- minor-unit arithmetic helpers.

Responsibility:
    Converts between Decimal amounts (the API boundary) and integer minor
    units (cents), which is how every total is computed internally so that
    repeated recomputation never accumulates drift.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - No floats and no NaN or Infinity.  ``to_decimal`` rejects them.
    - ``round_money`` is the single rounding function (ROUND_HALF_UP).
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

MONEY_DECIMAL_PLACES = 2
RATE_DECIMAL_PLACES = 4
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0.00")


def to_decimal(value: Decimal | int | str) -> Decimal:
    """Coerce ``value`` to a finite Decimal, refusing floats."""
    if isinstance(value, float):
        raise TypeError("Monetary values must not be floats; pass Decimal or str")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation as e:
            raise ValueError(f"Invalid amount: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"Amount must be a finite number: {value!r}")
    return result


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a monetary value to ``decimal_places`` (ROUND_HALF_UP)."""
    return value.quantize(Decimal(1).scaleb(-decimal_places), rounding=rounding)


def to_minor_units(value: Decimal | int | str, decimal_places: int = MONEY_DECIMAL_PLACES) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Example:
        to_minor_units(Decimal("10.505")) -> 1051
    """
    amount = round_money(to_decimal(value), decimal_places)
    return int(amount.scaleb(decimal_places))


def from_minor_units(value: int, decimal_places: int = MONEY_DECIMAL_PLACES) -> Decimal:
    """
    Convert integer minor units to a Decimal quantised to the currency precision.

    Example:
        from_minor_units(1050) -> Decimal("10.50")
    """
    return round_money(Decimal(value).scaleb(-decimal_places), decimal_places)


def percent_of_minor(amount_minor: int, rate: Decimal) -> int:
    """``amount_minor × rate / 100`` rounded half-up to a whole minor unit."""
    raw = Decimal(amount_minor) * to_decimal(rate) / Decimal(100)
    return int(raw.quantize(Decimal(1), rounding=DEFAULT_ROUNDING))
