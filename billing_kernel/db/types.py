"""
Module: billing_kernel.db.types
Responsibility: Column types shared by every billing table.  Centralizes how
    UUIDs, timezone-aware timestamps and fixed-precision decimals are stored
    so that SQLite (tests, local runs) and PostgreSQL behave identically.
Architecture position: Kernel > DB.  Lowest-level import target; MUST NOT
    import from modules or services.

Invariants enforced:
    - Monetary amounts are stored as integer minor units (BigInteger) and
      surfaced as Decimal quantised to the column's scale.  No floats ever
      reach the database driver.
    - Timestamps are always returned timezone-aware (UTC), even on SQLite
      which drops tzinfo.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID as PyUUID

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """
    UUID type stored as String(36) for cross-database portability.

    Guarantees:
        - process_bind_param: UUID -> str on INSERT/UPDATE.
        - process_result_value: str -> UUID on SELECT.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp that is always normalised to UTC.

    SQLite stores naive values; on read they are re-tagged as UTC so that
    comparisons with ``Clock.now()`` never mix naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime is not allowed: {value!r}")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ScaledDecimal(TypeDecorator):
    """
    Fixed-scale Decimal stored as a scaled integer.

    ``ScaledDecimal(2)`` stores ``Decimal("12.34")`` as ``1234``.  Values
    with more precision than the scale are rounded half-up on write.
    """

    impl = BigInteger
    cache_ok = True

    def __init__(self, scale: int = 2, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.scale = scale

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("ScaledDecimal columns do not accept floats")
        quantum = Decimal(1).scaleb(-self.scale)
        return int(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP).scaleb(self.scale))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        quantum = Decimal(1).scaleb(-self.scale)
        return Decimal(int(value)).scaleb(-self.scale).quantize(quantum)


# Canonical column types
MoneyColumn = ScaledDecimal(2)
RateColumn = ScaledDecimal(4)
