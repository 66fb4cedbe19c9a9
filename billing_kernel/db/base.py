"""
Module: billing_kernel.db.base
Responsibility: Declarative base classes for all SQLAlchemy ORM models.  Provides
    the UUID primary key convention, the type annotation map, the
    organization scope column and the optimistic-lock version column.
Architecture position: Kernel > DB.  ALL model files import from here.  This
    module MUST NOT import from modules, services or outer layers.

Invariants enforced:
    - UUID primary keys: every model inherits a uuid4-generated primary key.
    - Tenant scope: every billing row carries ``organization_id``; services
      filter every query by it.
    - Optimistic locking: ``VersionedBase`` maps ``version`` as SQLAlchemy's
      ``version_id_col`` so that a stale UPDATE matches zero rows and raises
      ``StaleDataError`` (translated to ``OptimisticLockError`` by services).
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column

from billing_kernel.db.types import MoneyColumn, UTCDateTime, UUIDString


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - id is always a uuid4-generated UUID stored as String(36).
        - Decimal maps to a scaled-integer money column (2 places).
        - datetime maps to a UTC-normalised timestamp.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: MoneyColumn,
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger().with_variant(Integer, "sqlite"),
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with tenant scope and audit timestamps.

    Guarantees:
        - organization_id is required on every row.
        - created_at is set on INSERT and never changes.
        - updated_at auto-updates on every UPDATE.
    """

    __abstract__ = True

    organization_id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        nullable=False,
        index=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class VersionedBase(TrackedBase):
    """
    Tracked base for mutable aggregates (invoices, estimates, templates).

    ``version`` starts at 1 and is incremented by SQLAlchemy on every flush
    that updates the row.
    """

    __abstract__ = True

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    @declared_attr.directive
    def __mapper_args__(cls) -> dict:
        return {"version_id_col": cls.version}


# Re-export UUID for convenience
UUID = PyUUID
