"""
SequenceService -- per-organization document number allocation.

Responsibility:
    Provides strictly monotonically increasing counters for invoice and
    estimate numbers.  Uses a dedicated counter table with row-level locking
    (``SELECT ... FOR UPDATE``) so two concurrent sends in the same
    organization never receive the same number.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by InvoiceService and EstimateService.

Invariants enforced:
    - Monotonicity: the locked counter row is the sole source of truth for
      the next value.  ``max(number) + 1`` over the documents table is never
      used.
    - Transactional: an increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and retry).
"""

from uuid import UUID

from sqlalchemy import BigInteger, String, UniqueConstraint, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from billing_kernel.db.base import Base
from billing_kernel.db.types import UUIDString
from billing_kernel.logging_config import get_logger

logger = get_logger("services.sequence")


class DocumentSequence(Base):
    """
    Document number counter table.

    One row per (organization, sequence name).
    """

    __tablename__ = "billing_document_sequences"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_document_sequence_org_name"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Sequence name (e.g. "invoice", "estimate")
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)


def format_document_number(prefix: str, value: int, padding: int = 5) -> str:
    """
    Render a document number.

    Example:
        format_document_number("INV-", 42) -> "INV-00042"
    """
    return f"{prefix}{value:0{padding}d}"


class SequenceService:
    """
    Service for allocating transactional document numbers.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    INVOICE = "invoice"
    ESTIMATE = "estimate"

    def __init__(self, session: Session):
        self._session = session

    def _locked_counter(self, organization_id: UUID, name: str) -> DocumentSequence | None:
        return self._session.execute(
            select(DocumentSequence)
            .where(
                DocumentSequence.organization_id == organization_id,
                DocumentSequence.name == name,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, organization_id: UUID, name: str) -> int:
        """
        Get the next value for a named per-organization sequence.

        Postconditions:
            - Returns an integer > 0 that is strictly greater than any
              previously returned value for this organization and name.
            - The counter row is locked until the transaction completes.
        """
        counter = self._locked_counter(organization_id, name)

        if counter is None:
            # First use; another transaction may create the row concurrently.
            savepoint = self._session.begin_nested()
            try:
                counter = DocumentSequence(
                    organization_id=organization_id,
                    name=name,
                    current_value=1,
                )
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": name},
                )
                savepoint.rollback()
                counter = self._locked_counter(organization_id, name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, organization_id: UUID, name: str) -> int | None:
        """Current value of a sequence without incrementing, or None if unused."""
        counter = self._session.execute(
            select(DocumentSequence).where(
                DocumentSequence.organization_id == organization_id,
                DocumentSequence.name == name,
            )
        ).scalar_one_or_none()
        return counter.current_value if counter else None

    def next_number(
        self,
        organization_id: UUID,
        name: str,
        prefix: str,
        padding: int,
    ) -> str:
        """Allocate the next value and render it as a document number."""
        return format_document_number(prefix, self.next_value(organization_id, name), padding)
