"""
Shared persistence helpers for module services.

Loading a document for mutation, checking a caller-supplied version and
finishing a unit of work are identical for invoices, estimates and
templates; each service calls these instead of repeating the pattern.
"""

from __future__ import annotations

from typing import TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from billing_kernel.exceptions import DocumentNotFoundError, OptimisticLockError
from billing_kernel.logging_config import get_logger

logger = get_logger("modules.persistence")

_Row = TypeVar("_Row")


def load_document(
    session: Session,
    model: type[_Row],
    organization_id: UUID,
    document_id: UUID,
    document_type: str,
    *,
    for_update: bool = True,
) -> _Row:
    """
    Load one row scoped to ``organization_id``.

    ``for_update`` issues ``SELECT ... FOR UPDATE`` (a no-op on SQLite) so
    two writers on the same document serialise at the database.

    Raises:
        DocumentNotFoundError: no such row in this organization.
    """
    stmt = select(model).where(
        model.id == document_id,
        model.organization_id == organization_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    row = session.execute(
        stmt.execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if row is None:
        raise DocumentNotFoundError(document_type, str(document_id))
    return row


def check_version(row, expected_version: int | None, entity_type: str) -> None:
    """Raise ``OptimisticLockError`` if the caller read an older version."""
    if expected_version is not None and row.version != expected_version:
        logger.warning("optimistic_lock_conflict", extra={
            "entity_type": entity_type,
            "entity_id": str(row.id),
            "expected_version": expected_version,
            "actual_version": row.version,
        })
        raise OptimisticLockError(entity_type, str(row.id))


def finish(session: Session, entity_type: str, entity_id: UUID, *, commit: bool) -> None:
    """
    Commit (or only flush) the pending unit of work.

    A stale ``version`` detected by SQLAlchemy surfaces as
    ``OptimisticLockError`` after the session has been rolled back.
    """
    try:
        if commit:
            session.commit()
        else:
            session.flush()
    except StaleDataError as e:
        session.rollback()
        logger.warning("optimistic_lock_conflict", extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
        })
        raise OptimisticLockError(entity_type, str(entity_id)) from e
