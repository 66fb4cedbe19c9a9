"""
ORM-level immutability enforcement for billing records.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Mixin            | When Immutable                   | Used by
-----------------|----------------------------------|---------------------------
AppendOnly       | ALWAYS (from creation)           | Invoice payment records
FrozenOnIssue    | ``__frozen_fields__`` once the   | Invoices, estimates
                 | document has been sent           | (customer snapshot)

===============================================================================
HOW IT WORKS
===============================================================================

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners are attached to every mapped subclass of the two
mixins, discovered at registration time, so this module never imports a
module ORM class:

    session.flush()
         |
         v
    [before_update] --> _check_*() --> ImmutabilityViolationError
    [before_delete] --> _check_*() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

"Was sent" is detected from attribute history, so the send transition
itself (``sent_at`` None -> value, snapshot captured in the same flush) is
allowed while every later change to a frozen field is blocked.

===============================================================================
USAGE
===============================================================================

    from billing_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

Tests that need to violate the rules may call
``unregister_immutability_listeners()`` and re-register afterwards.
"""

from typing import ClassVar

from sqlalchemy import event, inspect

from billing_kernel.exceptions import ImmutabilityViolationError
from billing_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


class AppendOnly:
    """Mixin for rows that may be inserted but never updated or deleted."""


class FrozenOnIssue:
    """
    Mixin for documents whose ``__frozen_fields__`` are fixed once sent.

    The mapped class must have a ``sent_at`` column.
    """

    __frozen_fields__: ClassVar[tuple[str, ...]] = ()


def _blocked(entity_type: str, entity_id: str, operation: str, reason: str):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": entity_id,
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
    )


def _check_append_only_update(mapper, connection, target):
    """Prevent any update to an append-only record."""
    raise _blocked(
        type(target).__name__,
        str(target.id),
        "UPDATE",
        "Append-only records cannot be modified",
    )


def _check_append_only_delete(mapper, connection, target):
    """Prevent deletion of an append-only record."""
    raise _blocked(
        type(target).__name__,
        str(target.id),
        "DELETE",
        "Append-only records cannot be deleted",
    )


def _was_sent(target) -> bool:
    """True if ``sent_at`` was already set before the pending flush."""
    history = inspect(target).attrs.sent_at.history
    if history.has_changes():
        return any(value is not None for value in history.deleted)
    return target.sent_at is not None


def _check_frozen_fields(mapper, connection, target):
    """Block changes to snapshot fields of a document that was already sent."""
    if not _was_sent(target):
        return

    state = inspect(target)
    changed = [
        name
        for name in target.__frozen_fields__
        if state.attrs[name].history.has_changes()
    ]
    if changed:
        raise _blocked(
            type(target).__name__,
            str(target.id),
            "UPDATE",
            f"Fields frozen after issue cannot change: {', '.join(sorted(changed))}",
        )


_MIXIN_LISTENERS = (
    (AppendOnly, "before_update", _check_append_only_update),
    (AppendOnly, "before_delete", _check_append_only_delete),
    (FrozenOnIssue, "before_update", _check_frozen_fields),
)


def _mapped_subclasses(mixin: type) -> list[type]:
    """Mapped classes inheriting ``mixin`` (abstract bases are skipped)."""
    found: list[type] = []
    stack = list(mixin.__subclasses__())
    while stack:
        cls = stack.pop()
        stack.extend(cls.__subclasses__())
        if "__table__" in vars(cls) and cls not in found:
            found.append(cls)
    return found


def _iter_listeners():
    for mixin, event_name, listener_fn in _MIXIN_LISTENERS:
        for cls in _mapped_subclasses(mixin):
            yield cls, event_name, listener_fn


def register_immutability_listeners() -> None:
    """
    Register all immutability enforcement event listeners (idempotent).

    Preconditions: module ORM models are imported
        (``billing_modules._orm_registry.import_all_orm_models``).
    """
    registered = 0
    for cls, event_name, listener_fn in _iter_listeners():
        if not event.contains(cls, event_name, listener_fn):
            event.listen(cls, event_name, listener_fn)
            registered += 1
    logger.debug("immutability_listeners_registered", extra={"count": registered})


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests where you need to intentionally
    violate immutability rules to verify detection.
    """
    for cls, event_name, listener_fn in _iter_listeners():
        if event.contains(cls, event_name, listener_fn):
            event.remove(cls, event_name, listener_fn)
