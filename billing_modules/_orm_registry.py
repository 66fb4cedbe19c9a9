"""
Module ORM Registry (``billing_modules._orm_registry``).

Responsibility
--------------
Ensure every SQLAlchemy ORM model is imported so that ``Base.metadata``
holds all table definitions before tables are created, and so that the
immutability listeners can find every mapped subclass.

Architecture position
---------------------
**Modules layer** -- utility.  Imports sibling ``billing_modules`` packages
and ``billing_kernel.db`` (allowed: modules -> kernel).

Usage
-----
Scripts and ``tests/conftest.py`` call ``create_all_tables()``.
"""


def import_all_orm_models() -> None:
    """Import kernel tables and every ``billing_modules.*.orm`` module (idempotent)."""
    import billing_kernel.services.sequence_service  # noqa: F401  # document counters
    import billing_modules.estimates.orm  # noqa: F401
    import billing_modules.invoicing.orm  # noqa: F401
    import billing_modules.recurring.orm  # noqa: F401


def create_all_tables(install_listeners: bool = True) -> None:
    """Create every billing table, then optionally register immutability listeners.

    Preconditions:
        Engine must be initialized via ``init_engine_from_url()``.
    """
    from billing_kernel.db.engine import create_tables
    from billing_kernel.db.immutability import register_immutability_listeners

    import_all_orm_models()
    create_tables()
    if install_listeners:
        register_immutability_listeners()
