"""
Billing kernel database layer: declarative base, column types, engine.
"""

from billing_kernel.db.base import Base, TrackedBase, VersionedBase

__all__ = ["Base", "TrackedBase", "VersionedBase"]
