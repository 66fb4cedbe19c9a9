"""
Billing Kernel

Shared infrastructure for the billing modules:
- Typed exceptions with machine-readable codes
- Structured JSON logging
- Injectable clock
- Workflow value objects
- SQLAlchemy base, engine and document numbering
"""

__version__ = "0.1.0"
