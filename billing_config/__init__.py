"""
billing_config -- single public entrypoint for billing settings.

Responsibility:
    ``get_active_settings()`` is the only way services obtain settings at
    runtime.  The file is ``billing_config/defaults.yaml`` unless the
    ``BILLING_CONFIG_PATH`` environment variable points elsewhere.

Architecture position:
    Configuration -- sits above ``billing_kernel`` and below
    ``billing_modules`` / ``billing_services``.  The kernel MUST NEVER
    import from ``billing_config``.

Failure modes:
    - ``FileNotFoundError`` -- ``BILLING_CONFIG_PATH`` names a missing file.
    - ``ConfigurationError`` -- unknown key or invalid value.
"""

from __future__ import annotations

import os
import threading
from pathlib import Path

from billing_config.loader import load_settings
from billing_config.schema import BillingSettings
from billing_kernel.logging_config import get_logger

__all__ = [
    "BILLING_CONFIG_PATH",
    "BillingSettings",
    "get_active_settings",
    "reset_active_settings",
]

logger = get_logger("config")

BILLING_CONFIG_PATH = "BILLING_CONFIG_PATH"

_DEFAULT_CONFIG_FILE = Path(__file__).parent / "defaults.yaml"

_active: BillingSettings | None = None
_lock = threading.Lock()


def get_active_settings() -> BillingSettings:
    """Load (once) and return the active settings."""
    global _active
    with _lock:
        if _active is None:
            path = Path(os.environ.get(BILLING_CONFIG_PATH) or _DEFAULT_CONFIG_FILE)
            _active = load_settings(path)
            logger.info(
                "billing_settings_loaded",
                extra={
                    "path": str(path),
                    "invoice_prefix": _active.invoice_prefix,
                    "default_payment_terms_days": _active.default_payment_terms_days,
                },
            )
        return _active


def reset_active_settings() -> None:
    """Drop the cached settings. FOR TESTING ONLY."""
    global _active
    with _lock:
        _active = None
