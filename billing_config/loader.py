"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into ``BillingSettings``.
Runtime callers use ``billing_config.get_active_settings()``; the loader
is public for tests and tooling.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys or invalid values  -> ``ConfigurationError``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import BillingSettings
from billing_kernel.exceptions import ConfigurationError


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Postconditions:
        - Returns a ``dict`` (possibly empty if the YAML is empty).
    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_settings(data: dict[str, Any]) -> BillingSettings:
    """
    Parse ``BillingSettings`` from a dict.

    The settings may sit at the top level or under a ``billing:`` key.
    Missing keys keep their defaults.
    """
    if not isinstance(data, dict):
        raise ConfigurationError("<root>", "settings file must contain a mapping")
    section = data.get("billing", data)
    if not isinstance(section, dict):
        raise ConfigurationError("billing", "must be a mapping")

    unknown = set(section) - BillingSettings.field_names()
    if unknown:
        raise ConfigurationError(
            sorted(unknown)[0], f"unknown setting(s): {', '.join(sorted(unknown))}"
        )
    return BillingSettings(**section).validate()


def load_settings(path: Path) -> BillingSettings:
    """Load and validate settings from a YAML file."""
    return parse_settings(load_yaml_file(path))
