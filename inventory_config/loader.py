"""
Policy Loader (``inventory_config.loader``).

Responsibility
--------------
Reads a policy YAML file and parses it into the kernel's frozen
``InventoryPolicy`` dataclasses.  Runtime callers go through
``inventory_config.get_active_policy()``; this module is its tooling.

Invariants enforced
-------------------
* Unknown sections or keys are errors, never ignored.
* Integer thresholds must be YAML integers; hour thresholds may be integers
  or floats.  Booleans are rejected for both.
* Range checks live in the dataclasses themselves
  (``inventory_kernel.domain.policy``), so every construction path is
  checked the same way.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong shape or values  -> ``ConfigurationError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from inventory_kernel.domain.policy import (
    EscalationThresholds,
    ExpiryAlertThresholds,
    ExpiryStatusThresholds,
    InventoryPolicy,
    LowStockThresholds,
)
from inventory_kernel.exceptions import ConfigurationError

_SECTIONS: dict[str, type] = {
    "expiry_status": ExpiryStatusThresholds,
    "expiry_alerts": ExpiryAlertThresholds,
    "low_stock": LowStockThresholds,
    "escalation": EscalationThresholds,
}
_META_KEYS = frozenset({"version"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load one YAML file; an empty file yields an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    return data


def _coerce(section: str, key: str, value: Any, expected: type) -> Any:
    if isinstance(value, bool):
        raise ConfigurationError(f"{section}.{key} must be a number", key=f"{section}.{key}")
    if expected is int:
        if not isinstance(value, int):
            raise ConfigurationError(
                f"{section}.{key} must be an integer, got {value!r}", key=f"{section}.{key}",
            )
        return value
    if not isinstance(value, (int, float)):
        raise ConfigurationError(
            f"{section}.{key} must be a number, got {value!r}", key=f"{section}.{key}",
        )
    return float(value)


def _parse_section(section: str, cls: type, data: Any):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"{section} must be a mapping", key=section)
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in {section}: {', '.join(unknown)}", key=f"{section}.{unknown[0]}",
        )
    expected_type = float if cls is EscalationThresholds else int
    values = {key: _coerce(section, key, value, expected_type) for key, value in data.items()}
    return cls(**values)


def parse_policy(data: dict[str, Any]) -> InventoryPolicy:
    """Build an InventoryPolicy from a parsed YAML mapping."""
    unknown = sorted(set(data) - set(_SECTIONS) - _META_KEYS)
    if unknown:
        raise ConfigurationError(
            f"Unknown policy section(s): {', '.join(unknown)}", key=unknown[0],
        )
    return InventoryPolicy(
        **{name: _parse_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()}
    )


def load_policy(path: Path) -> InventoryPolicy:
    return parse_policy(load_yaml_file(path))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form; identical input, identical checksum."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
