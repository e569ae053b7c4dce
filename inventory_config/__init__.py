"""
inventory_config -- single public entrypoint for inventory policy.

Responsibility:
    ``get_active_policy()`` is the only way runtime code obtains thresholds.
    It reads the bundled ``defaults.yaml``, or the file named by the
    ``INVENTORY_POLICY_PATH`` environment variable, and returns a frozen
    ``InventoryPolicy``.

Architecture position:
    Configuration -- sits above ``inventory_kernel``.  The kernel never
    imports from this package; callers pass the policy into
    ``InventoryOrchestrator``.

Failure modes:
    - ``FileNotFoundError`` -- the configured path does not exist.
    - ``ConfigurationError`` -- unknown keys or inconsistent thresholds.

Audit relevance:
    Every call emits an ``INVENTORY_CONFIG_TRACE`` log entry with the source
    path and checksum, tying alerts and FEFO classifications to the exact
    thresholds that produced them.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from inventory_config.loader import compute_checksum, load_yaml_file, parse_policy
from inventory_kernel.domain.policy import InventoryPolicy

_logger = logging.getLogger("inventory_kernel.config")

DEFAULT_POLICY_PATH = Path(__file__).parent / "defaults.yaml"
POLICY_PATH_ENV = "INVENTORY_POLICY_PATH"


def get_active_policy(path: Path | str | None = None) -> InventoryPolicy:
    """
    Load the active inventory policy.

    Resolution order: explicit ``path``, then ``INVENTORY_POLICY_PATH``,
    then the bundled defaults.
    """
    env_path = os.environ.get(POLICY_PATH_ENV)
    source = Path(path) if path else Path(env_path) if env_path else DEFAULT_POLICY_PATH
    data = load_yaml_file(source)
    policy = parse_policy(data)
    _logger.info(
        "INVENTORY_CONFIG_TRACE",
        extra={
            "trace_type": "INVENTORY_CONFIG_TRACE",
            "source": str(source),
            "checksum": compute_checksum(data),
            "version": data.get("version"),
        },
    )
    return policy


__all__ = ["get_active_policy", "DEFAULT_POLICY_PATH", "POLICY_PATH_ENV"]
