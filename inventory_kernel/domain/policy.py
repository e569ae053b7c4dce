"""
InventoryPolicy -- the one threshold configuration object.

Responsibility:
    Holds every tunable threshold used by FEFO classification, the expiry
    and low-stock sweeps, and alert escalation.  Defaults are the canonical
    values; ``inventory_config`` loads overrides from YAML into these types.

Architecture position:
    Kernel > Domain -- pure value objects.  The kernel never reads
    configuration files; it receives an ``InventoryPolicy`` by injection.

Invariants enforced:
    - Day thresholds are non-negative and ordered
      (high < medium <= low for alerts, soon <= approaching for FEFO).
    - Escalation hours are positive and non-decreasing from critical to low.

Failure modes:
    - ConfigurationError on construction with inconsistent values.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from inventory_kernel.exceptions import ConfigurationError
from inventory_kernel.logging_config import get_logger

logger = get_logger("domain.policy")


def _fail(message: str, key: str) -> None:
    logger.warning("inventory_policy_invalid", extra={"key": key, "reason": message})
    raise ConfigurationError(message, key=key)


@dataclass(frozen=True)
class ExpiryStatusThresholds:
    """FEFO freshness bands in days-to-expiry."""
    expiring_soon_days: int = 7
    approaching_expiry_days: int = 30

    def __post_init__(self):
        if self.expiring_soon_days < 0:
            _fail("expiring_soon_days must be non-negative", "expiry_status.expiring_soon_days")
        if self.approaching_expiry_days < self.expiring_soon_days:
            _fail(
                "approaching_expiry_days must be >= expiring_soon_days",
                "expiry_status.approaching_expiry_days",
            )


@dataclass(frozen=True)
class ExpiryAlertThresholds:
    """Expiry sweep priority bands in days-to-expiry."""
    high_priority_days: int = 3
    medium_priority_days: int = 7
    low_priority_days: int = 14

    def __post_init__(self):
        if self.high_priority_days < 0:
            _fail("high_priority_days must be non-negative", "expiry_alerts.high_priority_days")
        if not self.high_priority_days <= self.medium_priority_days <= self.low_priority_days:
            _fail(
                "expiry alert thresholds must satisfy high <= medium <= low",
                "expiry_alerts",
            )


@dataclass(frozen=True)
class LowStockThresholds:
    """Low-stock priority bands in estimated days of stock remaining."""
    high_priority_days: int = 3
    medium_priority_days: int = 7
    usage_window_days: int = 30

    def __post_init__(self):
        if not 0 <= self.high_priority_days <= self.medium_priority_days:
            _fail(
                "low stock thresholds must satisfy 0 <= high <= medium",
                "low_stock",
            )
        if self.usage_window_days <= 0:
            _fail("usage_window_days must be positive", "low_stock.usage_window_days")


@dataclass(frozen=True)
class EscalationThresholds:
    """Hours an unacknowledged alert may wait before escalation."""
    critical_hours: float = 0.5
    high_hours: float = 2.0
    medium_hours: float = 8.0
    low_hours: float = 24.0

    def __post_init__(self):
        hours = (self.critical_hours, self.high_hours, self.medium_hours, self.low_hours)
        if any(h <= 0 for h in hours):
            _fail("escalation hours must be positive", "escalation")
        if list(hours) != sorted(hours):
            _fail("escalation hours must not decrease from critical to low", "escalation")

    def hours_for(self, priority: str) -> float:
        return {
            "critical": self.critical_hours,
            "high": self.high_hours,
            "medium": self.medium_hours,
            "low": self.low_hours,
        }.get(priority, self.low_hours)


@dataclass(frozen=True)
class InventoryPolicy:
    """All inventory thresholds in one immutable object."""
    expiry_status: ExpiryStatusThresholds = field(default_factory=ExpiryStatusThresholds)
    expiry_alerts: ExpiryAlertThresholds = field(default_factory=ExpiryAlertThresholds)
    low_stock: LowStockThresholds = field(default_factory=LowStockThresholds)
    escalation: EscalationThresholds = field(default_factory=EscalationThresholds)


DEFAULT_POLICY = InventoryPolicy()
