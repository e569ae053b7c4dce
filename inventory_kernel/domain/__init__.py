"""
Pure domain layer.

Value objects and decision logic with NO dependencies on the ORM, the
database, the system clock or any other I/O.
"""

from inventory_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from inventory_kernel.domain.dtos import (
    AdjustmentLineInput,
    AdjustmentReason,
    AdjustmentStatus,
    AlertCandidate,
    AlertPriority,
    AlertType,
    ExpiryStatus,
    FEFOResult,
    LedgerEntryInput,
    LotBalance,
    MovementType,
)
from inventory_kernel.domain.policy import DEFAULT_POLICY, InventoryPolicy
from inventory_kernel.domain.workflow import ADJUSTMENT_WORKFLOW

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "AdjustmentLineInput",
    "AdjustmentReason",
    "AdjustmentStatus",
    "AlertCandidate",
    "AlertPriority",
    "AlertType",
    "ExpiryStatus",
    "FEFOResult",
    "LedgerEntryInput",
    "LotBalance",
    "MovementType",
    "InventoryPolicy",
    "DEFAULT_POLICY",
    "ADJUSTMENT_WORKFLOW",
]
