"""Kernel services: the imperative shell around the pure domain core."""

from inventory_kernel.services.adjustment_service import AdjustmentService
from inventory_kernel.services.alert_service import AlertService
from inventory_kernel.services.fefo_service import FEFOService
from inventory_kernel.services.inventory_orchestrator import (
    InventoryOrchestrator,
    InventoryServices,
)
from inventory_kernel.services.ledger_service import LedgerService
from inventory_kernel.services.lot_registry import LotRegistry
from inventory_kernel.services.reorder_service import ReorderPolicyService
from inventory_kernel.services.sequence_service import SequenceService

__all__ = [
    "AdjustmentService",
    "AlertService",
    "FEFOService",
    "InventoryOrchestrator",
    "InventoryServices",
    "LedgerService",
    "LotRegistry",
    "ReorderPolicyService",
    "SequenceService",
]
