"""ORM models for the inventory kernel."""

from inventory_kernel.models.adjustment import StockAdjustment, StockAdjustmentItem
from inventory_kernel.models.ledger import LedgerEntry, StockBalance
from inventory_kernel.models.lot import Lot
from inventory_kernel.models.reorder import ReorderConfig
from inventory_kernel.models.sequence import SequenceCounter

__all__ = [
    "LedgerEntry",
    "StockBalance",
    "Lot",
    "StockAdjustment",
    "StockAdjustmentItem",
    "ReorderConfig",
    "SequenceCounter",
]
