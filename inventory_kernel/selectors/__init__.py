"""Read-only selectors."""

from inventory_kernel.selectors.adjustment_selector import AdjustmentSelector
from inventory_kernel.selectors.base import BaseSelector
from inventory_kernel.selectors.ledger_selector import LedgerSelector

__all__ = ["AdjustmentSelector", "BaseSelector", "LedgerSelector"]
