"""
Inventory Kernel

An append-only inventory stock ledger with:
- Atomic multi-row appends guarded by per-lot row locks
- FEFO lot ranking and issue allocation
- Expiry and low-stock alert evaluation
- A draft -> approved -> posted stock adjustment workflow
"""

__version__ = "0.1.0"
