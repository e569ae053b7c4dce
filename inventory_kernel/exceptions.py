"""
Typed Exception Hierarchy for the Inventory Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the kernel (HTTP handlers, batch jobs, the sweep CLI) must be able
to react to failures without parsing message strings:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        orchestrator.post_adjustment(tenant_id, adjustment_id, actor_id)
    except NegativeLotBalanceError as e:
        return {"error": e.code, "lot_id": e.lot_id, "resulting": e.resulting_balance}

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    InventoryKernelError (base)
    |
    +-- ValidationError
    |   +-- InsufficientStockError
    |
    +-- NotFoundError
    |   +-- AdjustmentNotFoundError
    |   +-- LotNotFoundError
    |
    +-- InvalidTransitionError
    |
    +-- InvariantViolationError
    |   +-- NegativeLotBalanceError
    |
    +-- ConcurrencyConflictError
    |
    +-- ImmutabilityViolationError
    |
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                    | When Raised                                  | HTTP
------------------------|----------------------------------------------|-----
VALIDATION_ERROR        | Malformed input, rejected before any write   | 400
INSUFFICIENT_STOCK      | FEFO allocation cannot cover demand          | 400
NOT_FOUND               | Unknown id, or id owned by another tenant    | 404
ADJUSTMENT_NOT_FOUND    | Adjustment id unknown to the tenant          | 404
LOT_NOT_FOUND           | Lot id unknown to the tenant                 | 404
INVALID_TRANSITION      | Adjustment state machine violation           | 400
INVARIANT_VIOLATION     | Ledger invariant would be broken             | 400
NEGATIVE_LOT_BALANCE    | Lot-tracked balance would go below zero      | 400
CONCURRENCY_CONFLICT    | Lock timeout, deadlock, serialization error  | 409
IMMUTABILITY_VIOLATION  | UPDATE/DELETE of an append-only record       | 400
CONFIGURATION_ERROR     | Invalid inventory policy configuration       | 500

===============================================================================
DESIGN DECISIONS
===============================================================================

1. The ``code`` is a class attribute so it can be read without an
   instance (API documentation, log assertions).

2. ConcurrencyConflictError is the only retryable category.  Callers retry
   the whole operation, never the failed sub-step.

3. ``http_status_for`` lives here so that every boundary maps the taxonomy
   the same way; the kernel itself never speaks HTTP.

===============================================================================
"""

from decimal import Decimal


class InventoryKernelError(Exception):
    """
    Base exception for all inventory kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "INVENTORY_KERNEL_ERROR"


# Validation


class ValidationError(InventoryKernelError):
    """Malformed caller input.  Always raised before any state change."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InsufficientStockError(ValidationError):
    """Available lots cannot cover the requested quantity."""

    code: str = "INSUFFICIENT_STOCK"

    def __init__(
        self,
        product_id: str,
        location_id: str,
        quantity_needed: Decimal,
        total_available: Decimal,
    ):
        self.product_id = product_id
        self.location_id = location_id
        self.quantity_needed = quantity_needed
        self.total_available = total_available
        super().__init__(
            f"Insufficient stock for product {product_id} at location "
            f"{location_id}: needed {quantity_needed}, available {total_available}",
            field="quantity_needed",
        )


# Lookup


class NotFoundError(InventoryKernelError):
    """Referenced entity does not exist or belongs to another tenant."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found: {entity_id}")


class AdjustmentNotFoundError(NotFoundError):
    """Stock adjustment id is unknown to the tenant."""

    code: str = "ADJUSTMENT_NOT_FOUND"

    def __init__(self, adjustment_id: str):
        self.adjustment_id = adjustment_id
        super().__init__("StockAdjustment", adjustment_id)


class LotNotFoundError(NotFoundError):
    """Lot id is unknown to the tenant."""

    code: str = "LOT_NOT_FOUND"

    def __init__(self, lot_id: str):
        self.lot_id = lot_id
        super().__init__("Lot", lot_id)


# State machine


class InvalidTransitionError(InventoryKernelError):
    """Requested action is not valid from the document's current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, workflow: str, current_state: str, action: str):
        self.workflow = workflow
        self.current_state = current_state
        self.action = action
        super().__init__(
            f"Cannot {action} {workflow} in state '{current_state}'"
        )


# Ledger invariants


class InvariantViolationError(InventoryKernelError):
    """A ledger write would break a ledger invariant."""

    code: str = "INVARIANT_VIOLATION"


class NegativeLotBalanceError(InvariantViolationError):
    """
    Appending the batch would drive a lot-tracked balance below zero.

    The whole batch is rejected; no entry of it is written.
    """

    code: str = "NEGATIVE_LOT_BALANCE"

    def __init__(
        self,
        product_id: str,
        location_id: str,
        lot_id: str,
        current_balance: Decimal,
        delta: Decimal,
    ):
        self.product_id = product_id
        self.location_id = location_id
        self.lot_id = lot_id
        self.current_balance = current_balance
        self.delta = delta
        self.resulting_balance = current_balance + delta
        super().__init__(
            f"Lot {lot_id} of product {product_id} at location {location_id} "
            f"would go negative: balance {current_balance}, delta {delta}"
        )


# Concurrency


class ConcurrencyConflictError(InventoryKernelError):
    """
    Lock contention or serialization failure.

    Retry the whole operation.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, resource: str, reason: str):
        self.resource = resource
        self.reason = reason
        super().__init__(f"Concurrency conflict on {resource}: {reason}")


# Immutability


class ImmutabilityViolationError(InventoryKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Configuration


class ConfigurationError(InventoryKernelError):
    """Inventory policy configuration is missing or inconsistent."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, key: str | None = None):
        self.key = key
        super().__init__(message)


_HTTP_STATUS: tuple[tuple[type[InventoryKernelError], int], ...] = (
    (NotFoundError, 404),
    (ConcurrencyConflictError, 409),
    (ValidationError, 400),
    (InvalidTransitionError, 400),
    (InvariantViolationError, 400),
    (ImmutabilityViolationError, 400),
)


def http_status_for(exc: BaseException) -> int:
    """Map a kernel exception to the HTTP status a boundary should return."""
    for exc_type, status in _HTTP_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 500
