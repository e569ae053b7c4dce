"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The stock ledger is append-only: once a movement is written it is never
changed or removed, and corrections are new offsetting entries.  Balances,
FEFO rankings and alerts are all derived from it, so an in-place edit would
silently rewrite history.

SQLAlchemy fires events before UPDATE/DELETE statements reach the database.
The listeners below intercept them and raise ImmutabilityViolationError, so
the unit of work is aborted and nothing is written.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity               | When Immutable                     | Rule
---------------------|------------------------------------|-------------------------------
LedgerEntry          | ALWAYS (from creation)             | No UPDATE, no DELETE
Lot                  | Identity fields always             | No DELETE; tenant/product/
                     |                                    | location/lot_number frozen
StockAdjustment      | After status = posted              | No field changes, no DELETE
                     | Unless draft                       | No DELETE
StockAdjustmentItem  | When parent is not draft           | No INSERT, UPDATE or DELETE

===============================================================================
DESIGN DECISIONS
===============================================================================

1. updated_at/updated_by_id may change on any record; they are audit
   metadata, not inventory data.

2. The posting transition itself sets status=posted.  The adjustment check
   looks at attribute history to tell "being posted" from "already posted".

3. Model imports are inline to avoid a db <-> models import cycle.

===============================================================================
USAGE
===============================================================================

Registered automatically by ``init_engine_from_url``.  Registration is
idempotent.  To disable (TESTS ONLY):

    from inventory_kernel.db.immutability import unregister_immutability_listeners
    unregister_immutability_listeners()

===============================================================================
"""

from sqlalchemy import event, inspect
from sqlalchemy.orm import object_session
from sqlalchemy.orm.attributes import get_history

from inventory_kernel.exceptions import ImmutabilityViolationError
from inventory_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_FIELDS = frozenset({"updated_at", "updated_by_id"})
_LOT_IDENTITY_FIELDS = ("tenant_id", "product_id", "location_id", "lot_number")


def _block(entity_type: str, entity_id, operation: str, reason: str, **extra) -> None:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **extra,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _changed_fields(target) -> list[str]:
    return [
        attr.key
        for attr in inspect(target).attrs
        if attr.key not in _AUDIT_FIELDS and attr.history.has_changes()
    ]


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def _check_ledger_entry_update(mapper, connection, target):
    """Ledger entries are append-only."""
    changed = _changed_fields(target)
    if changed:
        _block(
            "LedgerEntry", target.id, "UPDATE",
            "Ledger entries are append-only; post an offsetting entry instead",
            fields=changed,
        )


def _check_ledger_entry_delete(mapper, connection, target):
    _block(
        "LedgerEntry", target.id, "DELETE",
        "Ledger entries are append-only and cannot be deleted",
    )


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------


def _check_lot_update(mapper, connection, target):
    """Lot identity never changes; dates and notes may be corrected."""
    for key in _LOT_IDENTITY_FIELDS:
        if get_history(target, key).deleted:
            _block(
                "Lot", target.id, "UPDATE",
                f"Cannot change '{key}' of a lot",
                field=key,
            )


def _check_lot_delete(mapper, connection, target):
    _block("Lot", target.id, "DELETE", "Lots are never deleted")


# ---------------------------------------------------------------------------
# Adjustments
# ---------------------------------------------------------------------------


def _was_posted(target) -> bool:
    status_history = get_history(target, "status")
    if status_history.deleted:
        return status_history.deleted[0] == "posted"
    return target.status == "posted"


def _check_adjustment_update(mapper, connection, target):
    """A posted adjustment is frozen.  The posting transition itself is allowed."""
    if not _was_posted(target):
        return
    changed = _changed_fields(target)
    if changed:
        _block(
            "StockAdjustment", target.id, "UPDATE",
            f"Cannot modify field '{changed[0]}' on posted adjustment",
            fields=changed,
        )


def _check_adjustment_delete(mapper, connection, target):
    if target.status != "draft":
        _block(
            "StockAdjustment", target.id, "DELETE",
            f"Only draft adjustments can be deleted (status is {target.status})",
        )


def _parent_status(connection, target) -> str | None:
    from inventory_kernel.models.adjustment import StockAdjustment

    # Relationship may be unloaded during flush; fall back to a direct read.
    parent = target.__dict__.get("adjustment")
    if parent is not None:
        history = get_history(parent, "status")
        if history.deleted:
            return history.deleted[0]
        return parent.status
    table = StockAdjustment.__table__
    return connection.execute(
        table.select()
        .with_only_columns(table.c.status)
        .where(table.c.id == str(target.adjustment_id))
    ).scalar_one_or_none()


def _deleted_parent(target):
    """The item's adjustment when it is being deleted in the same flush."""
    from inventory_kernel.models.adjustment import StockAdjustment

    session = object_session(target)
    if session is None:
        return None
    for obj in session.deleted:
        if isinstance(obj, StockAdjustment) and obj.id == target.adjustment_id:
            return obj
    return None


def _check_adjustment_item_mutation(operation: str):
    def _check(mapper, connection, target):
        if operation == "DELETE":
            # Items are deleted before their header; report the header rule.
            parent = _deleted_parent(target)
            if parent is not None:
                _check_adjustment_delete(mapper, connection, parent)
                return
        status = _parent_status(connection, target)
        if status is not None and status != "draft":
            _block(
                "StockAdjustmentItem", target.id, operation,
                f"Line items are immutable once the adjustment is {status}",
                adjustment_id=str(target.adjustment_id),
            )

    _check.__name__ = f"_check_adjustment_item_{operation.lower()}"
    return _check


_check_adjustment_item_insert = _check_adjustment_item_mutation("INSERT")
_check_adjustment_item_update = _check_adjustment_item_mutation("UPDATE")
_check_adjustment_item_delete = _check_adjustment_item_mutation("DELETE")


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def _listeners():
    from inventory_kernel.models.adjustment import StockAdjustment, StockAdjustmentItem
    from inventory_kernel.models.ledger import LedgerEntry
    from inventory_kernel.models.lot import Lot

    return (
        (LedgerEntry, "before_update", _check_ledger_entry_update),
        (LedgerEntry, "before_delete", _check_ledger_entry_delete),
        (Lot, "before_update", _check_lot_update),
        (Lot, "before_delete", _check_lot_delete),
        (StockAdjustment, "before_update", _check_adjustment_update),
        (StockAdjustment, "before_delete", _check_adjustment_delete),
        (StockAdjustmentItem, "before_insert", _check_adjustment_item_insert),
        (StockAdjustmentItem, "before_update", _check_adjustment_item_update),
        (StockAdjustmentItem, "before_delete", _check_adjustment_item_delete),
    )


def register_immutability_listeners() -> None:
    """Register all immutability listeners.  Safe to call repeatedly."""
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability listeners.

    WARNING: Only use this in tests that must violate the rules on purpose.
    """
    for target, event_name, listener_fn in _listeners():
        if event.contains(target, event_name, listener_fn):
            event.remove(target, event_name, listener_fn)
