"""
AdjustmentService -- stock adjustment documents from draft to posted.

Responsibility:
    Creates adjustment documents with their line items and a reserved
    document number, moves them through draft -> approved -> posted, and on
    posting appends one ledger entry per line.

Architecture position:
    Kernel > Services -- imperative shell.
    State rules come from ``domain/workflow.py``; posting goes through
    LedgerService so the negative-balance check and lock ordering apply.

Invariants enforced:
    - Transitions follow ADJUSTMENT_WORKFLOW and are checked before any
      side effect.
    - Posting is atomic with the status change: either every line has its
      ledger entry and the document is posted, or neither happened.
    - Line items change only while the document is draft.
    - Document numbers ``ADJ-{year}-{seq:05d}`` come from the locked
      per-tenant-per-year counter inside the creating transaction.

Failure modes:
    - ValidationError: no lines, bad reason, lot of another product or
      location.
    - LotNotFoundError / AdjustmentNotFoundError.
    - InvalidTransitionError: action not allowed in the current state.
    - NegativeLotBalanceError: posting would drive a lot below zero.

Audit relevance:
    Each transition is logged (adjustment_created / _approved / _posted)
    with the actor; the document stores who approved and posted it, and
    when.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock
from inventory_kernel.domain.dtos import (
    AdjustmentLineInput,
    AdjustmentReason,
    AdjustmentRecord,
    AdjustmentStatus,
    LedgerEntryInput,
    MovementType,
)
from inventory_kernel.domain.workflow import ADJUSTMENT_WORKFLOW, resolve_transition
from inventory_kernel.exceptions import (
    AdjustmentNotFoundError,
    InvalidTransitionError,
    ValidationError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.adjustment import StockAdjustment, StockAdjustmentItem
from inventory_kernel.services.base import BaseService
from inventory_kernel.services.ledger_service import LedgerService
from inventory_kernel.services.lot_registry import LotRegistry
from inventory_kernel.services.sequence_service import SequenceService

logger = get_logger("services.adjustments")

ADJUSTMENT_REFERENCE_TYPE = "ADJ"

LineItem = AdjustmentLineInput | Mapping[str, Any]


def format_adjustment_number(year: int, value: int) -> str:
    return f"ADJ-{year:04d}-{value:05d}"


def _parse_reason(reason: AdjustmentReason | str) -> AdjustmentReason:
    if isinstance(reason, AdjustmentReason):
        return reason
    try:
        return AdjustmentReason(reason)
    except ValueError:
        allowed = ", ".join(r.value for r in AdjustmentReason)
        raise ValidationError(
            f"Unknown adjustment reason {reason!r}; expected one of {allowed}",
            field="reason",
        ) from None


def _parse_lines(line_items: Sequence[LineItem]) -> list[AdjustmentLineInput]:
    if not line_items:
        raise ValidationError("An adjustment needs at least one line item", field="line_items")
    return [
        item if isinstance(item, AdjustmentLineInput) else AdjustmentLineInput.from_mapping(item)
        for item in line_items
    ]


class AdjustmentService(BaseService):
    """Stock adjustment lifecycle."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: LedgerService | None = None,
        lots: LotRegistry | None = None,
        sequences: SequenceService | None = None,
    ):
        super().__init__(session, clock)
        self._sequences = sequences or SequenceService(session)
        self._ledger = ledger or LedgerService(session, self.clock, self._sequences)
        self._lots = lots or LotRegistry(session, self.clock, self._ledger)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load(self, tenant_id: UUID, adjustment_id: UUID, for_update: bool = False) -> StockAdjustment:
        stmt = select(StockAdjustment).where(
            StockAdjustment.tenant_id == tenant_id,
            StockAdjustment.id == adjustment_id,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        adjustment = self.session.execute(stmt).scalar_one_or_none()
        if adjustment is None:
            raise AdjustmentNotFoundError(str(adjustment_id))
        return adjustment

    def get(self, tenant_id: UUID, adjustment_id: UUID) -> AdjustmentRecord:
        return self._load(tenant_id, adjustment_id).to_dto()

    # ------------------------------------------------------------------
    # Lines
    # ------------------------------------------------------------------

    def _check_lot(self, tenant_id: UUID, location_id: UUID, line: AdjustmentLineInput) -> None:
        if line.lot_id is None:
            return
        lot = self._lots.get_lot(tenant_id, line.lot_id)
        if lot.product_id != line.product_id:
            raise ValidationError(
                f"Lot {lot.lot_number} does not belong to product {line.product_id}",
                field="lot_id",
            )
        if lot.location_id != location_id and not self._lots.has_history_at(
            tenant_id, lot.id, location_id,
        ):
            raise ValidationError(
                f"Lot {lot.lot_number} is not held at location {location_id}",
                field="lot_id",
            )

    def _build_items(
        self,
        adjustment: StockAdjustment,
        lines: Sequence[AdjustmentLineInput],
        actor_id: UUID,
    ) -> list[StockAdjustmentItem]:
        for line in lines:
            self._check_lot(adjustment.tenant_id, adjustment.location_id, line)
        return [
            StockAdjustmentItem(
                tenant_id=adjustment.tenant_id,
                line_number=number,
                product_id=line.product_id,
                lot_id=line.lot_id,
                uom=line.uom,
                qty_delta=line.qty_delta,
                unit_cost=line.unit_cost,
                reason=line.reason,
                created_by_id=actor_id,
            )
            for number, line in enumerate(lines, start=1)
        ]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        tenant_id: UUID,
        location_id: UUID,
        reason: AdjustmentReason | str,
        notes: str | None,
        line_items: Sequence[LineItem],
        actor_id: UUID,
    ) -> AdjustmentRecord:
        """
        Create a draft adjustment and reserve its document number.

        Validation happens before the number is drawn, so a rejected
        request does not consume a number even before rollback.
        """
        parsed_reason = _parse_reason(reason)
        lines = _parse_lines(line_items)

        now = self.clock.now()
        adjustment = StockAdjustment(
            tenant_id=tenant_id,
            location_id=location_id,
            status=AdjustmentStatus.DRAFT.value,
            reason=parsed_reason.value,
            notes=notes,
            created_at=now,
            created_by_id=actor_id,
        )
        items = self._build_items(adjustment, lines, actor_id)

        value = self._sequences.next_value(
            SequenceService.adjustment_sequence_name(tenant_id, now.year)
        )
        adjustment.adj_number = format_adjustment_number(now.year, value)
        adjustment.items = items
        self.session.add(adjustment)
        self.session.flush()

        logger.info(
            "adjustment_created",
            extra={
                "adjustment_id": str(adjustment.id),
                "adj_number": adjustment.adj_number,
                "reason": parsed_reason.value,
                "line_count": len(items),
            },
        )
        return adjustment.to_dto()

    def approve(self, tenant_id: UUID, adjustment_id: UUID, actor_id: UUID) -> AdjustmentRecord:
        adjustment = self._load(tenant_id, adjustment_id, for_update=True)
        transition = resolve_transition(ADJUSTMENT_WORKFLOW, adjustment.status, "approve")

        adjustment.status = transition.to_state
        adjustment.approved_by_id = actor_id
        adjustment.approved_at = self.clock.now()
        adjustment.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "adjustment_approved",
            extra={"adjustment_id": str(adjustment.id), "adj_number": adjustment.adj_number},
        )
        return adjustment.to_dto()

    def post(
        self,
        tenant_id: UUID,
        adjustment_id: UUID,
        actor_id: UUID,
        allow_negative_stock: bool = False,
    ) -> AdjustmentRecord:
        """
        Append one ledger entry per line, then mark the document posted.

        All entries share one txn_ts.  Any failure leaves the document
        approved once the unit of work rolls back.
        """
        adjustment = self._load(tenant_id, adjustment_id, for_update=True)
        transition = resolve_transition(ADJUSTMENT_WORKFLOW, adjustment.status, "post")

        note_base = adjustment.notes or f"Stock adjustment {adjustment.adj_number}"
        entries = [
            LedgerEntryInput(
                tenant_id=tenant_id,
                product_id=item.product_id,
                location_id=adjustment.location_id,
                movement_type=MovementType.ADJUSTMENT,
                qty_delta=item.qty_delta,
                actor_id=actor_id,
                lot_id=item.lot_id,
                unit_cost=item.unit_cost,
                reference_type=ADJUSTMENT_REFERENCE_TYPE,
                reference_id=adjustment.id,
                note=f"{adjustment.reason}: {item.reason or note_base}",
                allow_negative=allow_negative_stock,
            )
            for item in adjustment.items
        ]
        records = self._ledger.append(entries)

        adjustment.status = transition.to_state
        adjustment.posted_by_id = actor_id
        adjustment.posted_at = records[0].txn_ts
        adjustment.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "adjustment_posted",
            extra={
                "adjustment_id": str(adjustment.id),
                "adj_number": adjustment.adj_number,
                "entry_count": len(records),
                "allow_negative_stock": allow_negative_stock,
            },
        )
        return adjustment.to_dto()

    # ------------------------------------------------------------------
    # Draft maintenance
    # ------------------------------------------------------------------

    def update_draft(
        self,
        tenant_id: UUID,
        adjustment_id: UUID,
        actor_id: UUID,
        reason: AdjustmentReason | str | None = None,
        notes: str | None = None,
    ) -> AdjustmentRecord:
        """Edit header fields.  Allowed until the document is posted."""
        adjustment = self._load(tenant_id, adjustment_id, for_update=True)
        if adjustment.status == AdjustmentStatus.POSTED.value:
            raise InvalidTransitionError(ADJUSTMENT_WORKFLOW.name, adjustment.status, "update")

        if reason is not None:
            adjustment.reason = _parse_reason(reason).value
        if notes is not None:
            adjustment.notes = notes
        adjustment.updated_by_id = actor_id
        self.session.flush()
        logger.info("adjustment_updated", extra={"adjustment_id": str(adjustment.id)})
        return adjustment.to_dto()

    def replace_draft_items(
        self,
        tenant_id: UUID,
        adjustment_id: UUID,
        actor_id: UUID,
        line_items: Sequence[LineItem],
    ) -> AdjustmentRecord:
        """Swap the whole line set of a draft adjustment."""
        adjustment = self._load(tenant_id, adjustment_id, for_update=True)
        if adjustment.status != AdjustmentStatus.DRAFT.value:
            raise InvalidTransitionError(ADJUSTMENT_WORKFLOW.name, adjustment.status, "edit_items")

        lines = _parse_lines(line_items)
        items = self._build_items(adjustment, lines, actor_id)

        # Old rows must be gone before new ones reuse their line numbers.
        adjustment.items.clear()
        self.session.flush()
        adjustment.items.extend(items)
        adjustment.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "adjustment_items_replaced",
            extra={"adjustment_id": str(adjustment.id), "line_count": len(items)},
        )
        return adjustment.to_dto()
