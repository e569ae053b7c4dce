"""
Inventory Orchestrator - the facade collaborators call.

Each public operation:
- binds tenant, actor and a fresh correlation id into the log context,
- runs inside exactly one unit of work (commit on success, rollback on any
  error), re-running the whole operation on ConcurrencyConflictError up to
  ``conflict_attempts`` times,
- builds its services on that unit of work's session,
- logs ``<operation>_started`` / ``_completed`` / ``_failed`` with timing.

Callers pass an already resolved tenant and actor; the kernel does no
authentication or permission checks.
"""

import time
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Sequence, TypeVar
from uuid import UUID
from uuid import uuid4 as _uuid4

from sqlalchemy.orm import Session, sessionmaker

from inventory_kernel.db.unit_of_work import run_with_retry
from inventory_kernel.domain.alerts import ProductDescriber, default_describer, needs_escalation
from inventory_kernel.domain.clock import Clock, SystemClock
from inventory_kernel.domain.dtos import (
    AdjustmentAnalysis,
    AdjustmentFilter,
    AdjustmentReason,
    AdjustmentRecord,
    AlertCandidate,
    AlertPriority,
    AllocationResult,
    FEFOResult,
    LedgerEntryRecord,
    LedgerFilter,
    LotDetail,
    LotFilter,
    LotRecord,
    LotStock,
    OnHandRow,
    ReorderPolicyRecord,
)
from inventory_kernel.domain.policy import DEFAULT_POLICY, ExpiryAlertThresholds, InventoryPolicy
from inventory_kernel.exceptions import InventoryKernelError, LotNotFoundError
from inventory_kernel.logging_config import LogContext, get_logger
from inventory_kernel.selectors.adjustment_selector import AdjustmentSelector
from inventory_kernel.selectors.ledger_selector import LedgerSelector
from inventory_kernel.services.adjustment_service import AdjustmentService, LineItem
from inventory_kernel.services.alert_service import AlertService
from inventory_kernel.services.fefo_service import FEFOService
from inventory_kernel.services.ledger_service import LedgerService
from inventory_kernel.services.lot_registry import LotRegistry
from inventory_kernel.services.reorder_service import ReorderPolicyService
from inventory_kernel.services.sequence_service import SequenceService

logger = get_logger("services.inventory_orchestrator")

T = TypeVar("T")


@dataclass(frozen=True)
class InventoryServices:
    """All kernel services bound to one session."""

    session: Session
    sequences: SequenceService
    ledger: LedgerService
    lots: LotRegistry
    fefo: FEFOService
    reorder: ReorderPolicyService
    alerts: AlertService
    adjustments: AdjustmentService
    adjustment_queries: AdjustmentSelector
    ledger_queries: LedgerSelector

    @classmethod
    def build(
        cls,
        session: Session,
        clock: Clock,
        policy: InventoryPolicy = DEFAULT_POLICY,
        describe: ProductDescriber = default_describer,
    ) -> "InventoryServices":
        sequences = SequenceService(session)
        ledger = LedgerService(session, clock, sequences)
        lots = LotRegistry(session, clock, ledger)
        reorder = ReorderPolicyService(session, clock)
        return cls(
            session=session,
            sequences=sequences,
            ledger=ledger,
            lots=lots,
            fefo=FEFOService(session, clock, policy, ledger, lots),
            reorder=reorder,
            alerts=AlertService(session, clock, policy, describe, ledger, lots, reorder),
            adjustments=AdjustmentService(session, clock, ledger, lots, sequences),
            adjustment_queries=AdjustmentSelector(session),
            ledger_queries=LedgerSelector(session),
        )


class InventoryOrchestrator:
    """
    Collaborator-facing operations of the inventory kernel.

    Args:
        session_factory: Produces one session per unit of work.
        clock: Time source for every service. Defaults to SystemClock.
        policy: Thresholds; normally ``inventory_config.get_active_policy()``.
        describe: Resolves product display name and unit for alert messages.
        conflict_attempts: Total tries per operation on lock conflicts.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        policy: InventoryPolicy = DEFAULT_POLICY,
        describe: ProductDescriber = default_describer,
        conflict_attempts: int = 3,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._policy = policy
        self._describe = describe
        self._conflict_attempts = conflict_attempts

    @property
    def policy(self) -> InventoryPolicy:
        return self._policy

    def _run(
        self,
        operation: str,
        tenant_id: UUID,
        actor_id: UUID | None,
        work: Callable[[InventoryServices], T],
        adjustment_id: UUID | None = None,
        **log_fields: Any,
    ) -> T:
        with LogContext.bind(
            correlation_id=str(_uuid4()),
            tenant_id=str(tenant_id),
            actor_id=str(actor_id) if actor_id else None,
            adjustment_id=str(adjustment_id) if adjustment_id else None,
        ):
            logger.info(f"{operation}_started", extra=log_fields)
            t0 = time.monotonic()
            try:
                result = run_with_retry(
                    self._session_factory,
                    lambda session: work(
                        InventoryServices.build(session, self._clock, self._policy, self._describe)
                    ),
                    attempts=self._conflict_attempts,
                    resource=operation,
                )
            except InventoryKernelError as exc:
                logger.warning(
                    f"{operation}_failed",
                    extra={
                        "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                        "error_code": exc.code,
                        "error": str(exc),
                    },
                )
                raise
            except Exception:
                logger.error(
                    f"{operation}_failed",
                    extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
                    exc_info=True,
                )
                raise
            logger.info(
                f"{operation}_completed",
                extra={"duration_ms": round((time.monotonic() - t0) * 1000, 2)},
            )
            return result

    # ------------------------------------------------------------------
    # Adjustments
    # ------------------------------------------------------------------

    def create_adjustment(
        self,
        tenant_id: UUID,
        location_id: UUID,
        reason: AdjustmentReason | str,
        notes: str | None,
        line_items: Sequence[LineItem],
        actor_id: UUID,
    ) -> UUID:
        """Create a draft adjustment; returns its id."""
        return self._run(
            "create_adjustment", tenant_id, actor_id,
            lambda s: s.adjustments.create(
                tenant_id, location_id, reason, notes, line_items, actor_id,
            ).id,
            location_id=str(location_id),
            line_count=len(line_items),
        )

    def approve_adjustment(self, tenant_id: UUID, adjustment_id: UUID, actor_id: UUID) -> None:
        self._run(
            "approve_adjustment", tenant_id, actor_id,
            lambda s: s.adjustments.approve(tenant_id, adjustment_id, actor_id),
            adjustment_id=adjustment_id,
        )

    def post_adjustment(
        self,
        tenant_id: UUID,
        adjustment_id: UUID,
        actor_id: UUID,
        allow_negative_stock: bool = False,
    ) -> None:
        """Post an approved adjustment to the ledger, atomically."""
        self._run(
            "post_adjustment", tenant_id, actor_id,
            lambda s: s.adjustments.post(
                tenant_id, adjustment_id, actor_id, allow_negative_stock=allow_negative_stock,
            ),
            adjustment_id=adjustment_id,
            allow_negative_stock=allow_negative_stock,
        )

    def update_adjustment(
        self,
        tenant_id: UUID,
        adjustment_id: UUID,
        actor_id: UUID,
        reason: AdjustmentReason | str | None = None,
        notes: str | None = None,
        line_items: Sequence[LineItem] | None = None,
    ) -> AdjustmentRecord:
        """Edit header fields and, while draft, replace the line items."""
        def work(s: InventoryServices) -> AdjustmentRecord:
            record = s.adjustments.update_draft(
                tenant_id, adjustment_id, actor_id, reason=reason, notes=notes,
            )
            if line_items is not None:
                record = s.adjustments.replace_draft_items(
                    tenant_id, adjustment_id, actor_id, line_items,
                )
            return record

        return self._run("update_adjustment", tenant_id, actor_id, work, adjustment_id=adjustment_id)

    def get_adjustment(self, tenant_id: UUID, adjustment_id: UUID) -> AdjustmentRecord:
        return self._run(
            "get_adjustment", tenant_id, None,
            lambda s: s.adjustments.get(tenant_id, adjustment_id),
            adjustment_id=adjustment_id,
        )

    def list_adjustments(
        self,
        tenant_id: UUID,
        filters: AdjustmentFilter | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AdjustmentRecord], int]:
        """One page of adjustments plus the total matching count."""
        return self._run(
            "list_adjustments", tenant_id, None,
            lambda s: (
                s.adjustment_queries.list(tenant_id, filters, limit=limit, offset=offset),
                s.adjustment_queries.count(tenant_id, filters),
            ),
        )

    def analyze_adjustments(
        self, tenant_id: UUID, filters: AdjustmentFilter | None = None,
    ) -> AdjustmentAnalysis:
        return self._run(
            "analyze_adjustments", tenant_id, None,
            lambda s: s.adjustment_queries.analyze(tenant_id, filters),
        )

    # ------------------------------------------------------------------
    # Lots and FEFO
    # ------------------------------------------------------------------

    def receive_lot(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        lot_number: str,
        quantity: Decimal,
        unit_cost: Decimal,
        actor_id: UUID,
        expiry_date: date | None = None,
        manufacture_date: date | None = None,
        reference_type: str | None = None,
        reference_id: UUID | None = None,
    ) -> tuple[LotRecord, LedgerEntryRecord]:
        return self._run(
            "receive_lot", tenant_id, actor_id,
            lambda s: s.lots.receive_lot(
                tenant_id, product_id, location_id, lot_number, quantity, unit_cost, actor_id,
                expiry_date=expiry_date,
                manufacture_date=manufacture_date,
                reference_type=reference_type,
                reference_id=reference_id,
            ),
            lot_number=lot_number,
        )

    def list_lots(self, tenant_id: UUID, filters: LotFilter | None = None) -> list[LotStock]:
        return self._run(
            "list_lots", tenant_id, None,
            lambda s: s.ledger_queries.list_lots(tenant_id, self._clock.today(), filters),
        )

    def get_lot(self, tenant_id: UUID, lot_id: UUID) -> LotDetail:
        """A lot with its current stock and movements, newest first."""
        def work(s: InventoryServices) -> LotDetail:
            detail = s.ledger_queries.lot_detail(tenant_id, lot_id)
            if detail is None:
                raise LotNotFoundError(str(lot_id))
            return detail

        return self._run("get_lot", tenant_id, None, work, lot_id=str(lot_id))

    def recommend_fefo(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        quantity_needed: Decimal | None = None,
        exclude_expired: bool = False,
        as_of: datetime | None = None,
    ) -> FEFOResult:
        return self._run(
            "recommend_fefo", tenant_id, None,
            lambda s: s.fefo.recommend(
                tenant_id, product_id, location_id,
                quantity_needed=quantity_needed,
                exclude_expired=exclude_expired,
                as_of=as_of,
            ),
            product_id=str(product_id),
        )

    def allocate_fefo(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        quantity_needed: Decimal,
        actor_id: UUID,
        reference_type: str | None = None,
        reference_id: UUID | None = None,
        allow_partial: bool = False,
        reserve_only: bool = False,
    ) -> AllocationResult:
        return self._run(
            "allocate_fefo", tenant_id, actor_id,
            lambda s: s.fefo.allocate(
                tenant_id, product_id, location_id, quantity_needed, actor_id,
                reference_type=reference_type,
                reference_id=reference_id,
                allow_partial=allow_partial,
                reserve_only=reserve_only,
            ),
            product_id=str(product_id),
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def stock_balance(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        lot_id: UUID | None = None,
        as_of: datetime | None = None,
    ) -> Decimal:
        return self._run(
            "stock_balance", tenant_id, None,
            lambda s: s.ledger.balance_as_of(
                tenant_id, product_id, location_id, lot_id=lot_id, as_of=as_of,
            ),
        )

    def post_movement(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        reference_type: str,
        reference_id: UUID,
        lot_id: UUID | None = None,
        unit_cost: Decimal | None = None,
        note: str | None = None,
        allow_negative_stock: bool = False,
    ) -> LedgerEntryRecord:
        """Record a receipt (positive quantity) or issue (negative quantity)."""
        return self._run(
            "post_movement", tenant_id, actor_id,
            lambda s: s.ledger.post_movement(
                tenant_id, product_id, location_id, quantity, actor_id,
                reference_type, reference_id,
                lot_id=lot_id,
                unit_cost=unit_cost,
                note=note,
                allow_negative=allow_negative_stock,
            ),
            product_id=str(product_id),
            reference_type=reference_type,
        )

    def list_ledger_entries(
        self,
        tenant_id: UUID,
        filters: LedgerFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[LedgerEntryRecord], int]:
        """One page of movement history plus the total matching count."""
        return self._run(
            "list_ledger_entries", tenant_id, None,
            lambda s: (
                s.ledger_queries.list_entries(tenant_id, filters, limit=limit, offset=offset),
                s.ledger_queries.count_entries(tenant_id, filters),
            ),
        )

    def on_hand_summary(
        self,
        tenant_id: UUID,
        product_id: UUID | None = None,
        location_id: UUID | None = None,
    ) -> list[OnHandRow]:
        return self._run(
            "on_hand_summary", tenant_id, None,
            lambda s: s.ledger_queries.on_hand_summary(
                tenant_id, product_id=product_id, location_id=location_id,
            ),
        )

    def reverse_reference(
        self, tenant_id: UUID, reference_type: str, reference_id: UUID, actor_id: UUID,
    ) -> list[LedgerEntryRecord]:
        """Offset every unreversed ledger entry of a source document."""
        return self._run(
            "reverse_reference", tenant_id, actor_id,
            lambda s: s.ledger.reverse_reference(tenant_id, reference_type, reference_id, actor_id),
            reference_type=reference_type,
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def set_reorder_config(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        reorder_point: Decimal,
        maximum_stock: Decimal,
        actor_id: UUID,
        safety_stock: Decimal = Decimal("0"),
        lead_time_days: int | None = None,
    ) -> ReorderPolicyRecord:
        return self._run(
            "set_reorder_config", tenant_id, actor_id,
            lambda s: s.reorder.set_policy(
                tenant_id, product_id, location_id, reorder_point, maximum_stock, actor_id,
                safety_stock=safety_stock,
                lead_time_days=lead_time_days,
            ),
        )

    def sweep_expiry_alerts(
        self,
        tenant_id: UUID,
        as_of: datetime | None = None,
        thresholds: ExpiryAlertThresholds | None = None,
    ) -> list[AlertCandidate]:
        return self._run(
            "sweep_expiry_alerts", tenant_id, None,
            lambda s: s.alerts.sweep_expiry(tenant_id, as_of=as_of, thresholds=thresholds),
        )

    def sweep_low_stock_alerts(
        self, tenant_id: UUID, as_of: datetime | None = None,
    ) -> list[AlertCandidate]:
        return self._run(
            "sweep_low_stock_alerts", tenant_id, None,
            lambda s: s.alerts.sweep_low_stock(tenant_id, as_of=as_of),
        )

    def needs_escalation(
        self,
        triggered_at: datetime,
        priority: AlertPriority | str,
        acknowledged_at: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        return needs_escalation(
            triggered_at, priority, acknowledged_at,
            now or self._clock.now(),
            self._policy.escalation,
        )
