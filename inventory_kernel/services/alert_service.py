"""
AlertService -- expiry and low-stock sweeps over one consistent snapshot.

Responsibility:
    Gathers lot balances, reorder configuration, on-hand quantities and
    usage history, then calls the pure evaluators in ``domain/alerts.py``.
    Produces alert candidates only; persisting, deduplicating and
    delivering alerts is the caller's job.

Architecture position:
    Kernel > Services -- read-only imperative shell.

Invariants enforced:
    - Sweeps never write.  The same ledger state and ``as_of`` always yield
      the same candidate list in the same order.
    - Quantities are taken as of ``as_of`` (ledger entries with
      txn_ts <= as_of), never from later activity.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from inventory_kernel.domain import alerts
from inventory_kernel.domain.alerts import ProductDescriber, StockPosition, default_describer
from inventory_kernel.domain.clock import Clock
from inventory_kernel.domain.dtos import AlertCandidate, AlertPriority, require_aware
from inventory_kernel.domain.policy import DEFAULT_POLICY, ExpiryAlertThresholds, InventoryPolicy
from inventory_kernel.logging_config import get_logger
from inventory_kernel.services.base import BaseService
from inventory_kernel.services.ledger_service import LedgerService
from inventory_kernel.services.lot_registry import LotRegistry
from inventory_kernel.services.reorder_service import ReorderPolicyService

logger = get_logger("services.alerts")


class AlertService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: InventoryPolicy = DEFAULT_POLICY,
        describe: ProductDescriber = default_describer,
        ledger: LedgerService | None = None,
        lots: LotRegistry | None = None,
        reorder: ReorderPolicyService | None = None,
    ):
        super().__init__(session, clock)
        self._policy = policy
        self._describe = describe
        self._ledger = ledger or LedgerService(session, self.clock)
        self._lots = lots or LotRegistry(session, self.clock, self._ledger)
        self._reorder = reorder or ReorderPolicyService(session, self.clock)

    def sweep_expiry(
        self,
        tenant_id: UUID,
        as_of: datetime | None = None,
        thresholds: ExpiryAlertThresholds | None = None,
    ) -> list[AlertCandidate]:
        """Expiry candidates for every dated lot holding stock, most urgent first."""
        as_of = require_aware(as_of, "as_of") or self.clock.now()
        thresholds = thresholds or self._policy.expiry_alerts
        lots = self._lots.lots_with_expiry(tenant_id, as_of=as_of)
        candidates = alerts.evaluate_expiry(lots, as_of, thresholds, self._describe)
        logger.info(
            "expiry_sweep_completed",
            extra={
                "tenant_id": str(tenant_id),
                "lots_scanned": len(lots),
                "candidate_count": len(candidates),
                "as_of": as_of,
            },
        )
        return candidates

    def sweep_low_stock(
        self,
        tenant_id: UUID,
        as_of: datetime | None = None,
        location_id: UUID | None = None,
    ) -> list[AlertCandidate]:
        """Low-stock candidates for every reorder configuration below its reorder point."""
        as_of = require_aware(as_of, "as_of") or self.clock.now()
        thresholds = self._policy.low_stock
        positions = []
        for config in self._reorder.list_policies(tenant_id, location_id=location_id):
            current = self._ledger.balance_as_of(
                tenant_id, config.product_id, config.location_id, as_of=as_of,
            )
            usage = None
            if current < config.reorder_point:
                usage = self._ledger.average_daily_usage(
                    tenant_id, config.product_id, config.location_id,
                    as_of, thresholds.usage_window_days,
                )
            positions.append(StockPosition(config, current, usage))

        candidates = alerts.evaluate_low_stock(positions, as_of, thresholds, self._describe)
        logger.info(
            "low_stock_sweep_completed",
            extra={
                "tenant_id": str(tenant_id),
                "configs_scanned": len(positions),
                "candidate_count": len(candidates),
                "as_of": as_of,
            },
        )
        return candidates

    def needs_escalation(
        self,
        triggered_at: datetime,
        priority: AlertPriority | str,
        acknowledged_at: datetime | None = None,
        now: datetime | None = None,
    ) -> bool:
        return alerts.needs_escalation(
            triggered_at,
            priority,
            acknowledged_at,
            now or self.clock.now(),
            self._policy.escalation,
        )
