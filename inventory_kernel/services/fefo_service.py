"""
FEFOService -- First-Expired-First-Out pick lists and allocations.

Responsibility:
    Reads the lots holding stock of a product at a location, hands them to
    the pure ranking in ``domain/fefo.py``, and optionally turns the
    resulting picks into issue entries in the ledger.

Architecture position:
    Kernel > Services -- imperative shell around domain/fefo.py.

Invariants enforced:
    - Lots with no expiry rank after every dated lot.
    - Allocation never picks an expired lot.
    - Without ``allow_partial`` an allocation is all-or-nothing.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from inventory_kernel.domain import fefo
from inventory_kernel.domain.clock import Clock
from inventory_kernel.domain.dtos import (
    AllocationResult,
    FEFOResult,
    LedgerEntryInput,
    MovementType,
    require_aware,
)
from inventory_kernel.domain.policy import DEFAULT_POLICY, InventoryPolicy
from inventory_kernel.exceptions import InsufficientStockError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.services.base import BaseService
from inventory_kernel.services.ledger_service import LedgerService
from inventory_kernel.services.lot_registry import LotRegistry

logger = get_logger("services.fefo")


class FEFOService(BaseService):
    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: InventoryPolicy = DEFAULT_POLICY,
        ledger: LedgerService | None = None,
        lots: LotRegistry | None = None,
    ):
        super().__init__(session, clock)
        self._policy = policy
        self._ledger = ledger or LedgerService(session, self.clock)
        self._lots = lots or LotRegistry(session, self.clock, self._ledger)

    def recommend(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        quantity_needed: Decimal | None = None,
        exclude_expired: bool = False,
        as_of: datetime | None = None,
    ) -> FEFOResult:
        """Ranked pick list; read-only."""
        as_of = require_aware(as_of, "as_of") or self.clock.now()
        lots = self._lots.available_lots(
            tenant_id, product_id, location_id,
            exclude_expired=exclude_expired,
            as_of=as_of,
        )
        result = fefo.recommend(
            product_id,
            location_id,
            lots,
            as_of,
            self._policy.expiry_status,
            quantity_needed=quantity_needed,
        )
        logger.info(
            "fefo_recommendation_built",
            extra={
                "product_id": str(product_id),
                "location_id": str(location_id),
                "lot_count": len(result.recommendations),
                "total_available": result.total_available,
                "quantity_needed": quantity_needed,
                "sufficient_stock": result.sufficient_stock,
            },
        )
        return result

    def allocate(
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
        """
        Issue (or just plan) ``quantity_needed`` from non-expired lots in FEFO order.

        ``reserve_only`` returns the plan without touching the ledger.

        Raises:
            InsufficientStockError: stock falls short and ``allow_partial``
                is not set.
        """
        as_of = self.clock.now()
        result = self.recommend(
            tenant_id, product_id, location_id,
            quantity_needed=quantity_needed,
            exclude_expired=True,
            as_of=as_of,
        )
        if not result.sufficient_stock and not allow_partial:
            logger.warning(
                "fefo_allocation_insufficient",
                extra={
                    "product_id": str(product_id),
                    "location_id": str(location_id),
                    "quantity_needed": quantity_needed,
                    "total_available": result.total_available,
                },
            )
            raise InsufficientStockError(
                product_id=str(product_id),
                location_id=str(location_id),
                quantity_needed=quantity_needed,
                total_available=result.total_available,
            )

        picks = result.picks
        allocated = sum((pick.quantity_to_pick for pick in picks), Decimal("0"))
        if reserve_only or not picks:
            return AllocationResult(
                recommendation=result, quantity_allocated=allocated, reserve_only=reserve_only,
            )

        entries = self._ledger.append(
            [
                LedgerEntryInput(
                    tenant_id=tenant_id,
                    product_id=product_id,
                    location_id=location_id,
                    movement_type=MovementType.ISSUE,
                    qty_delta=-pick.quantity_to_pick,
                    actor_id=actor_id,
                    lot_id=pick.lot_id,
                    unit_cost=pick.unit_cost,
                    reference_type=reference_type,
                    reference_id=reference_id,
                    note=f"FEFO issue from lot {pick.lot_number}",
                )
                for pick in picks
            ]
        )
        logger.info(
            "fefo_allocation_posted",
            extra={
                "product_id": str(product_id),
                "location_id": str(location_id),
                "quantity_allocated": allocated,
                "lots_used": len(entries),
            },
        )
        return AllocationResult(
            recommendation=result,
            quantity_allocated=allocated,
            reserve_only=False,
            entries=tuple(entries),
        )
