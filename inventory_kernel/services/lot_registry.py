"""
LotRegistry -- lot identity plus lot balances derived from the ledger.

Responsibility:
    Registers lots (find-or-create by lot number), records receipts into
    them, and answers "which lots hold stock here" for FEFO ranking and the
    expiry sweep.  A lot's quantity is never stored on the lot; it is always
    the sum of ledger deltas referencing it at a location.

Architecture position:
    Kernel > Services -- imperative shell.
    Reads LedgerEntry; writes Lot; appends receipts through LedgerService.

Invariants enforced:
    - (tenant, product, location, lot_number) is unique.  Concurrent
      find-or-create for the same number yields the same lot.
    - manufacture_date <= expiry_date when both are known.
    - A lot's unit cost is the cost of its earliest inbound entry that
      carries one (zero when none does).

Failure modes:
    - ValidationError: blank lot number, inverted dates, non-positive
      receipt quantity.
    - LotNotFoundError: unknown lot id for the tenant.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock
from inventory_kernel.domain.dtos import (
    ExpiringLot,
    LedgerEntryInput,
    LedgerEntryRecord,
    LotBalance,
    LotRecord,
    MovementType,
    require_aware,
)
from inventory_kernel.exceptions import LotNotFoundError, ValidationError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.ledger import LedgerEntry
from inventory_kernel.models.lot import Lot
from inventory_kernel.services.base import BaseService
from inventory_kernel.services.ledger_service import LedgerService

logger = get_logger("services.lots")

_ZERO = Decimal("0")


class LotRegistry(BaseService):
    """Lot lookup, registration and derived lot balances."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        ledger: LedgerService | None = None,
    ):
        super().__init__(session, clock)
        self._ledger = ledger or LedgerService(session, self.clock)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def _find(self, tenant_id, product_id, location_id, lot_number: str) -> Lot | None:
        return self.session.execute(
            select(Lot).where(
                Lot.tenant_id == tenant_id,
                Lot.product_id == product_id,
                Lot.location_id == location_id,
                Lot.lot_number == lot_number,
            )
        ).scalar_one_or_none()

    def find_or_create_lot(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        lot_number: str,
        actor_id: UUID,
        expiry_date: date | None = None,
        manufacture_date: date | None = None,
        received_at: datetime | None = None,
        notes: str | None = None,
    ) -> LotRecord:
        """
        Return the lot with this number, creating it when absent.

        An existing lot is returned unchanged; dates passed for it are
        ignored.
        """
        lot_number = (lot_number or "").strip()
        if not lot_number:
            raise ValidationError("lot_number is required", field="lot_number")
        if manufacture_date and expiry_date and manufacture_date > expiry_date:
            raise ValidationError(
                "manufacture_date must not be after expiry_date", field="manufacture_date",
            )

        existing = self._find(tenant_id, product_id, location_id, lot_number)
        if existing is not None:
            return existing.to_dto()

        savepoint = self.session.begin_nested()
        try:
            lot = Lot(
                tenant_id=tenant_id,
                product_id=product_id,
                location_id=location_id,
                lot_number=lot_number,
                expiry_date=expiry_date,
                manufacture_date=manufacture_date,
                received_at=received_at or self.clock.now(),
                notes=notes,
                created_by_id=actor_id,
            )
            self.session.add(lot)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("lot_create_race_retry", extra={"lot_number": lot_number})
            lot = self._find(tenant_id, product_id, location_id, lot_number)
            if lot is None:
                raise
            return lot.to_dto()

        logger.info(
            "lot_registered",
            extra={
                "lot_id": str(lot.id),
                "lot_number": lot_number,
                "product_id": str(product_id),
                "location_id": str(location_id),
                "expiry_date": expiry_date,
            },
        )
        return lot.to_dto()

    def get_lot(self, tenant_id: UUID, lot_id: UUID) -> LotRecord:
        lot = self.session.execute(
            select(Lot).where(Lot.tenant_id == tenant_id, Lot.id == lot_id)
        ).scalar_one_or_none()
        if lot is None:
            raise LotNotFoundError(str(lot_id))
        return lot.to_dto()

    def has_history_at(self, tenant_id: UUID, lot_id: UUID, location_id: UUID) -> bool:
        """True when any ledger entry placed this lot at the location."""
        found = self.session.execute(
            select(LedgerEntry.id)
            .where(
                LedgerEntry.tenant_id == tenant_id,
                LedgerEntry.lot_id == lot_id,
                LedgerEntry.location_id == location_id,
            )
            .limit(1)
        ).first()
        return found is not None

    # ------------------------------------------------------------------
    # Receipts
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
        note: str | None = None,
    ) -> tuple[LotRecord, LedgerEntryRecord]:
        """Register (or reuse) a lot and append a receipt for it."""
        if quantity <= 0:
            raise ValidationError("Receipt quantity must be positive", field="quantity")
        lot = self.find_or_create_lot(
            tenant_id, product_id, location_id, lot_number, actor_id,
            expiry_date=expiry_date,
            manufacture_date=manufacture_date,
        )
        [entry] = self._ledger.append([
            LedgerEntryInput(
                tenant_id=tenant_id,
                product_id=product_id,
                location_id=location_id,
                movement_type=MovementType.RECEIPT,
                qty_delta=quantity,
                actor_id=actor_id,
                lot_id=lot.id,
                unit_cost=unit_cost,
                reference_type=reference_type,
                reference_id=reference_id,
                note=note or f"Receipt of lot {lot.lot_number}",
            )
        ])
        return lot, entry

    # ------------------------------------------------------------------
    # Derived balances
    # ------------------------------------------------------------------

    def available_lots(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        exclude_expired: bool = False,
        as_of: datetime | None = None,
    ) -> list[LotBalance]:
        """
        Lots of a product with positive quantity at a location.

        ``exclude_expired`` drops lots whose expiry date is before
        ``as_of``'s date; a lot expiring today is still available.
        """
        require_aware(as_of, "as_of")
        quantity = func.sum(LedgerEntry.qty_delta)
        stmt = (
            select(Lot, quantity.label("quantity"))
            .join(LedgerEntry, LedgerEntry.lot_id == Lot.id)
            .where(
                Lot.tenant_id == tenant_id,
                Lot.product_id == product_id,
                LedgerEntry.tenant_id == tenant_id,
                LedgerEntry.location_id == location_id,
            )
            .group_by(Lot.id)
            .having(quantity > 0)
            .order_by(Lot.lot_number)
        )
        if as_of is not None:
            stmt = stmt.where(LedgerEntry.txn_ts <= as_of)
        rows = self.session.execute(stmt).all()

        if exclude_expired:
            cutoff = (as_of or self.clock.now()).date()
            rows = [
                row for row in rows
                if row.Lot.expiry_date is None or row.Lot.expiry_date >= cutoff
            ]

        costs = self._first_inbound_costs([row.Lot.id for row in rows])
        return [
            LotBalance(
                lot_id=row.Lot.id,
                lot_number=row.Lot.lot_number,
                expiry_date=row.Lot.expiry_date,
                quantity_available=Decimal(str(row.quantity)),
                unit_cost=costs.get(row.Lot.id, _ZERO),
                received_at=row.Lot.received_at,
            )
            for row in rows
        ]

    def _first_inbound_costs(self, lot_ids: list[UUID]) -> dict[UUID, Decimal]:
        if not lot_ids:
            return {}
        costs: dict[UUID, Decimal] = {}
        rows = self.session.execute(
            select(LedgerEntry.lot_id, LedgerEntry.unit_cost)
            .where(
                LedgerEntry.lot_id.in_(lot_ids),
                LedgerEntry.qty_delta > 0,
                LedgerEntry.unit_cost.is_not(None),
            )
            .order_by(LedgerEntry.seq)
        )
        for lot_id, unit_cost in rows:
            costs.setdefault(lot_id, unit_cost)
        return costs

    def lots_with_expiry(
        self,
        tenant_id: UUID,
        as_of: datetime | None = None,
        product_id: UUID | None = None,
        location_id: UUID | None = None,
    ) -> list[ExpiringLot]:
        """Every (lot, location) pair with an expiry date and positive quantity."""
        require_aware(as_of, "as_of")
        quantity = func.sum(LedgerEntry.qty_delta)
        stmt = (
            select(
                Lot.id,
                Lot.lot_number,
                Lot.product_id,
                LedgerEntry.location_id,
                Lot.expiry_date,
                quantity.label("quantity"),
            )
            .join(LedgerEntry, LedgerEntry.lot_id == Lot.id)
            .where(
                Lot.tenant_id == tenant_id,
                LedgerEntry.tenant_id == tenant_id,
                Lot.expiry_date.is_not(None),
            )
            .group_by(
                Lot.id, Lot.lot_number, Lot.product_id, LedgerEntry.location_id, Lot.expiry_date,
            )
            .having(quantity > 0)
        )
        if as_of is not None:
            stmt = stmt.where(LedgerEntry.txn_ts <= as_of)
        if product_id is not None:
            stmt = stmt.where(Lot.product_id == product_id)
        if location_id is not None:
            stmt = stmt.where(LedgerEntry.location_id == location_id)

        return [
            ExpiringLot(
                lot_id=row.id,
                lot_number=row.lot_number,
                product_id=row.product_id,
                location_id=row.location_id,
                expiry_date=row.expiry_date,
                quantity=Decimal(str(row.quantity)),
            )
            for row in self.session.execute(stmt)
        ]
