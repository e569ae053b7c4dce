"""
Module: inventory_kernel.selectors.ledger_selector
Responsibility: Read-only views over the stock ledger: filtered movement
    history, lot listing and detail, and on-hand summaries.
Architecture position: Kernel > Selectors.  May import from models/ and
    domain/dtos.  MUST NOT import from services/.

Invariants enforced:
    - Read-only: no mutations, no locks.
    - History is ordered newest first by (txn_ts, seq); ties on txn_ts are
      broken by ledger order.
    - Current quantities come from the stock_balances cache, which equals
      the ledger sum per key at every commit.

Failure modes:
    - ValidationError on an out-of-range page size or offset.
    - Returns None or an empty list when nothing matches.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from inventory_kernel.domain.dtos import (
    LedgerEntryRecord,
    LedgerFilter,
    LotDetail,
    LotFilter,
    LotStock,
    OnHandRow,
)
from inventory_kernel.exceptions import ValidationError
from inventory_kernel.models.ledger import LedgerEntry, StockBalance
from inventory_kernel.models.lot import Lot
from inventory_kernel.selectors.base import BaseSelector

MAX_PAGE_SIZE = 1000

_ZERO = Decimal("0")


def _decimal(value) -> Decimal:
    if value is None:
        return _ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _latest(current: datetime | None, candidate: datetime | None) -> datetime | None:
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


class LedgerSelector(BaseSelector[LedgerEntry]):
    """
    Queries over ledger entries, lots and balances of one tenant.

    Guarantees:
        - Results are frozen dataclasses, never ORM instances.
        - Lot quantities are summed over every location the lot has visited.
    """

    def _conditions(self, tenant_id: UUID, filters: LedgerFilter) -> list:
        conditions = [LedgerEntry.tenant_id == tenant_id]
        if filters.location_id is not None:
            conditions.append(LedgerEntry.location_id == filters.location_id)
        if filters.product_id is not None:
            conditions.append(LedgerEntry.product_id == filters.product_id)
        if filters.lot_id is not None:
            conditions.append(LedgerEntry.lot_id == filters.lot_id)
        if filters.movement_type is not None:
            conditions.append(LedgerEntry.movement_type == filters.movement_type.value)
        if filters.reference_type is not None:
            conditions.append(LedgerEntry.reference_type == filters.reference_type)
        if filters.date_from is not None:
            conditions.append(LedgerEntry.txn_ts >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(LedgerEntry.txn_ts <= filters.date_to)
        return conditions

    def list_entries(
        self,
        tenant_id: UUID,
        filters: LedgerFilter | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[LedgerEntryRecord]:
        """One page of movements, newest first."""
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if offset < 0:
            raise ValidationError("offset must be non-negative", field="offset")
        filters = filters or LedgerFilter()
        stmt = (
            select(LedgerEntry)
            .where(*self._conditions(tenant_id, filters))
            .order_by(LedgerEntry.txn_ts.desc(), LedgerEntry.seq.desc())
            .limit(limit)
            .offset(offset)
        )
        return [row.to_dto() for row in self.session.execute(stmt).scalars()]

    def count_entries(self, tenant_id: UUID, filters: LedgerFilter | None = None) -> int:
        filters = filters or LedgerFilter()
        stmt = select(func.count(LedgerEntry.id)).where(*self._conditions(tenant_id, filters))
        return self.session.execute(stmt).scalar_one()

    # ------------------------------------------------------------------
    # Lots
    # ------------------------------------------------------------------

    def _lot_stock(self, tenant_id: UUID, lot_ids: list[UUID]) -> dict[str, tuple[Decimal, datetime | None]]:
        if not lot_ids:
            return {}
        rows = self.session.execute(
            select(StockBalance.lot_key, StockBalance.quantity, StockBalance.last_txn_ts).where(
                StockBalance.tenant_id == tenant_id,
                StockBalance.lot_key.in_([str(lot_id) for lot_id in lot_ids]),
            )
        )
        stock: dict[str, tuple[Decimal, datetime | None]] = {}
        for lot_key, quantity, last_ts in rows:
            total, latest = stock.get(lot_key, (_ZERO, None))
            stock[lot_key] = (total + _decimal(quantity), _latest(latest, last_ts))
        return stock

    def list_lots(
        self,
        tenant_id: UUID,
        today: date,
        filters: LotFilter | None = None,
    ) -> list[LotStock]:
        """
        Lots matching ``filters``, soonest expiry first, undated lots last.

        ``today`` decides which lots count as expired or expiring.
        """
        filters = filters or LotFilter()
        stmt = select(Lot).where(Lot.tenant_id == tenant_id)
        if filters.location_id is not None:
            stmt = stmt.where(Lot.location_id == filters.location_id)
        if filters.product_id is not None:
            stmt = stmt.where(Lot.product_id == filters.product_id)
        if filters.lot_number:
            stmt = stmt.where(Lot.lot_number.ilike(f"%{filters.lot_number}%"))
        if not filters.include_expired:
            stmt = stmt.where((Lot.expiry_date.is_(None)) | (Lot.expiry_date >= today))
        if filters.expiring_within_days is not None:
            horizon = today + timedelta(days=filters.expiring_within_days)
            stmt = stmt.where(Lot.expiry_date.is_not(None), Lot.expiry_date <= horizon)
        stmt = stmt.order_by(Lot.expiry_date.is_(None), Lot.expiry_date, Lot.lot_number)

        lots = list(self.session.execute(stmt).scalars())
        stock = self._lot_stock(tenant_id, [lot.id for lot in lots])
        result = []
        for lot in lots:
            quantity, last_ts = stock.get(str(lot.id), (_ZERO, None))
            if filters.in_stock_only and quantity <= 0:
                continue
            result.append(LotStock(lot=lot.to_dto(), quantity=quantity, last_movement_at=last_ts))
        return result

    def lot_detail(self, tenant_id: UUID, lot_id: UUID) -> LotDetail | None:
        lot = self.session.execute(
            select(Lot).where(Lot.tenant_id == tenant_id, Lot.id == lot_id)
        ).scalar_one_or_none()
        if lot is None:
            return None
        movements = [
            row.to_dto()
            for row in self.session.execute(
                select(LedgerEntry)
                .where(LedgerEntry.tenant_id == tenant_id, LedgerEntry.lot_id == lot_id)
                .order_by(LedgerEntry.txn_ts.desc(), LedgerEntry.seq.desc())
            ).scalars()
        ]
        current = sum((m.qty_delta for m in movements), _ZERO)
        return LotDetail(lot=lot.to_dto(), current_stock=current, movements=tuple(movements))

    # ------------------------------------------------------------------
    # On hand
    # ------------------------------------------------------------------

    def on_hand_summary(
        self,
        tenant_id: UUID,
        product_id: UUID | None = None,
        location_id: UUID | None = None,
    ) -> list[OnHandRow]:
        """Quantity per (product, location), all lots plus untracked stock."""
        stmt = select(
            StockBalance.product_id,
            StockBalance.location_id,
            StockBalance.quantity,
            StockBalance.last_txn_ts,
        ).where(StockBalance.tenant_id == tenant_id)
        if product_id is not None:
            stmt = stmt.where(StockBalance.product_id == product_id)
        if location_id is not None:
            stmt = stmt.where(StockBalance.location_id == location_id)

        totals: dict[tuple[UUID, UUID], list] = defaultdict(lambda: [_ZERO, None])
        for row_product, row_location, quantity, last_ts in self.session.execute(stmt):
            bucket = totals[(row_product, row_location)]
            bucket[0] += _decimal(quantity)
            bucket[1] = _latest(bucket[1], last_ts)

        rows = [
            OnHandRow(product_id=pid, location_id=lid, quantity=qty, last_movement_at=last_ts)
            for (pid, lid), (qty, last_ts) in totals.items()
        ]
        rows.sort(key=lambda row: (str(row.product_id), str(row.location_id)))
        return rows
