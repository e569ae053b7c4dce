"""
Module: inventory_kernel.selectors.adjustment_selector
Responsibility: Listing and analysis of stock adjustments.
Architecture position: Kernel > Selectors.  Read-only.

Analysis values each line at ``|qty_delta| * unit_cost``.  Sums are taken in
Python over Decimal rows so results do not depend on the backend's numeric
aggregation.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from uuid import UUID

from sqlalchemy import exists, func, or_, select
from sqlalchemy.orm import selectinload

from inventory_kernel.domain.dtos import (
    AdjustmentAnalysis,
    AdjustmentFilter,
    AdjustmentRecord,
    BreakdownRow,
)
from inventory_kernel.models.adjustment import StockAdjustment, StockAdjustmentItem
from inventory_kernel.selectors.base import BaseSelector

_ZERO = Decimal("0")


class AdjustmentSelector(BaseSelector[StockAdjustment]):
    """Queries over stock adjustments of one tenant."""

    def _conditions(self, tenant_id: UUID, filters: AdjustmentFilter) -> list:
        conditions = [StockAdjustment.tenant_id == tenant_id]
        if filters.reason is not None:
            conditions.append(StockAdjustment.reason == filters.reason.value)
        if filters.status is not None:
            conditions.append(StockAdjustment.status == filters.status.value)
        if filters.location_id is not None:
            conditions.append(StockAdjustment.location_id == filters.location_id)
        if filters.date_from is not None:
            conditions.append(StockAdjustment.created_at >= filters.date_from)
        if filters.date_to is not None:
            conditions.append(StockAdjustment.created_at <= filters.date_to)
        if filters.search:
            pattern = f"%{filters.search}%"
            conditions.append(
                or_(
                    StockAdjustment.adj_number.ilike(pattern),
                    StockAdjustment.reason.ilike(pattern),
                    StockAdjustment.notes.ilike(pattern),
                )
            )
        return conditions

    def _product_condition(self, product_id: UUID):
        return exists().where(
            StockAdjustmentItem.adjustment_id == StockAdjustment.id,
            StockAdjustmentItem.product_id == product_id,
        )

    def list(
        self,
        tenant_id: UUID,
        filters: AdjustmentFilter | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AdjustmentRecord]:
        """Newest first."""
        filters = filters or AdjustmentFilter()
        stmt = (
            select(StockAdjustment)
            .where(*self._conditions(tenant_id, filters))
            .options(selectinload(StockAdjustment.items))
            .order_by(StockAdjustment.created_at.desc(), StockAdjustment.adj_number.desc())
            .limit(limit)
            .offset(offset)
        )
        if filters.product_id is not None:
            stmt = stmt.where(self._product_condition(filters.product_id))
        return [adj.to_dto() for adj in self.session.execute(stmt).scalars()]

    def count(self, tenant_id: UUID, filters: AdjustmentFilter | None = None) -> int:
        filters = filters or AdjustmentFilter()
        stmt = select(func.count(StockAdjustment.id)).where(*self._conditions(tenant_id, filters))
        if filters.product_id is not None:
            stmt = stmt.where(self._product_condition(filters.product_id))
        return self.session.execute(stmt).scalar_one()

    def analyze(
        self, tenant_id: UUID, filters: AdjustmentFilter | None = None,
    ) -> AdjustmentAnalysis:
        """
        Totals and breakdowns by reason, product and location.

        A product filter restricts the lines considered, not just the
        documents.  Breakdown rows are ordered by value, largest first.
        """
        filters = filters or AdjustmentFilter()
        stmt = (
            select(
                StockAdjustment.id,
                StockAdjustment.reason,
                StockAdjustment.location_id,
                StockAdjustmentItem.product_id,
                StockAdjustmentItem.qty_delta,
                StockAdjustmentItem.unit_cost,
            )
            .join(StockAdjustmentItem, StockAdjustmentItem.adjustment_id == StockAdjustment.id)
            .where(*self._conditions(tenant_id, filters))
        )
        if filters.product_id is not None:
            stmt = stmt.where(StockAdjustmentItem.product_id == filters.product_id)

        adjustment_ids: set[UUID] = set()
        total_quantity = _ZERO
        total_value = _ZERO
        groups = {
            "reason": defaultdict(lambda: [set(), _ZERO, _ZERO]),
            "product": defaultdict(lambda: [set(), _ZERO, _ZERO]),
            "location": defaultdict(lambda: [set(), _ZERO, _ZERO]),
        }
        for adj_id, reason, location_id, product_id, qty_delta, unit_cost in self.session.execute(stmt):
            quantity = abs(Decimal(str(qty_delta)))
            value = quantity * Decimal(str(unit_cost or 0))
            adjustment_ids.add(adj_id)
            total_quantity += quantity
            total_value += value
            for group, key in (
                ("reason", reason),
                ("product", str(product_id)),
                ("location", str(location_id)),
            ):
                bucket = groups[group][key]
                bucket[0].add(adj_id)
                bucket[1] += quantity
                bucket[2] += value

        count = len(adjustment_ids)
        average = total_value / count if count else _ZERO
        return AdjustmentAnalysis(
            adjustment_count=count,
            total_quantity=total_quantity,
            total_value=total_value,
            average_value=average,
            by_reason=_rows(groups["reason"]),
            by_product=_rows(groups["product"]),
            by_location=_rows(groups["location"]),
        )


def _rows(buckets) -> tuple[BreakdownRow, ...]:
    rows = [
        BreakdownRow(key=key, adjustment_count=len(ids), total_quantity=qty, total_value=value)
        for key, (ids, qty, value) in buckets.items()
    ]
    rows.sort(key=lambda row: (-row.total_value, row.key))
    return tuple(rows)
