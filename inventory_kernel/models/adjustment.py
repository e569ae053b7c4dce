"""
Module: inventory_kernel.models.adjustment
Responsibility: ORM persistence for stock adjustments and their line items.
Architecture position: Kernel > Models.

Invariants enforced:
    - (tenant_id, adj_number) is unique; numbers come from the locked
      per-tenant-per-year counter, never from max+1.
    - Line items are only inserted, changed or removed while the parent is
      ``draft``; a ``posted`` adjustment is frozen (db/immutability.py).
    - Status moves only along draft -> approved -> posted
      (domain/workflow.py, checked in AdjustmentService).

Audit relevance:
    created_by_id, approved_by_id/approved_at and posted_by_id/posted_at
    record who moved the document through each state.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventory_kernel.db.base import TrackedBase
from inventory_kernel.domain.dtos import (
    AdjustmentLineRecord,
    AdjustmentReason,
    AdjustmentRecord,
    AdjustmentStatus,
)


class StockAdjustment(TrackedBase):
    """A manual stock correction document for one location."""

    __tablename__ = "stock_adjustments"

    __table_args__ = (
        UniqueConstraint("tenant_id", "adj_number", name="uq_stock_adjustment_number"),
        Index("idx_stock_adjustment_status", "tenant_id", "status"),
        Index("idx_stock_adjustment_location", "tenant_id", "location_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    adj_number: Mapped[str] = mapped_column(String(20), nullable=False)
    location_id: Mapped[UUID] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AdjustmentStatus.DRAFT.value,
    )
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    approved_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(nullable=True)
    posted_by_id: Mapped[UUID | None] = mapped_column(nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(nullable=True)

    items: Mapped[list["StockAdjustmentItem"]] = relationship(
        back_populates="adjustment",
        order_by="StockAdjustmentItem.line_number",
        cascade="all, delete-orphan",
    )

    def to_dto(self) -> AdjustmentRecord:
        return AdjustmentRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            adj_number=self.adj_number,
            location_id=self.location_id,
            status=AdjustmentStatus(self.status),
            reason=AdjustmentReason(self.reason),
            notes=self.notes,
            created_by=self.created_by_id,
            created_at=self.created_at,
            approved_by=self.approved_by_id,
            approved_at=self.approved_at,
            posted_by=self.posted_by_id,
            posted_at=self.posted_at,
            lines=tuple(item.to_dto() for item in self.items),
        )

    def __repr__(self) -> str:
        return f"<StockAdjustment {self.adj_number} {self.status}>"


class StockAdjustmentItem(TrackedBase):
    """One signed quantity correction within an adjustment."""

    __tablename__ = "stock_adjustment_items"

    __table_args__ = (
        UniqueConstraint("adjustment_id", "line_number", name="uq_stock_adjustment_line"),
        Index("idx_stock_adjustment_item_product", "tenant_id", "product_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    adjustment_id: Mapped[UUID] = mapped_column(
        ForeignKey("stock_adjustments.id"), nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[UUID] = mapped_column(nullable=False)
    lot_id: Mapped[UUID | None] = mapped_column(ForeignKey("lots.id"), nullable=True)
    uom: Mapped[str] = mapped_column(String(20), nullable=False)
    qty_delta: Mapped[Decimal] = mapped_column(nullable=False)
    unit_cost: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    adjustment: Mapped[StockAdjustment] = relationship(back_populates="items")

    def to_dto(self) -> AdjustmentLineRecord:
        return AdjustmentLineRecord(
            id=self.id,
            line_number=self.line_number,
            product_id=self.product_id,
            lot_id=self.lot_id,
            uom=self.uom,
            qty_delta=self.qty_delta,
            unit_cost=self.unit_cost,
            reason=self.reason,
        )
