"""
Module: inventory_kernel.models.ledger
Responsibility: ORM persistence for the stock ledger (the append-only fact
    table of inventory movements) and its materialized running-balance cache.
Architecture position: Kernel > Models.  Inherits from db/base.py.  Product
    and location are owned by external collaborators and referenced by UUID
    with no foreign key.

Invariants enforced:
    - Append-only: LedgerEntry rows are never updated or deleted
      (db/immutability.py).  Corrections are new offsetting entries.
    - Ledger-time total order: (tenant_id, seq) is unique; seq comes from the
      locked per-tenant counter in SequenceService.
    - StockBalance is a cache.  Its quantity always equals the sum of ledger
      deltas for its key; its rows are the lock targets that serialize
      concurrent writers touching the same (product, location, lot).

Failure modes:
    - IntegrityError on a duplicate (tenant_id, seq) or duplicate balance key.

Audit relevance:
    Every quantity the kernel reports is derived from these rows.  Each entry
    carries its actor (created_by_id), reference document and txn_ts.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import TrackedBase
from inventory_kernel.domain.dtos import LedgerEntryRecord, MovementType


class LedgerEntry(TrackedBase):
    """
    One immutable, signed stock movement.

    Guarantees:
        - qty_delta and unit_cost are Decimal (Numeric(38,9)).
        - lot_id is NULL for untracked lines.
        - created_by_id is the actor who caused the movement.
    """

    __tablename__ = "stock_ledger"

    __table_args__ = (
        UniqueConstraint("tenant_id", "seq", name="uq_stock_ledger_tenant_seq"),
        Index("idx_stock_ledger_key", "tenant_id", "product_id", "location_id", "lot_id"),
        Index("idx_stock_ledger_lot", "lot_id"),
        Index("idx_stock_ledger_reference", "tenant_id", "reference_type", "reference_id"),
        Index("idx_stock_ledger_txn_ts", "tenant_id", "txn_ts"),
    )

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    seq: Mapped[int] = mapped_column(nullable=False)

    product_id: Mapped[UUID] = mapped_column(nullable=False)
    location_id: Mapped[UUID] = mapped_column(nullable=False)
    lot_id: Mapped[UUID | None] = mapped_column(ForeignKey("lots.id"), nullable=True)

    txn_ts: Mapped[datetime] = mapped_column(nullable=False)
    movement_type: Mapped[str] = mapped_column(String(50), nullable=False)
    qty_delta: Mapped[Decimal] = mapped_column(nullable=False)
    unit_cost: Mapped[Decimal | None] = mapped_column(nullable=True)

    reference_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    reference_id: Mapped[UUID | None] = mapped_column(nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Negative-stock override granted for this entry
    allow_negative: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    reversal_of_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("stock_ledger.id"), nullable=True,
    )

    def to_dto(self) -> LedgerEntryRecord:
        return LedgerEntryRecord(
            id=self.id,
            seq=self.seq,
            tenant_id=self.tenant_id,
            product_id=self.product_id,
            location_id=self.location_id,
            lot_id=self.lot_id,
            txn_ts=self.txn_ts,
            movement_type=MovementType(self.movement_type),
            qty_delta=self.qty_delta,
            unit_cost=self.unit_cost,
            reference_type=self.reference_type,
            reference_id=self.reference_id,
            note=self.note,
            actor_id=self.created_by_id,
            allow_negative=self.allow_negative,
            reversal_of_id=self.reversal_of_id,
        )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry seq={self.seq} {self.movement_type} "
            f"{self.qty_delta} lot={self.lot_id}>"
        )


class StockBalance(TrackedBase):
    """
    Running balance for one (tenant, product, location, lot) key.

    ``lot_key`` is the lot id as text, or "" for untracked stock, so that the
    unique constraint also covers untracked keys.  ``last_txn_ts`` is the
    latest txn_ts appended for the key; lot-tracked keys never accept an
    entry dated before it.
    """

    __tablename__ = "stock_balances"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "product_id", "location_id", "lot_key",
            name="uq_stock_balance_key",
        ),
        Index("idx_stock_balance_product_location", "tenant_id", "product_id", "location_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(nullable=False)
    location_id: Mapped[UUID] = mapped_column(nullable=False)
    lot_key: Mapped[str] = mapped_column(String(36), nullable=False, default="")
    quantity: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    last_seq: Mapped[int | None] = mapped_column(nullable=True)
    last_txn_ts: Mapped[datetime | None] = mapped_column(nullable=True)

    @property
    def is_lot_tracked(self) -> bool:
        return self.lot_key != ""
