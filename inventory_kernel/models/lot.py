"""
Module: inventory_kernel.models.lot
Responsibility: ORM persistence for lots -- receipt batches of a product
    sharing a lot number and expiry.
Architecture position: Kernel > Models.

Invariants enforced:
    - (tenant_id, product_id, location_id, lot_number) is unique.
    - A lot's quantity is NOT stored; it is the sum of ledger deltas that
      reference it.
    - Lots are never deleted and their identity fields never change
      (db/immutability.py).  Dormant lots stay for audit and expiry history.
"""

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import Date, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import TrackedBase
from inventory_kernel.domain.dtos import LotRecord


class Lot(TrackedBase):
    """A receipt batch of one product, first received at one location."""

    __tablename__ = "lots"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "product_id", "location_id", "lot_number",
            name="uq_lot_number",
        ),
        Index("idx_lot_product_location", "tenant_id", "product_id", "location_id"),
        Index("idx_lot_expiry", "tenant_id", "expiry_date"),
    )

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(nullable=False)
    location_id: Mapped[UUID] = mapped_column(nullable=False)
    lot_number: Mapped[str] = mapped_column(String(100), nullable=False)

    manufacture_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    received_at: Mapped[datetime] = mapped_column(nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> LotRecord:
        return LotRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            product_id=self.product_id,
            location_id=self.location_id,
            lot_number=self.lot_number,
            expiry_date=self.expiry_date,
            manufacture_date=self.manufacture_date,
            received_at=self.received_at,
            notes=self.notes,
        )

    def __repr__(self) -> str:
        return f"<Lot {self.lot_number} expiry={self.expiry_date}>"
