"""
Module: inventory_kernel.models.reorder
Responsibility: ORM persistence for reorder configuration -- the policy input
    of the low-stock sweep.  Not a ledger concept.
Architecture position: Kernel > Models.

Invariants enforced:
    - One row per (tenant_id, product_id, location_id).
    - 0 <= reorder_point <= maximum_stock; safety_stock >= 0
      (validated by ReorderPolicyService).
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import TrackedBase
from inventory_kernel.domain.dtos import ReorderPolicyRecord


class ReorderConfig(TrackedBase):
    __tablename__ = "reorder_configs"

    __table_args__ = (
        UniqueConstraint("tenant_id", "product_id", "location_id", name="uq_reorder_config_key"),
    )

    tenant_id: Mapped[UUID] = mapped_column(nullable=False)
    product_id: Mapped[UUID] = mapped_column(nullable=False)
    location_id: Mapped[UUID] = mapped_column(nullable=False)
    reorder_point: Mapped[Decimal] = mapped_column(nullable=False)
    maximum_stock: Mapped[Decimal] = mapped_column(nullable=False)
    safety_stock: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    lead_time_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def to_dto(self) -> ReorderPolicyRecord:
        return ReorderPolicyRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            product_id=self.product_id,
            location_id=self.location_id,
            reorder_point=self.reorder_point,
            maximum_stock=self.maximum_stock,
            safety_stock=self.safety_stock,
            lead_time_days=self.lead_time_days,
        )
