"""
ReorderPolicyService -- reorder points and stock ceilings per product/location.

The low-stock sweep reads these rows; they are configuration, not ledger
data, so they may be edited freely.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select

from inventory_kernel.domain.dtos import ReorderPolicyRecord
from inventory_kernel.exceptions import NotFoundError, ValidationError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.reorder import ReorderConfig
from inventory_kernel.services.base import BaseService

logger = get_logger("services.reorder")


class ReorderPolicyService(BaseService):
    """Create, update and read reorder configuration."""

    def _find(self, tenant_id, product_id, location_id) -> ReorderConfig | None:
        return self.session.execute(
            select(ReorderConfig).where(
                ReorderConfig.tenant_id == tenant_id,
                ReorderConfig.product_id == product_id,
                ReorderConfig.location_id == location_id,
            )
        ).scalar_one_or_none()

    def set_policy(
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
        """Upsert the reorder configuration of one product at one location."""
        if reorder_point < 0:
            raise ValidationError("reorder_point must be non-negative", field="reorder_point")
        if maximum_stock < reorder_point:
            raise ValidationError(
                "maximum_stock must be >= reorder_point", field="maximum_stock",
            )
        if safety_stock < 0:
            raise ValidationError("safety_stock must be non-negative", field="safety_stock")
        if lead_time_days is not None and lead_time_days < 0:
            raise ValidationError("lead_time_days must be non-negative", field="lead_time_days")

        config = self._find(tenant_id, product_id, location_id)
        if config is None:
            config = ReorderConfig(
                tenant_id=tenant_id,
                product_id=product_id,
                location_id=location_id,
                created_by_id=actor_id,
            )
            self.session.add(config)
        else:
            config.updated_by_id = actor_id
        config.reorder_point = reorder_point
        config.maximum_stock = maximum_stock
        config.safety_stock = safety_stock
        config.lead_time_days = lead_time_days
        self.session.flush()

        logger.info(
            "reorder_policy_saved",
            extra={
                "product_id": str(product_id),
                "location_id": str(location_id),
                "reorder_point": reorder_point,
                "maximum_stock": maximum_stock,
            },
        )
        return config.to_dto()

    def get_policy(self, tenant_id: UUID, product_id: UUID, location_id: UUID) -> ReorderPolicyRecord:
        config = self._find(tenant_id, product_id, location_id)
        if config is None:
            raise NotFoundError("ReorderConfig", f"{product_id}@{location_id}")
        return config.to_dto()

    def list_policies(
        self, tenant_id: UUID, location_id: UUID | None = None,
    ) -> list[ReorderPolicyRecord]:
        stmt = select(ReorderConfig).where(ReorderConfig.tenant_id == tenant_id)
        if location_id is not None:
            stmt = stmt.where(ReorderConfig.location_id == location_id)
        stmt = stmt.order_by(ReorderConfig.product_id, ReorderConfig.location_id)
        return [config.to_dto() for config in self.session.execute(stmt).scalars()]
