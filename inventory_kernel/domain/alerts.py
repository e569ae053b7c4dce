"""
Alert evaluation -- pure expiry and low-stock rules.

Responsibility:
    Turn a snapshot of lot balances and reorder positions into alert
    candidates: priority banding, suggested order quantities, human-readable
    messages, and escalation timing.

Architecture position:
    Kernel > Domain -- pure functional core.  ``services/alert_service.py``
    gathers the snapshot and calls in here; the same snapshot always yields
    the same, identically ordered candidate list.

Invariants enforced:
    - Expired lots (days-to-expiry < 0) are CRITICAL regardless of the
      configured bands.
    - Low-stock candidates exist only when current stock < reorder point.
    - ``suggested_order_qty = max(0, maximum_stock - current_stock)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Sequence
from uuid import UUID

from inventory_kernel.domain.dtos import (
    AlertCandidate,
    AlertPriority,
    AlertType,
    ExpiringLot,
    ProductRef,
    ReorderPolicyRecord,
)
from inventory_kernel.domain.fefo import days_to_expiry
from inventory_kernel.domain.policy import (
    EscalationThresholds,
    ExpiryAlertThresholds,
    LowStockThresholds,
)

_ZERO = Decimal("0")

ProductDescriber = Callable[[UUID], ProductRef]


def default_describer(product_id: UUID) -> ProductRef:
    """Fallback when no catalog is wired in: the id in base units."""
    return ProductRef(name=str(product_id), uom_code="base")


def format_quantity(quantity: Decimal) -> str:
    """Render a quantity without trailing zeros or exponent notation."""
    normalized = quantity.normalize()
    if normalized == 0:
        return "0"
    return format(normalized, "f")


@dataclass(frozen=True)
class StockPosition:
    """A reorder policy together with the measured stock it applies to."""
    policy: ReorderPolicyRecord
    current_stock: Decimal
    average_daily_usage: Decimal | None


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


def expiry_priority(days: int, thresholds: ExpiryAlertThresholds) -> AlertPriority | None:
    """Priority for a lot ``days`` away from expiry, or None when outside the window."""
    if days < 0:
        return AlertPriority.CRITICAL
    if days > thresholds.low_priority_days:
        return None
    if days < thresholds.high_priority_days:
        return AlertPriority.HIGH
    if days < thresholds.medium_priority_days:
        return AlertPriority.MEDIUM
    return AlertPriority.LOW


def expiry_message(
    product_name: str, lot_number: str, days: int, quantity: Decimal, uom_code: str,
) -> str:
    subject = f"{product_name} (Lot {lot_number}) - {format_quantity(quantity)} {uom_code}"
    if days < 0:
        return f"EXPIRED: {subject} has expired"
    if days == 0:
        return f"URGENT: {subject} expires today"
    if days == 1:
        return f"URGENT: {subject} expires tomorrow"
    return f"{subject} expires in {days} days"


def evaluate_expiry(
    lots: Sequence[ExpiringLot],
    as_of: datetime,
    thresholds: ExpiryAlertThresholds,
    describe: ProductDescriber = default_describer,
) -> list[AlertCandidate]:
    """Expiry candidates, most urgent first."""
    scored: list[tuple[tuple, AlertCandidate]] = []
    for lot in lots:
        if lot.quantity <= 0:
            continue
        days = days_to_expiry(lot.expiry_date, as_of)
        priority = expiry_priority(days, thresholds)
        if priority is None:
            continue
        product = describe(lot.product_id)
        candidate = AlertCandidate(
            alert_type=AlertType.PRODUCT_EXPIRING,
            priority=priority,
            reference_type="lot",
            reference_id=lot.lot_id,
            message=expiry_message(product.name, lot.lot_number, days, lot.quantity, product.uom_code),
            triggered_at=as_of,
            product_id=lot.product_id,
            location_id=lot.location_id,
            lot_id=lot.lot_id,
            details={
                "lot_number": lot.lot_number,
                "expiry_date": lot.expiry_date.isoformat(),
                "days_to_expiry": days,
                "quantity": lot.quantity,
            },
        )
        key = (days, str(lot.product_id), str(lot.location_id), lot.lot_number, str(lot.lot_id))
        scored.append((key, candidate))
    scored.sort(key=lambda item: item[0])
    return [candidate for _, candidate in scored]


# ---------------------------------------------------------------------------
# Low stock
# ---------------------------------------------------------------------------


def suggested_order_quantity(current_stock: Decimal, maximum_stock: Decimal) -> Decimal:
    return max(_ZERO, maximum_stock - current_stock)


def days_of_stock_remaining(
    current_stock: Decimal, average_daily_usage: Decimal | None,
) -> Decimal | None:
    """Estimated days until stock-out, or None without usage history."""
    if average_daily_usage is None or average_daily_usage <= 0:
        return None
    return max(_ZERO, current_stock) / average_daily_usage


def low_stock_priority(
    days_remaining: Decimal | None, thresholds: LowStockThresholds,
) -> AlertPriority:
    if days_remaining is None:
        return AlertPriority.MEDIUM
    if days_remaining < thresholds.high_priority_days:
        return AlertPriority.HIGH
    if days_remaining < thresholds.medium_priority_days:
        return AlertPriority.MEDIUM
    return AlertPriority.LOW


def low_stock_message(
    product_name: str, current_stock: Decimal, reorder_point: Decimal, uom_code: str,
) -> str:
    return (
        f"Low stock: {product_name} - {format_quantity(current_stock)} {uom_code} "
        f"(reorder at {format_quantity(reorder_point)} {uom_code})"
    )


def evaluate_low_stock(
    positions: Sequence[StockPosition],
    as_of: datetime,
    thresholds: LowStockThresholds,
    describe: ProductDescriber = default_describer,
) -> list[AlertCandidate]:
    """Low-stock candidates, highest priority first, then by product and location."""
    candidates: list[AlertCandidate] = []
    for position in positions:
        policy = position.policy
        current = position.current_stock
        if current >= policy.reorder_point:
            continue
        remaining = days_of_stock_remaining(current, position.average_daily_usage)
        product = describe(policy.product_id)
        candidates.append(
            AlertCandidate(
                alert_type=AlertType.LOW_STOCK,
                priority=low_stock_priority(remaining, thresholds),
                reference_type="reorder_config",
                reference_id=policy.id,
                message=low_stock_message(product.name, current, policy.reorder_point, product.uom_code),
                triggered_at=as_of,
                product_id=policy.product_id,
                location_id=policy.location_id,
                details={
                    "current_stock": current,
                    "reorder_point": policy.reorder_point,
                    "maximum_stock": policy.maximum_stock,
                    "safety_stock": policy.safety_stock,
                    "suggested_order_qty": suggested_order_quantity(current, policy.maximum_stock),
                    "average_daily_usage": position.average_daily_usage,
                    "days_remaining": remaining,
                    "lead_time_days": policy.lead_time_days,
                },
            )
        )
    candidates.sort(
        key=lambda c: (-c.priority.rank, str(c.product_id), str(c.location_id), str(c.reference_id))
    )
    return candidates


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------


def needs_escalation(
    triggered_at: datetime,
    priority: AlertPriority | str,
    acknowledged_at: datetime | None,
    now: datetime,
    thresholds: EscalationThresholds,
) -> bool:
    """True when an unacknowledged alert has waited longer than its priority allows."""
    if acknowledged_at is not None:
        return False
    key = priority.value if isinstance(priority, AlertPriority) else str(priority)
    hours_waiting = (now - triggered_at).total_seconds() / 3600
    return hours_waiting > thresholds.hours_for(key)
