"""
FEFO ranking -- pure First-Expiry-First-Out pick ordering.

Responsibility:
    Given the available lots of one product at one location, produce a
    deterministic, explainable pick list: rank, freshness classification,
    and (when a demand quantity is supplied) greedy consumption.

Architecture position:
    Kernel > Domain -- pure functional core.  No session, no clock; the
    reference time is an argument.  ``services/fefo_service.py`` is the
    imperative shell that feeds it lots from the Lot Registry.

Invariants enforced:
    - Ordering: expiry ascending, lots without expiry last; ties broken by
      receipt time, then lot number, then lot id.
    - Sufficiency: ``sufficient_stock`` iff total available >= demand.
    - Read-only: ranking never produces ledger movements.

Failure modes:
    - ValidationError if ``quantity_needed`` is zero or negative.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from inventory_kernel.domain.dtos import (
    ExpiryStatus,
    FEFORecommendation,
    FEFOResult,
    LotBalance,
)
from inventory_kernel.domain.policy import ExpiryStatusThresholds
from inventory_kernel.exceptions import ValidationError

_ZERO = Decimal("0")
_FAR_PAST = datetime.min.replace(tzinfo=timezone.utc)


def days_to_expiry(expiry_date: date | None, as_of: datetime) -> int | None:
    """Whole days from ``as_of``'s calendar date to expiry (negative once expired)."""
    if expiry_date is None:
        return None
    return (expiry_date - as_of.date()).days


def classify_expiry(
    days: int | None,
    thresholds: ExpiryStatusThresholds,
) -> ExpiryStatus:
    """Freshness band for a days-to-expiry value.  No expiry is always fresh."""
    if days is None:
        return ExpiryStatus.FRESH
    if days < 0:
        return ExpiryStatus.EXPIRED
    if days < thresholds.expiring_soon_days:
        return ExpiryStatus.EXPIRING_SOON
    if days < thresholds.approaching_expiry_days:
        return ExpiryStatus.APPROACHING_EXPIRY
    return ExpiryStatus.FRESH


def fefo_sort_key(lot: LotBalance) -> tuple:
    return (
        lot.expiry_date is None,
        lot.expiry_date or date.max,
        lot.received_at or _FAR_PAST,
        lot.lot_number,
        str(lot.lot_id),
    )


def rank_lots(lots: Sequence[LotBalance]) -> list[LotBalance]:
    """Lots in FEFO pick order, ignoring anything without positive quantity."""
    return sorted((lot for lot in lots if lot.quantity_available > 0), key=fefo_sort_key)


def recommend(
    product_id: UUID,
    location_id: UUID,
    lots: Sequence[LotBalance],
    as_of: datetime,
    thresholds: ExpiryStatusThresholds,
    quantity_needed: Decimal | None = None,
) -> FEFOResult:
    """
    Build the FEFO pick list.

    Without ``quantity_needed`` the full ranked list is returned with no
    consumption.  With it, lots are consumed greedily in rank order; the
    last touched lot may be partial, and lots past the demand get a
    ``quantity_to_pick`` of zero.
    """
    if quantity_needed is not None and quantity_needed <= 0:
        raise ValidationError(
            f"quantity_needed must be positive, got {quantity_needed}",
            field="quantity_needed",
        )

    ranked = rank_lots(lots)
    total_available = sum((lot.quantity_available for lot in ranked), _ZERO)

    remaining = quantity_needed
    lots_required = 0
    recommendations: list[FEFORecommendation] = []
    for priority, lot in enumerate(ranked, start=1):
        days = days_to_expiry(lot.expiry_date, as_of)
        to_pick: Decimal | None = None
        if remaining is not None:
            to_pick = min(lot.quantity_available, remaining)
            if to_pick > 0:
                lots_required += 1
            remaining -= to_pick
        recommendations.append(
            FEFORecommendation(
                pick_priority=priority,
                lot_id=lot.lot_id,
                lot_number=lot.lot_number,
                expiry_date=lot.expiry_date,
                days_to_expiry=days,
                expiry_status=classify_expiry(days, thresholds),
                quantity_available=lot.quantity_available,
                unit_cost=lot.unit_cost,
                quantity_to_pick=to_pick,
            )
        )

    if quantity_needed is None:
        sufficient = total_available > 0
    else:
        sufficient = total_available >= quantity_needed

    return FEFOResult(
        product_id=product_id,
        location_id=location_id,
        as_of=as_of,
        recommendations=tuple(recommendations),
        total_available=total_available,
        quantity_needed=quantity_needed,
        sufficient_stock=sufficient,
        lots_required=lots_required,
    )
