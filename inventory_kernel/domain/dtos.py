"""
Inventory Domain Values (``inventory_kernel.domain.dtos``).

Responsibility
--------------
Enumerations and frozen value objects that cross the boundary between the
imperative shell (services, selectors) and the pure core (FEFO ranking,
alert evaluation, workflow).  Request bodies are closed dataclasses:
``from_mapping`` rejects unknown keys instead of threading an open dict
through the kernel.

Architecture
------------
Layer: **Kernel > Domain** -- pure data.  ZERO I/O.  No imports from
``db/``, ``models/``, ``services/`` or outer layers.

Invariants
----------
- All quantities and costs are ``Decimal``.  ``float`` input is rejected.
- Value objects are ``frozen=True``.

Failure Modes
-------------
- ``ValidationError`` on malformed construction or unknown request keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from inventory_kernel.exceptions import ValidationError


class MovementType(str, Enum):
    """Category of a stock movement recorded in the ledger."""
    RECEIPT = "receipt"
    ISSUE = "issue"
    TRANSFER = "transfer"
    ADJUSTMENT = "adjustment"
    PRODUCTION_CONSUME = "production_consume"
    PRODUCTION_OUTPUT = "production_output"


# Outbound movements that count as consumption for usage estimates.
USAGE_MOVEMENT_TYPES: frozenset[MovementType] = frozenset(
    {MovementType.ISSUE, MovementType.PRODUCTION_CONSUME}
)


class AdjustmentStatus(str, Enum):
    """Stock adjustment lifecycle states."""
    DRAFT = "draft"
    APPROVED = "approved"
    POSTED = "posted"


class AdjustmentReason(str, Enum):
    """Why stock is being corrected."""
    DAMAGE = "damage"
    EXPIRY = "expiry"
    THEFT = "theft"
    FOUND = "found"
    CORRECTION = "correction"
    WASTE = "waste"
    SPOILAGE = "spoilage"


class ExpiryStatus(str, Enum):
    """Freshness classification of a lot relative to a point in time."""
    EXPIRED = "expired"
    EXPIRING_SOON = "expiring_soon"
    APPROACHING_EXPIRY = "approaching_expiry"
    FRESH = "fresh"


class AlertType(str, Enum):
    PRODUCT_EXPIRING = "product_expiring"
    LOW_STOCK = "low_stock"


class AlertPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Higher is more urgent."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    AlertPriority.LOW: 0,
    AlertPriority.MEDIUM: 1,
    AlertPriority.HIGH: 2,
    AlertPriority.CRITICAL: 3,
}


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def to_decimal(value: Any, field_name: str) -> Decimal:
    """Coerce str/int/Decimal to Decimal.  Floats are refused."""
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(
            f"{field_name} must be a decimal string or integer, got {type(value).__name__}",
            field=field_name,
        )
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationError(
                f"{field_name} is not a valid decimal: {value!r}", field=field_name,
            ) from None
    else:
        raise ValidationError(
            f"{field_name} must be a decimal string or integer", field=field_name,
        )
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite", field=field_name)
    return result


def to_uuid(value: Any, field_name: str) -> UUID:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(
            f"{field_name} is not a valid UUID: {value!r}", field=field_name,
        ) from None


def require_aware(value: datetime | None, field_name: str) -> datetime | None:
    """Pass through None or a timezone-aware datetime; refuse naive ones."""
    if value is None:
        return None
    if not isinstance(value, datetime):
        raise ValidationError(f"{field_name} must be a datetime", field=field_name)
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{field_name} must be timezone-aware", field=field_name)
    return value


def _reject_unknown(cls: type, data: Mapping[str, Any]) -> None:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValidationError(
            f"Unknown field(s) for {cls.__name__}: {', '.join(unknown)}",
            field=unknown[0],
        )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerEntryInput:
    """
    One movement to append to the ledger.

    Contract: ``qty_delta`` is signed and non-zero.  ``unit_cost`` is
    non-negative when given.  ``allow_negative`` grants the negative-stock
    override for this entry only.
    """
    tenant_id: UUID
    product_id: UUID
    location_id: UUID
    movement_type: MovementType
    qty_delta: Decimal
    actor_id: UUID
    lot_id: UUID | None = None
    unit_cost: Decimal | None = None
    reference_type: str | None = None
    reference_id: UUID | None = None
    note: str | None = None
    allow_negative: bool = False
    txn_ts: datetime | None = None
    reversal_of_id: UUID | None = None

    def __post_init__(self):
        if not isinstance(self.qty_delta, Decimal):
            raise ValidationError("qty_delta must be a Decimal", field="qty_delta")
        if self.qty_delta == 0:
            raise ValidationError("qty_delta must be non-zero", field="qty_delta")
        if self.unit_cost is not None and self.unit_cost < 0:
            raise ValidationError("unit_cost must be non-negative", field="unit_cost")
        if not isinstance(self.movement_type, MovementType):
            raise ValidationError(
                f"Unknown movement type: {self.movement_type!r}", field="movement_type",
            )
        require_aware(self.txn_ts, "txn_ts")

    @property
    def balance_key(self) -> tuple[str, str, str]:
        return balance_key(self.product_id, self.location_id, self.lot_id)


def balance_key(
    product_id: UUID, location_id: UUID, lot_id: UUID | None,
) -> tuple[str, str, str]:
    """Lock-ordering key of a (product, location, lot) balance.

    Untracked lines use an empty lot key.
    """
    return (str(product_id), str(location_id), str(lot_id) if lot_id else "")


@dataclass(frozen=True)
class LedgerEntryRecord:
    """A persisted ledger entry."""
    id: UUID
    seq: int
    tenant_id: UUID
    product_id: UUID
    location_id: UUID
    lot_id: UUID | None
    txn_ts: datetime
    movement_type: MovementType
    qty_delta: Decimal
    unit_cost: Decimal | None
    reference_type: str | None
    reference_id: UUID | None
    note: str | None
    actor_id: UUID
    allow_negative: bool
    reversal_of_id: UUID | None = None


@dataclass(frozen=True)
class LedgerFilter:
    """Criteria for browsing ledger history."""
    location_id: UUID | None = None
    product_id: UUID | None = None
    lot_id: UUID | None = None
    movement_type: MovementType | None = None
    reference_type: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    def __post_init__(self):
        require_aware(self.date_from, "date_from")
        require_aware(self.date_to, "date_to")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("date_from must not be after date_to", field="date_from")
        if self.movement_type is not None and not isinstance(self.movement_type, MovementType):
            raise ValidationError(
                f"Unknown movement type: {self.movement_type!r}", field="movement_type",
            )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> LedgerFilter:
        _reject_unknown(cls, data)
        values: dict[str, Any] = {}
        for name in ("location_id", "product_id", "lot_id"):
            if data.get(name) is not None:
                values[name] = to_uuid(data[name], name)
        raw_type = data.get("movement_type")
        if raw_type is not None:
            try:
                values["movement_type"] = MovementType(raw_type)
            except ValueError:
                raise ValidationError(
                    f"Unknown movement type: {raw_type!r}", field="movement_type",
                ) from None
        if data.get("reference_type"):
            values["reference_type"] = str(data["reference_type"])
        for name in ("date_from", "date_to"):
            raw = data.get(name)
            if raw is None:
                continue
            if isinstance(raw, str):
                try:
                    raw = datetime.fromisoformat(raw)
                except ValueError:
                    raise ValidationError(f"{name} is not an ISO timestamp", field=name) from None
            values[name] = raw
        return cls(**values)


# ---------------------------------------------------------------------------
# Lots
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LotRecord:
    id: UUID
    tenant_id: UUID
    product_id: UUID
    location_id: UUID
    lot_number: str
    expiry_date: date | None
    manufacture_date: date | None
    received_at: datetime
    notes: str | None = None


@dataclass(frozen=True)
class LotBalance:
    """A lot with positive derived quantity at one location."""
    lot_id: UUID
    lot_number: str
    expiry_date: date | None
    quantity_available: Decimal
    unit_cost: Decimal
    received_at: datetime | None = None


@dataclass(frozen=True)
class ExpiringLot:
    """Input row of the expiry sweep: one lot holding stock at one location."""
    lot_id: UUID
    lot_number: str
    product_id: UUID
    location_id: UUID
    expiry_date: date
    quantity: Decimal


@dataclass(frozen=True)
class LotFilter:
    """
    Criteria for listing lots.

    ``lot_number`` matches as a case-insensitive substring.  Lots past
    expiry are left out unless ``include_expired``; ``expiring_within_days``
    keeps only dated lots expiring in that many days from today.
    """
    location_id: UUID | None = None
    product_id: UUID | None = None
    lot_number: str | None = None
    include_expired: bool = False
    expiring_within_days: int | None = None
    in_stock_only: bool = False

    def __post_init__(self):
        if self.expiring_within_days is not None and self.expiring_within_days < 0:
            raise ValidationError(
                "expiring_within_days must be non-negative", field="expiring_within_days",
            )


@dataclass(frozen=True)
class LotStock:
    """A lot with its current quantity, summed over every location it has visited."""
    lot: LotRecord
    quantity: Decimal
    last_movement_at: datetime | None = None


@dataclass(frozen=True)
class LotDetail:
    """A lot, its current quantity and its movements, newest first."""
    lot: LotRecord
    current_stock: Decimal
    movements: tuple[LedgerEntryRecord, ...] = ()


@dataclass(frozen=True)
class OnHandRow:
    product_id: UUID
    location_id: UUID
    quantity: Decimal
    last_movement_at: datetime | None


# ---------------------------------------------------------------------------
# FEFO
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FEFORecommendation:
    """One ranked lot in a FEFO pick list."""
    pick_priority: int
    lot_id: UUID
    lot_number: str
    expiry_date: date | None
    days_to_expiry: int | None
    expiry_status: ExpiryStatus
    quantity_available: Decimal
    unit_cost: Decimal
    quantity_to_pick: Decimal | None = None


@dataclass(frozen=True)
class FEFOResult:
    """
    Ranked pick list for one product at one location.

    ``lots_required`` and ``quantity_to_pick`` are only meaningful when a
    demand quantity was supplied.
    """
    product_id: UUID
    location_id: UUID
    as_of: datetime
    recommendations: tuple[FEFORecommendation, ...]
    total_available: Decimal
    quantity_needed: Decimal | None
    sufficient_stock: bool
    lots_required: int

    @property
    def picks(self) -> tuple[FEFORecommendation, ...]:
        """Recommendations that contribute to the demand."""
        return tuple(
            r for r in self.recommendations
            if r.quantity_to_pick is not None and r.quantity_to_pick > 0
        )

    @property
    def shortfall(self) -> Decimal:
        if self.quantity_needed is None:
            return Decimal("0")
        return max(Decimal("0"), self.quantity_needed - self.total_available)


@dataclass(frozen=True)
class AllocationResult:
    """Outcome of a FEFO issue/reservation."""
    recommendation: FEFOResult
    quantity_allocated: Decimal
    reserve_only: bool
    entries: tuple[LedgerEntryRecord, ...] = ()

    @property
    def fully_allocated(self) -> bool:
        needed = self.recommendation.quantity_needed or Decimal("0")
        return self.quantity_allocated >= needed


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProductRef:
    """Display data for a product, resolved by an external catalog."""
    name: str
    uom_code: str


@dataclass(frozen=True)
class ReorderPolicyRecord:
    id: UUID
    tenant_id: UUID
    product_id: UUID
    location_id: UUID
    reorder_point: Decimal
    maximum_stock: Decimal
    safety_stock: Decimal
    lead_time_days: int | None = None


@dataclass(frozen=True)
class AlertCandidate:
    """
    An alert the evaluator believes should exist.

    Delivery and deduplication against already-open alerts belong to the
    alert-persistence collaborator.
    """
    alert_type: AlertType
    priority: AlertPriority
    reference_type: str
    reference_id: UUID
    message: str
    triggered_at: datetime
    product_id: UUID
    location_id: UUID
    lot_id: UUID | None = None
    details: Mapping[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Adjustments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AdjustmentLineInput:
    """
    One requested line of a stock adjustment.

    ``qty_delta`` is signed exactly as entered; ``unit_cost`` defaults to 0.
    """
    product_id: UUID
    qty_delta: Decimal
    uom: str
    lot_id: UUID | None = None
    unit_cost: Decimal = Decimal("0")
    reason: str | None = None

    def __post_init__(self):
        if not isinstance(self.qty_delta, Decimal):
            raise ValidationError("qty_delta must be a Decimal", field="qty_delta")
        if self.qty_delta == 0:
            raise ValidationError("qty_delta must be non-zero", field="qty_delta")
        if self.unit_cost < 0:
            raise ValidationError("unit_cost must be non-negative", field="unit_cost")
        if not self.uom or not self.uom.strip():
            raise ValidationError("uom is required", field="uom")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AdjustmentLineInput:
        """Build from a request body, rejecting unknown keys."""
        _reject_unknown(cls, data)
        for required in ("product_id", "qty_delta", "uom"):
            if data.get(required) is None:
                raise ValidationError(f"{required} is required", field=required)
        lot_id = data.get("lot_id")
        unit_cost = data.get("unit_cost")
        return cls(
            product_id=to_uuid(data["product_id"], "product_id"),
            qty_delta=to_decimal(data["qty_delta"], "qty_delta"),
            uom=str(data["uom"]),
            lot_id=to_uuid(lot_id, "lot_id") if lot_id is not None else None,
            unit_cost=to_decimal(unit_cost, "unit_cost") if unit_cost is not None else Decimal("0"),
            reason=data.get("reason"),
        )


@dataclass(frozen=True)
class AdjustmentLineRecord:
    id: UUID
    line_number: int
    product_id: UUID
    lot_id: UUID | None
    uom: str
    qty_delta: Decimal
    unit_cost: Decimal
    reason: str | None


@dataclass(frozen=True)
class AdjustmentRecord:
    id: UUID
    tenant_id: UUID
    adj_number: str
    location_id: UUID
    status: AdjustmentStatus
    reason: AdjustmentReason
    notes: str | None
    created_by: UUID
    created_at: datetime
    approved_by: UUID | None
    approved_at: datetime | None
    posted_by: UUID | None
    posted_at: datetime | None
    lines: tuple[AdjustmentLineRecord, ...] = ()


@dataclass(frozen=True)
class AdjustmentFilter:
    """Criteria for listing and analysing adjustments."""
    reason: AdjustmentReason | None = None
    status: AdjustmentStatus | None = None
    location_id: UUID | None = None
    product_id: UUID | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None

    def __post_init__(self):
        for name in ("date_from", "date_to"):
            value = getattr(self, name)
            if value is not None and value.tzinfo is None:
                raise ValidationError(f"{name} must be timezone-aware", field=name)
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValidationError("date_from must not be after date_to", field="date_from")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AdjustmentFilter:
        _reject_unknown(cls, data)
        values: dict[str, Any] = {}
        for name in ("reason", "status"):
            raw = data.get(name)
            if raw is None:
                continue
            enum_type = AdjustmentReason if name == "reason" else AdjustmentStatus
            try:
                values[name] = enum_type(raw)
            except ValueError:
                raise ValidationError(f"Unknown {name}: {raw!r}", field=name) from None
        for name in ("location_id", "product_id"):
            if data.get(name) is not None:
                values[name] = to_uuid(data[name], name)
        for name in ("date_from", "date_to"):
            raw = data.get(name)
            if raw is None:
                continue
            if isinstance(raw, str):
                try:
                    raw = datetime.fromisoformat(raw)
                except ValueError:
                    raise ValidationError(f"{name} is not an ISO timestamp", field=name) from None
            values[name] = raw
        if data.get("search"):
            values["search"] = str(data["search"])
        return cls(**values)


@dataclass(frozen=True)
class BreakdownRow:
    key: str
    adjustment_count: int
    total_quantity: Decimal
    total_value: Decimal


@dataclass(frozen=True)
class AdjustmentAnalysis:
    """Totals and breakdowns over a filtered set of adjustments."""
    adjustment_count: int
    total_quantity: Decimal
    total_value: Decimal
    average_value: Decimal
    by_reason: tuple[BreakdownRow, ...]
    by_product: tuple[BreakdownRow, ...]
    by_location: tuple[BreakdownRow, ...]
