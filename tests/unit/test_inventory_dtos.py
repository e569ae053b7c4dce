"""Tests for request value objects and coercion helpers."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from inventory_kernel.domain.dtos import (
    AdjustmentFilter,
    AdjustmentLineInput,
    AdjustmentReason,
    AdjustmentStatus,
    AlertPriority,
    LedgerEntryInput,
    MovementType,
    balance_key,
    to_decimal,
    to_uuid,
)
from inventory_kernel.exceptions import ValidationError


class TestCoercion:
    @pytest.mark.parametrize("value", ["1.50", 3, Decimal("-2"), " 4 "])
    def test_to_decimal_accepts(self, value):
        assert to_decimal(value, "qty") == Decimal(str(value).strip())

    @pytest.mark.parametrize("value", [1.5, True, "abc", "NaN", "Infinity", None, [1]])
    def test_to_decimal_rejects(self, value):
        with pytest.raises(ValidationError) as exc_info:
            to_decimal(value, "qty")
        assert exc_info.value.field == "qty"

    def test_to_uuid(self):
        uid = uuid4()
        assert to_uuid(uid, "id") is uid
        assert to_uuid(str(uid), "id") == uid
        with pytest.raises(ValidationError):
            to_uuid("not-a-uuid", "id")


class TestLedgerEntryInput:
    def _entry(self, **overrides):
        values = dict(
            tenant_id=uuid4(),
            product_id=uuid4(),
            location_id=uuid4(),
            movement_type=MovementType.RECEIPT,
            qty_delta=Decimal("5"),
            actor_id=uuid4(),
        )
        values.update(overrides)
        return LedgerEntryInput(**values)

    def test_zero_delta_rejected(self):
        with pytest.raises(ValidationError, match="non-zero"):
            self._entry(qty_delta=Decimal("0"))

    def test_float_delta_rejected(self):
        with pytest.raises(ValidationError):
            self._entry(qty_delta=5.0)

    def test_negative_cost_rejected(self):
        with pytest.raises(ValidationError):
            self._entry(unit_cost=Decimal("-0.01"))

    def test_movement_type_must_be_enum(self):
        with pytest.raises(ValidationError):
            self._entry(movement_type="teleport")

    def test_balance_key_untracked(self):
        entry = self._entry()
        assert entry.balance_key == (str(entry.product_id), str(entry.location_id), "")

    def test_balance_key_tracked(self):
        lot = uuid4()
        product, location = uuid4(), uuid4()
        assert balance_key(product, location, lot) == (str(product), str(location), str(lot))


class TestAdjustmentLineInput:
    def test_from_mapping(self):
        product = uuid4()
        line = AdjustmentLineInput.from_mapping(
            {"product_id": str(product), "qty_delta": "-3", "uom": "ea", "unit_cost": "2.00"}
        )
        assert line.product_id == product
        assert line.qty_delta == Decimal("-3")
        assert line.unit_cost == Decimal("2.00")
        assert line.lot_id is None

    def test_unit_cost_defaults_to_zero(self):
        line = AdjustmentLineInput.from_mapping({"product_id": str(uuid4()), "qty_delta": 2, "uom": "ea"})
        assert line.unit_cost == Decimal("0")

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError, match="Unknown field"):
            AdjustmentLineInput.from_mapping(
                {"product_id": str(uuid4()), "qty_delta": "1", "uom": "ea", "colour": "red"}
            )

    @pytest.mark.parametrize("missing", ["product_id", "qty_delta", "uom"])
    def test_required_fields(self, missing):
        data = {"product_id": str(uuid4()), "qty_delta": "1", "uom": "ea"}
        del data[missing]
        with pytest.raises(ValidationError) as exc_info:
            AdjustmentLineInput.from_mapping(data)
        assert exc_info.value.field == missing

    def test_zero_quantity_rejected(self):
        with pytest.raises(ValidationError):
            AdjustmentLineInput(product_id=uuid4(), qty_delta=Decimal("0"), uom="ea")

    def test_blank_uom_rejected(self):
        with pytest.raises(ValidationError):
            AdjustmentLineInput(product_id=uuid4(), qty_delta=Decimal("1"), uom="  ")


class TestAdjustmentFilter:
    def test_from_mapping(self):
        location = uuid4()
        flt = AdjustmentFilter.from_mapping(
            {
                "reason": "damage",
                "status": "posted",
                "location_id": str(location),
                "date_from": "2025-01-01T00:00:00+00:00",
                "date_to": "2025-01-31T23:59:59+00:00",
                "search": "ADJ-2025",
            }
        )
        assert flt.reason == AdjustmentReason.DAMAGE
        assert flt.status == AdjustmentStatus.POSTED
        assert flt.location_id == location
        assert flt.date_from == datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert flt.search == "ADJ-2025"

    def test_unknown_reason(self):
        with pytest.raises(ValidationError) as exc_info:
            AdjustmentFilter.from_mapping({"reason": "lost"})
        assert exc_info.value.field == "reason"

    def test_unknown_key(self):
        with pytest.raises(ValidationError):
            AdjustmentFilter.from_mapping({"colour": "red"})

    def test_naive_dates_rejected(self):
        with pytest.raises(ValidationError):
            AdjustmentFilter(date_from=datetime(2025, 1, 1))

    def test_inverted_range_rejected(self):
        with pytest.raises(ValidationError):
            AdjustmentFilter(
                date_from=datetime(2025, 2, 1, tzinfo=timezone.utc),
                date_to=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )

    def test_empty_search_ignored(self):
        assert AdjustmentFilter.from_mapping({"search": ""}).search is None


class TestAlertPriority:
    def test_rank_order(self):
        ranks = [p.rank for p in (AlertPriority.LOW, AlertPriority.MEDIUM, AlertPriority.HIGH, AlertPriority.CRITICAL)]
        assert ranks == sorted(ranks)
        assert len(set(ranks)) == 4
