"""Tests for LedgerSelector: movement history, lot views and on-hand summaries."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from inventory_kernel.domain.dtos import LedgerFilter, LotFilter, MovementType
from inventory_kernel.exceptions import ValidationError


@pytest.fixture
def history(services, receive, clock, tenant_id, product_id, location_id, actor_id):
    """Receipt at T, an order issue at T+1h, a count receipt elsewhere at T+2h."""
    lot = receive("L1", 30)
    clock.advance(3600)
    order = uuid4()
    services.ledger.post_movement(
        tenant_id, product_id, location_id, Decimal("-12"), actor_id,
        "ORDER", order, lot_id=lot.id,
    )
    clock.advance(3600)
    other_location = uuid4()
    services.ledger.post_movement(
        tenant_id, product_id, other_location, Decimal("5"), actor_id, "COUNT", uuid4(),
    )
    return lot, order, other_location


class TestListEntries:
    def test_newest_first(self, services, history, tenant_id):
        entries = services.ledger_queries.list_entries(tenant_id)
        assert [e.qty_delta for e in entries] == [Decimal("5"), Decimal("-12"), Decimal("30")]
        assert services.ledger_queries.count_entries(tenant_id) == 3

    def test_filters(self, services, history, clock, tenant_id, product_id, location_id):
        lot, order, other_location = history
        queries = services.ledger_queries

        at_location = queries.list_entries(tenant_id, LedgerFilter(location_id=location_id))
        assert {e.location_id for e in at_location} == {location_id}

        [issue] = queries.list_entries(tenant_id, LedgerFilter(movement_type=MovementType.ISSUE))
        assert issue.reference_id == order
        assert issue.lot_id == lot.id

        [count] = queries.list_entries(tenant_id, LedgerFilter(reference_type="COUNT"))
        assert count.location_id == other_location

        assert len(queries.list_entries(tenant_id, LedgerFilter(lot_id=lot.id))) == 2
        assert queries.list_entries(tenant_id, LedgerFilter(product_id=uuid4())) == []

    def test_date_range_is_inclusive(self, services, history, clock, tenant_id):
        issued_at = clock.now() - timedelta(hours=1)
        window = LedgerFilter(date_from=issued_at, date_to=issued_at)
        [entry] = services.ledger_queries.list_entries(tenant_id, window)
        assert entry.movement_type == MovementType.ISSUE
        assert services.ledger_queries.count_entries(tenant_id, window) == 1

    def test_paging(self, services, history, tenant_id):
        first = services.ledger_queries.list_entries(tenant_id, limit=2)
        rest = services.ledger_queries.list_entries(tenant_id, limit=2, offset=2)
        assert len(first) == 2
        assert [e.qty_delta for e in rest] == [Decimal("30")]

    @pytest.mark.parametrize("limit, offset, field", [(0, 0, "limit"), (1001, 0, "limit"), (10, -1, "offset")])
    def test_bad_page_rejected(self, services, tenant_id, limit, offset, field):
        with pytest.raises(ValidationError) as exc_info:
            services.ledger_queries.list_entries(tenant_id, limit=limit, offset=offset)
        assert exc_info.value.field == field

    def test_other_tenant_sees_nothing(self, services, history):
        assert services.ledger_queries.list_entries(uuid4()) == []


class TestLedgerFilter:
    def test_from_mapping(self, clock):
        filters = LedgerFilter.from_mapping({
            "movement_type": "issue",
            "reference_type": "ORDER",
            "date_from": clock.now().isoformat(),
        })
        assert filters.movement_type == MovementType.ISSUE
        assert filters.date_from == clock.now()

    @pytest.mark.parametrize(
        "data, field",
        [
            ({"movement_type": "teleport"}, "movement_type"),
            ({"date_from": "2025-01-15T12:00:00"}, "date_from"),
            ({"product_id": "not-a-uuid"}, "product_id"),
            ({"sku": "X"}, "sku"),
        ],
    )
    def test_rejections(self, data, field):
        with pytest.raises(ValidationError) as exc_info:
            LedgerFilter.from_mapping(data)
        assert exc_info.value.field == field

    def test_inverted_range_rejected(self, clock):
        with pytest.raises(ValidationError):
            LedgerFilter(date_from=clock.now(), date_to=clock.now() - timedelta(days=1))


class TestLots:
    def test_list_with_stock_soonest_expiry_first(self, services, receive, clock, tenant_id):
        receive("UNDATED", 4)
        receive("LATE", 6, expires_in=40)
        receive("SOON", 8, expires_in=3)
        receive("GONE", 2, expires_in=-1)

        lots = services.ledger_queries.list_lots(tenant_id, clock.today())
        assert [s.lot.lot_number for s in lots] == ["SOON", "LATE", "UNDATED"]
        assert [s.quantity for s in lots] == [Decimal("8"), Decimal("6"), Decimal("4")]
        assert lots[0].last_movement_at == clock.now()

        with_expired = services.ledger_queries.list_lots(
            tenant_id, clock.today(), LotFilter(include_expired=True),
        )
        assert with_expired[0].lot.lot_number == "GONE"

    def test_filters(self, services, receive, clock, tenant_id, location_id, actor_id, product_id):
        soon = receive("A-100", 8, expires_in=3)
        receive("A-200", 6, expires_in=40)
        receive("B-100", 5, location=uuid4())
        services.ledger.post_movement(
            tenant_id, product_id, location_id, Decimal("-8"), actor_id, "ORDER", uuid4(), lot_id=soon.id,
        )
        queries = services.ledger_queries
        today = clock.today()

        assert {s.lot.lot_number for s in queries.list_lots(tenant_id, today, LotFilter(lot_number="a-"))} == {
            "A-100", "A-200",
        }
        assert [s.lot.lot_number for s in queries.list_lots(tenant_id, today, LotFilter(expiring_within_days=30))] == [
            "A-100",
        ]
        assert [s.lot.lot_number for s in queries.list_lots(tenant_id, today, LotFilter(location_id=location_id, in_stock_only=True))] == [
            "A-200",
        ]

    def test_negative_window_rejected(self):
        with pytest.raises(ValidationError):
            LotFilter(expiring_within_days=-1)

    def test_detail_has_movements_newest_first(self, services, history, tenant_id):
        lot, order, _ = history
        detail = services.ledger_queries.lot_detail(tenant_id, lot.id)
        assert detail.lot.lot_number == "L1"
        assert detail.current_stock == Decimal("18")
        assert [m.qty_delta for m in detail.movements] == [Decimal("-12"), Decimal("30")]

    def test_detail_unknown_or_foreign(self, services, receive, tenant_id):
        lot = receive("L1", 5)
        assert services.ledger_queries.lot_detail(tenant_id, uuid4()) is None
        assert services.ledger_queries.lot_detail(uuid4(), lot.id) is None


class TestOnHand:
    def test_summary_per_product_and_location(self, services, history, clock, tenant_id, product_id, location_id, actor_id):
        _, _, other_location = history
        services.ledger.post_movement(
            tenant_id, product_id, location_id, Decimal("3"), actor_id, "GR", uuid4(),
        )

        rows = {(r.product_id, r.location_id): r for r in services.ledger_queries.on_hand_summary(tenant_id)}
        assert rows[(product_id, location_id)].quantity == Decimal("21")
        assert rows[(product_id, location_id)].last_movement_at == clock.now()
        assert rows[(product_id, other_location)].quantity == Decimal("5")

    def test_filters(self, services, history, tenant_id, product_id, location_id):
        [row] = services.ledger_queries.on_hand_summary(tenant_id, location_id=location_id)
        assert row.quantity == Decimal("18")
        assert services.ledger_queries.on_hand_summary(tenant_id, product_id=uuid4()) == []
