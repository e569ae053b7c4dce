"""
Tests for LedgerService: append, the lot non-negativity guard, balances,
reversal and usage estimates.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from inventory_kernel.domain.dtos import LedgerEntryInput, MovementType
from inventory_kernel.exceptions import (
    LotNotFoundError,
    NegativeLotBalanceError,
    ValidationError,
)
from inventory_kernel.models.ledger import LedgerEntry, StockBalance


@pytest.fixture
def entry(tenant_id, product_id, location_id, actor_id):
    """Build a LedgerEntryInput for the default key."""

    def _entry(qty, lot_id=None, movement=MovementType.ISSUE, **overrides):
        values = dict(
            tenant_id=tenant_id,
            product_id=product_id,
            location_id=location_id,
            movement_type=movement,
            qty_delta=Decimal(str(qty)),
            actor_id=actor_id,
            lot_id=lot_id,
        )
        values.update(overrides)
        return LedgerEntryInput(**values)

    return _entry


class TestAppend:
    def test_empty_batch_is_noop(self, services):
        assert services.ledger.append([]) == []

    def test_entries_get_increasing_seq_and_shared_timestamp(self, services, entry, clock):
        records = services.ledger.append([
            entry(10, movement=MovementType.RECEIPT),
            entry(-3),
            entry(-2),
        ])

        assert [r.qty_delta for r in records] == [Decimal("10"), Decimal("-3"), Decimal("-2")]
        seqs = [r.seq for r in records]
        assert seqs == sorted(seqs)
        assert len(set(seqs)) == 3
        assert {r.txn_ts for r in records} == {clock.now()}

    def test_seq_continues_across_appends(self, services, entry):
        first = services.ledger.append([entry(5, movement=MovementType.RECEIPT)])
        second = services.ledger.append([entry(-1)])
        assert second[0].seq == first[0].seq + 1

    def test_explicit_entry_timestamp_kept(self, services, entry, clock):
        earlier = clock.now() - timedelta(days=2)
        [record] = services.ledger.append([entry(4, movement=MovementType.RECEIPT, txn_ts=earlier)])
        assert record.txn_ts == earlier

    def test_mixed_tenants_rejected(self, services, entry):
        with pytest.raises(ValidationError):
            services.ledger.append([entry(1, movement=MovementType.RECEIPT), entry(1, tenant_id=uuid4())])

    def test_unknown_lot_rejected(self, services, entry):
        with pytest.raises(LotNotFoundError):
            services.ledger.append([entry(5, lot_id=uuid4(), movement=MovementType.RECEIPT)])

    def test_lot_of_other_product_rejected(self, services, entry, receive):
        lot = receive("L1", 10, product=uuid4())
        with pytest.raises(ValidationError) as exc_info:
            services.ledger.append([entry(-1, lot_id=lot.id)])
        assert exc_info.value.field == "lot_id"

    def test_logs_completion(self, services, entry, captured_logs):
        services.ledger.append([entry(7, movement=MovementType.RECEIPT)])
        record = next(r for r in captured_logs() if r["message"] == "ledger_append_completed")
        assert record["entry_count"] == 1
        assert record["key_count"] == 1


class TestLotNonNegativity:
    def test_overdraw_rejected_and_nothing_written(self, services, entry, receive, tenant_id, product_id, location_id):
        lot = receive("L1", 10)

        with pytest.raises(NegativeLotBalanceError) as exc_info:
            services.ledger.append([entry(-15, lot_id=lot.id)])

        assert exc_info.value.current_balance == Decimal("10")
        assert exc_info.value.resulting_balance == Decimal("-5")
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id) == Decimal("10")

    def test_batch_rejected_as_a_whole(self, services, entry, receive, tenant_id, product_id, location_id):
        ok_lot = receive("OK", 10)
        short_lot = receive("SHORT", 2)

        with pytest.raises(NegativeLotBalanceError):
            services.ledger.append([entry(-5, lot_id=ok_lot.id), entry(-3, lot_id=short_lot.id)])

        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, ok_lot.id) == Decimal("10")
        count = services.session.execute(
            select(func.count(LedgerEntry.id)).where(LedgerEntry.tenant_id == tenant_id)
        ).scalar_one()
        assert count == 2

    def test_guard_uses_net_delta_of_batch(self, services, entry, receive, tenant_id, product_id, location_id):
        lot = receive("L1", 10)
        services.ledger.append([
            entry(5, lot_id=lot.id, movement=MovementType.ADJUSTMENT),
            entry(-12, lot_id=lot.id),
        ])
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id) == Decimal("3")

    def test_override_allows_negative(self, services, entry, receive, tenant_id, product_id, location_id):
        lot = receive("L1", 10)
        services.ledger.append([entry(-15, lot_id=lot.id, allow_negative=True)])
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id) == Decimal("-5")

    def test_override_needs_every_negative_entry(self, services, entry, receive):
        lot = receive("L1", 10)
        with pytest.raises(NegativeLotBalanceError):
            services.ledger.append([
                entry(-8, lot_id=lot.id, allow_negative=True),
                entry(-8, lot_id=lot.id),
            ])

    def test_untracked_stock_may_go_negative(self, services, entry, tenant_id, product_id, location_id):
        services.ledger.append([entry(-4)])
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id) == Decimal("-4")

    def test_blocked_violation_logged(self, services, entry, receive, captured_logs):
        lot = receive("L1", 1)
        with pytest.raises(NegativeLotBalanceError):
            services.ledger.append([entry(-2, lot_id=lot.id)])
        record = next(r for r in captured_logs() if r["message"] == "invariant_violation_blocked")
        assert record["level"] == "ERROR"
        assert record["lot_id"] == str(lot.id)


class TestCommitOrderedTime:
    def test_backdated_lot_entry_rejected(self, services, entry, receive, clock, tenant_id, product_id, location_id):
        lot = receive("L1", 10)
        with pytest.raises(ValidationError) as exc_info:
            services.ledger.append([entry(-10, lot_id=lot.id, txn_ts=clock.now() - timedelta(days=1))])
        assert exc_info.value.field == "txn_ts"

        earlier = clock.now() - timedelta(hours=1)
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id, as_of=earlier) == Decimal("0")
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id) == Decimal("10")

    def test_backdated_batch_timestamp_rejected(self, services, entry, receive, clock):
        lot = receive("L1", 10)
        with pytest.raises(ValidationError):
            services.ledger.append([entry(-1, lot_id=lot.id)], txn_ts=clock.now() - timedelta(minutes=5))

    def test_same_or_later_timestamp_accepted(self, services, entry, receive, clock):
        lot = receive("L1", 10)
        later = clock.now() + timedelta(hours=2)
        services.ledger.append([entry(-2, lot_id=lot.id, txn_ts=clock.now())])
        [record] = services.ledger.append([entry(-3, lot_id=lot.id, txn_ts=later)])
        assert record.txn_ts == later

    def test_mixed_timestamps_for_one_lot_rejected(self, services, entry, receive, clock):
        lot = receive("L1", 10)
        later = clock.now() + timedelta(hours=1)
        with pytest.raises(ValidationError, match="share a txn_ts"):
            services.ledger.append([
                entry(-4, lot_id=lot.id, txn_ts=later + timedelta(hours=1)),
                entry(4, lot_id=lot.id, movement=MovementType.RECEIPT, txn_ts=later),
            ])

    def test_clock_behind_latest_movement_is_clamped(self, services, entry, receive, clock):
        lot = receive("L1", 10)
        received_at = clock.now()
        clock.set_time(received_at - timedelta(hours=3))

        [record] = services.ledger.append([entry(-4, lot_id=lot.id)])
        assert record.txn_ts == received_at

    def test_untracked_backdating_still_allowed(self, services, entry, clock):
        services.ledger.append([entry(5, movement=MovementType.RECEIPT)])
        [record] = services.ledger.append([entry(-1, txn_ts=clock.now() - timedelta(days=3))])
        assert record.txn_ts == clock.now() - timedelta(days=3)

    def test_balance_row_tracks_latest_timestamp(self, services, entry, receive, clock, tenant_id):
        lot = receive("L1", 10)
        later = clock.now() + timedelta(days=1)
        services.ledger.append([entry(-1, lot_id=lot.id, txn_ts=later)])

        last_ts = services.session.execute(
            select(StockBalance.last_txn_ts).where(
                StockBalance.tenant_id == tenant_id, StockBalance.lot_key == str(lot.id),
            )
        ).scalar_one()
        assert last_ts == later

    def test_naive_timestamp_rejected(self, entry, clock):
        with pytest.raises(ValidationError) as exc_info:
            entry(-1, txn_ts=clock.now().replace(tzinfo=None))
        assert exc_info.value.field == "txn_ts"

    def test_naive_as_of_rejected(self, services, clock, tenant_id, product_id, location_id):
        naive = clock.now().replace(tzinfo=None)
        with pytest.raises(ValidationError) as exc_info:
            services.ledger.balance_as_of(tenant_id, product_id, location_id, as_of=naive)
        assert exc_info.value.field == "as_of"
        with pytest.raises(ValidationError):
            services.ledger.average_daily_usage(tenant_id, product_id, location_id, naive, 30)


class TestBalances:
    def test_balance_cache_matches_ledger(self, services, entry, receive, tenant_id, product_id, location_id):
        lot = receive("L1", 20)
        services.ledger.append([entry(-6, lot_id=lot.id), entry(3)])

        cached = services.session.execute(
            select(StockBalance.lot_key, StockBalance.quantity).where(StockBalance.tenant_id == tenant_id)
        ).all()
        assert {key: Decimal(str(qty)) for key, qty in cached} == {
            str(lot.id): Decimal("14"),
            "": Decimal("3"),
        }
        assert services.ledger.on_hand(tenant_id, product_id, location_id) == Decimal("17")
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id) == Decimal("17")

    def test_balance_as_of_is_point_in_time(self, services, entry, receive, clock, tenant_id, product_id, location_id):
        lot = receive("L1", 50)
        received_at = clock.now()
        clock.advance_days(1)
        services.ledger.append([entry(-20, lot_id=lot.id)])

        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id, as_of=received_at) == Decimal("50")
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id) == Decimal("30")
        before = received_at - timedelta(seconds=1)
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id, as_of=before) == Decimal("0")

    def test_balances_are_per_location(self, services, receive, tenant_id, product_id, location_id):
        other_location = uuid4()
        receive("L1", 5)
        receive("L1", 9, location=other_location)
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id) == Decimal("5")
        assert services.ledger.balance_as_of(tenant_id, product_id, other_location) == Decimal("9")

    def test_unknown_key_is_zero(self, services, tenant_id):
        assert services.ledger.balance_as_of(tenant_id, uuid4(), uuid4()) == Decimal("0")
        assert services.ledger.on_hand(tenant_id, uuid4(), uuid4()) == Decimal("0")


class TestReverseReference:
    def test_reversal_offsets_every_entry(self, services, entry, receive, actor_id, tenant_id, product_id, location_id):
        lot = receive("L1", 30)
        document = uuid4()
        originals = services.ledger.append([
            entry(-10, lot_id=lot.id, reference_type="sales_order", reference_id=document, note="Order 1"),
            entry(-5, lot_id=lot.id, reference_type="sales_order", reference_id=document),
        ])

        reversals = services.ledger.reverse_reference(tenant_id, "sales_order", document, actor_id)

        assert [r.qty_delta for r in reversals] == [Decimal("10"), Decimal("5")]
        assert [r.reversal_of_id for r in reversals] == [o.id for o in originals]
        assert reversals[0].note == "Reversal: Order 1"
        assert reversals[1].note == "Reversal"
        assert all(r.movement_type == MovementType.ISSUE for r in reversals)
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id, lot.id) == Decimal("30")

    def test_second_reversal_rejected(self, services, entry, actor_id, tenant_id):
        document = uuid4()
        services.ledger.append([entry(8, movement=MovementType.RECEIPT, reference_type="po", reference_id=document)])
        services.ledger.reverse_reference(tenant_id, "po", document, actor_id)

        with pytest.raises(ValidationError):
            services.ledger.reverse_reference(tenant_id, "po", document, actor_id)

    def test_unknown_reference_rejected(self, services, actor_id, tenant_id):
        with pytest.raises(ValidationError):
            services.ledger.reverse_reference(tenant_id, "po", uuid4(), actor_id)

    def test_reversal_respects_lot_guard(self, services, actor_id, tenant_id):
        document = uuid4()
        lot, _ = services.lots.receive_lot(
            tenant_id, uuid4(), uuid4(), "R1", Decimal("10"), Decimal("1"), actor_id,
            reference_type="po", reference_id=document,
        )
        services.ledger.append([
            LedgerEntryInput(
                tenant_id=tenant_id,
                product_id=lot.product_id,
                location_id=lot.location_id,
                movement_type=MovementType.ISSUE,
                qty_delta=Decimal("-7"),
                actor_id=actor_id,
                lot_id=lot.id,
            )
        ])
        with pytest.raises(NegativeLotBalanceError):
            services.ledger.reverse_reference(tenant_id, "po", document, actor_id)


class TestAverageDailyUsage:
    def test_issues_over_window(self, services, entry, clock, tenant_id, product_id, location_id):
        services.ledger.append([entry(-30), entry(-15, movement=MovementType.PRODUCTION_CONSUME)])
        usage = services.ledger.average_daily_usage(tenant_id, product_id, location_id, clock.now(), 30)
        assert usage == Decimal("1.5")

    def test_adjustments_and_receipts_ignored(self, services, entry, clock, tenant_id, product_id, location_id):
        services.ledger.append([entry(-30, movement=MovementType.ADJUSTMENT), entry(40, movement=MovementType.RECEIPT)])
        assert services.ledger.average_daily_usage(tenant_id, product_id, location_id, clock.now(), 30) is None

    def test_window_boundaries(self, services, entry, clock, tenant_id, product_id, location_id):
        now = clock.now()
        services.ledger.append([
            entry(-10, txn_ts=now - timedelta(days=10)),
            entry(-99, txn_ts=now - timedelta(days=10, seconds=1)),
            entry(-50, txn_ts=now + timedelta(seconds=1)),
        ])
        usage = services.ledger.average_daily_usage(tenant_id, product_id, location_id, now, 10)
        assert usage is None

    def test_within_window(self, services, entry, clock, tenant_id, product_id, location_id):
        now = clock.now()
        services.ledger.append([entry(-20, txn_ts=now - timedelta(days=9))])
        assert services.ledger.average_daily_usage(tenant_id, product_id, location_id, now, 10) == Decimal("2")


class TestPostMovement:
    def test_sign_picks_receipt_or_issue(self, services, receive, tenant_id, product_id, location_id, actor_id):
        lot = receive("L1", 10)
        order = uuid4()
        issue = services.ledger.post_movement(
            tenant_id, product_id, location_id, Decimal("-4"), actor_id, "ORDER", order,
            lot_id=lot.id, unit_cost=Decimal("1.25"), note="Picked",
        )
        receipt = services.ledger.post_movement(
            tenant_id, product_id, location_id, Decimal("6"), actor_id, "GR", uuid4(),
        )

        assert issue.movement_type == MovementType.ISSUE
        assert issue.unit_cost == Decimal("1.25")
        assert issue.reference_id == order
        assert issue.note == "Picked"
        assert receipt.movement_type == MovementType.RECEIPT
        assert receipt.lot_id is None
        assert services.ledger.balance_as_of(tenant_id, product_id, location_id) == Decimal("12")

    def test_overdraw_rejected(self, services, receive, tenant_id, product_id, location_id, actor_id):
        lot = receive("L1", 3)
        with pytest.raises(NegativeLotBalanceError):
            services.ledger.post_movement(
                tenant_id, product_id, location_id, Decimal("-4"), actor_id, "ORDER", uuid4(), lot_id=lot.id,
            )

    @pytest.mark.parametrize("reference_type, field", [("", "reference_type"), ("  ", "reference_type")])
    def test_reference_type_required(self, services, tenant_id, product_id, location_id, actor_id, reference_type, field):
        with pytest.raises(ValidationError) as exc_info:
            services.ledger.post_movement(
                tenant_id, product_id, location_id, Decimal("1"), actor_id, reference_type, uuid4(),
            )
        assert exc_info.value.field == field

    def test_reference_id_required(self, services, tenant_id, product_id, location_id, actor_id):
        with pytest.raises(ValidationError) as exc_info:
            services.ledger.post_movement(
                tenant_id, product_id, location_id, Decimal("1"), actor_id, "GR", None,
            )
        assert exc_info.value.field == "reference_id"

    def test_zero_quantity_rejected(self, services, tenant_id, product_id, location_id, actor_id):
        with pytest.raises(ValidationError):
            services.ledger.post_movement(
                tenant_id, product_id, location_id, Decimal("0"), actor_id, "GR", uuid4(),
            )

    def test_lot_must_have_been_at_location(self, services, receive, tenant_id, product_id, actor_id):
        lot = receive("L1", 5)
        with pytest.raises(ValidationError) as exc_info:
            services.ledger.post_movement(
                tenant_id, product_id, uuid4(), Decimal("1"), actor_id, "XFER", uuid4(), lot_id=lot.id,
            )
        assert exc_info.value.field == "lot_id"

    def test_unknown_lot(self, services, tenant_id, product_id, location_id, actor_id):
        with pytest.raises(LotNotFoundError):
            services.ledger.post_movement(
                tenant_id, product_id, location_id, Decimal("1"), actor_id, "GR", uuid4(), lot_id=uuid4(),
            )

    def test_logged(self, services, tenant_id, product_id, location_id, actor_id, captured_logs):
        services.ledger.post_movement(
            tenant_id, product_id, location_id, Decimal("2"), actor_id, "GR", uuid4(),
        )
        [record] = [r for r in captured_logs() if r["message"] == "ledger_movement_posted"]
        assert record["movement_type"] == "receipt"
        assert record["reference_type"] == "GR"
