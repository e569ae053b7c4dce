"""
LedgerService -- append-only stock ledger with a locked balance cache.

Responsibility:
    Records every stock movement as an immutable, signed ledger entry and
    answers balance questions derived from those entries.  Appends take the
    balance rows of every key they touch FOR UPDATE.  Every append also
    draws from the tenant's ledger sequence, whose counter row stays locked
    until commit, so all appends of one tenant serialize; different tenants
    proceed in parallel.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by LotRegistry (receipts), FEFOService (issues) and
    AdjustmentService (posting).  Delegates seq allocation to
    SequenceService.

Invariants enforced:
    - Append-only: entries are inserted, never updated or deleted.
    - Total order: each entry gets the next value of the tenant's ledger
      sequence; all entries of one append share one txn_ts.
    - Commit-ordered time: txn_ts is taken after the balance locks are held
      and never precedes the latest movement of a locked lot.  Back-dated
      entries on lot-tracked keys are rejected.
    - Lot non-negativity: a batch may not drive a lot-tracked balance below
      zero unless every negative entry for that key carries the override.
      Untracked stock may go negative.
    - Lock ordering: balance rows are locked in sorted key order, so two
      appends touching overlapping keys cannot deadlock each other.
    - Balance cache: stock_balances.quantity == sum(qty_delta) per key at
      every commit.

Failure modes:
    - ValidationError: empty key fields, or entries from different tenants
      in one append, or a lot-tracked entry dated before the lot's
      latest movement.
    - LotNotFoundError: lot_id unknown for the tenant.
    - NegativeLotBalanceError: lot-tracked balance would go negative.

Audit relevance:
    ``ledger_append_completed`` records the seq range, key count and txn_ts
    of every append.  Blocked negative balances are logged at ERROR.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_kernel.domain.clock import Clock
from inventory_kernel.domain.dtos import (
    USAGE_MOVEMENT_TYPES,
    LedgerEntryInput,
    LedgerEntryRecord,
    MovementType,
    balance_key,
    require_aware,
)
from inventory_kernel.exceptions import (
    LotNotFoundError,
    NegativeLotBalanceError,
    ValidationError,
)
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.ledger import LedgerEntry, StockBalance
from inventory_kernel.models.lot import Lot
from inventory_kernel.services.base import BaseService
from inventory_kernel.services.sequence_service import SequenceService

logger = get_logger("services.ledger")

_ZERO = Decimal("0")


def _as_decimal(value) -> Decimal:
    if value is None:
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class LedgerService(BaseService):
    """
    Ledger store: append movements, derive balances.

    Guarantees:
        - ``append`` is atomic within the caller's transaction; a failure
          leaves no entry and no balance change (after rollback).
        - Never commits.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        sequences: SequenceService | None = None,
    ):
        super().__init__(session, clock)
        self._sequences = sequences or SequenceService(session)

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def append(
        self,
        entries: Sequence[LedgerEntryInput],
        *,
        txn_ts: datetime | None = None,
    ) -> list[LedgerEntryRecord]:
        """
        Append a batch of movements atomically.

        Preconditions:
            - All entries belong to one tenant.
        Postconditions:
            - One row per input, in input order, with increasing seq.
            - Balance cache updated for every touched key.
        Raises:
            NegativeLotBalanceError: a lot-tracked key would end below zero
                and not every negative entry for it allows that.
        """
        if not entries:
            return []
        require_aware(txn_ts, "txn_ts")

        tenant_id = entries[0].tenant_id
        if any(entry.tenant_id != tenant_id for entry in entries):
            raise ValidationError("All entries of one append must share a tenant", field="tenant_id")

        self._check_lots(tenant_id, entries)

        net_by_key: dict[tuple[str, str, str], Decimal] = defaultdict(lambda: _ZERO)
        override_by_key: dict[tuple[str, str, str], bool] = {}
        first_by_key: dict[tuple[str, str, str], LedgerEntryInput] = {}
        for entry in entries:
            key = entry.balance_key
            net_by_key[key] += entry.qty_delta
            first_by_key.setdefault(key, entry)
            if entry.qty_delta < 0:
                override_by_key[key] = override_by_key.get(key, True) and entry.allow_negative

        balances: dict[tuple[str, str, str], StockBalance] = {}
        for key in sorted(net_by_key):
            sample = first_by_key[key]
            balances[key] = self._lock_balance(
                tenant_id, sample.product_id, sample.location_id, sample.lot_id, sample.actor_id,
            )

        # Stamped only once every touched key is locked, and never behind the
        # latest movement already on a locked lot.
        batch_ts = txn_ts
        if batch_ts is None:
            batch_ts = max(
                [self.clock.now()]
                + [b.last_txn_ts for b in balances.values() if b.is_lot_tracked and b.last_txn_ts]
            )
        self._check_timestamps(entries, balances, batch_ts)

        for key in sorted(net_by_key):
            balance = balances[key]
            net = net_by_key[key]
            resulting = balance.quantity + net
            if (
                balance.is_lot_tracked
                and net < 0
                and resulting < 0
                and not override_by_key.get(key, False)
            ):
                sample = first_by_key[key]
                logger.error(
                    "invariant_violation_blocked",
                    extra={
                        "invariant": "lot_non_negative",
                        "product_id": str(sample.product_id),
                        "location_id": str(sample.location_id),
                        "lot_id": str(sample.lot_id),
                        "current_balance": str(balance.quantity),
                        "delta": str(net),
                    },
                )
                raise NegativeLotBalanceError(
                    product_id=str(sample.product_id),
                    location_id=str(sample.location_id),
                    lot_id=str(sample.lot_id),
                    current_balance=balance.quantity,
                    delta=net,
                )

        sequence_name = SequenceService.ledger_sequence_name(tenant_id)
        rows: list[LedgerEntry] = []
        for entry in entries:
            seq = self._sequences.next_value(sequence_name)
            row = LedgerEntry(
                tenant_id=entry.tenant_id,
                seq=seq,
                product_id=entry.product_id,
                location_id=entry.location_id,
                lot_id=entry.lot_id,
                txn_ts=entry.txn_ts or batch_ts,
                movement_type=entry.movement_type.value,
                qty_delta=entry.qty_delta,
                unit_cost=entry.unit_cost,
                reference_type=entry.reference_type,
                reference_id=entry.reference_id,
                note=entry.note,
                allow_negative=entry.allow_negative,
                reversal_of_id=entry.reversal_of_id,
                created_by_id=entry.actor_id,
            )
            self.session.add(row)
            rows.append(row)
            balance = balances[entry.balance_key]
            balance.quantity = balance.quantity + entry.qty_delta
            balance.last_seq = seq
            row_ts = row.txn_ts
            if balance.last_txn_ts is None or row_ts > balance.last_txn_ts:
                balance.last_txn_ts = row_ts
            balance.updated_by_id = entry.actor_id

        self.session.flush()

        logger.info(
            "ledger_append_completed",
            extra={
                "tenant_id": str(tenant_id),
                "entry_count": len(rows),
                "key_count": len(net_by_key),
                "first_seq": rows[0].seq,
                "last_seq": rows[-1].seq,
                "txn_ts": batch_ts,
            },
        )
        return [row.to_dto() for row in rows]

    def post_movement(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        quantity: Decimal,
        actor_id: UUID,
        reference_type: str,
        reference_id: UUID,
        lot_id: UUID | None = None,
        unit_cost: Decimal | None = None,
        note: str | None = None,
        allow_negative: bool = False,
    ) -> LedgerEntryRecord:
        """
        Record one generic movement: a receipt when ``quantity`` is positive,
        an issue when negative.

        A lot must already sit at (or have moved through) ``location_id``.

        Raises:
            ValidationError: zero quantity, missing reference, or a lot
                unrelated to the location.
            LotNotFoundError: lot_id unknown for the tenant.
            NegativeLotBalanceError: the issue would overdraw the lot.
        """
        if not reference_type or not reference_type.strip():
            raise ValidationError("reference_type is required", field="reference_type")
        if reference_id is None:
            raise ValidationError("reference_id is required", field="reference_id")
        if lot_id is not None:
            self._check_lot_location(tenant_id, lot_id, location_id)

        movement_type = MovementType.RECEIPT if quantity > 0 else MovementType.ISSUE
        [record] = self.append([
            LedgerEntryInput(
                tenant_id=tenant_id,
                product_id=product_id,
                location_id=location_id,
                movement_type=movement_type,
                qty_delta=quantity,
                actor_id=actor_id,
                lot_id=lot_id,
                unit_cost=unit_cost,
                reference_type=reference_type.strip(),
                reference_id=reference_id,
                note=note,
                allow_negative=allow_negative,
            )
        ])
        logger.info(
            "ledger_movement_posted",
            extra={
                "movement_type": movement_type.value,
                "qty_delta": quantity,
                "lot_id": str(lot_id) if lot_id else None,
                "reference_type": record.reference_type,
            },
        )
        return record

    def _check_lot_location(self, tenant_id: UUID, lot_id: UUID, location_id: UUID) -> None:
        lot = self.session.execute(
            select(Lot).where(Lot.tenant_id == tenant_id, Lot.id == lot_id)
        ).scalar_one_or_none()
        if lot is None:
            raise LotNotFoundError(str(lot_id))
        if lot.location_id == location_id:
            return
        visited = self.session.execute(
            select(LedgerEntry.id)
            .where(
                LedgerEntry.tenant_id == tenant_id,
                LedgerEntry.lot_id == lot_id,
                LedgerEntry.location_id == location_id,
            )
            .limit(1)
        ).first()
        if visited is None:
            raise ValidationError(
                f"Lot {lot.lot_number} has never been at this location", field="lot_id",
            )

    def _check_timestamps(
        self,
        entries: Sequence[LedgerEntryInput],
        balances: dict[tuple[str, str, str], StockBalance],
        batch_ts: datetime,
    ) -> None:
        """
        Keep lot-tracked history in commit order.

        Every entry of a lot-tracked key in one batch must carry the same
        txn_ts, and that txn_ts may not precede the key's latest movement.
        Otherwise an as-of balance in the past could go negative.
        """
        ts_by_key: dict[tuple[str, str, str], datetime] = {}
        for entry in entries:
            key = entry.balance_key
            balance = balances[key]
            if not balance.is_lot_tracked:
                continue
            entry_ts = entry.txn_ts or batch_ts
            seen = ts_by_key.setdefault(key, entry_ts)
            if seen != entry_ts:
                raise ValidationError(
                    f"Entries for lot {entry.lot_id} in one append must share a txn_ts",
                    field="txn_ts",
                )
            if balance.last_txn_ts is not None and entry_ts < balance.last_txn_ts:
                logger.warning(
                    "ledger_backdated_entry_rejected",
                    extra={
                        "lot_id": str(entry.lot_id),
                        "txn_ts": entry_ts,
                        "last_txn_ts": balance.last_txn_ts,
                    },
                )
                raise ValidationError(
                    f"txn_ts {entry_ts.isoformat()} precedes the latest movement of lot "
                    f"{entry.lot_id} ({balance.last_txn_ts.isoformat()})",
                    field="txn_ts",
                )

    def _check_lots(self, tenant_id: UUID, entries: Sequence[LedgerEntryInput]) -> None:
        lot_ids = {entry.lot_id for entry in entries if entry.lot_id is not None}
        if not lot_ids:
            return
        lots = {
            lot.id: lot
            for lot in self.session.execute(
                select(Lot).where(Lot.tenant_id == tenant_id, Lot.id.in_(lot_ids))
            ).scalars()
        }
        for entry in entries:
            if entry.lot_id is None:
                continue
            lot = lots.get(entry.lot_id)
            if lot is None:
                raise LotNotFoundError(str(entry.lot_id))
            if lot.product_id != entry.product_id:
                raise ValidationError(
                    f"Lot {lot.lot_number} belongs to a different product",
                    field="lot_id",
                )

    def _balance_stmt(self, tenant_id, product_id, location_id, lot_key: str):
        return (
            select(StockBalance)
            .where(
                StockBalance.tenant_id == tenant_id,
                StockBalance.product_id == product_id,
                StockBalance.location_id == location_id,
                StockBalance.lot_key == lot_key,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )

    def _lock_balance(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        lot_id: UUID | None,
        actor_id: UUID,
    ) -> StockBalance:
        """Lock the balance row of one key, creating it from the ledger on first use."""
        lot_key = balance_key(product_id, location_id, lot_id)[2]
        stmt = self._balance_stmt(tenant_id, product_id, location_id, lot_key)
        balance = self.session.execute(stmt).scalar_one_or_none()
        if balance is not None:
            return balance

        savepoint = self.session.begin_nested()
        try:
            balance = StockBalance(
                tenant_id=tenant_id,
                product_id=product_id,
                location_id=location_id,
                lot_key=lot_key,
                quantity=self._key_sum(tenant_id, product_id, location_id, lot_id),
                last_txn_ts=self._key_last_ts(tenant_id, product_id, location_id, lot_id),
                created_by_id=actor_id,
            )
            self.session.add(balance)
            self.session.flush()
            savepoint.commit()
            return balance
        except IntegrityError:
            logger.debug(
                "stock_balance_race_retry",
                extra={"product_id": str(product_id), "location_id": str(location_id), "lot_key": lot_key},
            )
            savepoint.rollback()
            return self.session.execute(stmt).scalar_one()

    def _key_sum(self, tenant_id, product_id, location_id, lot_id) -> Decimal:
        lot_clause = LedgerEntry.lot_id.is_(None) if lot_id is None else LedgerEntry.lot_id == lot_id
        return _as_decimal(
            self.session.execute(
                select(func.coalesce(func.sum(LedgerEntry.qty_delta), 0)).where(
                    LedgerEntry.tenant_id == tenant_id,
                    LedgerEntry.product_id == product_id,
                    LedgerEntry.location_id == location_id,
                    lot_clause,
                )
            ).scalar()
        )

    def _key_last_ts(self, tenant_id, product_id, location_id, lot_id) -> datetime | None:
        lot_clause = LedgerEntry.lot_id.is_(None) if lot_id is None else LedgerEntry.lot_id == lot_id
        return self.session.execute(
            select(LedgerEntry.txn_ts)
            .where(
                LedgerEntry.tenant_id == tenant_id,
                LedgerEntry.product_id == product_id,
                LedgerEntry.location_id == location_id,
                lot_clause,
            )
            .order_by(LedgerEntry.txn_ts.desc())
            .limit(1)
        ).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def balance_as_of(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        lot_id: UUID | None = None,
        as_of: datetime | None = None,
    ) -> Decimal:
        """
        Sum of deltas with txn_ts <= as_of.

        With ``lot_id`` the sum covers that lot only; without it, every entry
        of the product at the location (all lots plus untracked stock).
        """
        require_aware(as_of, "as_of")
        stmt = select(func.coalesce(func.sum(LedgerEntry.qty_delta), 0)).where(
            LedgerEntry.tenant_id == tenant_id,
            LedgerEntry.product_id == product_id,
            LedgerEntry.location_id == location_id,
        )
        if lot_id is not None:
            stmt = stmt.where(LedgerEntry.lot_id == lot_id)
        if as_of is not None:
            stmt = stmt.where(LedgerEntry.txn_ts <= as_of)
        return _as_decimal(self.session.execute(stmt).scalar())

    def on_hand(self, tenant_id: UUID, product_id: UUID, location_id: UUID) -> Decimal:
        """Current quantity of a product at a location, from the balance cache."""
        cached = self.session.execute(
            select(func.coalesce(func.sum(StockBalance.quantity), 0)).where(
                StockBalance.tenant_id == tenant_id,
                StockBalance.product_id == product_id,
                StockBalance.location_id == location_id,
            )
        ).scalar()
        return _as_decimal(cached)

    def entries_for_reference(
        self, tenant_id: UUID, reference_type: str, reference_id: UUID,
    ) -> list[LedgerEntryRecord]:
        rows = self.session.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.tenant_id == tenant_id,
                LedgerEntry.reference_type == reference_type,
                LedgerEntry.reference_id == reference_id,
            )
            .order_by(LedgerEntry.seq)
        ).scalars()
        return [row.to_dto() for row in rows]

    def reverse_reference(
        self,
        tenant_id: UUID,
        reference_type: str,
        reference_id: UUID,
        actor_id: UUID,
        note_prefix: str = "Reversal",
    ) -> list[LedgerEntryRecord]:
        """
        Append offsetting entries for every unreversed entry of a document.

        Each reversal negates the original delta, keeps its movement type and
        reference, and points back through ``reversal_of_id``.

        Raises:
            ValidationError: nothing left to reverse.
        """
        existing = self.entries_for_reference(tenant_id, reference_type, reference_id)
        reversed_ids = {e.reversal_of_id for e in existing if e.reversal_of_id is not None}
        originals = [
            e for e in existing
            if e.reversal_of_id is None and e.id not in reversed_ids
        ]
        if not originals:
            raise ValidationError(
                f"No unreversed ledger entries for {reference_type} {reference_id}",
                field="reference_id",
            )

        reversals = [
            LedgerEntryInput(
                tenant_id=tenant_id,
                product_id=original.product_id,
                location_id=original.location_id,
                movement_type=original.movement_type,
                qty_delta=-original.qty_delta,
                actor_id=actor_id,
                lot_id=original.lot_id,
                unit_cost=original.unit_cost,
                reference_type=reference_type,
                reference_id=reference_id,
                note=f"{note_prefix}: {original.note}" if original.note else note_prefix,
                allow_negative=original.allow_negative,
                reversal_of_id=original.id,
            )
            for original in originals
        ]
        records = self.append(reversals)
        logger.info(
            "ledger_reference_reversed",
            extra={
                "reference_type": reference_type,
                "reference_id": str(reference_id),
                "entry_count": len(records),
            },
        )
        return records

    def average_daily_usage(
        self,
        tenant_id: UUID,
        product_id: UUID,
        location_id: UUID,
        as_of: datetime,
        window_days: int,
    ) -> Decimal | None:
        """
        Mean daily outbound consumption over (as_of - window_days, as_of].

        Returns None when nothing was consumed in the window.
        """
        require_aware(as_of, "as_of")
        window_start = as_of - timedelta(days=window_days)
        consumed = _as_decimal(
            self.session.execute(
                select(func.coalesce(func.sum(-LedgerEntry.qty_delta), 0)).where(
                    LedgerEntry.tenant_id == tenant_id,
                    LedgerEntry.product_id == product_id,
                    LedgerEntry.location_id == location_id,
                    LedgerEntry.movement_type.in_([m.value for m in USAGE_MOVEMENT_TYPES]),
                    LedgerEntry.qty_delta < 0,
                    LedgerEntry.txn_ts > window_start,
                    LedgerEntry.txn_ts <= as_of,
                )
            ).scalar()
        )
        if consumed <= 0:
            return None
        return consumed / Decimal(window_days)
