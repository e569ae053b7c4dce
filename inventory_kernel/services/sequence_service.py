"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing numbers for ledger ordering (one sequence
    per tenant) and for adjustment document numbers (one sequence per
    tenant per calendar year).  Uses a dedicated counter table with
    row-level locking (``SELECT ... FOR UPDATE``).

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by LedgerService (entry seq) and AdjustmentService (ADJ numbers).

Invariants enforced:
    - The aggregate-max-plus-one pattern is never used; the locked counter
      row is the sole source of the next value.
    - Transactional: an increment is only visible after the caller's
      transaction commits.  Rollback returns the value.

Failure modes:
    - IntegrityError: concurrent counter creation race (handled via
      savepoint rollback and retry).

Audit relevance:
    Allocation is logged at DEBUG with sequence_name and value.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Guarantees:
        - Concurrency safety: ``SELECT ... FOR UPDATE`` serializes concurrent
          allocations for the same sequence name.
        - Contiguity: under normal operation no value is skipped.  A rolled
          back transaction returns its values.

    Non-goals:
        - Does NOT call ``session.commit()``.
    """

    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def ledger_sequence_name(tenant_id) -> str:
        return f"stock_ledger:{tenant_id}"

    @staticmethod
    def adjustment_sequence_name(tenant_id, year: int) -> str:
        return f"adjustment:{tenant_id}:{year:04d}"

    def _lock_counter(self, sequence_name: str) -> SequenceCounter | None:
        return self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the counter row (creating it on first use), increment, return.

        Postconditions:
            - Returns an integer > 0, strictly greater than any value
              previously returned for this name.
            - The counter row stays locked until the transaction completes.
        """
        counter = self._lock_counter(sequence_name)

        if counter is None:
            # First use.  Another transaction may create it at the same time;
            # the savepoint keeps the rest of the caller's work intact.
            savepoint = self._session.begin_nested()
            try:
                counter = SequenceCounter(name=sequence_name, current_value=1)
                self._session.add(counter)
                self._session.flush()
                savepoint.commit()
                logger.debug(
                    "sequence_allocated",
                    extra={"sequence_name": sequence_name, "value": 1},
                )
                return 1
            except IntegrityError:
                logger.debug(
                    "sequence_counter_race_retry",
                    extra={"sequence_name": sequence_name},
                )
                savepoint.rollback()
                counter = self._lock_counter(sequence_name)
                if counter is None:
                    raise

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if never used."""
        counter = self._session.execute(
            select(SequenceCounter).where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
        return counter.current_value if counter else None

    def reset(self, sequence_name: str, value: int = 0) -> None:
        """
        Reset a sequence to a specific value.

        WARNING: tests and data migrations only.
        """
        counter = self._lock_counter(sequence_name)
        if counter is None:
            self._session.add(SequenceCounter(name=sequence_name, current_value=value))
        else:
            counter.current_value = value
        self._session.flush()
