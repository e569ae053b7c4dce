"""
Module: inventory_kernel.db.unit_of_work
Responsibility: Explicit transaction scope.  Opens one session, hands it to
    the services of a single operation, and commits or rolls back on the one
    exit path.
Architecture position: Kernel > DB.  Used by services/inventory_orchestrator.py
    and by tests.  Services never commit; only the unit of work does.

Invariants enforced:
    - Atomicity: success commits everything; any exception rolls back
      everything.  There is no partial-commit state.
    - Database lock failures (lock timeout, deadlock, serialization failure)
      surface as ConcurrencyConflictError, the one retryable kernel error.

Failure modes:
    - ConcurrencyConflictError translated from DBAPIError.
    - Any other exception is re-raised unchanged after rollback.
"""

from __future__ import annotations

from types import TracebackType
from typing import Callable, TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from inventory_kernel.exceptions import ConcurrencyConflictError
from inventory_kernel.logging_config import get_logger

logger = get_logger("db.unit_of_work")

T = TypeVar("T")

# PostgreSQL SQLSTATEs that mean "retry the whole transaction"
_RETRYABLE_PGCODES = {
    "40001": "serialization_failure",
    "40P01": "deadlock_detected",
    "55P03": "lock_not_available",
}


def concurrency_reason(exc: BaseException) -> str | None:
    """Name the lock failure behind ``exc``, or None if it is not one."""
    if not isinstance(exc, DBAPIError):
        return None
    orig = exc.orig
    pgcode = getattr(orig, "pgcode", None)
    if pgcode in _RETRYABLE_PGCODES:
        return _RETRYABLE_PGCODES[pgcode]
    if "database is locked" in str(orig).lower():
        return "database_locked"
    return None


def translate_db_error(exc: BaseException, resource: str) -> BaseException:
    """Map retryable lock failures to ConcurrencyConflictError; pass others through."""
    reason = concurrency_reason(exc)
    if reason is None:
        return exc
    return ConcurrencyConflictError(resource=resource, reason=reason)


class UnitOfWork:
    """
    One database transaction with a single commit/rollback exit.

    Usage::

        with UnitOfWork(session_factory) as uow:
            LedgerService(uow.session, clock).append(entries)
        # committed here, or rolled back if the block raised
    """

    def __init__(self, session_factory: sessionmaker[Session], resource: str = "inventory"):
        self._session_factory = session_factory
        self._resource = resource
        self._session: Session | None = None

    @property
    def session(self) -> Session:
        if self._session is None:
            raise RuntimeError("UnitOfWork is not active")
        return self._session

    def __enter__(self) -> UnitOfWork:
        self._session = self._session_factory()
        logger.debug("unit_of_work_started", extra={"resource": self._resource})
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        session = self.session
        try:
            if exc is None:
                try:
                    session.commit()
                except DBAPIError as commit_exc:
                    session.rollback()
                    translated = translate_db_error(commit_exc, self._resource)
                    logger.warning(
                        "unit_of_work_commit_failed",
                        extra={"resource": self._resource},
                        exc_info=True,
                    )
                    if translated is commit_exc:
                        raise
                    raise translated from commit_exc
                logger.debug("unit_of_work_committed", extra={"resource": self._resource})
                return False

            session.rollback()
            logger.warning(
                "unit_of_work_rolled_back",
                extra={"resource": self._resource, "error_type": exc_type.__name__},
            )
            translated = translate_db_error(exc, self._resource)
            if translated is not exc:
                raise translated from exc
            return False
        finally:
            session.close()
            self._session = None


def run_with_retry(
    session_factory: sessionmaker[Session],
    work: Callable[[Session], T],
    attempts: int = 3,
    resource: str = "inventory",
) -> T:
    """
    Run ``work`` in a fresh unit of work, retrying on ConcurrencyConflictError.

    Every attempt starts a new transaction, so the whole operation is
    re-executed, never just the failed step.  The last conflict propagates.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            with UnitOfWork(session_factory, resource=resource) as uow:
                return work(uow.session)
        except ConcurrencyConflictError as exc:
            if attempt == attempts:
                logger.error(
                    "unit_of_work_retries_exhausted",
                    extra={"resource": resource, "attempts": attempts, "reason": exc.reason},
                )
                raise
            logger.warning(
                "unit_of_work_retrying",
                extra={"resource": resource, "attempt": attempt, "reason": exc.reason},
            )
    raise AssertionError("unreachable")
