"""Tests for UnitOfWork commit/rollback, lock-error translation and retry."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from inventory_kernel.db.unit_of_work import (
    UnitOfWork,
    concurrency_reason,
    run_with_retry,
    translate_db_error,
)
from inventory_kernel.exceptions import ConcurrencyConflictError
from inventory_kernel.models.reorder import ReorderConfig
from inventory_kernel.services.reorder_service import ReorderPolicyService


class _PgError(Exception):
    def __init__(self, pgcode):
        super().__init__(f"pg error {pgcode}")
        self.pgcode = pgcode


def _save_policy(session, tenant_id):
    return ReorderPolicyService(session).set_policy(
        tenant_id, uuid4(), uuid4(), Decimal("1"), Decimal("2"), uuid4(),
    )


def _policy_count(session_factory, tenant_id) -> int:
    with session_factory() as session:
        return session.execute(
            select(func.count(ReorderConfig.id)).where(ReorderConfig.tenant_id == tenant_id)
        ).scalar_one()


class TestUnitOfWork:
    def test_commits_on_success(self, session_factory, tenant_id):
        with UnitOfWork(session_factory) as uow:
            _save_policy(uow.session, tenant_id)
        assert _policy_count(session_factory, tenant_id) == 1

    def test_rolls_back_on_error(self, session_factory, tenant_id):
        with pytest.raises(RuntimeError):
            with UnitOfWork(session_factory) as uow:
                _save_policy(uow.session, tenant_id)
                raise RuntimeError("boom")
        assert _policy_count(session_factory, tenant_id) == 0

    def test_session_unavailable_outside_block(self, session_factory):
        uow = UnitOfWork(session_factory)
        with pytest.raises(RuntimeError):
            uow.session
        with uow:
            pass
        with pytest.raises(RuntimeError):
            uow.session

    def test_lock_failure_translated(self, session_factory):
        error = OperationalError("SELECT 1", {}, _PgError("55P03"))
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            with UnitOfWork(session_factory, resource="post_adjustment"):
                raise error
        assert exc_info.value.reason == "lock_not_available"
        assert exc_info.value.resource == "post_adjustment"
        assert exc_info.value.__cause__ is error


class TestErrorTranslation:
    @pytest.mark.parametrize(
        "pgcode,reason",
        [
            ("40001", "serialization_failure"),
            ("40P01", "deadlock_detected"),
            ("55P03", "lock_not_available"),
        ],
    )
    def test_retryable_codes(self, pgcode, reason):
        assert concurrency_reason(OperationalError("x", {}, _PgError(pgcode))) == reason

    def test_sqlite_locked(self):
        error = OperationalError("x", {}, Exception("database is locked"))
        assert concurrency_reason(error) == "database_locked"

    def test_other_errors_pass_through(self):
        error = IntegrityError("x", {}, _PgError("23505"))
        assert translate_db_error(error, "inventory") is error
        plain = ValueError("nope")
        assert translate_db_error(plain, "inventory") is plain


class TestRunWithRetry:
    def test_retries_whole_operation(self, session_factory, tenant_id, captured_logs):
        calls = []

        def work(session):
            calls.append(session)
            _save_policy(session, tenant_id)
            if len(calls) == 1:
                raise ConcurrencyConflictError("inventory", "deadlock_detected")
            return "done"

        assert run_with_retry(session_factory, work) == "done"
        assert len(calls) == 2
        assert calls[0] is not calls[1]
        assert _policy_count(session_factory, tenant_id) == 1
        assert any(r["message"] == "unit_of_work_retrying" for r in captured_logs())

    def test_gives_up_after_attempts(self, session_factory, captured_logs):
        def work(session):
            raise ConcurrencyConflictError("inventory", "lock_not_available")

        with pytest.raises(ConcurrencyConflictError):
            run_with_retry(session_factory, work, attempts=2)
        exhausted = next(r for r in captured_logs() if r["message"] == "unit_of_work_retries_exhausted")
        assert exhausted["attempts"] == 2

    def test_other_errors_not_retried(self, session_factory):
        calls = []

        def work(session):
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            run_with_retry(session_factory, work)
        assert calls == [1]

    def test_attempts_must_be_positive(self, session_factory):
        with pytest.raises(ValueError):
            run_with_retry(session_factory, lambda session: None, attempts=0)
