"""
Pytest fixtures for the inventory kernel test suite.

Provides:
- One engine and one schema per test session
- ``session``: a session whose work is rolled back after each test
- ``session_factory``: real commits for unit-of-work and orchestrator tests,
  cleaned up by deleting all rows afterwards
- A deterministic clock, common ids, captured JSON logs, and lot builders

Environment Variables:
- DATABASE_URL: database to test against.  Defaults to in-memory SQLite.
  Tests marked ``postgres`` (true multi-connection concurrency) are skipped
  unless this points at PostgreSQL.
"""

import json
import logging
import os
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from inventory_kernel.db.base import Base
from inventory_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from inventory_kernel.db.immutability import register_immutability_listeners
from inventory_kernel.domain.clock import DeterministicClock
from inventory_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from inventory_kernel.services.inventory_orchestrator import (
    InventoryOrchestrator,
    InventoryServices,
)

DEFAULT_TEST_URL = "sqlite://"


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_TEST_URL)


def _is_postgres_url(url: str) -> bool:
    return make_url(url).get_backend_name() == "postgresql"


def pytest_configure(config):
    config.addinivalue_line("markers", "postgres: requires PostgreSQL (DATABASE_URL)")
    config.addinivalue_line("markers", "slow_locks: may wait on database locks")


def pytest_collection_modifyitems(config, items):
    if _is_postgres_url(get_database_url()):
        return
    skip_pg = pytest.mark.skip(reason="needs PostgreSQL; set DATABASE_URL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip_pg)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture inventory_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, services):
            services.ledger.append([...])
            assert any(r["message"] == "ledger_append_completed" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("inventory_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    url = get_database_url()
    eng = init_engine_from_url(url, pool_size=30, max_overflow=20, pool_timeout=10)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield
    drop_tables()


def _delete_all_rows(engine) -> None:
    """Remove every row with plain SQL; ORM immutability guards do not apply."""
    table_names = [t.name for t in reversed(Base.metadata.sorted_tables)]
    with engine.connect() as conn:
        if engine.dialect.name == "postgresql":
            conn.execute(text("TRUNCATE " + ", ".join(table_names) + " CASCADE"))
        else:
            for name in table_names:
                conn.execute(text(f"DELETE FROM {name}"))
        conn.commit()


@pytest.fixture
def session(db_engine, db_tables) -> Generator[Session, None, None]:
    """
    A session whose work never outlives the test.

    The session joins an outer transaction and turns its own commits into
    savepoints; the outer transaction is rolled back at teardown.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


@pytest.fixture
def session_factory(db_engine, db_tables):
    """The real session factory; every row is deleted after the test."""
    yield get_session_factory()
    _delete_all_rows(db_engine)


# =============================================================================
# Domain fixtures
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    """2025-01-15 12:00 UTC unless a test moves it."""
    return DeterministicClock()


@pytest.fixture
def tenant_id() -> UUID:
    return uuid4()


@pytest.fixture
def actor_id() -> UUID:
    return uuid4()


@pytest.fixture
def product_id() -> UUID:
    return uuid4()


@pytest.fixture
def location_id() -> UUID:
    return uuid4()


@pytest.fixture
def services(session, clock) -> InventoryServices:
    return InventoryServices.build(session, clock)


@pytest.fixture
def orchestrator(session_factory, clock) -> InventoryOrchestrator:
    return InventoryOrchestrator(session_factory, clock=clock)


@pytest.fixture
def receive(services, clock, tenant_id, product_id, location_id, actor_id):
    """
    Receive a lot into the default product/location.

    ``expires_in`` is days from the clock's current date; None means the
    lot never expires.
    """

    def _receive(
        lot_number: str,
        quantity,
        expires_in: int | None = None,
        unit_cost="1.00",
        product=None,
        location=None,
    ):
        expiry = None
        if expires_in is not None:
            expiry = clock.today() + timedelta(days=expires_in)
        lot, entry = services.lots.receive_lot(
            tenant_id,
            product or product_id,
            location or location_id,
            lot_number,
            Decimal(str(quantity)),
            Decimal(str(unit_cost)),
            actor_id,
            expiry_date=expiry,
        )
        return lot

    return _receive
