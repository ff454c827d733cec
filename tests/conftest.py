"""
Pytest fixtures for the stock kernel test suite.

Provides:
- A per-test SQLite database file behind stock_kernel.db.engine, with the
  same BEGIN IMMEDIATE transaction recipe production tooling uses
- Service fixtures sharing one session, one DeterministicClock and one
  StockPolicy
- Catalog seeds (product, location) and helpers for building events

Environment Variables:
- DATABASE_URL: run against another database instead (e.g. PostgreSQL).
  Tables are created and dropped around every test.
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Generator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from stock_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from stock_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from stock_kernel.domain.clock import DeterministicClock
from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import (
    ExternalIdentifier,
    IdentifierType,
    InventoryEvent,
    MovementReason,
)
from stock_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from stock_kernel.services.catalog_service import CatalogService
from stock_kernel.services.identity_resolver import ProductIdentityResolver
from stock_kernel.services.reconciliation_service import ReconciliationQueue
from stock_kernel.services.snapshot_service import SnapshotAggregator
from stock_kernel.services.stock_ledger import StockLedgerService
from stock_kernel.services.sync_cursor_service import SyncCursorManager
from stock_kernel.services.sync_ingestor import InventorySyncIngestor

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()

MERCHANT_ID = "merchant-1"
SOURCE = "pos"

# 2024-01-01 12:00 UTC
START_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture stock_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ledger):
            ledger.append_movement(...)
            logs = captured_logs()
            assert any(r["message"] == "movement_appended" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("stock_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'stock.db'}"
    eng = init_engine_from_url(url)
    drop_tables()
    create_tables()
    register_immutability_listeners()
    yield eng
    unregister_immutability_listeners()
    drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory) -> Generator[Session, None, None]:
    """One session per test; rolled back at teardown.

    On SQLite this session holds the write lock once it has written.
    Tests that drive stock_batch (which opens its own sessions) must use
    ``session_factory`` and commit instead.
    """
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Time and policy
# =============================================================================


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(START_TIME)


@pytest.fixture
def policy() -> StockPolicy:
    return StockPolicy()


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def ledger(session, clock, policy) -> StockLedgerService:
    return StockLedgerService(session, clock, policy)


@pytest.fixture
def catalog(session, clock, policy) -> CatalogService:
    return CatalogService(session, clock, policy)


@pytest.fixture
def resolver(session, clock, policy) -> ProductIdentityResolver:
    return ProductIdentityResolver(session, clock, policy)


@pytest.fixture
def snapshots(session, clock, policy) -> SnapshotAggregator:
    return SnapshotAggregator(session, clock, policy)


@pytest.fixture
def cursors(session, clock, policy) -> SyncCursorManager:
    return SyncCursorManager(session, clock, policy)


@pytest.fixture
def queue(session, clock, policy) -> ReconciliationQueue:
    return ReconciliationQueue(session, clock, policy)


@pytest.fixture
def ingestor(session, clock, policy) -> InventorySyncIngestor:
    return InventorySyncIngestor(session, clock, policy)


# =============================================================================
# Catalog seeds
# =============================================================================


@pytest.fixture
def location(catalog):
    return catalog.create_location(
        "Main Street", MERCHANT_ID, source=SOURCE, external_ref="store-1", actor_id=TEST_ACTOR_ID
    )


@pytest.fixture
def second_location(catalog):
    return catalog.create_location(
        "Warehouse", MERCHANT_ID, source=SOURCE, external_ref="store-2", actor_id=TEST_ACTOR_ID
    )


@pytest.fixture
def product(catalog, location):
    product = catalog.create_product(
        "Blue Mug", category="kitchen", unit_cost=Decimal("4.00"), actor_id=TEST_ACTOR_ID
    )
    catalog.add_identifier(product.id, IdentifierType.BARCODE, "0001", SOURCE)
    catalog.stock_product_at(
        product.id, location.id, reorder_point=5, reorder_quantity=20, actor_id=TEST_ACTOR_ID
    )
    return product


# =============================================================================
# Event helpers
# =============================================================================


def make_event(
    ref: str,
    barcode: str,
    qty: int,
    *,
    reason: MovementReason = MovementReason.SALE,
    location_ref: str = "store-1",
    occurred_at: datetime | None = None,
    source: str = SOURCE,
    name: str | None = None,
    unit_cost: Decimal | None = None,
) -> InventoryEvent:
    return InventoryEvent(
        external_ref_id=ref,
        product_identifier=ExternalIdentifier(IdentifierType.BARCODE, barcode, source, name),
        location_ref=location_ref,
        quantity_delta=qty,
        reason=reason,
        occurred_at=occurred_at or START_TIME,
        unit_cost=unit_cost,
        raw={"ref": ref, "barcode": barcode, "qty": qty},
    )


@pytest.fixture
def event_factory():
    return make_event


# =============================================================================
# Committed seeds (for code that opens its own sessions)
# =============================================================================


@dataclass(frozen=True)
class CommittedSeed:
    product_id: UUID
    location_id: UUID
    cursor_id: UUID


@pytest.fixture
def committed_seed(session_factory, clock, policy) -> CommittedSeed:
    """Catalog and one cursor, committed and released.

    The ``session`` fixture must not be used alongside this one on SQLite:
    a session that has written holds the database lock.
    """
    sess = session_factory()
    try:
        catalog = CatalogService(sess, clock, policy)
        location = catalog.create_location(
            "Main Street", MERCHANT_ID, source=SOURCE, external_ref="store-1"
        )
        product = catalog.create_product("Blue Mug", unit_cost=Decimal("4.00"))
        catalog.add_identifier(product.id, IdentifierType.BARCODE, "0001", SOURCE)
        catalog.stock_product_at(product.id, location.id, reorder_point=5)
        cursor = SyncCursorManager(sess, clock, policy).get_or_create_cursor(
            SOURCE, MERCHANT_ID, "inventory_movements", location.id
        )
        sess.commit()
        return CommittedSeed(product.id, location.id, cursor.id)
    finally:
        sess.close()
