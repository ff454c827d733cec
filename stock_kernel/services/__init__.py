"""Kernel services -- the only writers.  They flush; callers commit."""

from stock_kernel.services.catalog_service import CatalogService
from stock_kernel.services.identity_resolver import ProductIdentityResolver
from stock_kernel.services.reconciliation_service import (
    ReconciliationOutcome,
    ReconciliationQueue,
    UnmatchedItemView,
)
from stock_kernel.services.sequence_service import SequenceService
from stock_kernel.services.snapshot_service import SnapshotAggregator
from stock_kernel.services.stock_ledger import StockLedgerService
from stock_kernel.services.sync_cursor_service import SyncCursorManager
from stock_kernel.services.sync_ingestor import (
    EventOutcome,
    IngestResult,
    InventorySyncIngestor,
)

__all__ = [
    "CatalogService",
    "EventOutcome",
    "IngestResult",
    "InventorySyncIngestor",
    "ProductIdentityResolver",
    "ReconciliationOutcome",
    "ReconciliationQueue",
    "SequenceService",
    "SnapshotAggregator",
    "StockLedgerService",
    "SyncCursorManager",
    "UnmatchedItemView",
]
