"""SQLAlchemy ORM models for the stock kernel."""

from stock_kernel.models.product import (
    Location,
    Product,
    ProductIdentifier,
    ProductLocation,
)
from stock_kernel.models.reconciliation import DeferredStockEvent, UnmatchedItem
from stock_kernel.models.sequence import SequenceCounter
from stock_kernel.models.snapshot import StockSnapshotDaily
from stock_kernel.models.stock import StockLevel, StockMovement
from stock_kernel.models.sync_cursor import InventorySyncCursor

__all__ = [
    "DeferredStockEvent",
    "InventorySyncCursor",
    "Location",
    "Product",
    "ProductIdentifier",
    "ProductLocation",
    "SequenceCounter",
    "StockLevel",
    "StockMovement",
    "StockSnapshotDaily",
    "UnmatchedItem",
]
