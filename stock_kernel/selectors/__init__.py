"""Selectors for the stock kernel (read side)."""

from stock_kernel.selectors.operator_signals import (
    CursorHealth,
    OperatorSignalsSelector,
    OperatorSummary,
)
from stock_kernel.selectors.snapshot_selector import SnapshotSelector
from stock_kernel.selectors.stock_selector import (
    LowStockItem,
    LowStockPolicy,
    MovementDTO,
    StockSelector,
)

__all__ = [
    "StockSelector",
    "LowStockItem",
    "LowStockPolicy",
    "MovementDTO",
    "SnapshotSelector",
    "OperatorSignalsSelector",
    "OperatorSummary",
    "CursorHealth",
]
