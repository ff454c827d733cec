"""
stock_batch -- operational shell around the stock kernel.

    SyncRunner       lease -> fetch -> ingest -> record, one cursor per run
    StockScheduler   polling loop: stale-lease recovery, due cursors,
                     nightly day close

Architecture:
    Nothing in stock_kernel or stock_config imports from stock_batch.
    This package owns transaction boundaries: it opens sessions from a
    factory and commits; the kernel services it drives only flush.

Invariants:
    - No network fetch runs inside a database transaction.
    - A failed run is recorded in a fresh transaction after the failed
      one rolled back, so the cursor's failure count always advances.
    - All timestamps come from the injected Clock.
    - Graceful shutdown: the scheduler checks its stop signal between
      cursors.
"""

from stock_batch.runner import FetchResult, RunStatus, SyncRunner, SyncRunResult
from stock_batch.scheduler import StockScheduler, TickResult

__all__ = [
    "FetchResult",
    "RunStatus",
    "StockScheduler",
    "SyncRunResult",
    "SyncRunner",
    "TickResult",
]
