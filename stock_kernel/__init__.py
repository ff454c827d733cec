"""
Stock Kernel

An append-only inventory ledger with multi-location synchronization:
- Idempotent movement appends keyed by external references
- Materialized balances updated in the same transaction as the ledger
- Replay-based self-healing of the balance cache
- Daily snapshot rollups with cascading recompute
- Per-channel sync cursors with leases and exponential backoff
- A reconciliation queue for unmatched external identifiers
"""

__version__ = "0.1.0"
