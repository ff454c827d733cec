"""
Stock kernel invariants contract.

These invariants are structural law: no StockPolicy value switches them
off.  The enum declares them; the check functions below state each one
as an executable predicate over plain DTOs.  StockLedgerService and
SnapshotAggregator call the checks on their own output, and the test
suite calls them over generated histories.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Iterable, Sequence

from stock_kernel.domain.types import MovementRecord, SnapshotRow


@unique
class StockInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    REPLAY_CONSISTENCY = "replay_consistency"
    """StockLevel.on_hand equals the sum of qty_change over the ledger for
    the same (product, location).  Enforced by StockLedgerService, which
    updates both in one transaction."""

    BALANCE_CHAIN = "balance_chain"
    """Each movement's balance_after equals the running sum up to and
    including that movement, in insertion (seq) order.  Rows are immutable,
    so a backdated movement keeps the balance as of its append; the
    occurred_at view of history lives in the daily snapshots."""

    IDEMPOTENCY = "idempotency"
    """(ref_type, ref_id, product_id, location_id) appears at most once in
    the ledger.  Enforced by a lookup plus a unique constraint."""

    APPEND_ONLY = "append_only"
    """Movements are never updated or deleted.  Enforced by ORM listeners
    (stock_kernel.db.immutability)."""

    SNAPSHOT_ARITHMETIC = "snapshot_arithmetic"
    """closing = opening + in - out + adjustment for every snapshot row."""

    SNAPSHOT_CONTINUITY = "snapshot_continuity"
    """closing_qty of day N equals opening_qty of day N+1."""

    SINGLE_WRITER = "single_writer"
    """At most one live lease per sync cursor (and per backfill)."""


ALL_STOCK_INVARIANTS: frozenset[StockInvariant] = frozenset(StockInvariant)

# The kernel package may not import from these packages.
# Enforced by tests/architecture/test_kernel_boundary.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "stock_config",
    "stock_batch",
)


@dataclass(frozen=True)
class InvariantViolation:
    invariant: StockInvariant
    detail: str


def check_replay_consistency(
    movements: Iterable[MovementRecord],
    on_hand: int,
) -> list[InvariantViolation]:
    """Ledger sum must equal the cached on_hand."""
    total = sum(m.qty_change for m in movements)
    if total != on_hand:
        return [
            InvariantViolation(
                StockInvariant.REPLAY_CONSISTENCY,
                f"ledger sum {total} != on_hand {on_hand}",
            )
        ]
    return []


def check_balance_chain(movements: Sequence[MovementRecord]) -> list[InvariantViolation]:
    """balance_after must be the running sum in seq order."""
    violations: list[InvariantViolation] = []
    running = 0
    for m in sorted(movements, key=lambda m: m.seq):
        running += m.qty_change
        if m.balance_after != running:
            violations.append(
                InvariantViolation(
                    StockInvariant.BALANCE_CHAIN,
                    f"seq {m.seq}: balance_after {m.balance_after} != running sum {running}",
                )
            )
    return violations


def check_snapshot_arithmetic(row: SnapshotRow) -> list[InvariantViolation]:
    expected = row.opening_qty + row.in_qty - row.out_qty + row.adjustment_qty
    if row.closing_qty != expected:
        return [
            InvariantViolation(
                StockInvariant.SNAPSHOT_ARITHMETIC,
                f"{row.product_id}@{row.snapshot_date}: closing {row.closing_qty} "
                f"!= {expected}",
            )
        ]
    return []


def check_snapshot_continuity(rows: Sequence[SnapshotRow]) -> list[InvariantViolation]:
    """Consecutive days for the same (location, product) must chain.

    Rows may cover several products; gaps between dates are not checked.
    """
    violations: list[InvariantViolation] = []
    by_key: dict[tuple, list[SnapshotRow]] = {}
    for row in rows:
        by_key.setdefault((row.location_id, row.product_id), []).append(row)

    for series in by_key.values():
        series.sort(key=lambda r: r.snapshot_date)
        for prev, nxt in zip(series, series[1:]):
            if (nxt.snapshot_date - prev.snapshot_date).days != 1:
                continue
            if prev.closing_qty != nxt.opening_qty:
                violations.append(
                    InvariantViolation(
                        StockInvariant.SNAPSHOT_CONTINUITY,
                        f"{prev.product_id}: {prev.snapshot_date} closing "
                        f"{prev.closing_qty} != {nxt.snapshot_date} opening "
                        f"{nxt.opening_qty}",
                    )
                )
    return violations
