"""
Snapshot math -- folds one day of ledger movements into rollup totals.

Responsibility:
    The arithmetic behind CloseDay, separated from persistence so it can
    be property-tested in isolation.  SnapshotAggregator supplies the
    opening balance and the day's movements; this module returns the
    totals.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - closing_qty == opening_qty + in_qty - out_qty + adjustment_qty
      (out_qty is a positive magnitude).
    - turnover_velocity is 0 when the average inventory is not positive.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable

from stock_kernel.db.types import round_cost, round_ratio
from stock_kernel.domain.types import (
    COSTED_INBOUND_REASONS,
    REASON_BUCKETS,
    MovementReason,
    MovementRecord,
    SnapshotBucket,
)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class DayTotals:
    opening_qty: int
    in_qty: int
    out_qty: int
    adjustment_qty: int
    closing_qty: int
    average_cost: Decimal
    total_value: Decimal
    turnover_velocity: Decimal
    days_since_last_sale: int | None
    last_sale_at: datetime | None


def bucket_quantities(movements: Iterable[MovementRecord]) -> tuple[int, int, int]:
    """Split signed qty_change values into (in_qty, out_qty, adjustment_qty).

    out_qty is reported as a positive magnitude: a sale of -3 adds 3.
    """
    in_qty = out_qty = adjustment_qty = 0
    for m in movements:
        bucket = REASON_BUCKETS[m.reason]
        if bucket is SnapshotBucket.IN:
            in_qty += m.qty_change
        elif bucket is SnapshotBucket.OUT:
            out_qty -= m.qty_change
        else:
            adjustment_qty += m.qty_change
    return in_qty, out_qty, adjustment_qty


def weighted_average_cost(
    opening_qty: int,
    opening_cost: Decimal | None,
    movements: Iterable[MovementRecord],
) -> Decimal | None:
    """Blend the opening layer with the day's costed receipts.

    Returns None when there is neither a known opening cost nor a costed
    receipt.
    """
    qty = max(opening_qty, 0) if opening_cost is not None else 0
    value = (opening_cost or _ZERO) * qty

    for m in movements:
        if (
            m.reason in COSTED_INBOUND_REASONS
            and m.qty_change > 0
            and m.unit_cost is not None
        ):
            qty += m.qty_change
            value += m.unit_cost * m.qty_change

    if qty > 0:
        return round_cost(value / qty)
    return round_cost(opening_cost) if opening_cost is not None else None


def turnover_velocity(out_qty: int, opening_qty: int, closing_qty: int) -> Decimal:
    """out_qty / average inventory, 0 when the average is not positive."""
    average = Decimal(opening_qty + closing_qty) / 2
    if average <= 0:
        return round_ratio(_ZERO)
    return round_ratio(Decimal(out_qty) / average)


def fold_day(
    snapshot_date: date,
    opening_qty: int,
    movements: list[MovementRecord],
    opening_cost: Decimal | None,
    last_sale_before: datetime | None,
) -> DayTotals:
    """Fold one day's movements (already filtered to the day) into totals.

    Args:
        snapshot_date: The UTC day being closed.
        opening_qty: Prior day's closing_qty (or ledger balance at day start).
        movements: The day's movements, any order.
        opening_cost: Prior average cost, else the product's unit cost.
        last_sale_before: Latest sale strictly before the day, if any.
    """
    in_qty, out_qty, adjustment_qty = bucket_quantities(movements)
    closing_qty = opening_qty + in_qty - out_qty + adjustment_qty

    average_cost = weighted_average_cost(opening_qty, opening_cost, movements)
    if average_cost is None:
        average_cost = round_cost(_ZERO)
    total_value = round_cost(average_cost * max(closing_qty, 0))

    sale_times = [m.occurred_at for m in movements if m.reason == MovementReason.SALE]
    last_sale_at = max(sale_times) if sale_times else last_sale_before
    days_since_last_sale = (
        (snapshot_date - last_sale_at.date()).days if last_sale_at is not None else None
    )

    return DayTotals(
        opening_qty=opening_qty,
        in_qty=in_qty,
        out_qty=out_qty,
        adjustment_qty=adjustment_qty,
        closing_qty=closing_qty,
        average_cost=average_cost,
        total_value=total_value,
        turnover_velocity=turnover_velocity(out_qty, opening_qty, closing_qty),
        days_since_last_sale=days_since_last_sale,
        last_sale_at=last_sale_at,
    )
