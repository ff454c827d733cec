"""
Tests for SnapshotAggregator.

The clock starts at 2024-01-01 12:00 UTC; each test moves it forward a
day so that 2024-01-01 is closed.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from stock_kernel.domain.types import MovementReason
from stock_kernel.exceptions import (
    DayNotClosedError,
    LocationNotFoundError,
    RecomputeRequired,
    RecomputeWindowExceededError,
)
from stock_kernel.invariants import check_snapshot_arithmetic, check_snapshot_continuity
from stock_kernel.selectors.snapshot_selector import SnapshotSelector

DEC_31 = date(2023, 12, 31)
JAN_1 = date(2024, 1, 1)


def at(day: date, hour: int) -> datetime:
    return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)


@pytest.fixture
def history(ledger, product, location, clock):
    """20 units received on Dec 31; +5 and -8 on Jan 1; today is Jan 2."""
    ledger.append_movement(
        product.id, location.id, 20, MovementReason.RECEIPT, occurred_at=at(DEC_31, 10)
    )
    ledger.append_movement(
        product.id, location.id, 5, MovementReason.RECEIPT,
        ref_type="po", ref_id="PO-7", occurred_at=at(JAN_1, 9),
    )
    ledger.append_movement(
        product.id, location.id, -8, MovementReason.SALE,
        ref_type="order", ref_id="O-1", occurred_at=at(JAN_1, 10),
    )
    clock.advance(0, days=1)
    return product, location


class TestCloseDay:

    def test_day_totals(self, snapshots, history):
        product, location = history

        [row] = snapshots.close_day(location.id, JAN_1)

        assert row.product_id == product.id
        assert (row.opening_qty, row.in_qty, row.out_qty, row.adjustment_qty) == (20, 5, 8, 0)
        assert row.closing_qty == 17
        assert row.days_since_last_sale == 0
        assert check_snapshot_arithmetic(row) == []

    def test_rerun_overwrites_with_identical_row(self, session, snapshots, history):
        _, location = history

        first = snapshots.close_day(location.id, JAN_1)
        second = snapshots.close_day(location.id, JAN_1)

        assert first == second
        assert len(SnapshotSelector(session).get_location_day(location.id, JAN_1)) == 1

    def test_opening_chains_from_previous_close(self, session, snapshots, history):
        product, location = history

        [dec] = snapshots.close_day(location.id, DEC_31)
        [jan] = snapshots.close_day(location.id, JAN_1)

        assert (dec.opening_qty, dec.closing_qty) == (0, 20)
        assert jan.opening_qty == dec.closing_qty
        rows = SnapshotSelector(session).get_snapshot_range(product.id, location.id, DEC_31, JAN_1)
        assert check_snapshot_continuity(rows) == []

    def test_stocked_product_without_movements_gets_a_row(
        self, catalog, snapshots, history
    ):
        _, location = history
        idle = catalog.create_product("Idle Plate", unit_cost=Decimal("1.00"))
        catalog.stock_product_at(idle.id, location.id)

        rows = {r.product_id: r for r in snapshots.close_day(location.id, JAN_1)}

        assert rows[idle.id].closing_qty == 0
        assert rows[idle.id].days_since_last_sale is None

    def test_total_value_uses_average_cost(self, snapshots, history):
        _, location = history
        [row] = snapshots.close_day(location.id, JAN_1)
        assert row.average_cost == Decimal("4.0000")
        assert row.total_value == Decimal("68.0000")

    def test_today_is_not_closed(self, snapshots, history, clock):
        _, location = history
        with pytest.raises(DayNotClosedError):
            snapshots.close_day(location.id, clock.today())

    def test_unknown_location(self, snapshots, history):
        with pytest.raises(LocationNotFoundError):
            snapshots.close_day(uuid4(), JAN_1)

    def test_close_all_active_locations(self, snapshots, history, second_location):
        _, location = history
        written = snapshots.close_day_for_active_locations(JAN_1)
        assert written == {location.id: 1, second_location.id: 0}


class TestRecompute:

    def test_late_movement_cascades(self, session, ledger, snapshots, history):
        product, location = history
        snapshots.close_day(location.id, DEC_31)
        snapshots.close_day(location.id, JAN_1)

        late = ledger.append_movement(
            product.id, location.id, -2, MovementReason.ADJUSTMENT, occurred_at=at(DEC_31, 15)
        )
        [warning] = late.warnings
        assert isinstance(warning, RecomputeRequired)
        assert warning.snapshot_date == DEC_31

        recomputed = snapshots.recompute_for_warnings(late.warnings)
        assert recomputed == {location.id: DEC_31}

        dec, jan = SnapshotSelector(session).get_snapshot_range(
            product.id, location.id, DEC_31, JAN_1
        )
        assert (dec.adjustment_qty, dec.closing_qty) == (-2, 18)
        assert (jan.opening_qty, jan.closing_qty) == (18, 15)

    def test_movement_after_last_snapshot_needs_no_recompute(
        self, ledger, snapshots, history, clock
    ):
        product, location = history
        snapshots.close_day(location.id, JAN_1)
        result = ledger.append_movement(product.id, location.id, -1, MovementReason.SALE)
        assert result.warnings == ()

    def test_outside_lookback_window(self, snapshots, history, clock):
        _, location = history
        earliest = clock.today() - timedelta(days=31)

        with pytest.raises(RecomputeWindowExceededError) as exc_info:
            snapshots.recompute_day(location.id, earliest - timedelta(days=1))
        assert exc_info.value.earliest_allowed == earliest

    def test_warnings_clamped_to_window(self, snapshots, history, clock, captured_logs):
        _, location = history
        earliest = clock.today() - timedelta(days=31)
        warning = RecomputeRequired(location.id, date(2023, 6, 1))

        assert snapshots.recompute_for_warnings([warning]) == {location.id: earliest}
        assert any(r["message"] == "recompute_clamped_to_window" for r in captured_logs())

    def test_recompute_covers_every_day_to_yesterday(self, snapshots, history, clock):
        product, location = history
        clock.advance(0, days=2)

        rows = snapshots.recompute_day(location.id, JAN_1)

        assert [r.snapshot_date for r in rows] == [JAN_1, date(2024, 1, 2), date(2024, 1, 3)]
        assert [r.closing_qty for r in rows] == [17, 17, 17]

    def test_only_recompute_warnings_are_used(self, snapshots, history):
        assert snapshots.recompute_for_warnings([]) == {}
