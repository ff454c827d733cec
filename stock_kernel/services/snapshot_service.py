"""
SnapshotAggregator -- daily per-(location, product) rollups.

Responsibility:
    ``close_day`` folds one closed UTC day of ledger movements into one
    StockSnapshotDaily row per product, seeded from the previous day's
    closing quantity.  ``recompute_day`` regenerates a day and every day
    after it up to yesterday, for late-arriving movements.

Architecture position:
    Kernel > Services.  Pure arithmetic lives in
    stock_kernel.domain.snapshot_math; this class only reads the ledger
    and upserts rows.

Invariants enforced:
    - closing = opening + in - out + adjustment (checked on every row).
    - opening of day N+1 = closing of day N when day N has a row.
    - Upsert by (location, product, date): re-running a day overwrites,
      never duplicates.
    - Only days strictly before ``clock.today()`` can be closed.
    - Recompute never reaches further back than
      ``policy.recompute_lookback_days``.

The aggregator takes no lock on StockMovement.  Its read set is the
half-open ``occurred_at`` range of the day.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.domain.clock import day_bounds
from stock_kernel.domain.snapshot_math import fold_day
from stock_kernel.domain.types import MovementReason, SnapshotRow
from stock_kernel.exceptions import (
    DayNotClosedError,
    LocationNotFoundError,
    RecomputeRequired,
    RecomputeWindowExceededError,
    StockWarning,
)
from stock_kernel.invariants import check_snapshot_arithmetic
from stock_kernel.logging_config import get_logger
from stock_kernel.models.product import Location, Product, ProductLocation
from stock_kernel.models.snapshot import StockSnapshotDaily
from stock_kernel.models.stock import StockMovement
from stock_kernel.services.base import BaseService

logger = get_logger("services.snapshot")


class SnapshotAggregator(BaseService):
    """Writes StockSnapshotDaily.  Flushes, never commits."""

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def close_day(self, location_id: UUID, snapshot_date: date) -> list[SnapshotRow]:
        """
        Produce (or overwrite) the rows for ``snapshot_date`` at a location.

        Covers every product stocked at the location or with movements
        there up to the end of the day.

        Raises:
            DayNotClosedError: ``snapshot_date`` is today or later.
            LocationNotFoundError: Unknown location.
        """
        today = self.clock.today()
        if snapshot_date >= today:
            raise DayNotClosedError(snapshot_date, today)
        if self.session.get(Location, location_id) is None:
            raise LocationNotFoundError(location_id)

        _, day_end = day_bounds(snapshot_date)
        rows = [
            self._close_product_day(location_id, product_id, snapshot_date)
            for product_id in self._products_for_day(location_id, day_end)
        ]
        self.session.flush()

        logger.info(
            "day_closed",
            extra={
                "location_id": str(location_id),
                "snapshot_date": snapshot_date,
                "products": len(rows),
                "closing_total": sum(r.closing_qty for r in rows),
            },
        )
        return rows

    def recompute_day(self, location_id: UUID, snapshot_date: date) -> list[SnapshotRow]:
        """
        Regenerate ``snapshot_date`` and every following day up to yesterday.

        Returns all regenerated rows, oldest day first.

        Raises:
            DayNotClosedError: ``snapshot_date`` is today or later.
            RecomputeWindowExceededError: ``snapshot_date`` is older than
                the lookback window.
        """
        today = self.clock.today()
        if snapshot_date >= today:
            raise DayNotClosedError(snapshot_date, today)
        earliest = today - timedelta(days=self.policy.recompute_lookback_days)
        if snapshot_date < earliest:
            raise RecomputeWindowExceededError(snapshot_date, earliest)

        rows: list[SnapshotRow] = []
        day = snapshot_date
        while day < today:
            rows.extend(self.close_day(location_id, day))
            day += timedelta(days=1)

        logger.info(
            "day_recomputed",
            extra={
                "location_id": str(location_id),
                "from_date": snapshot_date,
                "days": (today - snapshot_date).days,
            },
        )
        return rows

    def recompute_for_warnings(self, warnings: Iterable[StockWarning]) -> dict[UUID, date]:
        """
        Run ``recompute_day`` once per location named by RecomputeRequired
        warnings, from the earliest affected day.

        Days older than the lookback window are clamped to the window start
        and logged; the rest of the batch still recomputes.
        """
        earliest_by_location: dict[UUID, date] = {}
        for warning in warnings:
            if isinstance(warning, RecomputeRequired):
                current = earliest_by_location.get(warning.location_id)
                if current is None or warning.snapshot_date < current:
                    earliest_by_location[warning.location_id] = warning.snapshot_date

        recomputed: dict[UUID, date] = {}
        for location_id, day in earliest_by_location.items():
            try:
                self.recompute_day(location_id, day)
                recomputed[location_id] = day
            except RecomputeWindowExceededError as exc:
                logger.warning(
                    "recompute_clamped_to_window",
                    extra={
                        "location_id": str(location_id),
                        "requested_date": day,
                        "earliest_allowed": exc.earliest_allowed,
                    },
                )
                self.recompute_day(location_id, exc.earliest_allowed)
                recomputed[location_id] = exc.earliest_allowed
        return recomputed

    def close_day_for_active_locations(self, snapshot_date: date) -> dict[UUID, int]:
        """Close ``snapshot_date`` everywhere.  Returns rows written per location."""
        location_ids = self.session.execute(
            select(Location.id).where(Location.is_active.is_(True)).order_by(Location.name)
        ).scalars().all()
        return {
            location_id: len(self.close_day(location_id, snapshot_date))
            for location_id in location_ids
        }

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _products_for_day(self, location_id: UUID, day_end: datetime) -> list[UUID]:
        stocked = select(ProductLocation.product_id).where(
            ProductLocation.location_id == location_id
        )
        moved = (
            select(StockMovement.product_id)
            .where(
                StockMovement.location_id == location_id,
                StockMovement.occurred_at < day_end,
            )
            .distinct()
        )
        product_ids = set(self.session.execute(stocked).scalars())
        product_ids |= set(self.session.execute(moved).scalars())
        return sorted(product_ids, key=str)

    def _close_product_day(
        self,
        location_id: UUID,
        product_id: UUID,
        snapshot_date: date,
    ) -> SnapshotRow:
        day_start, day_end = day_bounds(snapshot_date)
        prior = self._find_row(location_id, product_id, snapshot_date - timedelta(days=1))

        if prior is not None:
            opening_qty = prior.closing_qty
            opening_cost: Decimal | None = prior.average_cost
        else:
            opening_qty = self._ledger_sum_before(location_id, product_id, day_start)
            product = self.session.get(Product, product_id)
            opening_cost = product.unit_cost if product is not None else None

        movements = [
            m.to_record()
            for m in self.session.execute(
                select(StockMovement)
                .where(
                    StockMovement.location_id == location_id,
                    StockMovement.product_id == product_id,
                    StockMovement.occurred_at >= day_start,
                    StockMovement.occurred_at < day_end,
                )
                .order_by(StockMovement.occurred_at, StockMovement.seq)
            ).scalars()
        ]

        last_sale_before = self.session.execute(
            select(StockMovement.occurred_at)
            .where(
                StockMovement.location_id == location_id,
                StockMovement.product_id == product_id,
                StockMovement.reason == MovementReason.SALE.value,
                StockMovement.occurred_at < day_start,
            )
            .order_by(StockMovement.occurred_at.desc())
            .limit(1)
        ).scalar_one_or_none()

        totals = fold_day(snapshot_date, opening_qty, movements, opening_cost, last_sale_before)

        row = self._find_row(location_id, product_id, snapshot_date)
        if row is None:
            row = StockSnapshotDaily(
                location_id=location_id,
                product_id=product_id,
                snapshot_date=snapshot_date,
            )
            self.session.add(row)

        row.opening_qty = totals.opening_qty
        row.in_qty = totals.in_qty
        row.out_qty = totals.out_qty
        row.adjustment_qty = totals.adjustment_qty
        row.closing_qty = totals.closing_qty
        row.average_cost = totals.average_cost
        row.total_value = totals.total_value
        row.turnover_velocity = totals.turnover_velocity
        row.days_since_last_sale = totals.days_since_last_sale
        row.last_sale_at = totals.last_sale_at
        row.computed_at = self.clock.now()

        result = row.to_row()
        for violation in check_snapshot_arithmetic(result):
            logger.error(
                "snapshot_invariant_violation",
                extra={"invariant": violation.invariant.value, "detail": violation.detail},
            )
        return result

    def _find_row(
        self,
        location_id: UUID,
        product_id: UUID,
        snapshot_date: date,
    ) -> StockSnapshotDaily | None:
        return self.session.execute(
            select(StockSnapshotDaily).where(
                StockSnapshotDaily.location_id == location_id,
                StockSnapshotDaily.product_id == product_id,
                StockSnapshotDaily.snapshot_date == snapshot_date,
            )
        ).scalar_one_or_none()

    def _ledger_sum_before(
        self,
        location_id: UUID,
        product_id: UUID,
        before: datetime,
    ) -> int:
        total = self.session.execute(
            select(func.coalesce(func.sum(StockMovement.qty_change), 0)).where(
                StockMovement.location_id == location_id,
                StockMovement.product_id == product_id,
                StockMovement.occurred_at < before,
            )
        ).scalar_one()
        return int(total)
