"""Daily snapshot queries for reporting."""

from datetime import date
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.domain.types import SnapshotRow
from stock_kernel.models.snapshot import StockSnapshotDaily
from stock_kernel.selectors.base import BaseSelector


class SnapshotSelector(BaseSelector[StockSnapshotDaily]):

    def get_snapshot_range(
        self,
        product_id: UUID,
        location_id: UUID,
        from_date: date,
        to_date: date,
    ) -> list[SnapshotRow]:
        """Rows with ``from_date <= snapshot_date <= to_date``, oldest first.

        Days that were never closed are simply absent.
        """
        if to_date < from_date:
            raise ValueError(f"to_date {to_date} is before from_date {from_date}")
        rows = self.session.execute(
            select(StockSnapshotDaily)
            .where(
                StockSnapshotDaily.product_id == product_id,
                StockSnapshotDaily.location_id == location_id,
                StockSnapshotDaily.snapshot_date >= from_date,
                StockSnapshotDaily.snapshot_date <= to_date,
            )
            .order_by(StockSnapshotDaily.snapshot_date)
        ).scalars()
        return [row.to_row() for row in rows]

    def get_location_day(self, location_id: UUID, snapshot_date: date) -> list[SnapshotRow]:
        rows = self.session.execute(
            select(StockSnapshotDaily)
            .where(
                StockSnapshotDaily.location_id == location_id,
                StockSnapshotDaily.snapshot_date == snapshot_date,
            )
            .order_by(StockSnapshotDaily.product_id)
        ).scalars()
        return [row.to_row() for row in rows]

    def latest_snapshot_date(self, location_id: UUID) -> date | None:
        return self.session.execute(
            select(StockSnapshotDaily.snapshot_date)
            .where(StockSnapshotDaily.location_id == location_id)
            .order_by(StockSnapshotDaily.snapshot_date.desc())
            .limit(1)
        ).scalar_one_or_none()

    def latest_closed_date(self) -> date | None:
        """Most recent snapshot_date at any location."""
        return self.session.execute(
            select(func.max(StockSnapshotDaily.snapshot_date))
        ).scalar_one_or_none()
