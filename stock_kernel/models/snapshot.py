"""
Module: stock_kernel.models.snapshot
Responsibility: Daily per-(location, product) inventory rollup rows.
Architecture position: Kernel > Models.  May import from db/ and
    domain/types.py.

Invariants enforced:
    - One row per (location_id, product_id, snapshot_date).
    - closing_qty = opening_qty + in_qty - out_qty + adjustment_qty.

Rows are derived data.  SnapshotAggregator overwrites them in place when a
day is recomputed; nothing else writes here.
"""

from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from sqlalchemy import Date, ForeignKey, Index, Integer, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UTCDateTime, UUIDString
from stock_kernel.db.types import Quantity, Ratio, UnitCost
from stock_kernel.domain.types import SnapshotRow


class StockSnapshotDaily(Base):
    __tablename__ = "stock_snapshots_daily"

    __table_args__ = (
        UniqueConstraint(
            "location_id",
            "product_id",
            "snapshot_date",
            name="uq_stock_snapshot_day",
        ),
        Index("idx_stock_snapshot_location_date", "location_id", "snapshot_date"),
    )

    location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )
    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )
    snapshot_date: Mapped[date] = mapped_column(Date, nullable=False)

    opening_qty: Mapped[Quantity] = mapped_column(nullable=False)
    in_qty: Mapped[Quantity] = mapped_column(nullable=False)
    out_qty: Mapped[Quantity] = mapped_column(nullable=False)
    adjustment_qty: Mapped[Quantity] = mapped_column(nullable=False)
    closing_qty: Mapped[Quantity] = mapped_column(nullable=False)

    average_cost: Mapped[UnitCost] = mapped_column(nullable=False)
    total_value: Mapped[UnitCost] = mapped_column(nullable=False)
    turnover_velocity: Mapped[Ratio] = mapped_column(nullable=False)
    days_since_last_sale: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_sale_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    computed_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    def to_row(self) -> SnapshotRow:
        return SnapshotRow(
            location_id=self.location_id,
            product_id=self.product_id,
            snapshot_date=self.snapshot_date,
            opening_qty=self.opening_qty,
            in_qty=self.in_qty,
            out_qty=self.out_qty,
            adjustment_qty=self.adjustment_qty,
            closing_qty=self.closing_qty,
            average_cost=self.average_cost,
            total_value=self.total_value,
            turnover_velocity=self.turnover_velocity,
            days_since_last_sale=self.days_since_last_sale,
        )

    def __repr__(self) -> str:
        return (
            f"<StockSnapshotDaily {self.product_id}@{self.location_id} "
            f"{self.snapshot_date} closing={self.closing_qty}>"
        )
