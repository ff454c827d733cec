"""
Stock level and movement queries.

Key design decisions:
- Reads the StockLevel cache, never re-folds the ledger (that is
  StockLedgerService.rebuild_level's job).
- Low-stock thresholds come from ProductLocation, so a product that is
  not stocked at a location is never reported low there.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_kernel.domain.types import MovementReason, StockLevelView
from stock_kernel.models.product import Product, ProductLocation
from stock_kernel.models.stock import StockLevel, StockMovement
from stock_kernel.selectors.base import BaseSelector


class LowStockPolicy(str, Enum):
    """Which quantity is compared against the threshold."""

    ON_HAND_AT_OR_BELOW_REORDER_POINT = "on_hand_at_or_below_reorder_point"
    AVAILABLE_AT_OR_BELOW_REORDER_POINT = "available_at_or_below_reorder_point"
    OUT_OF_STOCK = "out_of_stock"


@dataclass(frozen=True)
class LowStockItem:
    product_id: UUID
    product_name: str
    location_id: UUID
    on_hand: int
    available: int
    reorder_point: int
    reorder_quantity: int
    preferred_vendor: str | None

    @property
    def shortfall(self) -> int:
        """Units needed to get back above the reorder point."""
        return max(self.reorder_point - self.on_hand + 1, 0)


@dataclass(frozen=True)
class MovementDTO:
    id: UUID
    seq: int
    occurred_at: datetime
    recorded_at: datetime
    qty_change: int
    balance_after: int
    reason: MovementReason
    ref_type: str | None
    ref_id: str | None
    match_method: str | None
    note: str | None


class StockSelector(BaseSelector[StockLevel]):
    """Read-only queries over StockLevel and StockMovement."""

    def __init__(self, session: Session):
        super().__init__(session)

    def get_level(self, product_id: UUID, location_id: UUID) -> StockLevelView | None:
        level = self.session.execute(
            select(StockLevel).where(
                StockLevel.product_id == product_id,
                StockLevel.location_id == location_id,
            )
        ).scalar_one_or_none()
        return level.to_view() if level is not None else None

    def levels_at(self, location_id: UUID) -> list[StockLevelView]:
        levels = self.session.execute(
            select(StockLevel)
            .where(StockLevel.location_id == location_id)
            .order_by(StockLevel.product_id)
        ).scalars()
        return [level.to_view() for level in levels]

    def list_low_stock(
        self,
        location_id: UUID | None = None,
        policy: LowStockPolicy = LowStockPolicy.ON_HAND_AT_OR_BELOW_REORDER_POINT,
    ) -> list[LowStockItem]:
        """
        Stocked products at or below their threshold.

        ``location_id=None`` covers every location.  Inactive products are
        skipped.  Results are ordered by location, then product name.
        """
        policy = LowStockPolicy(policy)
        stmt = (
            select(ProductLocation, StockLevel, Product.name)
            .join(
                StockLevel,
                (StockLevel.product_id == ProductLocation.product_id)
                & (StockLevel.location_id == ProductLocation.location_id),
            )
            .join(Product, Product.id == ProductLocation.product_id)
            .where(Product.is_active.is_(True))
        )
        if location_id is not None:
            stmt = stmt.where(ProductLocation.location_id == location_id)

        if policy is LowStockPolicy.ON_HAND_AT_OR_BELOW_REORDER_POINT:
            stmt = stmt.where(StockLevel.on_hand <= ProductLocation.reorder_point)
        elif policy is LowStockPolicy.AVAILABLE_AT_OR_BELOW_REORDER_POINT:
            stmt = stmt.where(StockLevel.available <= ProductLocation.reorder_point)
        else:
            stmt = stmt.where(StockLevel.on_hand <= 0)

        stmt = stmt.order_by(ProductLocation.location_id, Product.name)
        return [
            LowStockItem(
                product_id=pl.product_id,
                product_name=name,
                location_id=pl.location_id,
                on_hand=level.on_hand,
                available=level.available,
                reorder_point=pl.reorder_point,
                reorder_quantity=pl.reorder_quantity,
                preferred_vendor=pl.preferred_vendor,
            )
            for pl, level, name in self.session.execute(stmt).all()
        ]

    def movement_history(
        self,
        product_id: UUID,
        location_id: UUID,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[MovementDTO]:
        """Movements in ledger order (``occurred_at``, then ``seq``)."""
        stmt = select(StockMovement).where(
            StockMovement.product_id == product_id,
            StockMovement.location_id == location_id,
        )
        if since is not None:
            stmt = stmt.where(StockMovement.occurred_at >= since)
        if until is not None:
            stmt = stmt.where(StockMovement.occurred_at < until)
        stmt = stmt.order_by(StockMovement.occurred_at, StockMovement.seq)
        if limit is not None:
            stmt = stmt.limit(limit)

        return [
            MovementDTO(
                id=m.id,
                seq=m.seq,
                occurred_at=m.occurred_at,
                recorded_at=m.recorded_at,
                qty_change=m.qty_change,
                balance_after=m.balance_after,
                reason=MovementReason(m.reason),
                ref_type=m.ref_type,
                ref_id=m.ref_id,
                match_method=m.match_method,
                note=m.note,
            )
            for m in self.session.execute(stmt).scalars()
        ]
