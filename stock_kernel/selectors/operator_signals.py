"""
OperatorSignalsSelector -- the three things an operator watches.

    low stock          how many stocked products are at/below reorder point
    unmatched items    how many identifiers wait in the reconciliation queue
    sync health        per cursor: status, failures, last success, next run

Everything here is derived from tables the services already maintain; no
extra bookkeeping is written for it.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from stock_kernel.domain.types import CursorStatus, UnmatchedStatus
from stock_kernel.models.reconciliation import UnmatchedItem
from stock_kernel.models.sync_cursor import InventorySyncCursor
from stock_kernel.selectors.base import BaseSelector
from stock_kernel.selectors.stock_selector import LowStockPolicy, StockSelector


@dataclass(frozen=True)
class CursorHealth:
    cursor_id: UUID
    system: str
    merchant_id: str
    location_id: UUID | None
    entity: str
    status: CursorStatus
    is_active: bool
    consecutive_failures: int
    last_success_at: datetime | None
    next_sync_at: datetime | None
    last_error: str | None
    backfill_state: str

    @property
    def is_failing(self) -> bool:
        return self.consecutive_failures > 0


@dataclass(frozen=True)
class OperatorSummary:
    low_stock_count: int
    pending_unmatched_count: int
    cursors: tuple[CursorHealth, ...]

    @property
    def failing_cursors(self) -> tuple[CursorHealth, ...]:
        return tuple(c for c in self.cursors if c.is_failing)


class OperatorSignalsSelector(BaseSelector[InventorySyncCursor]):

    def summary(self, location_id: UUID | None = None) -> OperatorSummary:
        """Signals for one location, or for everything when ``location_id`` is None.

        Cursors without a location (merchant-wide) are always included.
        """
        low_stock = StockSelector(self.session).list_low_stock(
            location_id, LowStockPolicy.ON_HAND_AT_OR_BELOW_REORDER_POINT
        )
        return OperatorSummary(
            low_stock_count=len(low_stock),
            pending_unmatched_count=self.pending_unmatched_count(location_id),
            cursors=tuple(self.cursor_health(location_id)),
        )

    def pending_unmatched_count(self, location_id: UUID | None = None) -> int:
        stmt = select(func.count(UnmatchedItem.id)).where(
            UnmatchedItem.status == UnmatchedStatus.PENDING.value
        )
        if location_id is not None:
            stmt = stmt.where(UnmatchedItem.location_id == location_id)
        return self.session.execute(stmt).scalar_one()

    def cursor_health(self, location_id: UUID | None = None) -> list[CursorHealth]:
        stmt = select(InventorySyncCursor)
        if location_id is not None:
            stmt = stmt.where(
                (InventorySyncCursor.location_id == location_id)
                | InventorySyncCursor.location_id.is_(None)
            )
        stmt = stmt.order_by(
            InventorySyncCursor.system,
            InventorySyncCursor.merchant_id,
            InventorySyncCursor.entity,
        )
        return [
            CursorHealth(
                cursor_id=c.id,
                system=c.system,
                merchant_id=c.merchant_id,
                location_id=c.location_id,
                entity=c.entity,
                status=CursorStatus(c.status),
                is_active=c.is_active,
                consecutive_failures=c.consecutive_failures,
                last_success_at=c.last_success_at,
                next_sync_at=c.next_sync_at,
                last_error=c.last_error,
                backfill_state=c.backfill_state,
            )
            for c in self.session.execute(stmt).scalars()
        ]
