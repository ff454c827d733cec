"""
Module: stock_kernel.models.stock
Responsibility: ORM persistence for the stock ledger (StockMovement) and the
    materialized per-(product, location) balance (StockLevel).
Architecture position: Kernel > Models.  May import from db/ and
    domain/types.py.

Invariants enforced:
    - StockMovement is append-only (listeners in db/immutability.py).
    - (ref_type, ref_id, product_id, location_id) is unique
      (uq_stock_movement_ref).  Movements without a ref_id are exempt
      because NULLs never collide.
    - ``seq`` is globally unique and strictly increasing in insertion order;
      ``balance_after`` is the running sum over seq for the same
      (product, location).
    - One StockLevel row per (product, location); ``available`` is always
      ``on_hand - allocated``.

Audit relevance:
    The ledger is the source of truth.  StockLevel can be dropped and
    rebuilt from it at any time (StockLedgerService.rebuild_level).
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base, UTCDateTime, UUIDString
from stock_kernel.db.types import ExternalRef, Quantity, UnitCost
from stock_kernel.domain.types import MovementReason, MovementRecord, StockLevelView


class StockMovement(Base):
    """
    One signed quantity change at one location.

    Immutable once flushed.  Corrections are new movements with reason
    ``adjustment`` or ``stocktake``.
    """

    __tablename__ = "stock_movements"

    __table_args__ = (
        UniqueConstraint(
            "ref_type",
            "ref_id",
            "product_id",
            "location_id",
            name="uq_stock_movement_ref",
        ),
        UniqueConstraint("seq", name="uq_stock_movement_seq"),
        Index(
            "idx_stock_movement_product_location",
            "product_id",
            "location_id",
            "seq",
        ),
        Index("idx_stock_movement_location_occurred", "location_id", "occurred_at"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )
    location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )
    merchant_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Business time; may be earlier than recorded_at for late arrivals
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )
    seq: Mapped[int] = mapped_column(nullable=False)

    qty_change: Mapped[Quantity] = mapped_column(nullable=False)
    balance_after: Mapped[Quantity] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)

    ref_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ref_id: Mapped[ExternalRef | None] = mapped_column(nullable=True)

    unit_cost: Mapped[UnitCost | None] = mapped_column(nullable=True)
    total_cost: Mapped[UnitCost | None] = mapped_column(nullable=True)

    user_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Set when the product was resolved by a non-exact method
    match_method: Mapped[str | None] = mapped_column(String(30), nullable=True)

    def to_record(self) -> MovementRecord:
        return MovementRecord(
            seq=self.seq,
            occurred_at=self.occurred_at,
            qty_change=self.qty_change,
            balance_after=self.balance_after,
            reason=MovementReason(self.reason),
            unit_cost=self.unit_cost,
            movement_id=self.id,
        )

    def __repr__(self) -> str:
        return (
            f"<StockMovement #{self.seq} {self.reason} {self.qty_change:+d} "
            f"-> {self.balance_after}>"
        )


class StockLevel(Base):
    """Materialized balance cache, written only by StockLedgerService."""

    __tablename__ = "stock_levels"

    __table_args__ = (
        UniqueConstraint("product_id", "location_id", name="uq_stock_level"),
        Index("idx_stock_level_location", "location_id"),
    )

    product_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=False,
    )
    location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )
    on_hand: Mapped[Quantity] = mapped_column(default=0, nullable=False)
    allocated: Mapped[Quantity] = mapped_column(default=0, nullable=False)
    available: Mapped[Quantity] = mapped_column(default=0, nullable=False)
    in_transit: Mapped[Quantity] = mapped_column(default=0, nullable=False)
    last_movement_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def to_view(self) -> StockLevelView:
        return StockLevelView(
            product_id=self.product_id,
            location_id=self.location_id,
            on_hand=self.on_hand,
            allocated=self.allocated,
            available=self.available,
            in_transit=self.in_transit,
            last_movement_at=self.last_movement_at,
        )

    def __repr__(self) -> str:
        return (
            f"<StockLevel {self.product_id}@{self.location_id} "
            f"on_hand={self.on_hand} allocated={self.allocated}>"
        )
