"""
Module: stock_kernel.models.reconciliation
Responsibility: The manual-reconciliation queue (UnmatchedItem) and the
    inventory events parked behind it (DeferredStockEvent).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - At most one *pending* item per (source, identifier_type,
      identifier_value), via a partial unique index.  Closed items may
      repeat the triple.
    - A deferred event is stored once per (unmatched item, ref_type,
      external_ref_id), so a redelivered unmatched event is not parked
      twice.
    - Deferred events are never dropped: they end ``applied`` (replayed
      through the ledger) or ``discarded`` (item ignored by an operator).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from stock_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from stock_kernel.db.types import ExternalRef, Quantity, UnitCost


class UnmatchedItem(TrackedBase):
    """Externally reported item that failed identity resolution."""

    __tablename__ = "unmatched_items"

    __table_args__ = (
        Index(
            "uq_unmatched_item_pending",
            "source",
            "identifier_type",
            "identifier_value",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("idx_unmatched_item_status", "status"),
    )

    source: Mapped[str] = mapped_column(String(50), nullable=False)
    identifier_type: Mapped[str] = mapped_column(String(30), nullable=False)
    identifier_value: Mapped[str] = mapped_column(String(200), nullable=False)
    external_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    merchant_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    location_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=True,
    )
    raw_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    matched_product_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("products.id"),
        nullable=True,
    )
    match_method: Mapped[str | None] = mapped_column(String(30), nullable=True)

    occurrence_count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    resolved_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    deferred_events: Mapped[list["DeferredStockEvent"]] = relationship(
        "DeferredStockEvent",
        back_populates="unmatched_item",
        order_by="DeferredStockEvent.occurred_at",
    )

    def __repr__(self) -> str:
        return (
            f"<UnmatchedItem {self.source}:{self.identifier_type}="
            f"{self.identifier_value!r} {self.status}>"
        )


class DeferredStockEvent(TrackedBase):
    """An inventory event waiting on identity resolution."""

    __tablename__ = "deferred_stock_events"

    __table_args__ = (
        UniqueConstraint(
            "unmatched_item_id",
            "ref_type",
            "external_ref_id",
            name="uq_deferred_stock_event_ref",
        ),
        Index("idx_deferred_stock_event_status", "status"),
    )

    unmatched_item_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("unmatched_items.id"),
        nullable=False,
    )
    external_ref_id: Mapped[ExternalRef] = mapped_column(nullable=False)
    ref_type: Mapped[str] = mapped_column(String(50), nullable=False)
    location_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=False,
    )
    merchant_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    qty_change: Mapped[Quantity] = mapped_column(nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    unit_cost: Mapped[UnitCost | None] = mapped_column(nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    applied_movement_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    unmatched_item: Mapped["UnmatchedItem"] = relationship(
        "UnmatchedItem",
        back_populates="deferred_events",
    )

    def __repr__(self) -> str:
        return (
            f"<DeferredStockEvent {self.ref_type}:{self.external_ref_id} "
            f"{self.qty_change:+d} {self.status}>"
        )
