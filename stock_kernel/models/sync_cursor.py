"""
Module: stock_kernel.models.sync_cursor
Responsibility: Persisted incremental-sync state, one row per
    (system, merchant, location-or-null, entity).
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - ``status`` moves only along VALID_CURSOR_TRANSITIONS (enforced by
      SyncCursorManager, the only writer).
    - At most one live incremental lease (``lease_token`` with
      ``lease_expires_at`` in the future) and at most one live backfill
      lease per row.  Leases are taken with a conditional UPDATE so two
      workers can never both win.
    - The backfill range ends at or before ``incremental_since``; the two
      imports never cover the same time range.

Uniqueness of the natural key is checked in SyncCursorManager because
``location_id`` may be NULL and NULLs never collide in a unique index.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import TrackedBase, UTCDateTime, UUIDString


class InventorySyncCursor(TrackedBase):
    __tablename__ = "inventory_sync_cursors"

    __table_args__ = (
        Index(
            "idx_sync_cursor_key",
            "system",
            "merchant_id",
            "location_id",
            "entity",
        ),
        Index("idx_sync_cursor_due", "is_active", "next_sync_at"),
    )

    # Natural key
    system: Mapped[str] = mapped_column(String(50), nullable=False)
    merchant_id: Mapped[str] = mapped_column(String(100), nullable=False)
    location_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("locations.id"),
        nullable=True,
    )
    entity: Mapped[str] = mapped_column(String(50), nullable=False)

    # Incremental progress
    cursor_token: Mapped[str | None] = mapped_column(String(500), nullable=True)
    last_processed_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    items_processed_total: Mapped[int] = mapped_column(default=0, nullable=False)
    # Lower bound of the incremental range; backfill must end at or before it
    incremental_since: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # State machine
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_sync_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scheduling
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_frequency_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False)

    # Incremental lease
    lease_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # Backfill sub-state
    backfill_state: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    backfill_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    backfill_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    backfill_cursor_token: Mapped[str | None] = mapped_column(String(500), nullable=True)
    backfill_progress: Mapped[int] = mapped_column(default=0, nullable=False)
    backfill_lease_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    backfill_lease_expires_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<InventorySyncCursor {self.system}/{self.merchant_id}/"
            f"{self.location_id}/{self.entity} {self.status}>"
        )
