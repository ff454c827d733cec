"""
stock_kernel.domain.types -- closed enums and frozen DTOs.

ZERO I/O.  Every status, reason and method that the ORM stores as a
string is declared here as a ``str`` Enum, and services convert at the
model boundary, so an invalid value cannot reach a query or a result.

Invariants enforced:
    - All DTOs are frozen dataclasses (immutable, safe to replay).
    - Cursor state changes are limited to VALID_CURSOR_TRANSITIONS.
    - Every MovementReason maps to exactly one SnapshotBucket.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from stock_kernel.exceptions import InvalidMovementError

# Actor recorded on rows written by sync workers and the scheduler
SYSTEM_ACTOR_ID = UUID(int=0)


# =============================================================================
# Ledger
# =============================================================================


class MovementReason(str, Enum):
    """Why a quantity changed."""

    SALE = "sale"
    REFUND = "refund"
    RECEIPT = "receipt"
    ADJUSTMENT = "adjustment"
    TRANSFER_OUT = "transfer_out"
    TRANSFER_IN = "transfer_in"
    STOCKTAKE = "stocktake"
    SYNC = "sync"


class SnapshotBucket(str, Enum):
    """Daily rollup column a movement is folded into."""

    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"


REASON_BUCKETS: dict[MovementReason, SnapshotBucket] = {
    MovementReason.RECEIPT: SnapshotBucket.IN,
    MovementReason.TRANSFER_IN: SnapshotBucket.IN,
    MovementReason.SALE: SnapshotBucket.OUT,
    MovementReason.TRANSFER_OUT: SnapshotBucket.OUT,
    MovementReason.ADJUSTMENT: SnapshotBucket.ADJUSTMENT,
    MovementReason.STOCKTAKE: SnapshotBucket.ADJUSTMENT,
    MovementReason.REFUND: SnapshotBucket.ADJUSTMENT,
    MovementReason.SYNC: SnapshotBucket.ADJUSTMENT,
}

# Reasons whose unit_cost contributes to the day's average cost
COSTED_INBOUND_REASONS: frozenset[MovementReason] = frozenset(
    {MovementReason.RECEIPT, MovementReason.TRANSFER_IN}
)


class AppendStatus(str, Enum):
    """Outcome of a ledger append."""

    APPLIED = "applied"
    DUPLICATE_REF = "duplicate_ref"  # same idempotency key seen before
    NO_CHANGE = "no_change"  # stocktake matched the book quantity


# =============================================================================
# Catalog / identity
# =============================================================================


class IdentifierType(str, Enum):
    """Kinds of external product identifiers."""

    BARCODE = "barcode"
    SKU = "sku"
    ALT_CODE = "alt_code"
    UPC = "upc"
    MARKETPLACE_ID = "marketplace_id"


class MatchMethod(str, Enum):
    """How an identifier was tied to a canonical product."""

    EXACT = "exact"
    EXACT_CROSS_SOURCE = "exact_cross_source"
    SCANNED_VALUE = "scanned_value"
    FUZZY_NAME_LOCATION = "fuzzy_name_location"
    MANUAL = "manual"
    MANUAL_LINK = "manual_link"
    CREATED_NEW = "created_new"


class UnmatchedStatus(str, Enum):
    """Reconciliation queue entry lifecycle. MATCHED and IGNORED are terminal."""

    PENDING = "pending"
    MATCHED = "matched"
    IGNORED = "ignored"


class DeferredEventStatus(str, Enum):
    """Lifecycle of an event parked behind an unmatched identifier."""

    PENDING = "pending"
    APPLIED = "applied"
    DISCARDED = "discarded"


class ResolutionAction(str, Enum):
    """Operator decision for an unmatched item."""

    LINK_EXISTING = "link_existing"
    CREATE_NEW = "create_new"
    IGNORE = "ignore"


# =============================================================================
# Sync cursors
# =============================================================================


class CursorStatus(str, Enum):
    """Incremental sync state."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


VALID_CURSOR_TRANSITIONS: dict[CursorStatus, frozenset[CursorStatus]] = {
    CursorStatus.IDLE: frozenset({CursorStatus.RUNNING}),
    CursorStatus.COMPLETED: frozenset({CursorStatus.RUNNING}),
    # FAILED -> IDLE happens once the backoff delay has elapsed
    CursorStatus.FAILED: frozenset({CursorStatus.IDLE, CursorStatus.RUNNING}),
    # RUNNING -> IDLE is stale-lease recovery
    CursorStatus.RUNNING: frozenset(
        {CursorStatus.COMPLETED, CursorStatus.FAILED, CursorStatus.IDLE}
    ),
}


class BackfillState(str, Enum):
    """Historical-range import state, independent of CursorStatus."""

    NONE = "none"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class LeaseKind(str, Enum):
    INCREMENTAL = "incremental"
    BACKFILL = "backfill"


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class ExternalIdentifier:
    """An identifier as reported by an external system."""

    identifier_type: IdentifierType
    value: str
    source: str
    name: str | None = None  # external display name, used by fuzzy matching


@dataclass(frozen=True)
class InventoryEvent:
    """Normalized inbound event -- the only shape the ingestor accepts.

    Adapters for specific POS/marketplace APIs translate their payloads
    into this shape before the core sees them.
    """

    external_ref_id: str
    product_identifier: ExternalIdentifier
    location_ref: str
    quantity_delta: int
    reason: MovementReason
    occurred_at: datetime
    unit_cost: Decimal | None = None
    ref_type: str = "sync"
    note: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Same input rules the ledger applies on append
        delta = self.quantity_delta
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidMovementError("quantity_delta must be a non-zero int", "quantity_delta")
        try:
            object.__setattr__(self, "reason", MovementReason(self.reason))
        except ValueError:
            raise InvalidMovementError(f"unknown reason {self.reason!r}", "reason") from None
        if self.occurred_at.tzinfo is None:
            raise InvalidMovementError("occurred_at must be timezone-aware", "occurred_at")
        if not self.external_ref_id or not self.ref_type:
            raise InvalidMovementError("external_ref_id and ref_type are required", "external_ref_id")
        if self.unit_cost is not None and self.unit_cost < 0:
            raise InvalidMovementError("unit_cost must not be negative", "unit_cost")


@dataclass(frozen=True)
class AppendResult:
    """Result of ``StockLedgerService.append_movement``."""

    status: AppendStatus
    product_id: UUID
    location_id: UUID
    movement_id: UUID | None
    balance_after: int
    warnings: tuple[Exception, ...] = ()

    @property
    def applied(self) -> bool:
        return self.status == AppendStatus.APPLIED

    @property
    def is_duplicate(self) -> bool:
        return self.status == AppendStatus.DUPLICATE_REF


@dataclass(frozen=True)
class StockLevelView:
    """Current materialized balance for one (product, location)."""

    product_id: UUID
    location_id: UUID
    on_hand: int
    allocated: int
    available: int
    in_transit: int
    last_movement_at: datetime | None


@dataclass(frozen=True)
class MovementRecord:
    """Ledger row as seen by the pure folding functions."""

    seq: int
    occurred_at: datetime
    qty_change: int
    balance_after: int
    reason: MovementReason
    unit_cost: Decimal | None = None
    movement_id: UUID | None = None


@dataclass(frozen=True)
class SnapshotRow:
    """One daily rollup row for (location, product, date)."""

    location_id: UUID
    product_id: UUID
    snapshot_date: date
    opening_qty: int
    in_qty: int
    out_qty: int
    adjustment_qty: int
    closing_qty: int
    average_cost: Decimal
    total_value: Decimal
    turnover_velocity: Decimal
    days_since_last_sale: int | None


@dataclass(frozen=True)
class Lease:
    """Proof of exclusive ownership of a cursor for one run."""

    cursor_id: UUID
    token: str
    kind: LeaseKind
    acquired_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class CursorSnapshot:
    """What a fetcher needs to know to pull the next batch."""

    cursor_id: UUID
    system: str
    merchant_id: str
    location_id: UUID | None
    entity: str
    cursor_token: str | None
    last_processed_id: str | None
    batch_size: int


@dataclass(frozen=True)
class ResolutionResult:
    """A successful identity resolution."""

    product_id: UUID
    match_method: MatchMethod


@dataclass(frozen=True)
class RebuildResult:
    """Outcome of replaying the ledger into one StockLevel row."""

    product_id: UUID
    location_id: UUID
    previous_on_hand: int
    rebuilt_on_hand: int
    movement_count: int

    @property
    def drift(self) -> int:
        return self.previous_on_hand - self.rebuilt_on_hand
