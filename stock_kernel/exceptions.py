"""
Typed exception hierarchy for the stock kernel.

Every error has a class, a machine-readable ``code`` and structured
attributes, so callers catch by type and log or serialize the fields
instead of parsing messages.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    StockKernelError (base)
    |
    +-- LedgerError
    |   +-- InvalidMovementError
    |   +-- ImmutabilityViolationError
    |
    +-- AllocationError
    |   +-- InsufficientAvailableError
    |   +-- OverReleaseError
    |
    +-- StockWarning             (attached to results, never raised by the ledger)
    |   +-- NegativeBalance
    |   +-- RecomputeRequired
    |
    +-- SnapshotError
    |   +-- DayNotClosedError
    |   +-- RecomputeWindowExceededError
    |
    +-- SyncError
    |   +-- AlreadyRunningError
    |   +-- BackoffActiveError
    |   +-- LeaseLostError
    |   +-- CursorNotFoundError
    |   +-- InvalidCursorTransitionError
    |   +-- InvalidBackfillRangeError
    |
    +-- ResolutionError
    |   +-- UnresolvedIdentifierError
    |   +-- IdentifierConflictError     (retryable)
    |   +-- UnmatchedItemNotFoundError
    |   +-- UnmatchedItemClosedError
    |
    +-- CatalogError
        +-- ProductNotFoundError
        +-- LocationNotFoundError
        +-- UnknownLocationRefError
        +-- ProductStillStockedError

===============================================================================
HANDLING PATTERNS
===============================================================================

1. A replayed sync event is NOT an error. ``append_movement`` returns
   ``AppendStatus.DUPLICATE_REF``; nothing is raised.

2. Warnings ride on results:

    result = ledger.append_movement(...)
    for warning in result.warnings:
        if isinstance(warning, NegativeBalance):
            alert_backorder(warning.product_id, warning.balance_after)

3. Lease contention means back off, not fail:

    try:
        lease = cursors.acquire_for_run(cursor_id)
    except (AlreadyRunningError, BackoffActiveError):
        return  # another worker owns it, or it is cooling down

4. Conflicts are retryable:

    except IdentifierConflictError as e:
        if e.retryable:
            retry()
"""

from datetime import date, datetime
from uuid import UUID


class StockKernelError(Exception):
    """Base exception for all stock kernel errors."""

    code: str = "STOCK_KERNEL_ERROR"
    retryable: bool = False


# Ledger


class LedgerError(StockKernelError):
    """Base exception for ledger errors."""

    code: str = "LEDGER_ERROR"


class InvalidMovementError(LedgerError):
    """A movement request violates the ledger's input constraints."""

    code: str = "INVALID_MOVEMENT"

    def __init__(self, reason: str, field: str | None = None):
        self.reason = reason
        self.field = field
        super().__init__(f"Invalid movement: {reason}")


class ImmutabilityViolationError(LedgerError):
    """Attempt to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )


# Allocation


class AllocationError(StockKernelError):
    """Base exception for allocation errors."""

    code: str = "ALLOCATION_ERROR"


class InsufficientAvailableError(AllocationError):
    """Allocation would exceed the available quantity. No state changed."""

    code: str = "INSUFFICIENT_AVAILABLE"

    def __init__(
        self,
        product_id: UUID,
        location_id: UUID,
        requested: int,
        available: int,
    ):
        self.product_id = product_id
        self.location_id = location_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Cannot allocate {requested} of product {product_id} at "
            f"location {location_id}: only {available} available"
        )


class OverReleaseError(AllocationError):
    """Release would drive the allocated quantity below zero."""

    code: str = "OVER_RELEASE"

    def __init__(
        self,
        product_id: UUID,
        location_id: UUID,
        requested: int,
        allocated: int,
    ):
        self.product_id = product_id
        self.location_id = location_id
        self.requested = requested
        self.allocated = allocated
        super().__init__(
            f"Cannot release {requested} of product {product_id} at "
            f"location {location_id}: only {allocated} allocated"
        )


# Warnings


class StockWarning(StockKernelError):
    """Base class for warning events attached to successful results."""

    code: str = "STOCK_WARNING"


class NegativeBalance(StockWarning):
    """A movement left on_hand below zero. The write still succeeded."""

    code: str = "NEGATIVE_BALANCE"

    def __init__(
        self,
        product_id: UUID,
        location_id: UUID,
        balance_after: int,
        reason: str,
    ):
        self.product_id = product_id
        self.location_id = location_id
        self.balance_after = balance_after
        self.reason = reason
        super().__init__(
            f"Product {product_id} at location {location_id} is negative "
            f"({balance_after}) after {reason}"
        )


class RecomputeRequired(StockWarning):
    """A late movement landed in a day that already has snapshots."""

    code: str = "RECOMPUTE_REQUIRED"

    def __init__(self, location_id: UUID, snapshot_date: date):
        self.location_id = location_id
        self.snapshot_date = snapshot_date
        super().__init__(
            f"Snapshot for location {location_id} on {snapshot_date} "
            f"is stale and must be recomputed"
        )


# Snapshots


class SnapshotError(StockKernelError):
    """Base exception for snapshot errors."""

    code: str = "SNAPSHOT_ERROR"


class DayNotClosedError(SnapshotError):
    """CloseDay requested for a day that has not ended."""

    code: str = "DAY_NOT_CLOSED"

    def __init__(self, snapshot_date: date, today: date):
        self.snapshot_date = snapshot_date
        self.today = today
        super().__init__(
            f"Day {snapshot_date} is not closed (today is {today})"
        )


class RecomputeWindowExceededError(SnapshotError):
    """Recompute requested further back than the lookback window allows."""

    code: str = "RECOMPUTE_WINDOW_EXCEEDED"

    def __init__(self, snapshot_date: date, earliest_allowed: date):
        self.snapshot_date = snapshot_date
        self.earliest_allowed = earliest_allowed
        super().__init__(
            f"Cannot recompute from {snapshot_date}: lookback window "
            f"starts at {earliest_allowed}"
        )


# Sync cursors


class SyncError(StockKernelError):
    """Base exception for sync cursor errors."""

    code: str = "SYNC_ERROR"


class AlreadyRunningError(SyncError):
    """Another worker holds the live lease on this cursor."""

    code: str = "ALREADY_RUNNING"
    retryable = True

    def __init__(self, cursor_id: UUID, lease_expires_at: datetime | None):
        self.cursor_id = cursor_id
        self.lease_expires_at = lease_expires_at
        super().__init__(
            f"Cursor {cursor_id} is already running "
            f"(lease expires {lease_expires_at})"
        )


class BackoffActiveError(SyncError):
    """The cursor failed recently and its backoff delay has not elapsed."""

    code: str = "BACKOFF_ACTIVE"
    retryable = True

    def __init__(self, cursor_id: UUID, next_sync_at: datetime | None):
        self.cursor_id = cursor_id
        self.next_sync_at = next_sync_at
        super().__init__(
            f"Cursor {cursor_id} is backing off until {next_sync_at}"
        )


class LeaseLostError(SyncError):
    """The caller's lease token no longer owns the cursor."""

    code: str = "LEASE_LOST"

    def __init__(self, cursor_id: UUID, lease_token: str):
        self.cursor_id = cursor_id
        self.lease_token = lease_token
        super().__init__(
            f"Lease {lease_token} no longer owns cursor {cursor_id}"
        )


class CursorNotFoundError(SyncError):
    """Sync cursor does not exist."""

    code: str = "CURSOR_NOT_FOUND"

    def __init__(self, cursor_id: UUID):
        self.cursor_id = cursor_id
        super().__init__(f"Sync cursor not found: {cursor_id}")


class InvalidCursorTransitionError(SyncError):
    """Requested state change is not allowed from the current state."""

    code: str = "INVALID_CURSOR_TRANSITION"

    def __init__(self, cursor_id: UUID, from_state: str, to_state: str):
        self.cursor_id = cursor_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Cursor {cursor_id}: cannot transition {from_state} -> {to_state}"
        )


class InvalidBackfillRangeError(SyncError):
    """Backfill range is empty or overlaps the incremental range."""

    code: str = "INVALID_BACKFILL_RANGE"

    def __init__(self, cursor_id: UUID, start: datetime, end: datetime, reason: str):
        self.cursor_id = cursor_id
        self.start = start
        self.end = end
        self.reason = reason
        super().__init__(
            f"Invalid backfill range {start} -> {end} for cursor "
            f"{cursor_id}: {reason}"
        )


# Identity resolution / reconciliation


class ResolutionError(StockKernelError):
    """Base exception for identity resolution errors."""

    code: str = "RESOLUTION_ERROR"


class UnresolvedIdentifierError(ResolutionError):
    """No canonical product matches the external identifier."""

    code: str = "UNRESOLVED_IDENTIFIER"

    def __init__(self, identifier_type: str, value: str, source: str):
        self.identifier_type = identifier_type
        self.value = value
        self.source = source
        super().__init__(
            f"No product for {identifier_type}={value!r} from {source}"
        )


class IdentifierConflictError(ResolutionError):
    """The identifier was linked concurrently between read and write."""

    code: str = "IDENTIFIER_CONFLICT"
    retryable = True

    def __init__(
        self,
        identifier_type: str,
        value: str,
        source: str,
        existing_product_id: UUID | None = None,
    ):
        self.identifier_type = identifier_type
        self.value = value
        self.source = source
        self.existing_product_id = existing_product_id
        super().__init__(
            f"Identifier {identifier_type}={value!r} from {source} is "
            f"already linked to product {existing_product_id}"
        )


class UnmatchedItemNotFoundError(ResolutionError):
    """Reconciliation queue entry does not exist."""

    code: str = "UNMATCHED_ITEM_NOT_FOUND"

    def __init__(self, item_id: UUID):
        self.item_id = item_id
        super().__init__(f"Unmatched item not found: {item_id}")


class UnmatchedItemClosedError(ResolutionError):
    """Reconciliation queue entry was already resolved."""

    code: str = "UNMATCHED_ITEM_CLOSED"

    def __init__(self, item_id: UUID, status: str):
        self.item_id = item_id
        self.status = status
        super().__init__(f"Unmatched item {item_id} is already {status}")


# Catalog


class CatalogError(StockKernelError):
    """Base exception for catalog errors."""

    code: str = "CATALOG_ERROR"


class ProductNotFoundError(CatalogError):
    """Product does not exist."""

    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: UUID):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class LocationNotFoundError(CatalogError):
    """Location does not exist."""

    code: str = "LOCATION_NOT_FOUND"

    def __init__(self, location_id: UUID):
        self.location_id = location_id
        super().__init__(f"Location not found: {location_id}")


class UnknownLocationRefError(CatalogError):
    """An external location reference does not map to any location."""

    code: str = "UNKNOWN_LOCATION_REF"

    def __init__(self, merchant_id: str, location_ref: str):
        self.merchant_id = merchant_id
        self.location_ref = location_ref
        super().__init__(
            f"Unknown location ref {location_ref!r} for merchant {merchant_id}"
        )


class ProductStillStockedError(CatalogError):
    """Cannot remove a product/location association that still holds stock."""

    code: str = "PRODUCT_STILL_STOCKED"

    def __init__(self, product_id: UUID, location_id: UUID, on_hand: int):
        self.product_id = product_id
        self.location_id = location_id
        self.on_hand = on_hand
        super().__init__(
            f"Product {product_id} still has stock at location "
            f"{location_id} (on_hand={on_hand})"
        )
