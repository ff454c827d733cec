"""
SyncCursorManager -- per-channel incremental sync state machine.

Responsibility:
    Owns InventorySyncCursor rows: creation, leasing, progress, success
    and failure bookkeeping, exponential backoff, stale-lease recovery
    and the independent backfill sub-state.

Architecture position:
    Kernel > Services.  Called by SyncRunner (stock_batch) and by
    operators; the only writer of inventory_sync_cursors.

State machine (incremental):

    idle ------> running ------> completed
      ^            |  \\             |
      |            |   +-> failed --+--> (backoff elapsed) idle / running
      +------------+ (lease expired, recover_stale_leases)

Invariants enforced:
    - Single writer: a lease is taken by one conditional UPDATE whose
      WHERE clause only matches a cursor with no live lease.  Two
      concurrent ``acquire_for_run`` calls can never both see rowcount 1.
    - A failed cursor is not re-acquired before ``next_sync_at``.
    - ``record_*`` calls that pass a lease token raise LeaseLostError if
      the token no longer owns the cursor.
    - Backfill holds its own lease on its own columns and never touches
      ``status``; incremental sync keeps running during a backfill.

Failure modes:
    - AlreadyRunningError / BackoffActiveError from acquire (retryable).
    - InvalidCursorTransitionError for out-of-order state changes.
    - InvalidBackfillRangeError when the range is empty or overlaps the
      incremental range.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID, uuid4

from sqlalchemy import or_, select, update

from stock_kernel.domain.backoff import next_attempt_at
from stock_kernel.domain.types import (
    SYSTEM_ACTOR_ID,
    VALID_CURSOR_TRANSITIONS,
    BackfillState,
    CursorSnapshot,
    CursorStatus,
    Lease,
    LeaseKind,
)
from stock_kernel.exceptions import (
    AlreadyRunningError,
    BackoffActiveError,
    CursorNotFoundError,
    InvalidBackfillRangeError,
    InvalidCursorTransitionError,
    LeaseLostError,
)
from stock_kernel.logging_config import get_logger
from stock_kernel.models.sync_cursor import InventorySyncCursor
from stock_kernel.services.base import BaseService

logger = get_logger("services.sync_cursor")

_MAX_ERROR_LENGTH = 2000


class SyncCursorManager(BaseService):
    """Sync cursor lifecycle.  Flushes, never commits."""

    # -------------------------------------------------------------------------
    # Cursor lookup and creation
    # -------------------------------------------------------------------------

    def get_or_create_cursor(
        self,
        system: str,
        merchant_id: str,
        entity: str,
        location_id: UUID | None = None,
        *,
        sync_frequency_seconds: int | None = None,
        batch_size: int | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> InventorySyncCursor:
        """
        Return the cursor for (system, merchant, location-or-null, entity).

        A new cursor starts ``idle``, due immediately, with its incremental
        range beginning now.
        """
        location_clause = (
            InventorySyncCursor.location_id.is_(None)
            if location_id is None
            else InventorySyncCursor.location_id == location_id
        )
        cursor = self.session.execute(
            select(InventorySyncCursor).where(
                InventorySyncCursor.system == system,
                InventorySyncCursor.merchant_id == merchant_id,
                InventorySyncCursor.entity == entity,
                location_clause,
            )
        ).scalar_one_or_none()
        if cursor is not None:
            return cursor

        cursor = InventorySyncCursor(
            system=system,
            merchant_id=merchant_id,
            location_id=location_id,
            entity=entity,
            status=CursorStatus.IDLE.value,
            consecutive_failures=0,
            items_processed_total=0,
            incremental_since=self.clock.now(),
            is_active=True,
            sync_frequency_seconds=(
                sync_frequency_seconds or self.policy.default_sync_frequency_seconds
            ),
            batch_size=batch_size or self.policy.default_batch_size,
            backfill_state=BackfillState.NONE.value,
            backfill_progress=0,
            created_by_id=actor_id,
        )
        self.session.add(cursor)
        self.session.flush()
        logger.info(
            "cursor_created",
            extra={
                "cursor_id": str(cursor.id),
                "system": system,
                "merchant_id": merchant_id,
                "entity": entity,
            },
        )
        return cursor

    def get_cursor(self, cursor_id: UUID, for_update: bool = False) -> InventorySyncCursor:
        stmt = select(InventorySyncCursor).where(InventorySyncCursor.id == cursor_id)
        if for_update:
            stmt = stmt.with_for_update()
        cursor = self.session.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if cursor is None:
            raise CursorNotFoundError(cursor_id)
        return cursor

    def snapshot(self, cursor_id: UUID, kind: LeaseKind = LeaseKind.INCREMENTAL) -> CursorSnapshot:
        """What a fetcher needs: position and batch size for one run."""
        cursor = self.get_cursor(cursor_id)
        token = (
            cursor.backfill_cursor_token
            if kind is LeaseKind.BACKFILL
            else cursor.cursor_token
        )
        return CursorSnapshot(
            cursor_id=cursor.id,
            system=cursor.system,
            merchant_id=cursor.merchant_id,
            location_id=cursor.location_id,
            entity=cursor.entity,
            cursor_token=token,
            last_processed_id=cursor.last_processed_id,
            batch_size=cursor.batch_size,
        )

    # -------------------------------------------------------------------------
    # Incremental run
    # -------------------------------------------------------------------------

    def acquire_for_run(self, cursor_id: UUID) -> Lease:
        """
        Take the incremental lease.

        Succeeds from idle, completed, failed (once the backoff has
        elapsed) or running with an expired lease.

        Raises:
            AlreadyRunningError: Another live lease holds the cursor.
            BackoffActiveError: Failed and still inside its backoff delay.
            CursorNotFoundError: Unknown cursor.
            InvalidCursorTransitionError: Cursor is deactivated.
        """
        now = self.clock.now()
        token = str(uuid4())
        expires_at = now + timedelta(seconds=self.policy.lease_timeout_seconds)

        result = self.session.execute(
            update(InventorySyncCursor)
            .where(
                InventorySyncCursor.id == cursor_id,
                InventorySyncCursor.is_active.is_(True),
                or_(
                    InventorySyncCursor.status != CursorStatus.RUNNING.value,
                    InventorySyncCursor.lease_expires_at.is_(None),
                    InventorySyncCursor.lease_expires_at <= now,
                ),
                or_(
                    InventorySyncCursor.status != CursorStatus.FAILED.value,
                    InventorySyncCursor.next_sync_at.is_(None),
                    InventorySyncCursor.next_sync_at <= now,
                ),
            )
            .values(
                status=CursorStatus.RUNNING.value,
                lease_token=token,
                lease_expires_at=expires_at,
                last_run_at=now,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            cursor = self.get_cursor(cursor_id)
            if not cursor.is_active:
                raise InvalidCursorTransitionError(cursor_id, "inactive", CursorStatus.RUNNING.value)
            if cursor.status == CursorStatus.FAILED.value:
                logger.info(
                    "cursor_backoff_active",
                    extra={"cursor_id": str(cursor_id), "next_sync_at": cursor.next_sync_at},
                )
                raise BackoffActiveError(cursor_id, cursor.next_sync_at)
            logger.info(
                "cursor_lease_contended",
                extra={"cursor_id": str(cursor_id), "lease_expires_at": cursor.lease_expires_at},
            )
            raise AlreadyRunningError(cursor_id, cursor.lease_expires_at)

        self.get_cursor(cursor_id)
        logger.info(
            "cursor_lease_acquired",
            extra={"cursor_id": str(cursor_id), "lease_expires_at": expires_at},
        )
        return Lease(
            cursor_id=cursor_id,
            token=token,
            kind=LeaseKind.INCREMENTAL,
            acquired_at=now,
            expires_at=expires_at,
        )

    def check_lease(self, lease: Lease) -> None:
        """Raise LeaseLostError unless ``lease`` still owns its cursor."""
        cursor = self.get_cursor(lease.cursor_id)
        current = (
            cursor.backfill_lease_token
            if lease.kind is LeaseKind.BACKFILL
            else cursor.lease_token
        )
        if current != lease.token:
            raise LeaseLostError(lease.cursor_id, lease.token)

    def record_progress(
        self,
        cursor_id: UUID,
        new_cursor_token: str | None,
        last_processed_id: str | None,
        items_processed: int,
        lease_token: str | None = None,
    ) -> InventorySyncCursor:
        """Advance the cursor position and extend the lease."""
        cursor = self._owned_cursor(cursor_id, lease_token)
        self._require_status(cursor, CursorStatus.RUNNING)
        now = self.clock.now()

        if new_cursor_token is not None:
            cursor.cursor_token = new_cursor_token
        if last_processed_id is not None:
            cursor.last_processed_id = last_processed_id
        cursor.items_processed_total += items_processed
        cursor.lease_expires_at = now + timedelta(seconds=self.policy.lease_timeout_seconds)
        self.session.flush()

        logger.info(
            "cursor_progress_recorded",
            extra={
                "cursor_id": str(cursor_id),
                "cursor_token": cursor.cursor_token,
                "items_processed": items_processed,
            },
        )
        return cursor

    def record_success(
        self,
        cursor_id: UUID,
        lease_token: str | None = None,
    ) -> InventorySyncCursor:
        """running -> completed; failures reset; next run one frequency away."""
        cursor = self._owned_cursor(cursor_id, lease_token)
        self._transition(cursor, CursorStatus.COMPLETED)
        now = self.clock.now()

        cursor.consecutive_failures = 0
        cursor.last_success_at = now
        cursor.last_error = None
        cursor.next_sync_at = now + timedelta(seconds=cursor.sync_frequency_seconds)
        cursor.lease_token = None
        cursor.lease_expires_at = None
        self.session.flush()

        logger.info(
            "cursor_success_recorded",
            extra={"cursor_id": str(cursor_id), "next_sync_at": cursor.next_sync_at},
        )
        return cursor

    def record_failure(
        self,
        cursor_id: UUID,
        error: str | BaseException,
        lease_token: str | None = None,
    ) -> InventorySyncCursor:
        """running -> failed; increments failures and schedules the backoff."""
        cursor = self._owned_cursor(cursor_id, lease_token)
        self._transition(cursor, CursorStatus.FAILED)
        now = self.clock.now()

        cursor.consecutive_failures += 1
        cursor.last_error = _format_error(error)
        cursor.next_sync_at = next_attempt_at(now, cursor.consecutive_failures, self.policy)
        cursor.lease_token = None
        cursor.lease_expires_at = None
        self.session.flush()

        logger.warning(
            "cursor_failure_recorded",
            extra={
                "cursor_id": str(cursor_id),
                "consecutive_failures": cursor.consecutive_failures,
                "next_sync_at": cursor.next_sync_at,
                "error": cursor.last_error,
            },
        )
        return cursor

    # -------------------------------------------------------------------------
    # Scheduling and recovery
    # -------------------------------------------------------------------------

    def list_due_cursors(self, now: datetime | None = None) -> list[UUID]:
        """Active cursors whose next run is due and that hold no live lease."""
        now = now or self.clock.now()
        return list(
            self.session.execute(
                select(InventorySyncCursor.id)
                .where(
                    InventorySyncCursor.is_active.is_(True),
                    or_(
                        InventorySyncCursor.next_sync_at.is_(None),
                        InventorySyncCursor.next_sync_at <= now,
                    ),
                    or_(
                        InventorySyncCursor.status != CursorStatus.RUNNING.value,
                        InventorySyncCursor.lease_expires_at <= now,
                    ),
                )
                .order_by(
                    InventorySyncCursor.next_sync_at.asc().nulls_first(),
                    InventorySyncCursor.created_at,
                )
            ).scalars()
        )

    def recover_stale_leases(self, now: datetime | None = None) -> int:
        """
        Crash recovery: running cursors whose lease expired go back to idle,
        and expired backfill leases are released (the backfill stays
        in_progress and resumes from its token).

        Returns the number of leases released.
        """
        now = now or self.clock.now()
        incremental = self.session.execute(
            update(InventorySyncCursor)
            .where(
                InventorySyncCursor.status == CursorStatus.RUNNING.value,
                InventorySyncCursor.lease_expires_at <= now,
            )
            .values(
                status=CursorStatus.IDLE.value,
                lease_token=None,
                lease_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        backfill = self.session.execute(
            update(InventorySyncCursor)
            .where(
                InventorySyncCursor.backfill_state == BackfillState.IN_PROGRESS.value,
                InventorySyncCursor.backfill_lease_expires_at <= now,
            )
            .values(backfill_lease_token=None, backfill_lease_expires_at=None)
            .execution_options(synchronize_session=False)
        ).rowcount

        if incremental or backfill:
            logger.warning(
                "stale_leases_recovered",
                extra={"incremental": incremental, "backfill": backfill},
            )
        return incremental + backfill

    def expire_backoffs(self, now: datetime | None = None) -> int:
        """failed -> idle for cursors whose backoff delay has elapsed."""
        now = now or self.clock.now()
        count = self.session.execute(
            update(InventorySyncCursor)
            .where(
                InventorySyncCursor.status == CursorStatus.FAILED.value,
                InventorySyncCursor.next_sync_at <= now,
            )
            .values(status=CursorStatus.IDLE.value)
            .execution_options(synchronize_session=False)
        ).rowcount
        if count:
            logger.info("cursor_backoffs_expired", extra={"count": count})
        return count

    def deactivate_cursor(self, cursor_id: UUID) -> InventorySyncCursor:
        cursor = self.get_cursor(cursor_id, for_update=True)
        cursor.is_active = False
        self.session.flush()
        logger.info("cursor_deactivated", extra={"cursor_id": str(cursor_id)})
        return cursor

    def activate_cursor(self, cursor_id: UUID) -> InventorySyncCursor:
        cursor = self.get_cursor(cursor_id, for_update=True)
        cursor.is_active = True
        self.session.flush()
        logger.info("cursor_activated", extra={"cursor_id": str(cursor_id)})
        return cursor

    # -------------------------------------------------------------------------
    # Backfill
    # -------------------------------------------------------------------------

    def start_backfill(
        self,
        cursor_id: UUID,
        start: datetime,
        end: datetime,
    ) -> InventorySyncCursor:
        """
        Open a historical import for ``[start, end)``.

        Raises:
            InvalidBackfillRangeError: ``start >= end`` or ``end`` is after
                the start of the incremental range.
            InvalidCursorTransitionError: A backfill is already in progress.
        """
        cursor = self.get_cursor(cursor_id, for_update=True)
        if start >= end:
            raise InvalidBackfillRangeError(cursor_id, start, end, "start must be before end")
        if cursor.incremental_since is not None and end > cursor.incremental_since:
            raise InvalidBackfillRangeError(
                cursor_id, start, end, "backfill must end at or before incremental_since"
            )
        if cursor.backfill_state == BackfillState.IN_PROGRESS.value:
            raise InvalidCursorTransitionError(
                cursor_id, BackfillState.IN_PROGRESS.value, BackfillState.IN_PROGRESS.value
            )

        cursor.backfill_state = BackfillState.IN_PROGRESS.value
        cursor.backfill_start = start
        cursor.backfill_end = end
        cursor.backfill_cursor_token = None
        cursor.backfill_progress = 0
        cursor.backfill_lease_token = None
        cursor.backfill_lease_expires_at = None
        self.session.flush()

        logger.info(
            "backfill_started",
            extra={"cursor_id": str(cursor_id), "start": start, "end": end},
        )
        return cursor

    def acquire_backfill(self, cursor_id: UUID) -> Lease:
        """Take the backfill lease.  Independent of the incremental lease."""
        now = self.clock.now()
        token = str(uuid4())
        expires_at = now + timedelta(seconds=self.policy.lease_timeout_seconds)

        result = self.session.execute(
            update(InventorySyncCursor)
            .where(
                InventorySyncCursor.id == cursor_id,
                InventorySyncCursor.backfill_state == BackfillState.IN_PROGRESS.value,
                or_(
                    InventorySyncCursor.backfill_lease_expires_at.is_(None),
                    InventorySyncCursor.backfill_lease_expires_at <= now,
                ),
            )
            .values(backfill_lease_token=token, backfill_lease_expires_at=expires_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            cursor = self.get_cursor(cursor_id)
            if cursor.backfill_state != BackfillState.IN_PROGRESS.value:
                raise InvalidCursorTransitionError(
                    cursor_id, cursor.backfill_state, BackfillState.IN_PROGRESS.value
                )
            raise AlreadyRunningError(cursor_id, cursor.backfill_lease_expires_at)

        self.get_cursor(cursor_id)
        logger.info(
            "backfill_lease_acquired",
            extra={"cursor_id": str(cursor_id), "lease_expires_at": expires_at},
        )
        return Lease(
            cursor_id=cursor_id,
            token=token,
            kind=LeaseKind.BACKFILL,
            acquired_at=now,
            expires_at=expires_at,
        )

    def record_backfill_progress(
        self,
        cursor_id: UUID,
        cursor_token: str | None,
        items_processed: int,
        lease_token: str,
    ) -> InventorySyncCursor:
        cursor = self._owned_backfill(cursor_id, lease_token)
        if cursor_token is not None:
            cursor.backfill_cursor_token = cursor_token
        cursor.backfill_progress += items_processed
        cursor.backfill_lease_expires_at = self.clock.now() + timedelta(
            seconds=self.policy.lease_timeout_seconds
        )
        self.session.flush()
        logger.info(
            "backfill_progress_recorded",
            extra={
                "cursor_id": str(cursor_id),
                "items_processed": items_processed,
                "backfill_progress": cursor.backfill_progress,
            },
        )
        return cursor

    def complete_backfill(self, cursor_id: UUID, lease_token: str) -> InventorySyncCursor:
        cursor = self._owned_backfill(cursor_id, lease_token)
        cursor.backfill_state = BackfillState.COMPLETED.value
        cursor.backfill_lease_token = None
        cursor.backfill_lease_expires_at = None
        self.session.flush()
        logger.info(
            "backfill_completed",
            extra={"cursor_id": str(cursor_id), "backfill_progress": cursor.backfill_progress},
        )
        return cursor

    def fail_backfill(
        self,
        cursor_id: UUID,
        error: str | BaseException,
        lease_token: str,
    ) -> InventorySyncCursor:
        cursor = self._owned_backfill(cursor_id, lease_token)
        cursor.backfill_state = BackfillState.FAILED.value
        cursor.backfill_lease_token = None
        cursor.backfill_lease_expires_at = None
        self.session.flush()
        logger.warning(
            "backfill_failed",
            extra={"cursor_id": str(cursor_id), "error": _format_error(error)},
        )
        return cursor

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _owned_cursor(self, cursor_id: UUID, lease_token: str | None) -> InventorySyncCursor:
        cursor = self.get_cursor(cursor_id, for_update=True)
        if lease_token is not None and cursor.lease_token != lease_token:
            logger.warning(
                "cursor_lease_lost",
                extra={"cursor_id": str(cursor_id), "lease_token": lease_token},
            )
            raise LeaseLostError(cursor_id, lease_token)
        return cursor

    def _owned_backfill(self, cursor_id: UUID, lease_token: str) -> InventorySyncCursor:
        cursor = self.get_cursor(cursor_id, for_update=True)
        if cursor.backfill_lease_token != lease_token:
            logger.warning(
                "backfill_lease_lost",
                extra={"cursor_id": str(cursor_id), "lease_token": lease_token},
            )
            raise LeaseLostError(cursor_id, lease_token)
        return cursor

    def _require_status(self, cursor: InventorySyncCursor, status: CursorStatus) -> None:
        if cursor.status != status.value:
            raise InvalidCursorTransitionError(cursor.id, cursor.status, status.value)

    def _transition(self, cursor: InventorySyncCursor, to_status: CursorStatus) -> None:
        from_status = CursorStatus(cursor.status)
        if to_status not in VALID_CURSOR_TRANSITIONS[from_status]:
            raise InvalidCursorTransitionError(cursor.id, from_status.value, to_status.value)
        cursor.status = to_status.value


def _format_error(error: str | BaseException) -> str:
    if isinstance(error, BaseException):
        text = f"{type(error).__name__}: {error}"
    else:
        text = str(error)
    return text[:_MAX_ERROR_LENGTH]
