"""
SyncRunner -- drives one cursor through one sync run.

Contract:
    ``run(cursor_id, fetch)``:

        1. tx: acquire the incremental lease, read the cursor snapshot
        2.     fetch(snapshot)               (no transaction open)
        3. tx: ingest events, record progress (extends lease)
        4. repeat 2-3 while the fetcher reports ``has_more``
           (bounded by ``max_pages``); the last page records success
        5. on any error: roll back, then tx: record_failure

    ``run_backfill(cursor_id, fetch)`` does the same against the backfill
    lease and the cursor's historical range.

Invariants enforced:
    - The fetch step never holds a database transaction.
    - Every write carries the lease token; a run that lost its lease
      stops without recording anything further.
    - Lease contention and active backoff are normal outcomes
      (``RunStatus.SKIPPED``), not errors.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Generator, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.policy import StockPolicy
from stock_kernel.domain.types import CursorSnapshot, InventoryEvent, Lease, LeaseKind
from stock_kernel.exceptions import (
    AlreadyRunningError,
    BackoffActiveError,
    LeaseLostError,
    StockWarning,
)
from stock_kernel.logging_config import LogContext, get_logger
from stock_kernel.services.sync_cursor_service import SyncCursorManager
from stock_kernel.services.sync_ingestor import IngestResult, InventorySyncIngestor

logger = get_logger("batch.runner")


@dataclass(frozen=True)
class FetchResult:
    """One page returned by an external-system fetcher."""

    events: Sequence[InventoryEvent]
    next_cursor_token: str | None = None
    last_processed_id: str | None = None
    has_more: bool = False


Fetcher = Callable[[CursorSnapshot], FetchResult]
BackfillFetcher = Callable[[CursorSnapshot, datetime, datetime], FetchResult]


class RunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    LEASE_LOST = "lease_lost"


@dataclass(frozen=True)
class SyncRunResult:
    cursor_id: UUID
    status: RunStatus
    kind: LeaseKind = LeaseKind.INCREMENTAL
    pages: int = 0
    applied: int = 0
    duplicates: int = 0
    unmatched: int = 0
    warnings: tuple[StockWarning, ...] = ()
    error: str | None = None
    duration_ms: float = 0.0
    recomputed_locations: tuple[UUID, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.COMPLETED


class SyncRunner:
    """Owns transactions for sync runs.  One instance may serve many cursors."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        policy: StockPolicy | None = None,
        max_pages: int = 50,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._policy = policy or StockPolicy()
        self._max_pages = max_pages

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run(self, cursor_id: UUID, fetch: Fetcher) -> SyncRunResult:
        """Run one incremental sync for ``cursor_id``."""
        start = time.monotonic()
        with LogContext.bind(cursor_id=str(cursor_id)):
            try:
                with self._transaction() as session:
                    cursors = self._cursors(session)
                    lease = cursors.acquire_for_run(cursor_id)
                    snapshot = cursors.snapshot(cursor_id)
            except (AlreadyRunningError, BackoffActiveError) as exc:
                logger.info("sync_run_skipped", extra={"reason": exc.code})
                return SyncRunResult(cursor_id, RunStatus.SKIPPED, error=exc.code)

            totals = _Totals()
            try:
                for page_number in range(1, self._max_pages + 1):
                    page = fetch(snapshot)
                    last_page = not page.has_more or page_number == self._max_pages
                    with self._transaction() as session:
                        ingested = self._ingest(session, snapshot, page, lease)
                        cursors = self._cursors(session)
                        cursors.record_progress(
                            cursor_id,
                            page.next_cursor_token,
                            page.last_processed_id or ingested.last_ref_id,
                            ingested.processed,
                            lease_token=lease.token,
                        )
                        if last_page:
                            cursors.record_success(cursor_id, lease_token=lease.token)
                    totals.add(ingested)
                    if last_page:
                        break
                    snapshot = _advance(snapshot, page)
            except LeaseLostError as exc:
                return self._lease_lost(cursor_id, LeaseKind.INCREMENTAL, exc, totals, start)
            except Exception as exc:
                self._record_failure(cursor_id, exc, lease)
                return totals.result(
                    cursor_id, RunStatus.FAILED, LeaseKind.INCREMENTAL, start, error=_describe(exc)
                )

            result = totals.result(cursor_id, RunStatus.COMPLETED, LeaseKind.INCREMENTAL, start)
            logger.info(
                "sync_run_completed",
                extra={
                    "pages": result.pages,
                    "applied": result.applied,
                    "duplicates": result.duplicates,
                    "unmatched": result.unmatched,
                    "duration_ms": result.duration_ms,
                },
            )
            return result

    def run_backfill(self, cursor_id: UUID, fetch: BackfillFetcher) -> SyncRunResult:
        """Import the cursor's historical ``[backfill_start, backfill_end)`` range."""
        start = time.monotonic()
        with LogContext.bind(cursor_id=str(cursor_id)):
            try:
                with self._transaction() as session:
                    cursors = self._cursors(session)
                    lease = cursors.acquire_backfill(cursor_id)
                    snapshot = cursors.snapshot(cursor_id, LeaseKind.BACKFILL)
                    cursor = cursors.get_cursor(cursor_id)
                    window = (cursor.backfill_start, cursor.backfill_end)
            except AlreadyRunningError as exc:
                logger.info("backfill_run_skipped", extra={"reason": exc.code})
                return SyncRunResult(
                    cursor_id, RunStatus.SKIPPED, kind=LeaseKind.BACKFILL, error=exc.code
                )

            totals = _Totals()
            try:
                for page_number in range(1, self._max_pages + 1):
                    page = fetch(snapshot, window[0], window[1])
                    last_page = not page.has_more
                    with self._transaction() as session:
                        ingested = self._ingest(session, snapshot, page, lease)
                        cursors = self._cursors(session)
                        cursors.record_backfill_progress(
                            cursor_id, page.next_cursor_token, ingested.processed, lease.token
                        )
                        if last_page:
                            cursors.complete_backfill(cursor_id, lease.token)
                    totals.add(ingested)
                    if last_page:
                        break
                    snapshot = _advance(snapshot, page)
            except LeaseLostError as exc:
                return self._lease_lost(cursor_id, LeaseKind.BACKFILL, exc, totals, start)
            except Exception as exc:
                with self._transaction() as session:
                    self._cursors(session).fail_backfill(cursor_id, exc, lease.token)
                return totals.result(
                    cursor_id, RunStatus.FAILED, LeaseKind.BACKFILL, start, error=_describe(exc)
                )

            # The backfill lease is released only by complete_backfill; a run
            # that hit max_pages leaves it to expire and resumes from its token.
            return totals.result(cursor_id, RunStatus.COMPLETED, LeaseKind.BACKFILL, start)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @contextmanager
    def _transaction(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _cursors(self, session: Session) -> SyncCursorManager:
        return SyncCursorManager(session, self._clock, self._policy)

    def _ingest(
        self,
        session: Session,
        snapshot: CursorSnapshot,
        page: FetchResult,
        lease: Lease,
    ) -> IngestResult:
        ingestor = InventorySyncIngestor(session, self._clock, self._policy)
        return ingestor.ingest(page.events, snapshot.merchant_id, snapshot.system, lease=lease)

    def _record_failure(self, cursor_id: UUID, exc: Exception, lease: Lease) -> None:
        logger.warning("sync_run_failed", extra={"error": _describe(exc)})
        try:
            with self._transaction() as session:
                self._cursors(session).record_failure(cursor_id, exc, lease_token=lease.token)
        except LeaseLostError:
            logger.warning("sync_failure_not_recorded_lease_lost")

    def _lease_lost(
        self,
        cursor_id: UUID,
        kind: LeaseKind,
        exc: LeaseLostError,
        totals: _Totals,
        start: float,
    ) -> SyncRunResult:
        logger.warning("sync_run_lease_lost", extra={"lease_kind": kind.value})
        return totals.result(cursor_id, RunStatus.LEASE_LOST, kind, start, error=exc.code)


class _Totals:
    def __init__(self) -> None:
        self.pages = 0
        self.applied = 0
        self.duplicates = 0
        self.unmatched = 0
        self.warnings: list[StockWarning] = []
        self.recomputed: set[UUID] = set()

    def add(self, ingested: IngestResult) -> None:
        self.pages += 1
        self.applied += ingested.applied
        self.duplicates += ingested.duplicates
        self.unmatched += ingested.unmatched
        self.warnings.extend(ingested.warnings)
        self.recomputed.update(ingested.recomputed)

    def result(
        self,
        cursor_id: UUID,
        status: RunStatus,
        kind: LeaseKind,
        start: float,
        error: str | None = None,
    ) -> SyncRunResult:
        return SyncRunResult(
            cursor_id=cursor_id,
            status=status,
            kind=kind,
            pages=self.pages,
            applied=self.applied,
            duplicates=self.duplicates,
            unmatched=self.unmatched,
            warnings=tuple(self.warnings),
            error=error,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
            recomputed_locations=tuple(sorted(self.recomputed, key=str)),
        )


def _advance(snapshot: CursorSnapshot, page: FetchResult) -> CursorSnapshot:
    return replace(
        snapshot,
        cursor_token=page.next_cursor_token or snapshot.cursor_token,
        last_processed_id=page.last_processed_id or snapshot.last_processed_id,
    )


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
