"""
StockScheduler -- in-process polling loop for sync and day close.

Contract:
    ``tick()`` performs, in order:
        1. recover_stale_leases + expire_backoffs (one transaction)
        2. run every due cursor whose ``system`` has a registered fetcher
        3. close every day after the last closed one up to yesterday, for
           every active location

Architecture: stock_batch.  Drives kernel services through SyncRunner
    and owns every transaction it opens.

Invariants enforced:
    - All timestamps from the injected Clock.
    - Graceful shutdown: the stop signal is checked between cursors.
    - A failure in one step is logged and does not prevent the others.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.policy import StockPolicy
from stock_kernel.logging_config import get_logger
from stock_kernel.selectors.snapshot_selector import SnapshotSelector
from stock_kernel.services.snapshot_service import SnapshotAggregator
from stock_kernel.services.sync_cursor_service import SyncCursorManager

from stock_batch.runner import Fetcher, SyncRunner, SyncRunResult

logger = get_logger("batch.scheduler")


@dataclass(frozen=True)
class TickResult:
    recovered_leases: int
    expired_backoffs: int
    runs: tuple[SyncRunResult, ...]
    closed_days: tuple[date, ...]

    @property
    def closed_day(self) -> date | None:
        """The most recent day closed by this tick."""
        return self.closed_days[-1] if self.closed_days else None


class StockScheduler:
    """Polling scheduler for sync cursors and nightly snapshots.

    Non-goals:
        - NOT a distributed scheduler; several instances are safe only
          because cursor leases and snapshot upserts are.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        fetchers: Mapping[str, Fetcher],
        clock: Clock | None = None,
        policy: StockPolicy | None = None,
        tick_interval_seconds: int = 60,
        close_days: bool = True,
    ):
        self._session_factory = session_factory
        self._fetchers = dict(fetchers)
        self._clock = clock or SystemClock()
        self._policy = policy or StockPolicy()
        self._tick_interval = tick_interval_seconds
        self._close_days = close_days
        self._runner = SyncRunner(session_factory, self._clock, self._policy)
        self._last_closed_day: date | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> TickResult:
        """One scheduling pass (public for testing)."""
        recovered, expired, due = self._housekeeping()

        runs: list[SyncRunResult] = []
        for cursor_id, system in due:
            if self._stop_event.is_set():
                break
            fetch = self._fetchers.get(system)
            if fetch is None:
                continue
            runs.append(self._runner.run(cursor_id, fetch))

        closed = self._close_missed_days() if self._close_days else ()
        return TickResult(
            recovered_leases=recovered,
            expired_backoffs=expired,
            runs=tuple(runs),
            closed_days=closed,
        )

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="stock-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current tick to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)

    def _housekeeping(self) -> tuple[int, int, list[tuple[UUID, str]]]:
        session = self._session_factory()
        try:
            cursors = SyncCursorManager(session, self._clock, self._policy)
            recovered = cursors.recover_stale_leases()
            expired = cursors.expire_backoffs()
            due = [
                (cursor_id, cursors.get_cursor(cursor_id).system)
                for cursor_id in cursors.list_due_cursors()
            ]
            session.commit()
            return recovered, expired, due
        except Exception:
            session.rollback()
            logger.exception("scheduler_housekeeping_failed")
            return 0, 0, []
        finally:
            session.close()

    def _pending_days(self, session: Session) -> list[date]:
        today = self._clock.today()
        yesterday = today - timedelta(days=1)
        last = self._last_closed_day or SnapshotSelector(session).latest_closed_date()
        if last is None:
            return [yesterday]
        if last >= yesterday:
            return []
        # Catch-up is bounded by the window recompute can still reach
        first = max(
            last + timedelta(days=1),
            today - timedelta(days=self._policy.recompute_lookback_days),
        )
        return [first + timedelta(days=n) for n in range((yesterday - first).days + 1)]

    def _close_missed_days(self) -> tuple[date, ...]:
        """Close every day after the last closed one, up to yesterday.

        Each day commits on its own, so a failure keeps the days before it.
        """
        closed: list[date] = []
        session = self._session_factory()
        try:
            aggregator = SnapshotAggregator(session, self._clock, self._policy)
            for snapshot_date in self._pending_days(session):
                try:
                    written = aggregator.close_day_for_active_locations(snapshot_date)
                    session.commit()
                except Exception:
                    session.rollback()
                    logger.exception(
                        "scheduler_day_close_failed", extra={"snapshot_date": snapshot_date}
                    )
                    break
                self._last_closed_day = snapshot_date
                closed.append(snapshot_date)
                logger.info(
                    "scheduler_day_closed",
                    extra={"snapshot_date": snapshot_date, "locations": len(written)},
                )
        finally:
            session.close()
        return tuple(closed)
