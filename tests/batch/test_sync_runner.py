"""
Tests for SyncRunner.

The runner opens and commits its own sessions, so every test seeds with
``committed_seed`` and reads results back through a fresh session.
"""

from contextlib import contextmanager
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from stock_batch.runner import FetchResult, RunStatus, SyncRunner
from stock_kernel.domain.types import BackfillState, CursorStatus, LeaseKind
from stock_kernel.models.stock import StockMovement
from stock_kernel.selectors.stock_selector import StockSelector
from stock_kernel.services.sync_cursor_service import SyncCursorManager
from tests.conftest import START_TIME, make_event


@pytest.fixture
def runner(session_factory, clock, policy):
    return SyncRunner(session_factory, clock, policy)


@pytest.fixture
def read(session_factory):
    @contextmanager
    def _read():
        sess = session_factory()
        try:
            yield sess
        finally:
            sess.close()

    return _read


class PagedFetcher:
    """Serves pre-built pages and records the snapshots it was given."""

    def __init__(self, pages):
        self._pages = list(pages)
        self.seen = []

    def __call__(self, snapshot):
        self.seen.append(snapshot)
        return self._pages.pop(0)


class TestIncrementalRun:

    def test_pages_applied_and_cursor_completed(self, runner, read, clock, committed_seed):
        fetch = PagedFetcher([
            FetchResult([make_event("O-1", "0001", -1), make_event("O-2", "0001", -2)],
                        next_cursor_token="p2", has_more=True),
            FetchResult([make_event("O-3", "9999", -1)], next_cursor_token="p3"),
        ])

        result = runner.run(committed_seed.cursor_id, fetch)

        assert result.status is RunStatus.COMPLETED
        assert result.succeeded
        assert (result.pages, result.applied, result.unmatched) == (2, 2, 1)
        assert [s.cursor_token for s in fetch.seen] == [None, "p2"]

        with read() as session:
            cursor = SyncCursorManager(session, clock).get_cursor(committed_seed.cursor_id)
            assert cursor.status == CursorStatus.COMPLETED.value
            assert cursor.cursor_token == "p3"
            assert cursor.last_processed_id == "O-3"
            assert cursor.items_processed_total == 3
            assert cursor.lease_token is None
            level = StockSelector(session).get_level(
                committed_seed.product_id, committed_seed.location_id
            )
            assert level.on_hand == -3

    def test_rerun_of_same_page_is_idempotent(self, runner, read, clock, committed_seed):
        page = FetchResult([make_event("O-1", "0001", -1)], next_cursor_token="p2")
        runner.run(committed_seed.cursor_id, lambda s: page)
        clock.advance(301)

        again = runner.run(committed_seed.cursor_id, lambda s: page)

        assert (again.applied, again.duplicates) == (0, 1)
        with read() as session:
            count = session.execute(select(func.count()).select_from(StockMovement)).scalar_one()
            assert count == 1

    def test_max_pages_bounds_a_run(self, session_factory, clock, policy, committed_seed):
        runner = SyncRunner(session_factory, clock, policy, max_pages=2)
        calls = []

        def endless(snapshot):
            calls.append(snapshot)
            return FetchResult([], next_cursor_token=f"p{len(calls)}", has_more=True)

        result = runner.run(committed_seed.cursor_id, endless)

        assert result.status is RunStatus.COMPLETED
        assert result.pages == 2


class TestFailures:

    def test_fetch_error_records_backoff(self, runner, read, clock, committed_seed):
        def broken(snapshot):
            raise RuntimeError("upstream down")

        result = runner.run(committed_seed.cursor_id, broken)

        assert result.status is RunStatus.FAILED
        assert result.error == "RuntimeError: upstream down"
        with read() as session:
            cursor = SyncCursorManager(session, clock).get_cursor(committed_seed.cursor_id)
            assert cursor.status == CursorStatus.FAILED.value
            assert cursor.consecutive_failures == 1
            assert cursor.next_sync_at == clock.now() + timedelta(seconds=60)

    def test_failed_page_rolls_back_but_earlier_pages_stay(
        self, runner, read, clock, committed_seed
    ):
        fetch = PagedFetcher([
            FetchResult([make_event("O-1", "0001", -1)], next_cursor_token="p2", has_more=True),
            FetchResult([
                make_event("O-2", "0001", -1),
                make_event("O-3", "0001", -1, location_ref="closed-store"),
            ]),
        ])

        result = runner.run(committed_seed.cursor_id, fetch)

        assert result.status is RunStatus.FAILED
        assert result.error.startswith("UnknownLocationRefError")
        assert result.applied == 1
        with read() as session:
            refs = session.execute(select(StockMovement.ref_id)).scalars().all()
            assert refs == ["O-1"]
            cursor = SyncCursorManager(session, clock).get_cursor(committed_seed.cursor_id)
            assert cursor.cursor_token == "p2"

    def test_backoff_skips_next_run(self, runner, clock, committed_seed):
        def broken(snapshot):
            raise RuntimeError("upstream down")

        runner.run(committed_seed.cursor_id, broken)
        skipped = runner.run(committed_seed.cursor_id, broken)
        assert skipped.status is RunStatus.SKIPPED
        assert skipped.error == "BACKOFF_ACTIVE"

        clock.advance(61)
        assert runner.run(committed_seed.cursor_id, lambda s: FetchResult([])).succeeded

    def test_contended_cursor_skipped(self, session_factory, runner, clock, policy, committed_seed):
        sess = session_factory()
        try:
            SyncCursorManager(sess, clock, policy).acquire_for_run(committed_seed.cursor_id)
            sess.commit()
        finally:
            sess.close()

        result = runner.run(committed_seed.cursor_id, lambda s: FetchResult([]))

        assert result.status is RunStatus.SKIPPED
        assert result.error == "ALREADY_RUNNING"

    def test_lease_stolen_during_fetch(self, session_factory, runner, read, clock, policy, committed_seed):
        def slow(snapshot):
            clock.advance(policy.lease_timeout_seconds + 1)
            sess = session_factory()
            try:
                SyncCursorManager(sess, clock, policy).acquire_for_run(snapshot.cursor_id)
                sess.commit()
            finally:
                sess.close()
            return FetchResult([make_event("O-1", "0001", -1)])

        result = runner.run(committed_seed.cursor_id, slow)

        assert result.status is RunStatus.LEASE_LOST
        with read() as session:
            assert session.execute(select(func.count()).select_from(StockMovement)).scalar_one() == 0
            cursor = SyncCursorManager(session, clock).get_cursor(committed_seed.cursor_id)
            assert cursor.status == CursorStatus.RUNNING.value
            assert cursor.consecutive_failures == 0


class TestBackfillRun:

    @pytest.fixture
    def backfill(self, session_factory, clock, policy, committed_seed):
        sess = session_factory()
        try:
            SyncCursorManager(sess, clock, policy).start_backfill(
                committed_seed.cursor_id, START_TIME - timedelta(days=7), START_TIME
            )
            sess.commit()
        finally:
            sess.close()
        return committed_seed.cursor_id

    def test_backfill_imports_history(self, runner, read, clock, backfill):
        windows = []

        def history(snapshot, start, end):
            windows.append((start, end))
            occurred = start + timedelta(days=1)
            if snapshot.cursor_token is None:
                return FetchResult(
                    [make_event("H-1", "0001", 5, occurred_at=occurred)],
                    next_cursor_token="h2",
                    has_more=True,
                )
            return FetchResult([make_event("H-2", "0001", -1, occurred_at=occurred)])

        result = runner.run_backfill(backfill, history)

        assert result.status is RunStatus.COMPLETED
        assert result.kind is LeaseKind.BACKFILL
        assert result.applied == 2
        assert windows[0] == (START_TIME - timedelta(days=7), START_TIME)
        with read() as session:
            cursor = SyncCursorManager(session, clock).get_cursor(backfill)
            assert cursor.backfill_state == BackfillState.COMPLETED.value
            assert cursor.backfill_progress == 2
            assert cursor.status == CursorStatus.IDLE.value

    def test_backfill_failure(self, runner, read, clock, backfill):
        def broken(snapshot, start, end):
            raise ValueError("bad page")

        result = runner.run_backfill(backfill, broken)

        assert result.status is RunStatus.FAILED
        with read() as session:
            cursor = SyncCursorManager(session, clock).get_cursor(backfill)
            assert cursor.backfill_state == BackfillState.FAILED.value
            assert cursor.consecutive_failures == 0
