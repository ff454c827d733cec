"""
Tests for SyncCursorManager: leases, backoff, recovery and backfill.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from stock_kernel.domain.types import BackfillState, CursorStatus, LeaseKind
from stock_kernel.exceptions import (
    AlreadyRunningError,
    BackoffActiveError,
    CursorNotFoundError,
    InvalidBackfillRangeError,
    InvalidCursorTransitionError,
    LeaseLostError,
)
from tests.conftest import MERCHANT_ID, START_TIME


@pytest.fixture
def cursor(cursors, location):
    return cursors.get_or_create_cursor("pos", MERCHANT_ID, "inventory_movements", location.id)


def _fail(cursors, cursor_id, message="timeout"):
    lease = cursors.acquire_for_run(cursor_id)
    return cursors.record_failure(cursor_id, message, lease_token=lease.token)


class TestCursorCreation:

    def test_new_cursor_defaults(self, cursor, policy):
        assert cursor.status == CursorStatus.IDLE.value
        assert cursor.consecutive_failures == 0
        assert cursor.incremental_since == START_TIME
        assert cursor.sync_frequency_seconds == policy.default_sync_frequency_seconds
        assert cursor.batch_size == policy.default_batch_size
        assert cursor.backfill_state == BackfillState.NONE.value

    def test_get_or_create_is_idempotent(self, cursors, cursor, location):
        again = cursors.get_or_create_cursor(
            "pos", MERCHANT_ID, "inventory_movements", location.id
        )
        assert again.id == cursor.id

    def test_unknown_cursor(self, cursors):
        with pytest.raises(CursorNotFoundError):
            cursors.acquire_for_run(uuid4())

    def test_merchant_wide_cursor_is_separate(self, cursors, cursor):
        merchant_wide = cursors.get_or_create_cursor("pos", MERCHANT_ID, "inventory_movements")
        assert merchant_wide.id != cursor.id
        assert merchant_wide.location_id is None


class TestLeasing:

    def test_acquire_sets_running(self, cursors, cursor, policy):
        lease = cursors.acquire_for_run(cursor.id)

        assert lease.kind is LeaseKind.INCREMENTAL
        assert lease.expires_at == START_TIME + timedelta(seconds=policy.lease_timeout_seconds)
        refreshed = cursors.get_cursor(cursor.id)
        assert refreshed.status == CursorStatus.RUNNING.value
        assert refreshed.lease_token == lease.token

    def test_second_acquire_is_rejected(self, cursors, cursor):
        cursors.acquire_for_run(cursor.id)
        with pytest.raises(AlreadyRunningError) as exc_info:
            cursors.acquire_for_run(cursor.id)
        assert exc_info.value.retryable

    def test_expired_lease_can_be_taken_over(self, cursors, cursor, clock, policy):
        stale = cursors.acquire_for_run(cursor.id)
        clock.advance(policy.lease_timeout_seconds + 1)

        fresh = cursors.acquire_for_run(cursor.id)

        assert fresh.token != stale.token
        with pytest.raises(LeaseLostError):
            cursors.record_success(cursor.id, lease_token=stale.token)
        with pytest.raises(LeaseLostError):
            cursors.check_lease(stale)
        cursors.check_lease(fresh)

    def test_progress_extends_lease_and_moves_position(self, cursors, cursor, clock, policy):
        lease = cursors.acquire_for_run(cursor.id)
        clock.advance(100)

        updated = cursors.record_progress(cursor.id, "page-2", "evt-50", 50, lease.token)

        assert updated.cursor_token == "page-2"
        assert updated.last_processed_id == "evt-50"
        assert updated.items_processed_total == 50
        assert updated.lease_expires_at == clock.now() + timedelta(
            seconds=policy.lease_timeout_seconds
        )
        assert cursors.snapshot(cursor.id).cursor_token == "page-2"

    def test_progress_requires_running(self, cursors, cursor):
        with pytest.raises(InvalidCursorTransitionError):
            cursors.record_progress(cursor.id, "t", None, 1)

    def test_success_requires_running(self, cursors, cursor):
        with pytest.raises(InvalidCursorTransitionError):
            cursors.record_success(cursor.id)

    def test_inactive_cursor_cannot_run(self, cursors, cursor):
        cursors.deactivate_cursor(cursor.id)
        with pytest.raises(InvalidCursorTransitionError):
            cursors.acquire_for_run(cursor.id)

        cursors.activate_cursor(cursor.id)
        assert cursors.acquire_for_run(cursor.id).cursor_id == cursor.id


class TestBackoff:

    def test_repeated_failures_back_off_further(self, cursors, cursor, clock):
        delays = []
        for _ in range(3):
            failed = _fail(cursors, cursor.id)
            delays.append(failed.next_sync_at - clock.now())
            clock.advance(delays[-1].total_seconds() + 1)

        assert delays == [timedelta(seconds=60), timedelta(seconds=120), timedelta(seconds=240)]
        assert cursors.get_cursor(cursor.id).consecutive_failures == 3

    def test_success_resets_failures(self, cursors, cursor, clock):
        _fail(cursors, cursor.id, "boom")
        clock.advance(61)

        lease = cursors.acquire_for_run(cursor.id)
        done = cursors.record_success(cursor.id, lease_token=lease.token)

        assert done.status == CursorStatus.COMPLETED.value
        assert done.consecutive_failures == 0
        assert done.last_error is None
        assert done.last_success_at == clock.now()
        assert done.next_sync_at == clock.now() + timedelta(seconds=done.sync_frequency_seconds)

    def test_acquire_inside_backoff_is_rejected(self, cursors, cursor, clock):
        failed = _fail(cursors, cursor.id)

        with pytest.raises(BackoffActiveError) as exc_info:
            cursors.acquire_for_run(cursor.id)
        assert exc_info.value.next_sync_at == failed.next_sync_at

        clock.advance(61)
        cursors.acquire_for_run(cursor.id)

    def test_failure_records_exception_text(self, cursors, cursor):
        lease = cursors.acquire_for_run(cursor.id)
        failed = cursors.record_failure(cursor.id, RuntimeError("upstream 503"), lease.token)
        assert failed.last_error == "RuntimeError: upstream 503"

    def test_expire_backoffs(self, cursors, cursor, clock):
        _fail(cursors, cursor.id)
        assert cursors.expire_backoffs() == 0

        clock.advance(61)
        assert cursors.expire_backoffs() == 1
        assert cursors.get_cursor(cursor.id).status == CursorStatus.IDLE.value


class TestScheduling:

    def test_due_cursors(self, cursors, cursor, clock):
        assert cursors.list_due_cursors() == [cursor.id]

        lease = cursors.acquire_for_run(cursor.id)
        assert cursors.list_due_cursors() == []

        cursors.record_success(cursor.id, lease.token)
        assert cursors.list_due_cursors() == []
        assert cursors.list_due_cursors(clock.now() + timedelta(seconds=300)) == [cursor.id]

    def test_inactive_cursor_never_due(self, cursors, cursor):
        cursors.deactivate_cursor(cursor.id)
        assert cursors.list_due_cursors() == []

    def test_recover_stale_leases(self, cursors, cursor, clock, policy, captured_logs):
        cursors.acquire_for_run(cursor.id)
        assert cursors.recover_stale_leases() == 0

        clock.advance(policy.lease_timeout_seconds + 1)
        assert cursors.recover_stale_leases() == 1

        recovered = cursors.get_cursor(cursor.id)
        assert recovered.status == CursorStatus.IDLE.value
        assert recovered.lease_token is None
        assert any(r["message"] == "stale_leases_recovered" for r in captured_logs())


class TestBackfill:

    def _start(self, cursors, cursor):
        return cursors.start_backfill(
            cursor.id, START_TIME - timedelta(days=30), START_TIME
        )

    def test_range_must_end_before_incremental_since(self, cursors, cursor):
        with pytest.raises(InvalidBackfillRangeError):
            cursors.start_backfill(
                cursor.id, START_TIME - timedelta(days=1), START_TIME + timedelta(seconds=1)
            )

    def test_empty_range_rejected(self, cursors, cursor):
        with pytest.raises(InvalidBackfillRangeError):
            cursors.start_backfill(cursor.id, START_TIME, START_TIME)

    def test_only_one_backfill_at_a_time(self, cursors, cursor):
        self._start(cursors, cursor)
        with pytest.raises(InvalidCursorTransitionError):
            self._start(cursors, cursor)

    def test_backfill_runs_beside_incremental(self, cursors, cursor):
        self._start(cursors, cursor)

        backfill = cursors.acquire_backfill(cursor.id)
        incremental = cursors.acquire_for_run(cursor.id)

        assert backfill.kind is LeaseKind.BACKFILL
        assert backfill.token != incremental.token
        with pytest.raises(AlreadyRunningError):
            cursors.acquire_backfill(cursor.id)

    def test_progress_and_completion(self, cursors, cursor):
        self._start(cursors, cursor)
        lease = cursors.acquire_backfill(cursor.id)

        cursors.record_backfill_progress(cursor.id, "hist-2", 40, lease.token)
        assert cursors.snapshot(cursor.id, LeaseKind.BACKFILL).cursor_token == "hist-2"
        assert cursors.snapshot(cursor.id).cursor_token is None

        done = cursors.complete_backfill(cursor.id, lease.token)
        assert done.backfill_state == BackfillState.COMPLETED.value
        assert done.backfill_progress == 40
        assert done.status == CursorStatus.IDLE.value

    def test_wrong_token_rejected(self, cursors, cursor):
        self._start(cursors, cursor)
        cursors.acquire_backfill(cursor.id)
        with pytest.raises(LeaseLostError):
            cursors.record_backfill_progress(cursor.id, None, 1, "not-the-lease")

    def test_failure_keeps_position(self, cursors, cursor):
        self._start(cursors, cursor)
        lease = cursors.acquire_backfill(cursor.id)
        cursors.record_backfill_progress(cursor.id, "hist-3", 10, lease.token)

        failed = cursors.fail_backfill(cursor.id, "vendor error", lease.token)

        assert failed.backfill_state == BackfillState.FAILED.value
        assert failed.backfill_cursor_token == "hist-3"

    def test_acquire_without_backfill(self, cursors, cursor):
        with pytest.raises(InvalidCursorTransitionError):
            cursors.acquire_backfill(cursor.id)

    def test_stale_backfill_lease_released(self, cursors, cursor, clock, policy):
        self._start(cursors, cursor)
        cursors.acquire_backfill(cursor.id)
        clock.advance(policy.lease_timeout_seconds + 1)

        assert cursors.recover_stale_leases() == 1
        resumed = cursors.acquire_backfill(cursor.id)
        assert cursors.get_cursor(cursor.id).backfill_state == BackfillState.IN_PROGRESS.value
        assert resumed.kind is LeaseKind.BACKFILL
