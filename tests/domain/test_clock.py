"""Tests for the injectable clocks and UTC day bounds."""

from datetime import date, datetime, timedelta, timezone

import pytest

from stock_kernel.domain.clock import DeterministicClock, SystemClock, day_bounds

NOON = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)


class TestDeterministicClock:

    def test_frozen_until_advanced(self):
        clock = DeterministicClock(NOON)
        assert clock.now() == clock.now() == NOON
        assert clock.advance(30) == NOON + timedelta(seconds=30)

    def test_advance_days(self):
        clock = DeterministicClock(NOON)
        clock.advance(0, days=1)
        assert clock.today() == date(2024, 1, 2)

    def test_set_time(self):
        clock = DeterministicClock(NOON)
        clock.set_time(datetime(2024, 3, 5, 23, 59, tzinfo=timezone.utc))
        assert clock.today() == date(2024, 3, 5)

    def test_naive_time_rejected(self):
        with pytest.raises(ValueError):
            DeterministicClock(datetime(2024, 1, 1))
        with pytest.raises(ValueError):
            DeterministicClock(NOON).set_time(datetime(2024, 1, 1))

    def test_other_offsets_reported_in_utc(self):
        plus_two = timezone(timedelta(hours=2))
        clock = DeterministicClock(datetime(2024, 1, 2, 1, 0, tzinfo=plus_two))
        assert clock.now().tzinfo == timezone.utc
        assert clock.today() == date(2024, 1, 1)


def test_system_clock_is_aware():
    assert SystemClock().now().tzinfo is not None


def test_day_bounds_half_open():
    start, end = day_bounds(date(2024, 2, 28))
    assert start == datetime(2024, 2, 28, tzinfo=timezone.utc)
    assert end == datetime(2024, 2, 29, tzinfo=timezone.utc)
