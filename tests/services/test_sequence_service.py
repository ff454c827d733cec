"""Tests for SequenceService counter allocation."""

from stock_kernel.services.sequence_service import SequenceService


def test_unused_counter_has_no_value(session):
    assert SequenceService(session).current_value(SequenceService.STOCK_MOVEMENT) is None


def test_values_start_at_one_and_increase(session):
    sequences = SequenceService(session)
    drawn = [sequences.next_value(SequenceService.STOCK_MOVEMENT) for _ in range(3)]

    assert drawn == [1, 2, 3]
    assert sequences.current_value(SequenceService.STOCK_MOVEMENT) == 3


def test_names_are_independent(session):
    sequences = SequenceService(session)
    sequences.next_value(SequenceService.STOCK_MOVEMENT)
    sequences.next_value(SequenceService.STOCK_MOVEMENT)

    assert sequences.next_value("other_counter") == 1


def test_rollback_releases_value(session_factory):
    with session_factory() as sess:
        assert SequenceService(sess).next_value(SequenceService.STOCK_MOVEMENT) == 1
        sess.commit()

    with session_factory() as sess:
        SequenceService(sess).next_value(SequenceService.STOCK_MOVEMENT)
        sess.rollback()

    with session_factory() as sess:
        assert SequenceService(sess).next_value(SequenceService.STOCK_MOVEMENT) == 2
        sess.commit()
