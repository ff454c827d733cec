"""
Ledger ordering numbers drawn from locked counter rows.

``StockMovement.seq`` must grow strictly in commit order for a
(product, location) chain, and gaps are harmless.  The next value always
comes from a ``SequenceCounter`` row held ``FOR UPDATE`` for the rest of
the caller's transaction; ``MAX(seq) + 1`` is never consulted.  A rolled
back append hands its number back with the rest of the transaction.
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stock_kernel.logging_config import get_logger
from stock_kernel.models.sequence import SequenceCounter

logger = get_logger("services.sequence")


class SequenceService:
    """Allocates ``seq`` values for the stock ledger."""

    STOCK_MOVEMENT = "stock_movement"

    def __init__(self, session: Session):
        self._session = session

    def _fetch(self, name: str, *, lock: bool) -> SequenceCounter | None:
        stmt = select(SequenceCounter).where(SequenceCounter.name == name)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self._session.execute(stmt).scalar_one_or_none()

    def _first_use(self, name: str) -> SequenceCounter:
        # Two transactions may both see no row; the loser's INSERT fails on
        # the unique name and it reads the winner's row instead.
        savepoint = self._session.begin_nested()
        counter = SequenceCounter(name=name, current_value=0)
        self._session.add(counter)
        try:
            self._session.flush()
        except IntegrityError:
            savepoint.rollback()
            logger.debug("sequence_counter_exists", extra={"sequence_name": name})
            existing = self._fetch(name, lock=True)
            if existing is None:
                raise
            return existing
        savepoint.commit()
        return counter

    def next_value(self, sequence_name: str) -> int:
        """Increment ``sequence_name`` and return the new value (first value is 1)."""
        counter = self._fetch(sequence_name, lock=True) or self._first_use(sequence_name)
        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        counter = self._fetch(sequence_name, lock=False)
        return None if counter is None else counter.current_value
