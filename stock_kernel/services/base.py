"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session contract for every writer in the
    kernel.  Services receive a SQLAlchemy ``Session`` and persist with
    ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back.  The caller
      (``session_scope``, SyncRunner, StockScheduler, test harness) owns
      commit/rollback, so a ledger append and its balance update land
      together or not at all.
"""

from abc import ABC

from sqlalchemy.orm import Session

from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.policy import StockPolicy


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a ``Session`` and optionally a ``Clock`` and
        ``StockPolicy``.  Missing collaborators fall back to the system
        clock and the default policy.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read-only query methods -- those belong in
          ``stock_kernel/selectors/``.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        policy: StockPolicy | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.policy = policy or StockPolicy()
