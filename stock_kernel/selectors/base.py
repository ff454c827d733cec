"""
Module: stock_kernel.selectors.base
Responsibility: Base class for read-only query selectors.  Selectors are the
    read side next to the services, giving reporting and operator screens
    structured access to stock data without any way to mutate it.
Architecture position: Kernel > Selectors.  May import from db/, models/
    and domain/types.py.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors take a Session from the caller and never
      call session.add(), session.delete(), session.commit() or
      session.flush().
    - DTO return convention: selectors return frozen dataclasses, not ORM
      instances.
    - Session ownership: the caller owns the session and its transaction
      scope, so every query in one call sees the same snapshot.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from stock_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Base class for all selectors.

    Subclasses add the domain queries (levels, snapshots, operator
    signals); this class only holds the caller's session.
    """

    def __init__(self, session: Session):
        self.session = session
