"""
Named counter rows backing SequenceService.

Each row is locked (``SELECT ... FOR UPDATE``) while it is incremented, so
two transactions can never draw the same value.
"""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    # Sequence name (e.g., "stock_movement")
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
