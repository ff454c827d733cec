"""
Declarative bases and column types shared by every stock table.

Nothing here imports from models/, services/ or outer layers.

- Every row has a uuid4 primary key stored as a 36-character string, so
  the same schema runs on PostgreSQL and SQLite.
- Timestamps go through UTCDateTime: naive values are refused on write
  and every value comes back aware in UTC.  Snapshot day boundaries are
  computed from these values and must not depend on the dialect.
- Quantities are integers (BigInteger); costs and values are
  Numeric(18, 4).
- TrackedBase adds created_at, updated_at, created_by_id and
  updated_by_id for reference data such as products and locations.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID column stored as String(36)."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else PyUUID(str(value))


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime stored as a naive UTC timestamp.

    Contract:
        Accepts aware datetimes in any zone and normalizes them to UTC.
        Naive datetimes are rejected: an unlabelled wall-clock time cannot
        be placed on a calendar day deterministically.

    Guarantees:
        - Values read back are always aware and in UTC.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime not allowed: {value!r}")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Root of every stock table: a uuid4 ``id`` and the shared type map."""

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(18, 4),
        datetime: UTCDateTime(),
        PyUUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[PyUUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Reference data with creation and update stamps and the acting user."""

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
    created_by_id: Mapped[PyUUID]
    updated_by_id: Mapped[PyUUID | None]
