"""
Module: commerce_kernel.db.base
Responsibility: Column conventions shared by every commerce table: string
    UUID keys, exact decimals for money, tz-aware timestamps, and the audit
    columns that record who created and last touched a row.
Architecture position: Kernel > DB.  Imported by the ``orm`` module of each
    package under commerce_modules; imports nothing above SQLAlchemy.

Invariants enforced:
    - Keys are uuid4 values, persisted as 36-character strings so the same
      schema runs on SQLite (tests) and PostgreSQL.
    - A ``Decimal`` annotation becomes Numeric(38, 9).  Money never
      round-trips through a float column declared here.
    - Audit actors are organization or user ids, never foreign keys.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from commerce_kernel.db.types import STORED_DECIMAL_PLACES

MONEY_COLUMN = Numeric(38, STORED_DECIMAL_PLACES)
ACTOR_ID_LENGTH = 64


class UUIDString(TypeDecorator):
    """``uuid.UUID`` in Python, ``VARCHAR(36)`` in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


def _actor_column(*, required: bool) -> Mapped[str]:
    return mapped_column(String(ACTOR_ID_LENGTH), nullable=not required)


class Base(DeclarativeBase):
    """Root of the declarative registry; every table gets a uuid4 ``id``."""

    type_annotation_map: ClassVar[dict] = {
        Decimal: MONEY_COLUMN,
        datetime: DateTime(timezone=True),
        UUID: UUIDString(),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Adds audit columns.

    ``created_at`` and ``updated_at`` come from the database clock, so they
    record persistence time rather than the business timestamps a service
    passes in.  ``created_by_id`` is mandatory; ``updated_by_id`` stays
    NULL until the first update.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now()
    )
    created_by_id: Mapped[str] = _actor_column(required=True)
    updated_by_id: Mapped[str | None] = _actor_column(required=False)
