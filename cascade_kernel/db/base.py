"""
Module: cascade_kernel.db.base
Responsibility: Declarative base classes for every document collection the
    cascade reads or writes. Provides the UUID primary key convention, the
    type annotation map, and the TrackedBase timestamp mixin.
Architecture position: Kernel > DB. Lowest-level import target inside the
    kernel; all model modules import from here. MUST NOT import from
    models/, selectors/ or outer packages.

Invariants enforced:
    - UUID primary keys stored as String(36) for portability.
    - Decimal maps to Numeric(38, 9). Amounts are never floats at rest.
    - datetime maps to UTCDateTime: values are always returned timezone
      aware, even from backends (SQLite) that drop the offset on storage.
    - JSON document fragments serialize Decimal/UUID/date as strings via
      ``json_serializer``; readers coerce back with ``precision.to_decimal``.
"""

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID stored as its 36-character string form."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(value)
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return PyUUID(value)
        return None


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime, normalized to UTC on the way in and out."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class _DocumentJSONEncoder(json.JSONEncoder):
    def default(self, obj: Any) -> Any:
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, PyUUID):
            return str(obj)
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        return super().default(obj)


def json_serializer(value: Any) -> str:
    """JSON serializer handed to ``create_engine`` for JSON columns."""
    return json.dumps(value, cls=_DocumentJSONEncoder)


class Base(DeclarativeBase):
    """
    Declarative base for all models.

    Guarantees:
        - ``id`` is a uuid4 UUID.
        - Decimal -> Numeric(38, 9), datetime -> UTCDateTime,
          UUID -> UUIDString.
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: Numeric(38, 9),
        datetime: UTCDateTime(),
        date: Date,
        PyUUID: UUIDString(),
        int: Integer,
        bool: Boolean,
    }

    id: Mapped[PyUUID] = mapped_column(
        UUIDString(),
        primary_key=True,
        default=uuid4,
    )


class TrackedBase(Base):
    """
    Abstract base with row timestamps.

    ``created_at`` is set on INSERT; ``updated_at`` is refreshed on every
    UPDATE. Both are bookkeeping metadata and may change even on
    append-only records (see db/immutability.py).
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


UUID = PyUUID
