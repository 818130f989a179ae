"""
Module: cascade_kernel.selectors.base
Responsibility: Base class for read-side queries against the document
    collections, including the chunked ``IN`` query every selector uses.
Architecture position: Kernel > Selectors. May import db/ and models/.
    MUST NOT import from cascade_engines, cascade_services or outer layers.

Invariants enforced:
    - ``IN`` lists never exceed ``in_query_limit`` values; larger id sets
      are split client-side and the results concatenated.
    - Selectors never add, delete, flush or commit. They return ORM
      instances attached to the caller's session, so the stage that owns
      the transaction can modify them in place.
"""

from __future__ import annotations

from typing import Any, Iterable, TypeVar
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import InstrumentedAttribute, Session

from cascade_kernel.db.base import Base
from cascade_kernel.utils.chunking import as_uuids, chunked

ModelType = TypeVar("ModelType", bound=Base)

DEFAULT_IN_QUERY_LIMIT = 10


class BaseSelector:
    """Read-only query helper bound to one session."""

    def __init__(self, session: Session, in_query_limit: int = DEFAULT_IN_QUERY_LIMIT):
        self.session = session
        self.in_query_limit = in_query_limit

    def _select_in(
        self,
        model: type[ModelType],
        column: InstrumentedAttribute,
        values: Iterable[UUID | str],
        *criteria: Any,
    ) -> list[ModelType]:
        """Fetch rows whose ``column`` is in ``values``, at most
        ``in_query_limit`` values per query."""
        ids = as_uuids(values)
        rows: list[ModelType] = []
        seen: set[UUID] = set()
        for chunk in chunked(ids, self.in_query_limit):
            stmt = select(model).where(column.in_(chunk), *criteria)
            for row in self.session.execute(stmt).scalars():
                if row.id not in seen:
                    seen.add(row.id)
                    rows.append(row)
        return rows

    def _by_ids(self, model: type[ModelType], ids: Iterable[UUID | str]) -> dict[UUID, ModelType]:
        return {row.id: row for row in self._select_in(model, model.id, ids)}
