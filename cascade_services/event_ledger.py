"""
cascade_services.event_ledger -- append-only coordination ledger.

Responsibility:
    Decouple cascade stages. A stage that changed derived state appends
    one event naming what changed; the next stage consumes unprocessed
    events of its type in a separate invocation and marks each processed
    once its own writes are in.

Architecture position:
    Services. Uses LedgerEventModel from the kernel; the dispatcher in
    cascade_batch is the only consumer that marks events processed.

Invariants enforced:
    - ``append`` always inserts a new row; it never merges or dedupes.
    - ``consume`` returns only ``processed == False`` rows, oldest first.
      Delivery is at-least-once: a consumer crashing before
      ``mark_processed`` sees the event again.
    - ``mark_processed`` is idempotent; a second call is a no-op.
    - Rows are never deleted (enforced by db/immutability.py).

Failure modes:
    - LedgerEventNotFoundError from ``get`` / ``mark_processed`` for an
      unknown id.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from cascade_kernel.domain.clock import Clock, SystemClock
from cascade_kernel.domain.types import LedgerEvent, LedgerEventType
from cascade_kernel.exceptions import LedgerEventNotFoundError
from cascade_kernel.logging_config import get_logger
from cascade_kernel.models.ledger import LedgerEventModel
from cascade_kernel.utils.chunking import as_uuid

logger = get_logger("services.event_ledger")


def _type_value(event_type: LedgerEventType | str) -> str:
    return event_type.value if isinstance(event_type, LedgerEventType) else str(event_type)


class EventLedger:
    """Ledger operations bound to the caller's session."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def append(
        self,
        event_type: LedgerEventType | str,
        payload: Mapping[str, Any],
        source_type: str | None = None,
        source_id: str | None = None,
    ) -> UUID:
        event_id = uuid4()
        model = LedgerEventModel(
            id=event_id,
            event_type=_type_value(event_type),
            payload=dict(payload),
            processed=False,
            recorded_at=self._clock.now(),
            source_type=source_type,
            source_id=str(source_id) if source_id is not None else None,
        )
        self._session.add(model)
        self._session.flush()

        logger.info(
            "ledger_event_appended",
            extra={
                "ledger_event_id": str(event_id),
                "event_type": model.event_type,
                "source_type": source_type,
                "source_id": model.source_id,
                "payload_keys": sorted(payload),
            },
        )
        return event_id

    def consume(
        self,
        event_type: LedgerEventType | str,
        limit: int | None = None,
    ) -> list[LedgerEvent]:
        stmt = (
            select(LedgerEventModel)
            .where(
                LedgerEventModel.event_type == _type_value(event_type),
                LedgerEventModel.processed.is_(False),
            )
            .order_by(LedgerEventModel.recorded_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [row.to_dto() for row in self._session.execute(stmt).scalars()]

    def _load(self, event_id: UUID | str) -> LedgerEventModel:
        model = self._session.get(LedgerEventModel, as_uuid(event_id))
        if model is None:
            raise LedgerEventNotFoundError(str(event_id))
        return model

    def get(self, event_id: UUID | str) -> LedgerEvent:
        return self._load(event_id).to_dto()

    def mark_processed(self, event_id: UUID | str) -> bool:
        """Mark an event processed. Returns False if it already was."""
        model = self._load(event_id)
        if model.processed:
            logger.debug("ledger_event_already_processed", extra={"ledger_event_id": str(event_id)})
            return False
        model.processed = True
        model.processed_at = self._clock.now()
        self._session.flush()
        logger.info(
            "ledger_event_processed",
            extra={"ledger_event_id": str(event_id), "event_type": model.event_type},
        )
        return True

    def pending_counts(self) -> dict[str, int]:
        """Unprocessed event counts per type."""
        stmt = (
            select(LedgerEventModel.event_type, func.count())
            .where(LedgerEventModel.processed.is_(False))
            .group_by(LedgerEventModel.event_type)
        )
        return {event_type: count for event_type, count in self._session.execute(stmt)}
