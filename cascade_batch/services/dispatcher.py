"""
LedgerDispatcher -- runs pending ledger events through their stage.

Contract:
    ``dispatch(event_type)`` consumes the unprocessed events of one type,
    oldest first, and hands each to the registered stage inside its own
    SAVEPOINT. Success marks the event processed inside the same
    SAVEPOINT; any exception rolls the SAVEPOINT back and leaves the event
    pending for a later retry.

Architecture: cascade_batch/services. Uses EventLedger and StageRegistry.

Invariants enforced:
    - A stage's writes, its follow-on ledger append and the processed mark
      commit together or not at all.
    - A failing event never blocks the other events of the pass.
    - Every event runs with its id, stage and source bound in LogContext.
"""

from __future__ import annotations

import time
from collections.abc import Collection
from uuid import UUID

from sqlalchemy.orm import Session

from cascade_batch.domain.types import DispatchResult, EventOutcome, EventOutcomeStatus
from cascade_batch.stages.base import CascadeStage, StageRegistry
from cascade_kernel.domain.clock import Clock, SystemClock
from cascade_kernel.domain.types import LedgerEvent, LedgerEventType
from cascade_kernel.logging_config import LogContext, get_logger
from cascade_services.event_ledger import EventLedger

logger = get_logger("batch.dispatcher")


class LedgerDispatcher:
    def __init__(
        self,
        session: Session,
        stage_registry: StageRegistry,
        clock: Clock | None = None,
        ledger: EventLedger | None = None,
    ):
        self._session = session
        self._registry = stage_registry
        self._clock = clock or SystemClock()
        self._ledger = ledger or EventLedger(session, self._clock)

    def dispatch(
        self,
        event_type: LedgerEventType | str,
        limit: int | None = None,
        skip_event_ids: Collection[UUID] = frozenset(),
    ) -> DispatchResult:
        """Process pending events of one type.

        Args:
            event_type: Ledger event type to consume.
            limit: Max events handled in this pass (None = all pending).
            skip_event_ids: Events already failed in the current run.
        """
        type_value = event_type.value if isinstance(event_type, LedgerEventType) else event_type
        stage = self._registry.get(type_value)

        fetch = None if limit is None else limit + len(skip_event_ids)
        events = [
            e for e in self._ledger.consume(type_value, fetch)
            if e.event_id not in skip_event_ids
        ]
        if limit is not None:
            events = events[:limit]

        outcomes = tuple(self._process(stage, event) for event in events)
        result = DispatchResult(event_type=type_value, outcomes=outcomes)
        if outcomes:
            logger.info(
                "ledger_dispatch_completed",
                extra={
                    "event_type": type_value,
                    "processed": result.processed,
                    "failed": result.failed,
                },
            )
        return result

    def _process(self, stage: CascadeStage, event: LedgerEvent) -> EventOutcome:
        started = time.monotonic()
        with LogContext.bind(
            event_id=str(event.event_id),
            stage=stage.event_type,
            source_type=event.source_type,
            source_id=event.source_id,
        ):
            savepoint = self._session.begin_nested()
            try:
                result = stage.handle(event, self._session)
                self._ledger.mark_processed(event.event_id)
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                duration = int((time.monotonic() - started) * 1000)
                error_code = getattr(exc, "code", "UNHANDLED_EXCEPTION")
                logger.exception(
                    "ledger_event_failed",
                    extra={"event_type": event.event_type, "error_code": error_code},
                )
                return EventOutcome(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    status=EventOutcomeStatus.FAILED,
                    duration_ms=duration,
                    error_code=error_code,
                    error_message=str(exc),
                )

            duration = int((time.monotonic() - started) * 1000)
            logger.info(
                "ledger_event_handled",
                extra={
                    "event_type": event.event_type,
                    "duration_ms": duration,
                    "detail": dict(result.detail),
                },
            )
            return EventOutcome(
                event_id=event.event_id,
                event_type=event.event_type,
                status=EventOutcomeStatus.PROCESSED,
                duration_ms=duration,
                detail=dict(result.detail),
            )
