"""
cascade_batch.domain.types -- pure frozen dataclasses for cascade runs.

ZERO I/O. The dispatcher builds one EventOutcome per ledger event it
handles; the orchestrator folds DispatchResults into a CascadeRunSummary.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import UUID


class EventOutcomeStatus(str, Enum):
    PROCESSED = "processed"  # Stage committed, event marked processed
    FAILED = "failed"  # Stage raised, SAVEPOINT rolled back, event left pending


@dataclass(frozen=True)
class EventOutcome:
    event_id: UUID
    event_type: str
    status: EventOutcomeStatus
    duration_ms: int = 0
    detail: Mapping[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type,
            "status": self.status.value,
            "duration_ms": self.duration_ms,
            "detail": dict(self.detail),
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class DispatchResult:
    """Outcomes of one dispatch pass over one event type."""

    event_type: str
    outcomes: tuple[EventOutcome, ...] = ()

    @property
    def processed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == EventOutcomeStatus.PROCESSED)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == EventOutcomeStatus.FAILED)

    @property
    def failed_event_ids(self) -> frozenset[UUID]:
        return frozenset(
            o.event_id for o in self.outcomes if o.status == EventOutcomeStatus.FAILED
        )


@dataclass(frozen=True)
class CascadeRunSummary:
    """Result of running the cascade until nothing more can be processed.

    ``quiescent`` is False when the round limit stopped the run while
    stages were still producing events.
    """

    rounds: int
    quiescent: bool
    results: tuple[DispatchResult, ...] = ()
    pending: Mapping[str, int] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return sum(r.processed for r in self.results)

    @property
    def failed(self) -> int:
        return sum(r.failed for r in self.results)

    def to_dict(self) -> dict[str, Any]:
        processed_by_type: dict[str, int] = {}
        for result in self.results:
            processed_by_type[result.event_type] = (
                processed_by_type.get(result.event_type, 0) + result.processed
            )
        return {
            "rounds": self.rounds,
            "quiescent": self.quiescent,
            "processed": self.processed,
            "failed": self.failed,
            "processed_by_type": processed_by_type,
            "failures": [
                o.to_dict()
                for r in self.results
                for o in r.outcomes
                if o.status == EventOutcomeStatus.FAILED
            ],
            "pending": dict(self.pending),
        }
