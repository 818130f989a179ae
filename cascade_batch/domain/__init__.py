"""cascade_batch.domain -- frozen result types for dispatch and cascade runs."""

from cascade_batch.domain.types import (
    CascadeRunSummary,
    DispatchResult,
    EventOutcome,
    EventOutcomeStatus,
)

__all__ = [
    "CascadeRunSummary",
    "DispatchResult",
    "EventOutcome",
    "EventOutcomeStatus",
]
