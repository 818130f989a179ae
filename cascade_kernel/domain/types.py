"""
Shared value types for the cost cascade.

Contract:
    Status enums for documents the cascade reads, the ledger event type
    vocabulary, and the frozen DTOs handed across package boundaries
    (ledger events, document-change notifications).
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID


class ReservationStatus(str, Enum):
    """Lifecycle of a batch or purchase-order reservation."""

    PENDING = "pending"
    DELIVERED = "delivered"
    CONVERTED = "converted"
    CANCELLED = "cancelled"

    @classmethod
    def live(cls) -> frozenset[str]:
        """Statuses whose reservations still claim quantity."""
        return frozenset({cls.PENDING.value, cls.DELIVERED.value})


class JournalEntryStatus(str, Enum):
    DRAFT = "draft"
    POSTED = "posted"
    REVERSED = "reversed"


class OverheadSource(str, Enum):
    """Where an overhead cost period's amount comes from."""

    MANUAL = "manual"
    ACCOUNTING = "accounting"


class LedgerEventType(str, Enum):
    """Coordination facts appended between cascade stages.

    Each value names the stage that consumes it:
        batch_price_update      -> task cost stage   {batch_ids}
        overhead_period_update  -> factory cost stage {period_ids}
        task_cost_update        -> order value stage {task_ids}
    """

    BATCH_PRICE_UPDATE = "batch_price_update"
    OVERHEAD_PERIOD_UPDATE = "overhead_period_update"
    TASK_COST_UPDATE = "task_cost_update"


@dataclass(frozen=True)
class LedgerEvent:
    """Immutable view of one ledger entry."""

    event_id: UUID
    event_type: str
    payload: Mapping[str, Any]
    processed: bool
    recorded_at: datetime
    processed_at: datetime | None = None
    source_type: str | None = None
    source_id: str | None = None

    def ids(self, key: str) -> tuple[str, ...]:
        """Payload id list under ``key`` as strings, duplicates removed, order kept."""
        seen: dict[str, None] = {}
        for value in self.payload.get(key) or ():
            seen.setdefault(str(value), None)
        return tuple(seen)


@dataclass(frozen=True)
class DocumentChange:
    """A change notification for one source document.

    ``before`` is None for a create and ``after`` is None for a delete.
    Both are plain field snapshots (see ``snapshot()`` on the models).
    """

    collection: str
    document_id: str
    before: Mapping[str, Any] | None = None
    after: Mapping[str, Any] | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_create(self) -> bool:
        return self.before is None and self.after is not None

    @property
    def is_delete(self) -> bool:
        return self.before is not None and self.after is None
