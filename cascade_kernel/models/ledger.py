"""
Event ledger persistence.

Contract:
    One row per coordination fact between cascade stages. Rows are never
    deleted; ``processed`` flips to True once the consuming stage has
    committed its side effects. ``event_type`` and ``payload`` are
    immutable after insert (db/immutability.py).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cascade_kernel.db.base import TrackedBase
from cascade_kernel.domain.types import LedgerEvent


class LedgerEventModel(TrackedBase):
    __tablename__ = "ledger_events"

    __table_args__ = (
        Index("ix_ledger_events_type_processed", "event_type", "processed"),
        Index("ix_ledger_events_recorded_at", "recorded_at"),
    )

    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    processed: Mapped[bool] = mapped_column(default=False, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    source_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def to_dto(self) -> LedgerEvent:
        return LedgerEvent(
            event_id=self.id,
            event_type=self.event_type,
            payload=dict(self.payload or {}),
            processed=self.processed,
            recorded_at=self.recorded_at,
            processed_at=self.processed_at,
            source_type=self.source_type,
            source_id=self.source_id,
        )
