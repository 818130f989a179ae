"""
Overhead (factory) cost periods.

Contract:
    An OverheadCostPeriodModel spreads ``amount`` over the effective
    production minutes recorded inside ``[start_date, end_date]``.
    Manual periods are entered by users; accounting periods
    (``source == "accounting"``) are created and refreshed by the overhead
    pool stage and keyed by ``period_key`` ("YYYY-MM"). The effective-time
    diagnostics and ``cost_per_minute`` are derived fields written by the
    overhead time stage.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cascade_kernel.db.base import TrackedBase
from cascade_kernel.domain.types import OverheadSource


class OverheadCostPeriodModel(TrackedBase):
    __tablename__ = "overhead_cost_periods"

    __table_args__ = (
        Index("ix_overhead_periods_window", "start_date", "end_date"),
        Index("ix_overhead_periods_source_key", "source", "period_key"),
    )

    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    start_date: Mapped[datetime] = mapped_column(nullable=False)
    end_date: Mapped[datetime] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    excluded_task_ids: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    source: Mapped[str] = mapped_column(
        String(20), default=OverheadSource.MANUAL.value, nullable=False,
    )
    period_key: Mapped[str | None] = mapped_column(String(7), nullable=True)

    effective_minutes: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    effective_hours: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    cost_per_minute: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    sessions_count: Mapped[int] = mapped_column(default=0, nullable=False)
    merged_periods_count: Mapped[int] = mapped_column(default=0, nullable=False)
    duplicates_eliminated: Mapped[int] = mapped_column(default=0, nullable=False)
    clipped_periods: Mapped[int] = mapped_column(default=0, nullable=False)
    excluded_sessions_count: Mapped[int] = mapped_column(default=0, nullable=False)
    last_calculated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Accounting pool provenance (source == "accounting")
    pool_amount_local: Mapped[Decimal | None] = mapped_column(nullable=True)
    pool_currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    exchange_rate: Mapped[Decimal | None] = mapped_column(nullable=True)
    rate_date: Mapped[date | None] = mapped_column(nullable=True)
    pool_breakdown: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    pool_entries_count: Mapped[int] = mapped_column(default=0, nullable=False)
