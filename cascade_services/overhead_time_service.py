"""
cascade_services.overhead_time_service -- effective time and cost per minute.

Responsibility:
    Keep every overhead cost period's effective production minutes and
    ``cost_per_minute`` in step with the work sessions recorded inside its
    window, and announce recomputed periods to the factory cost stage.

Architecture position:
    Services. Reads sessions through ProductionSelector, merges them with
    ``cascade_engines.effective_time`` and appends
    ``overhead_period_update``. The overhead pool stage reuses ``refresh``
    after it sets a period's amount.

Invariants enforced:
    - Only periods whose window overlaps the union of the session's before
      and after ranges are recomputed on a session change.
    - Diagnostics are written whenever they differ; the rate fields
      (amount, effective minutes, cost per minute) go through the change
      gate.
    - Every recomputed period is announced; the per-task split of minutes
      can move while the period totals do not.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cascade_config.schema import CascadeConfig
from cascade_engines.change_gate import OVERHEAD_RATE_FIELDS, ChangeDecision, compare, read_fields
from cascade_engines.effective_time import (
    WorkInterval,
    calculate_effective_time,
    cost_per_minute,
)
from cascade_kernel.domain.clock import Clock, SystemClock
from cascade_kernel.domain.types import LedgerEventType
from cascade_kernel.logging_config import get_logger
from cascade_kernel.models.overhead import OverheadCostPeriodModel
from cascade_kernel.selectors.overhead import OverheadSelector
from cascade_kernel.selectors.production import ProductionSelector
from cascade_kernel.utils.chunking import as_uuids
from cascade_services.event_ledger import EventLedger

logger = get_logger("services.overhead_time")

DIAGNOSTIC_FIELDS = (
    "effective_hours",
    "sessions_count",
    "merged_periods_count",
    "duplicates_eliminated",
    "clipped_periods",
    "excluded_sessions_count",
)


@dataclass(frozen=True)
class PeriodRefresh:
    period_id: str
    decision: ChangeDecision
    effective_minutes: Decimal
    cost_per_minute: Decimal


@dataclass(frozen=True)
class OverheadRunResult:
    period_ids: tuple[str, ...]
    changed_period_ids: tuple[str, ...]
    event_id: UUID | None = None


def _as_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def session_range(
    before: Mapping[str, Any] | None, after: Mapping[str, Any] | None,
) -> tuple[datetime, datetime] | None:
    """Union of a session's before and after ranges, or None when neither has one."""
    moments = []
    for snapshot in (before, after):
        if not snapshot:
            continue
        for key in ("start_time", "end_time"):
            moment = _as_datetime(snapshot.get(key))
            if moment is not None:
                moments.append(moment)
    if not moments:
        return None
    return min(moments), max(moments)


class OverheadTimeService:
    def __init__(
        self,
        session: Session,
        ledger: EventLedger,
        config: CascadeConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._ledger = ledger
        self._config = config or CascadeConfig()
        self._clock = clock or SystemClock()
        self._overhead = OverheadSelector(session, self._config.in_query_limit)
        self._production = ProductionSelector(session, self._config.in_query_limit)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle_session_change(
        self,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
        source_id: str | None = None,
    ) -> OverheadRunResult:
        window = session_range(before, after)
        if window is None:
            logger.debug("work_session_change_without_times")
            return OverheadRunResult((), ())
        periods = self._overhead.periods_overlapping(*window)
        logger.info(
            "work_session_changed",
            extra={"range_start": window[0], "range_end": window[1], "periods": len(periods)},
        )
        return self._recalculate(
            periods, source_type="work_session", source_id=source_id,
        )

    def recalculate_period(self, period_id: UUID | str) -> OverheadRunResult:
        return self.recalculate_periods([period_id])

    def recalculate_periods(self, period_ids: Iterable[UUID | str]) -> OverheadRunResult:
        ids = as_uuids(period_ids)
        found = self._overhead.periods_by_id(ids)
        for period_id in ids:
            if period_id not in found:
                logger.warning("overhead_period_not_found", extra={"period_id": str(period_id)})
        return self._recalculate(
            [found[period_id] for period_id in ids if period_id in found],
            source_type="manual",
        )

    def recalculate_all(self) -> OverheadRunResult:
        return self._recalculate(
            self._overhead.all_periods(), source_type="manual",
        )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def refresh(
        self, period: OverheadCostPeriodModel, amount: Decimal | None = None,
    ) -> PeriodRefresh:
        """Recompute one period, optionally with a new amount, and write it if anything moved."""
        sessions = self._production.sessions_overlapping(period.start_date, period.end_date)
        result = calculate_effective_time(
            [WorkInterval(str(s.task_id), s.start_time, s.end_time) for s in sessions],
            period.start_date,
            period.end_date,
            tuple(period.excluded_task_ids or ()),
        )
        new_amount = period.amount if amount is None else amount
        rate = cost_per_minute(new_amount, result.total_minutes)
        decision = compare(
            read_fields(period, OVERHEAD_RATE_FIELDS),
            {"amount": new_amount, "effective_minutes": result.total_minutes, "cost_per_minute": rate},
            OVERHEAD_RATE_FIELDS,
            self._config.change_tolerance,
        )

        diagnostics = result.diagnostics()
        diagnostics_moved = any(
            getattr(period, name) != diagnostics[name] for name in DIAGNOSTIC_FIELDS
        )
        if decision.changed or diagnostics_moved or period.last_calculated_at is None:
            period.amount = new_amount
            period.cost_per_minute = rate
            for name, value in diagnostics.items():
                setattr(period, name, value)
            period.last_calculated_at = self._clock.now()
            self._session.flush()
            logger.info(
                "overhead_period_recalculated",
                extra={
                    "period_id": str(period.id),
                    "period_name": period.name,
                    "effective_minutes": result.total_minutes,
                    "cost_per_minute": rate,
                    "duplicates_eliminated": result.duplicates_eliminated,
                    "rate_changed": decision.changed,
                },
            )
        return PeriodRefresh(str(period.id), decision, result.total_minutes, rate)

    def announce(
        self,
        period_ids: Sequence[str],
        source_type: str | None = None,
        source_id: str | None = None,
    ) -> UUID | None:
        if not period_ids:
            return None
        return self._ledger.append(
            LedgerEventType.OVERHEAD_PERIOD_UPDATE,
            {"period_ids": list(period_ids)},
            source_type=source_type,
            source_id=source_id,
        )

    def _recalculate(
        self,
        periods: Sequence[OverheadCostPeriodModel],
        source_type: str | None = None,
        source_id: str | None = None,
    ) -> OverheadRunResult:
        refreshed = [self.refresh(period) for period in periods]
        changed = [r.period_id for r in refreshed if r.decision.changed]
        event_id = self.announce([r.period_id for r in refreshed], source_type, source_id)
        return OverheadRunResult(
            period_ids=tuple(r.period_id for r in refreshed),
            changed_period_ids=tuple(changed),
            event_id=event_id,
        )
