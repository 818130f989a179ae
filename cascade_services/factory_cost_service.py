"""
cascade_services.factory_cost_service -- per-task share of overhead.

Responsibility:
    Spread each recomputed overhead period's cost over the tasks that ran
    inside it, in proportion to the effective minutes each task ran, and
    keep the factory-inclusive totals on every affected task current.

Architecture position:
    Services. Consumes ``overhead_period_update``; splits minutes with
    ``cascade_engines.effective_time.allocate_minutes_per_task`` and
    appends ``task_cost_update`` so changed tasks reach the order stage.

Invariants enforced:
    - factory_cost_total = minutes * period.cost_per_minute
    - total_cost_with_factory = total_full_production_cost + factory_cost_total
    - A task assigned to a period that no longer has minutes for it
      (excluded, or its sessions moved out) has its factory fields cleared.
    - Writes and the follow-on event are gated on FACTORY_COST_FIELDS;
      tasks with ``disable_automatic_cost_updates`` are left alone.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from cascade_config.schema import CascadeConfig
from cascade_engines.change_gate import FACTORY_COST_FIELDS, compare, read_fields
from cascade_engines.effective_time import WorkInterval, allocate_minutes_per_task
from cascade_kernel.db.writer import BatchedWriter
from cascade_kernel.domain.precision import ZERO, add, div, mul, to_decimal
from cascade_kernel.domain.types import LedgerEventType
from cascade_kernel.logging_config import get_logger
from cascade_kernel.models.overhead import OverheadCostPeriodModel
from cascade_kernel.models.production import ProductionTaskModel
from cascade_kernel.selectors.overhead import OverheadSelector
from cascade_kernel.selectors.production import ProductionSelector
from cascade_kernel.utils.chunking import as_uuid, as_uuids, unique
from cascade_services.event_ledger import EventLedger

logger = get_logger("services.factory_cost")


@dataclass(frozen=True)
class FactoryRunResult:
    period_ids: tuple[str, ...]
    changed_task_ids: tuple[str, ...]
    cleared_task_ids: tuple[str, ...] = ()
    event_id: UUID | None = None


def factory_fields(task: ProductionTaskModel, factory_total: Decimal) -> dict[str, Decimal]:
    quantity = to_decimal(task.quantity)
    if quantity <= 0:
        quantity = Decimal("1")
    with_factory = add(task.total_full_production_cost, factory_total)
    return {
        "factory_cost_total": factory_total,
        "factory_cost_per_unit": div(factory_total, quantity),
        "total_cost_with_factory": with_factory,
        "unit_cost_with_factory": div(with_factory, quantity),
    }


class FactoryCostService:
    def __init__(
        self,
        session: Session,
        ledger: EventLedger,
        config: CascadeConfig | None = None,
    ):
        self._session = session
        self._ledger = ledger
        self._config = config or CascadeConfig()
        self._overhead = OverheadSelector(session, self._config.in_query_limit)
        self._production = ProductionSelector(session, self._config.in_query_limit)

    def apply_periods(
        self, period_ids: Iterable[UUID | str], source_id: str | None = None,
    ) -> FactoryRunResult:
        ids = as_uuids(period_ids)
        periods = self._overhead.periods_by_id(ids)
        changed: list[str] = []
        cleared: list[str] = []

        with BatchedWriter(self._session, self._config.write_batch_limit) as writer:
            for period_id in ids:
                period = periods.get(period_id)
                if period is None:
                    logger.warning("overhead_period_not_found", extra={"period_id": str(period_id)})
                    continue
                for task, was_cleared in self._apply_period(period):
                    writer.stage(task)
                    changed.append(str(task.id))
                    if was_cleared:
                        cleared.append(str(task.id))

        changed = unique(changed)
        event_id = self._announce(changed, "overhead_period_update", source_id)
        logger.info(
            "factory_costs_applied",
            extra={"periods": len(ids), "changed": len(changed), "cleared": len(cleared)},
        )
        return FactoryRunResult(
            period_ids=tuple(str(period_id) for period_id in ids),
            changed_task_ids=tuple(changed),
            cleared_task_ids=tuple(cleared),
            event_id=event_id,
        )

    def clear_period(self, period_id: UUID | str) -> FactoryRunResult:
        """Remove a deleted period's cost from every task still assigned to it."""
        period_uuid = as_uuid(period_id)
        changed: list[str] = []
        with BatchedWriter(self._session, self._config.write_batch_limit) as writer:
            for task in self._production.tasks_assigned_to_period(period_uuid):
                if task.disable_automatic_cost_updates:
                    continue
                self._write(task, ZERO, ZERO, None)
                writer.stage(task)
                changed.append(str(task.id))

        event_id = self._announce(changed, "overhead_period_deleted", str(period_uuid))
        logger.info(
            "factory_costs_cleared",
            extra={"period_id": str(period_uuid), "tasks": len(changed)},
        )
        return FactoryRunResult((str(period_uuid),), tuple(changed), tuple(changed), event_id)

    def _apply_period(self, period: OverheadCostPeriodModel):
        sessions = self._production.sessions_overlapping(period.start_date, period.end_date)
        minutes = allocate_minutes_per_task(
            [WorkInterval(str(s.task_id), s.start_time, s.end_time) for s in sessions],
            period.start_date,
            period.end_date,
            tuple(period.excluded_task_ids or ()),
        )
        assigned = self._production.tasks_assigned_to_period(period.id)
        tasks = dict(self._production.tasks_by_id(minutes.keys()))
        for task in assigned:
            tasks.setdefault(task.id, task)

        rate = period.cost_per_minute
        for task in tasks.values():
            if task.disable_automatic_cost_updates:
                continue
            task_minutes = minutes.get(str(task.id))
            if task_minutes is None:
                if task.factory_cost_period_id != period.id:
                    continue
                if self._gate_and_write(task, ZERO, ZERO, None):
                    yield task, True
            elif self._gate_and_write(task, mul(task_minutes, rate), task_minutes, period.id):
                yield task, False

    def _gate_and_write(
        self, task: ProductionTaskModel, factory_total: Decimal, minutes: Decimal, period_id,
    ) -> bool:
        decision = compare(
            read_fields(task, FACTORY_COST_FIELDS),
            factory_fields(task, factory_total),
            FACTORY_COST_FIELDS,
            self._config.change_tolerance,
        )
        if not decision.changed and task.factory_cost_period_id == period_id:
            return False
        self._write(task, factory_total, minutes, period_id)
        return decision.changed

    def _write(self, task: ProductionTaskModel, factory_total: Decimal, minutes: Decimal, period_id) -> None:
        for name, value in factory_fields(task, factory_total).items():
            setattr(task, name, value)
        task.factory_cost_minutes = minutes
        task.factory_cost_period_id = period_id
        logger.info(
            "factory_cost_written",
            extra={
                "task_id": str(task.id),
                "period_id": str(period_id) if period_id else None,
                "minutes": minutes,
                "factory_cost_total": factory_total,
            },
        )

    def _announce(self, task_ids: list[str], source_type: str, source_id: str | None) -> UUID | None:
        if not task_ids:
            return None
        return self._ledger.append(
            LedgerEventType.TASK_COST_UPDATE,
            {"task_ids": task_ids},
            source_type=source_type,
            source_id=source_id,
        )
