"""
Ledger-driven cascade stages.

Each stage turns one ledger event into a call on its stage service, built
on the dispatcher's session so the service's writes and its own follow-on
ledger append land inside the event's SAVEPOINT.

    batch_price_update     -> TaskCostStage     -> task_cost_update
    overhead_period_update -> FactoryCostStage  -> task_cost_update
    task_cost_update       -> OrderValueStage   (terminal)
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from cascade_batch.stages.base import StageContext, StageResult
from cascade_kernel.domain.types import LedgerEvent, LedgerEventType
from cascade_services.event_ledger import EventLedger
from cascade_services.factory_cost_service import FactoryCostService
from cascade_services.order_value_service import OrderValueService
from cascade_services.task_cost_service import TaskCostService


class TaskCostStage:
    def __init__(self, context: StageContext):
        self._context = context

    @property
    def event_type(self) -> str:
        return LedgerEventType.BATCH_PRICE_UPDATE.value

    @property
    def description(self) -> str:
        return "Recompute task costs for repriced batches"

    def handle(self, event: LedgerEvent, session: Session) -> StageResult:
        service = TaskCostService(
            session,
            EventLedger(session, self._context.clock),
            self._context.config,
            self._context.clock,
            self._context.notifier,
        )
        result = service.recalculate_for_batches(
            event.ids("batch_ids"), source_id=str(event.event_id),
        )
        return StageResult({
            "candidates": len(result.candidate_task_ids),
            "changed": len(result.changed_task_ids),
            "skipped": len(result.skipped_task_ids),
        })


class FactoryCostStage:
    def __init__(self, context: StageContext):
        self._context = context

    @property
    def event_type(self) -> str:
        return LedgerEventType.OVERHEAD_PERIOD_UPDATE.value

    @property
    def description(self) -> str:
        return "Spread recomputed overhead periods over task minutes"

    def handle(self, event: LedgerEvent, session: Session) -> StageResult:
        service = FactoryCostService(
            session, EventLedger(session, self._context.clock), self._context.config,
        )
        result = service.apply_periods(event.ids("period_ids"), source_id=str(event.event_id))
        return StageResult({
            "periods": len(result.period_ids),
            "changed": len(result.changed_task_ids),
            "cleared": len(result.cleared_task_ids),
        })


class OrderValueStage:
    def __init__(self, context: StageContext):
        self._context = context

    @property
    def event_type(self) -> str:
        return LedgerEventType.TASK_COST_UPDATE.value

    @property
    def description(self) -> str:
        return "Revalue customer orders for recosted tasks"

    def handle(self, event: LedgerEvent, session: Session) -> StageResult:
        service = OrderValueService(session, self._context.config, self._context.clock)
        result = service.recalculate_for_tasks(event.ids("task_ids"))
        return StageResult({
            "changed": len(result.changed_order_ids),
            "missing_tasks": len(result.missing_task_ids),
        })
