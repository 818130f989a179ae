"""
cascade_services.order_value_service -- terminal stage of the cost cascade.

Responsibility:
    Refresh the production-cost fields and value of every customer-order
    line backed by a recosted task, then recompute the order total.

Architecture position:
    Services. Reads tasks and orders through ProductionSelector and values
    lines with ``cascade_engines.order_valuation``. Emits no ledger event.

Invariants enforced:
    - An order is revalued when it is the task's own order or when any of
      its lines references the task, so one task may reprice several orders.
    - Lines backed by tasks outside the event keep their cost fields; their
      value is still recomputed so the total is consistent.
    - An order is written only when a line value or the total moves by more
      than the change tolerance.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cascade_config.schema import CascadeConfig
from cascade_engines.change_gate import compare
from cascade_engines.order_valuation import TaskCostSnapshot, order_total, revalue_item
from cascade_kernel.db.writer import BatchedWriter
from cascade_kernel.domain.clock import Clock, SystemClock
from cascade_kernel.logging_config import get_logger
from cascade_kernel.models.orders import CustomerOrderModel
from cascade_kernel.selectors.production import ProductionSelector
from cascade_kernel.utils.chunking import as_uuids, unique

logger = get_logger("services.order_value")

LINE_VALUE_FIELDS = (
    "production_cost",
    "full_production_cost",
    "production_unit_cost",
    "full_production_unit_cost",
    "value",
)


@dataclass(frozen=True)
class OrderRunResult:
    changed_order_ids: tuple[str, ...]
    missing_task_ids: tuple[str, ...] = ()
    missing_order_ids: tuple[str, ...] = ()


def _json_ready(item: dict[str, Any]) -> dict[str, Any]:
    return {key: str(value) if key in LINE_VALUE_FIELDS else value for key, value in item.items()}


class OrderValueService:
    def __init__(
        self,
        session: Session,
        config: CascadeConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._config = config or CascadeConfig()
        self._clock = clock or SystemClock()
        self._production = ProductionSelector(session, self._config.in_query_limit)

    def recalculate_for_tasks(self, task_ids: Iterable[UUID | str]) -> OrderRunResult:
        task_ids = as_uuids(task_ids)
        tasks = self._production.tasks_by_id(task_ids)
        missing_tasks = [str(task_id) for task_id in task_ids if task_id not in tasks]
        for task_id in missing_tasks:
            logger.warning("task_not_found", extra={"task_id": task_id})

        snapshots = {
            str(task.id): TaskCostSnapshot(
                task_id=str(task.id),
                total_material_cost=task.total_material_cost,
                factory_cost_total=task.factory_cost_total,
                total_cost_with_factory=task.total_cost_with_factory,
            )
            for task in tasks.values()
        }
        referencing = self._production.orders_referencing_tasks(task_ids)
        order_ids = unique(
            [task.order_id for task in tasks.values() if task.order_id is not None]
            + list(referencing)
        )
        orders = {**self._production.orders_by_id(order_ids), **referencing}
        missing_orders = [str(order_id) for order_id in order_ids if order_id not in orders]
        for order_id in missing_orders:
            logger.warning("order_not_found", extra={"order_id": order_id})

        changed: list[str] = []
        with BatchedWriter(self._session, self._config.write_batch_limit) as writer:
            for order_id in order_ids:
                order = orders.get(order_id)
                if order is not None and self._revalue(order, snapshots):
                    writer.stage(order)
                    changed.append(str(order.id))

        logger.info(
            "order_values_recalculated",
            extra={"tasks": len(task_ids), "orders": len(order_ids), "changed": len(changed)},
        )
        return OrderRunResult(
            changed_order_ids=tuple(changed),
            missing_task_ids=tuple(missing_tasks),
            missing_order_ids=tuple(missing_orders),
        )

    def _revalue(self, order: CustomerOrderModel, snapshots: dict[str, TaskCostSnapshot]) -> bool:
        old_items = list(order.items or [])
        new_items = [
            revalue_item(item, snapshots.get(str(item.get("production_task_id"))))
            for item in old_items
        ]
        new_total = order_total(new_items, order.shipping_cost, order.additional_cost_items or [])

        tolerance = self._config.change_tolerance
        item_changed = any(
            compare(old, new, LINE_VALUE_FIELDS, tolerance).changed
            for old, new in zip(old_items, new_items)
        )
        total_decision = compare(
            {"total_value": order.total_value}, {"total_value": new_total},
            ("total_value",), tolerance,
        )
        if not (item_changed or total_decision.changed):
            logger.debug("order_value_unchanged", extra={"order_id": str(order.id)})
            return False

        previous_total = order.total_value
        # JSON columns track reassignment only.
        order.items = [_json_ready(item) for item in new_items]
        order.total_value = new_total
        order.values_updated_at = self._clock.now()
        logger.info(
            "order_value_written",
            extra={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "previous_total_value": previous_total,
                "total_value": new_total,
            },
        )
        return True
