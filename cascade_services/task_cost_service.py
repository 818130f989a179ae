"""
cascade_services.task_cost_service -- stage 2 of the cost cascade.

Responsibility:
    Recompute the material and full production cost of every task that
    references a repriced batch, and of tasks named explicitly by an
    administrative re-run.

Architecture position:
    Services. Gathers a task's current inputs (requirements, live
    reservations, consumption records, batch prices, material defaults,
    batch history), prices them with
    ``cascade_engines.price_allocation.calculate_task_costs`` and gates
    the write with ``change_gate``.

Invariants enforced:
    - Full recomputation from current state; never a delta on stored totals.
    - Tasks whose cost fields stay within tolerance are not written.
    - The ``task_cost_update`` event lists only tasks that were written.
    - Tasks with ``disable_automatic_cost_updates`` are never touched.
    - ``total_cost_with_factory`` is refreshed with the new full cost so it
      always equals ``total_full_production_cost + factory_cost_total``.

Failure modes:
    - Missing task: logged and skipped.
    - Materials with no batch history are priced at 0, flagged in
      ``estimated_cost_details`` and reported to the alert recipients.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cascade_config.schema import CascadeConfig
from cascade_engines.change_gate import TASK_COST_FIELDS, compare, read_fields
from cascade_engines.price_allocation import (
    BatchPricePoint,
    BatchReservationInput,
    ConsumptionInput,
    MaterialCostInput,
    PoReservationInput,
    TaskCostInput,
    TaskCostResult,
    calculate_task_costs,
)
from cascade_kernel.db.writer import BatchedWriter
from cascade_kernel.domain.clock import Clock, SystemClock
from cascade_kernel.domain.precision import add, div, to_decimal
from cascade_kernel.domain.types import LedgerEventType
from cascade_kernel.logging_config import get_logger
from cascade_kernel.models.production import ProductionTaskModel
from cascade_kernel.models.purchasing import InventoryBatchModel, MaterialModel
from cascade_kernel.selectors.inventory import InventorySelector
from cascade_kernel.selectors.production import ProductionSelector
from cascade_kernel.utils.chunking import as_uuid, as_uuids, unique
from cascade_services.event_ledger import EventLedger
from cascade_services.notifications import Alert, AlertSeverity, Notifier, notify_safely

logger = get_logger("services.task_cost")


@dataclass(frozen=True)
class TaskCostRunResult:
    candidate_task_ids: tuple[str, ...]
    changed_task_ids: tuple[str, ...]
    skipped_task_ids: tuple[str, ...] = ()
    missing_task_ids: tuple[str, ...] = ()
    event_id: UUID | None = None


@dataclass
class _TaskInputs:
    """Everything loaded for one pass, keyed for per-task assembly."""

    batch_reservations: dict
    po_reservations: dict
    consumptions: dict
    batches: dict[UUID, InventoryBatchModel]
    materials: dict[UUID, MaterialModel]
    history: dict[UUID, list[InventoryBatchModel]]


def _optional_uuid(value: Any) -> UUID | None:
    if value in (None, ""):
        return None
    try:
        return as_uuid(value)
    except ValueError:
        return None


def _batch_price(inputs: "_TaskInputs", batch_id: UUID | None):
    batch = inputs.batches.get(batch_id) if batch_id is not None else None
    return batch.unit_price if batch is not None else None


def _requirements(task: ProductionTaskModel) -> list[Mapping[str, Any]]:
    """Planned material entries, first occurrence per material."""
    seen: set[str] = set()
    entries = []
    for entry in task.materials or []:
        material_id = entry.get("material_id")
        if material_id in (None, "") or str(material_id) in seen:
            continue
        seen.add(str(material_id))
        entries.append(entry)
    return entries


class TaskCostService:
    def __init__(
        self,
        session: Session,
        ledger: EventLedger,
        config: CascadeConfig | None = None,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
    ):
        self._session = session
        self._ledger = ledger
        self._config = config or CascadeConfig()
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._production = ProductionSelector(session, self._config.in_query_limit)
        self._inventory = InventorySelector(session, self._config.in_query_limit)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def recalculate_for_batches(
        self, batch_ids: Iterable[UUID | str], source_id: str | None = None,
    ) -> TaskCostRunResult:
        """Recompute every task holding a reservation on, or consumption from, the batches."""
        batch_ids = as_uuids(batch_ids)
        task_ids = self._production.task_ids_referencing_batches(batch_ids)
        logger.info(
            "tasks_found_for_batches",
            extra={"batch_count": len(batch_ids), "task_count": len(task_ids)},
        )
        return self.recalculate_tasks(
            task_ids, source_type="batch_price_update", source_id=source_id,
        )

    def recalculate_tasks(
        self,
        task_ids: Iterable[UUID | str],
        source_type: str = "manual",
        source_id: str | None = None,
    ) -> TaskCostRunResult:
        task_ids = as_uuids(task_ids)
        tasks = self._production.tasks_by_id(task_ids)

        missing = [str(task_id) for task_id in task_ids if task_id not in tasks]
        for task_id in missing:
            logger.warning("task_not_found", extra={"task_id": task_id})

        skipped = [
            str(task.id) for task in tasks.values() if task.disable_automatic_cost_updates
        ]
        for task_id in skipped:
            logger.info("task_cost_updates_disabled", extra={"task_id": task_id})

        active = [
            tasks[task_id] for task_id in task_ids
            if task_id in tasks and not tasks[task_id].disable_automatic_cost_updates
        ]
        inputs = self._load_inputs(active)

        now = self._clock.now()
        changed: list[str] = []
        with BatchedWriter(self._session, self._config.write_batch_limit) as writer:
            for task in active:
                result = calculate_task_costs(self._task_input(task, inputs))
                if self._apply(task, result, now):
                    writer.stage(task)
                    changed.append(str(task.id))
                    if result.unpriced_materials:
                        self._report_unpriced(task, result)

        event_id = None
        if changed:
            event_id = self._ledger.append(
                LedgerEventType.TASK_COST_UPDATE,
                {"task_ids": changed},
                source_type=source_type,
                source_id=source_id,
            )

        logger.info(
            "task_costs_recalculated",
            extra={
                "candidates": len(task_ids),
                "changed": len(changed),
                "skipped": len(skipped),
                "missing": len(missing),
            },
        )
        return TaskCostRunResult(
            candidate_task_ids=tuple(str(task_id) for task_id in task_ids),
            changed_task_ids=tuple(changed),
            skipped_task_ids=tuple(skipped),
            missing_task_ids=tuple(missing),
            event_id=event_id,
        )

    # ------------------------------------------------------------------
    # Input assembly
    # ------------------------------------------------------------------

    def _load_inputs(self, tasks: list[ProductionTaskModel]) -> _TaskInputs:
        task_ids = [task.id for task in tasks]
        batch_reservations = self._production.live_batch_reservations(task_ids)
        po_reservations = self._production.live_po_reservations(task_ids)
        consumptions = self._production.consumption_records(task_ids)

        batch_ids = [r.batch_id for rows in batch_reservations.values() for r in rows]
        batch_ids += [c.batch_id for rows in consumptions.values() for c in rows if c.batch_id]
        material_ids: list[UUID] = []
        unsignalled: list[UUID] = []
        for task in tasks:
            # Batch history is only needed where the task itself holds no
            # reservation or consumption for the material.
            signalled = {r.material_id for r in batch_reservations.get(task.id, [])}
            signalled |= {r.material_id for r in po_reservations.get(task.id, [])}
            signalled |= {c.material_id for c in consumptions.get(task.id, [])}
            for entry in _requirements(task):
                material_id = _optional_uuid(entry.get("material_id"))
                if material_id is None:
                    continue
                material_ids.append(material_id)
                if material_id not in signalled:
                    unsignalled.append(material_id)

        return _TaskInputs(
            batch_reservations=batch_reservations,
            po_reservations=po_reservations,
            consumptions=consumptions,
            batches=self._inventory.batches_by_id(batch_ids),
            materials=self._inventory.materials_by_id(unique(material_ids)),
            history=self._inventory.batches_for_materials(unique(unsignalled)),
        )

    def _task_input(self, task: ProductionTaskModel, inputs: _TaskInputs) -> TaskCostInput:
        usage = task.actual_material_usage or {}
        in_costs = task.material_in_costs or {}
        batch_reservations = inputs.batch_reservations.get(task.id, [])
        po_reservations = inputs.po_reservations.get(task.id, [])
        consumptions = inputs.consumptions.get(task.id, [])

        materials = []
        for entry in _requirements(task):
            key = str(entry["material_id"])
            material_id = _optional_uuid(key)
            material = inputs.materials.get(material_id) if material_id else None
            default_price = material.unit_price if material is not None else entry.get("unit_price")

            materials.append(MaterialCostInput(
                material_id=key,
                name=entry.get("name") or (material.name if material is not None else key),
                required_quantity=to_decimal(usage.get(key, entry.get("quantity"))),
                default_unit_price=to_decimal(default_price),
                include_in_costs=in_costs.get(key) is not False,
                consumptions=tuple(
                    ConsumptionInput(
                        quantity=to_decimal(record.quantity),
                        recorded_unit_price=record.unit_price,
                        current_batch_price=_batch_price(inputs, record.batch_id),
                        include_in_costs=record.include_in_costs,
                    )
                    for record in consumptions
                    if record.material_id == material_id
                ),
                batch_reservations=tuple(
                    BatchReservationInput(
                        batch_id=str(reservation.batch_id),
                        reserved_quantity=reservation.reserved_quantity,
                        converted_quantity=reservation.converted_quantity,
                        current_batch_price=_batch_price(inputs, reservation.batch_id),
                        cached_unit_price=reservation.unit_price,
                    )
                    for reservation in batch_reservations
                    if reservation.material_id == material_id
                ),
                po_reservations=tuple(
                    PoReservationInput(
                        reservation_id=str(reservation.id),
                        reserved_quantity=reservation.reserved_quantity,
                        converted_quantity=reservation.converted_quantity,
                        unit_price=reservation.unit_price,
                        po_number=reservation.po_number,
                    )
                    for reservation in po_reservations
                    if reservation.material_id == material_id
                ),
                batch_history=tuple(
                    BatchPricePoint(batch.unit_price, batch.initial_quantity)
                    for batch in inputs.history.get(material_id, [])
                ),
            ))

        return TaskCostInput(
            task_id=str(task.id),
            quantity=to_decimal(task.quantity),
            completed_quantity=to_decimal(task.completed_quantity),
            processing_cost_per_unit=to_decimal(task.processing_cost_per_unit),
            materials=tuple(materials),
        )

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def _apply(self, task: ProductionTaskModel, result: TaskCostResult, now) -> bool:
        decision = compare(
            read_fields(task, TASK_COST_FIELDS),
            result.cost_fields(),
            TASK_COST_FIELDS,
            self._config.change_tolerance,
        )
        if not decision.changed:
            logger.debug(
                "task_cost_unchanged",
                extra={"task_id": str(task.id), "max_delta": decision.max_delta},
            )
            return False

        previous_total = task.total_material_cost
        for field_name, value in result.cost_fields().items():
            setattr(task, field_name, value)
        task.estimated_cost_details = result.estimated_cost_details
        task.costs_calculated_at = now
        task.total_cost_with_factory = add(
            result.total_full_production_cost, task.factory_cost_total,
        )
        task.unit_cost_with_factory = div(task.total_cost_with_factory, result.task_quantity)

        logger.info(
            "task_cost_written",
            extra={
                "task_id": str(task.id),
                "mo_number": task.mo_number,
                "previous_total_material_cost": previous_total,
                "total_material_cost": result.total_material_cost,
                "total_full_production_cost": result.total_full_production_cost,
                "changed_fields": list(decision.changed_fields),
            },
        )
        return True

    def _report_unpriced(self, task: ProductionTaskModel, result: TaskCostResult) -> None:
        names = result.unpriced_materials
        logger.warning(
            "materials_without_batches",
            extra={"task_id": str(task.id), "materials": list(names)},
        )
        notify_safely(self._notifier, Alert(
            user_ids=self._config.alert_user_ids,
            title="Estimated cost without purchase history",
            message=(
                f"Task {task.mo_number}: no batch has ever been recorded for "
                f"{', '.join(names)}; these materials were costed at 0."
            ),
            severity=AlertSeverity.WARNING,
            metadata={"task_id": str(task.id), "materials": list(names)},
        ))
