"""Tasks and everything that prices them: reservations, consumption, sessions."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable
from uuid import UUID

from sqlalchemy import String, cast, or_, select

from cascade_kernel.domain.types import ReservationStatus
from cascade_kernel.models.orders import CustomerOrderModel
from cascade_kernel.models.production import (
    BatchReservationModel,
    ConsumptionRecordModel,
    PoReservationModel,
    ProductionTaskModel,
    WorkSessionModel,
)
from cascade_kernel.selectors.base import BaseSelector
from cascade_kernel.utils.chunking import as_uuids, chunked, unique


def _group_by_task(rows) -> dict[UUID, list]:
    grouped: dict[UUID, list] = {}
    for row in rows:
        grouped.setdefault(row.task_id, []).append(row)
    return grouped


class ProductionSelector(BaseSelector):
    def tasks_by_id(self, task_ids: Iterable[UUID | str]) -> dict[UUID, ProductionTaskModel]:
        return self._by_ids(ProductionTaskModel, task_ids)

    def task_ids_referencing_batches(self, batch_ids: Iterable[UUID | str]) -> list[UUID]:
        """Tasks holding a reservation on, or a consumption record from, any batch."""
        batch_ids = list(batch_ids)
        reserved = self._select_in(
            BatchReservationModel, BatchReservationModel.batch_id, batch_ids,
        )
        consumed = self._select_in(
            ConsumptionRecordModel, ConsumptionRecordModel.batch_id, batch_ids,
        )
        return unique([r.task_id for r in reserved] + [c.task_id for c in consumed])

    def live_batch_reservations(
        self, task_ids: Iterable[UUID | str],
    ) -> dict[UUID, list[BatchReservationModel]]:
        return _group_by_task(self._select_in(
            BatchReservationModel,
            BatchReservationModel.task_id,
            task_ids,
            BatchReservationModel.status.in_(sorted(ReservationStatus.live())),
        ))

    def live_po_reservations(
        self, task_ids: Iterable[UUID | str],
    ) -> dict[UUID, list[PoReservationModel]]:
        return _group_by_task(self._select_in(
            PoReservationModel,
            PoReservationModel.task_id,
            task_ids,
            PoReservationModel.status.in_(sorted(ReservationStatus.live())),
        ))

    def consumption_records(
        self, task_ids: Iterable[UUID | str],
    ) -> dict[UUID, list[ConsumptionRecordModel]]:
        return _group_by_task(self._select_in(
            ConsumptionRecordModel, ConsumptionRecordModel.task_id, task_ids,
        ))

    def tasks_assigned_to_period(self, period_id: UUID) -> list[ProductionTaskModel]:
        stmt = select(ProductionTaskModel).where(
            ProductionTaskModel.factory_cost_period_id == period_id,
        )
        return list(self.session.execute(stmt).scalars())

    def sessions_overlapping(
        self, range_start: datetime, range_end: datetime,
    ) -> list[WorkSessionModel]:
        """Sessions with ``start <= range_end`` and ``end >= range_start``."""
        stmt = (
            select(WorkSessionModel)
            .where(
                WorkSessionModel.start_time.is_not(None),
                WorkSessionModel.end_time.is_not(None),
                WorkSessionModel.start_time <= range_end,
                WorkSessionModel.end_time >= range_start,
            )
            .order_by(WorkSessionModel.start_time)
        )
        return list(self.session.execute(stmt).scalars())

    def orders_by_id(self, order_ids: Iterable[UUID | str]) -> dict[UUID, CustomerOrderModel]:
        return self._by_ids(CustomerOrderModel, order_ids)

    def orders_referencing_tasks(
        self, task_ids: Iterable[UUID | str],
    ) -> dict[UUID, CustomerOrderModel]:
        """Orders with at least one line whose ``production_task_id`` is in ``task_ids``.

        Line items live in a JSON column, so the text match only narrows the
        candidates; each hit is confirmed against the parsed items.
        """
        wanted = {str(task_id) for task_id in as_uuids(task_ids)}
        items_text = cast(CustomerOrderModel.items, String)
        orders: dict[UUID, CustomerOrderModel] = {}
        for chunk in chunked(sorted(wanted), self.in_query_limit):
            stmt = select(CustomerOrderModel).where(
                or_(*(items_text.like(f"%{task_id}%") for task_id in chunk)),
            )
            for order in self.session.execute(stmt).scalars():
                if any(
                    str(item.get("production_task_id")) in wanted
                    for item in order.items or []
                ):
                    orders[order.id] = order
        return orders
