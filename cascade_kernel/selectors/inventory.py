"""Materials, purchase orders and batches."""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy import select

from cascade_kernel.models.purchasing import (
    InventoryBatchModel,
    MaterialModel,
    PurchaseOrderModel,
)
from cascade_kernel.selectors.base import BaseSelector
from cascade_kernel.utils.chunking import as_uuid


class InventorySelector(BaseSelector):
    def purchase_order(self, po_id: UUID | str) -> PurchaseOrderModel | None:
        return self.session.get(PurchaseOrderModel, as_uuid(po_id))

    def batches_for_purchase_order(self, po_id: UUID | str) -> list[InventoryBatchModel]:
        stmt = (
            select(InventoryBatchModel)
            .where(InventoryBatchModel.purchase_order_id == as_uuid(po_id))
            .order_by(InventoryBatchModel.created_at, InventoryBatchModel.batch_number)
        )
        return list(self.session.execute(stmt).scalars())

    def batches_by_id(self, batch_ids: Iterable[UUID | str]) -> dict[UUID, InventoryBatchModel]:
        return self._by_ids(InventoryBatchModel, batch_ids)

    def batches_for_materials(
        self, material_ids: Iterable[UUID | str],
    ) -> dict[UUID, list[InventoryBatchModel]]:
        """Every batch ever recorded per material, active or exhausted."""
        grouped: dict[UUID, list[InventoryBatchModel]] = {}
        for batch in self._select_in(
            InventoryBatchModel, InventoryBatchModel.material_id, material_ids,
        ):
            grouped.setdefault(batch.material_id, []).append(batch)
        return grouped

    def materials_by_id(self, material_ids: Iterable[UUID | str]) -> dict[UUID, MaterialModel]:
        return self._by_ids(MaterialModel, material_ids)
