"""
Purchasing documents: materials, purchase orders and inventory batches.

Contract:
    MaterialModel carries the material's default unit price, the last
    fallback of every price resolution. PurchaseOrderModel is a source
    document: its line items and additional-cost items are written by
    purchasing workflows and only read by the cascade. InventoryBatchModel
    price fields are written exclusively by the batch price stage.

Invariants:
    - ``unit_price == base_unit_price + additional_cost_per_unit`` after
      every cascade write.
    - ``initial_quantity`` is the immutable averaging weight; ``quantity``
      is what remains on hand.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cascade_kernel.db.base import TrackedBase, UUIDString


class MaterialModel(TrackedBase):
    """Inventory item definition."""

    __tablename__ = "materials"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit: Mapped[str] = mapped_column(String(20), default="pcs", nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)


class PurchaseOrderModel(TrackedBase):
    """Purchase order with JSON line items.

    ``items`` entries: ``{id, material_id, name, quantity, unit_price, discount}``.
    ``additional_cost_items`` entries: ``{id, description, value, vat_rate}``.
    ``additional_costs`` is the legacy scalar used when no itemized
    additional costs exist.
    """

    __tablename__ = "purchase_orders"

    number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(30), default="draft", nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    items: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    additional_cost_items: Mapped[list[Any]] = mapped_column(
        JSON, default=list, nullable=False,
    )
    additional_costs: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "number": self.number,
            "status": self.status,
            "items": list(self.items or []),
            "additional_cost_items": list(self.additional_cost_items or []),
            "additional_costs": self.additional_costs,
        }


class InventoryBatchModel(TrackedBase):
    """A priced lot of one material traceable to one purchase line item."""

    __tablename__ = "inventory_batches"

    __table_args__ = (
        Index("ix_inventory_batches_material", "material_id"),
        Index("ix_inventory_batches_purchase_order", "purchase_order_id"),
    )

    material_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("materials.id"), nullable=False,
    )
    batch_number: Mapped[str] = mapped_column(String(100), nullable=False)
    purchase_order_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("purchase_orders.id"), nullable=True,
    )
    po_item_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    initial_quantity: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    base_unit_price: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    additional_cost_per_unit: Mapped[Decimal] = mapped_column(
        default=Decimal("0"), nullable=False,
    )
    last_price_update_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_price_update_at: Mapped[datetime | None] = mapped_column(nullable=True)
