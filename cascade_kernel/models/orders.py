"""
Customer orders.

Contract:
    ``items`` entries: ``{id, name, quantity, price, from_price_list,
    production_task_id, production_cost, full_production_cost,
    production_unit_cost, full_production_unit_cost, value}``.
    ``additional_cost_items`` entries: ``{id, description, value}``; a
    negative value is a discount. The cost fields on items and
    ``total_value`` are written only by the order value stage.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from cascade_kernel.db.base import TrackedBase


class CustomerOrderModel(TrackedBase):
    __tablename__ = "customer_orders"

    order_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    items: Mapped[list[Any]] = mapped_column(JSON, default=list, nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    additional_cost_items: Mapped[list[Any]] = mapped_column(
        JSON, default=list, nullable=False,
    )
    total_value: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    values_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)
