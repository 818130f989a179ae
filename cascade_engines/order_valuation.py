"""
Module: cascade_engines.order_valuation
Responsibility:
    Recompute customer-order line values from the current costs of the
    production tasks behind them, and the order total from its lines.

Architecture position:
    Engines -- pure. The order value stage is the terminal cascade stage.

Formulas:
    production_cost      = task.total_material_cost + task.factory_cost_total
    full_production_cost = task.total_cost_with_factory
    line value           = quantity * price, plus production_cost unless
                           the line comes from a price list with a
                           positive price (its cost is already in price)
    order total          = sum(line values) + shipping
                           + sum(positive additional items)
                           - sum(|negative additional items|)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from cascade_kernel.domain.precision import ZERO, add, div, mul, sub, to_decimal, total


@dataclass(frozen=True)
class TaskCostSnapshot:
    task_id: str
    total_material_cost: Decimal
    factory_cost_total: Decimal
    total_cost_with_factory: Decimal

    @property
    def production_cost(self) -> Decimal:
        return add(self.total_material_cost, self.factory_cost_total)


def _cost_embedded_in_price(item: Mapping[str, Any]) -> bool:
    return bool(item.get("from_price_list")) and to_decimal(item.get("price")) > 0


def line_value(item: Mapping[str, Any]) -> Decimal:
    value = mul(item.get("quantity"), item.get("price"))
    if not _cost_embedded_in_price(item):
        value = add(value, item.get("production_cost"))
    return value


def revalue_item(item: Mapping[str, Any], task: TaskCostSnapshot | None) -> dict[str, Any]:
    """Copy of ``item`` with cost fields refreshed from ``task`` and ``value`` recomputed."""
    updated = dict(item)
    if task is not None:
        quantity = to_decimal(item.get("quantity"))
        production_cost = task.production_cost
        full_cost = task.total_cost_with_factory
        full_unit = div(full_cost, quantity)
        if not _cost_embedded_in_price(item):
            full_unit = add(full_unit, item.get("price"))
        updated.update(
            production_cost=production_cost,
            full_production_cost=full_cost,
            production_unit_cost=div(production_cost, quantity),
            full_production_unit_cost=full_unit,
        )
    updated["value"] = line_value(updated)
    return updated


def order_total(
    items: Iterable[Mapping[str, Any]],
    shipping_cost: Any,
    additional_cost_items: Iterable[Mapping[str, Any]] = (),
) -> Decimal:
    additions = ZERO
    discounts = ZERO
    for entry in additional_cost_items:
        value = to_decimal(entry.get("value"))
        if value > 0:
            additions = add(additions, value)
        elif value < 0:
            discounts = add(discounts, abs(value))
    subtotal = total(line_value(item) for item in items)
    return sub(add(add(subtotal, shipping_cost), additions), discounts)
