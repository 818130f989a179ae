"""
Module: cascade_engines.price_allocation
Responsibility:
    Turn a production task's material requirements into two cost totals,
    the confirmed-plus-estimated "material cost" and the "full production
    cost", choosing one unit price per material from overlapping price
    signals (consumption records, batch reservations, purchase-order
    reservations, purchase history).

Architecture position:
    Engines -- pure calculation layer, zero I/O. The task cost stage
    gathers the inputs from the document store and calls
    ``calculate_task_costs``.

Price resolution (per material):
    1. ``remaining = max(0, required - consumed)``.
    2. Consumed quantity is priced per consumption record:
       current batch price -> price frozen at consumption -> material default.
    3. Remaining quantity, when the material has at least one live
       reservation or consumption record, is priced at the weighted
       average of its live reservations:
         batch reservation  -> current batch price -> cached reservation
                               price -> material default,
                               weight = reserved - converted
         PO reservation     -> recorded unit price,
                               weight = max(0, reserved - converted)
       A reservation counts only with positive weight and positive price.
       Zero total weight falls back to the material default price.
    4. Remaining quantity of a material with no reservation and no
       consumption is *estimated* from every batch ever recorded for it:
       sum(unit_price * initial_quantity) / sum(initial_quantity) over
       batches with both positive, else 0. Never a list price.
    5. ``include_in_costs`` (task-level per material, overridable per
       consumption record) gates the material-cost total only; every
       component always reaches the full-cost total.
    6. ``processing_cost_per_unit * completed_quantity`` is added to both
       totals once, after the materials are summed.

Invariants enforced:
    - All arithmetic goes through cascade_kernel.domain.precision.
    - Missing prices resolve to 0; nothing here raises on missing data.
    - A material with nothing consumed and nothing remaining produces no
      line at all.

Failure modes:
    None. Bad numeric input degrades to 0 via ``to_decimal``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from cascade_engines.tracer import traced_engine
from cascade_kernel.domain.precision import (
    ZERO,
    add,
    div,
    mul,
    round4,
    sub,
    to_decimal,
    total,
)


class PriceSource(str, Enum):
    """Where a material's remaining-quantity unit price came from."""

    RESERVATIONS = "reservations"
    MATERIAL_DEFAULT = "material-default"
    BATCH_WEIGHTED_AVERAGE = "batch-weighted-average"
    NO_PRICED_BATCHES = "no-priced-batches"
    NO_BATCHES = "no-batches"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchPricePoint:
    """One historical batch of a material, used only for estimates."""

    unit_price: Decimal
    initial_quantity: Decimal


@dataclass(frozen=True)
class ConsumptionInput:
    """A consumption record with its batch's current price already resolved.

    ``current_batch_price`` is None when the record names no batch or the
    batch no longer exists.
    """

    quantity: Decimal
    recorded_unit_price: Decimal | None = None
    current_batch_price: Decimal | None = None
    include_in_costs: bool | None = None


@dataclass(frozen=True)
class BatchReservationInput:
    batch_id: str
    reserved_quantity: Decimal
    converted_quantity: Decimal = ZERO
    current_batch_price: Decimal | None = None
    cached_unit_price: Decimal | None = None


@dataclass(frozen=True)
class PoReservationInput:
    reservation_id: str
    reserved_quantity: Decimal
    converted_quantity: Decimal
    unit_price: Decimal
    po_number: str | None = None


@dataclass(frozen=True)
class MaterialCostInput:
    """Everything known about one material requirement of one task.

    Reservation tuples must already be restricted to live reservations.
    ``batch_history`` is consulted only when the material has no
    reservation and no consumption.
    """

    material_id: str
    name: str
    required_quantity: Decimal
    default_unit_price: Decimal = ZERO
    include_in_costs: bool = True
    consumptions: tuple[ConsumptionInput, ...] = ()
    batch_reservations: tuple[BatchReservationInput, ...] = ()
    po_reservations: tuple[PoReservationInput, ...] = ()
    batch_history: tuple[BatchPricePoint, ...] = ()

    @property
    def has_price_signal(self) -> bool:
        return bool(self.consumptions or self.batch_reservations or self.po_reservations)


@dataclass(frozen=True)
class TaskCostInput:
    task_id: str
    quantity: Decimal
    completed_quantity: Decimal = ZERO
    processing_cost_per_unit: Decimal = ZERO
    materials: tuple[MaterialCostInput, ...] = ()


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BatchEstimate:
    unit_price: Decimal
    batch_count: int
    price_source: PriceSource


@dataclass(frozen=True)
class EstimatedCost:
    """Provenance of a cost that rests on purchase history, not on a claim."""

    material_name: str
    quantity: Decimal
    unit_price: Decimal
    cost: Decimal
    price_source: PriceSource
    batch_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "material_name": self.material_name,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "cost": str(self.cost),
            "price_source": self.price_source.value,
            "batch_count": self.batch_count,
            "is_estimated": True,
        }


@dataclass(frozen=True)
class MaterialCostLine:
    material_id: str
    name: str
    required_quantity: Decimal
    consumed_quantity: Decimal
    remaining_quantity: Decimal
    consumed_cost: Decimal
    remaining_unit_price: Decimal
    remaining_cost: Decimal
    price_source: PriceSource | None
    material_cost: Decimal
    full_cost: Decimal
    estimate: EstimatedCost | None = None


@dataclass(frozen=True)
class TaskCostResult:
    task_id: str
    total_material_cost: Decimal
    total_full_production_cost: Decimal
    task_quantity: Decimal
    unit_material_cost: Decimal
    unit_full_production_cost: Decimal
    processing_cost: Decimal
    lines: tuple[MaterialCostLine, ...] = field(default_factory=tuple)

    @property
    def estimated_cost_details(self) -> dict[str, dict[str, Any]] | None:
        details = {
            line.material_id: line.estimate.to_dict()
            for line in self.lines
            if line.estimate is not None
        }
        return details or None

    @property
    def unpriced_materials(self) -> tuple[str, ...]:
        """Names of estimated materials with no purchase history at all."""
        return tuple(
            line.name
            for line in self.lines
            if line.estimate is not None
            and line.estimate.price_source == PriceSource.NO_BATCHES
        )

    def cost_fields(self) -> dict[str, Decimal]:
        return {
            "total_material_cost": self.total_material_cost,
            "unit_material_cost": self.unit_material_cost,
            "total_full_production_cost": self.total_full_production_cost,
            "unit_full_production_cost": self.unit_full_production_cost,
        }


# ---------------------------------------------------------------------------
# Price resolution
# ---------------------------------------------------------------------------


def _first_positive(*candidates: Any) -> Decimal:
    for candidate in candidates:
        value = to_decimal(candidate)
        if value > 0:
            return round4(value)
    return ZERO


def estimate_price_from_batches(batches: Sequence[BatchPricePoint]) -> BatchEstimate:
    """Quantity-weighted average unit price over a material's batch history."""
    if not batches:
        return BatchEstimate(ZERO, 0, PriceSource.NO_BATCHES)

    weighted = ZERO
    weight = ZERO
    for batch in batches:
        price = to_decimal(batch.unit_price)
        quantity = to_decimal(batch.initial_quantity)
        if price > 0 and quantity > 0:
            weighted = add(weighted, mul(price, quantity))
            weight = add(weight, quantity)

    if weight == 0:
        return BatchEstimate(ZERO, len(batches), PriceSource.NO_PRICED_BATCHES)
    return BatchEstimate(
        div(weighted, weight), len(batches), PriceSource.BATCH_WEIGHTED_AVERAGE,
    )


def consumption_unit_price(record: ConsumptionInput, default_unit_price: Decimal) -> Decimal:
    return _first_positive(
        record.current_batch_price, record.recorded_unit_price, default_unit_price,
    )


def reservation_unit_price(material: MaterialCostInput) -> tuple[Decimal, PriceSource]:
    """Weighted average over live reservations, else the material default."""
    weighted = ZERO
    weight = ZERO

    for reservation in material.batch_reservations:
        quantity = sub(reservation.reserved_quantity, reservation.converted_quantity)
        price = _first_positive(
            reservation.current_batch_price,
            reservation.cached_unit_price,
            material.default_unit_price,
        )
        if quantity > 0 and price > 0:
            weighted = add(weighted, mul(price, quantity))
            weight = add(weight, quantity)

    for reservation in material.po_reservations:
        quantity = max(ZERO, sub(reservation.reserved_quantity, reservation.converted_quantity))
        price = round4(reservation.unit_price)
        if quantity > 0 and price > 0:
            weighted = add(weighted, mul(price, quantity))
            weight = add(weight, quantity)

    if weight == 0:
        return round4(material.default_unit_price), PriceSource.MATERIAL_DEFAULT
    return div(weighted, weight), PriceSource.RESERVATIONS


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------


def allocate_material_cost(material: MaterialCostInput) -> MaterialCostLine | None:
    """Price one material requirement. Returns None when it contributes nothing."""
    required = round4(material.required_quantity)
    consumed_quantity = total(c.quantity for c in material.consumptions)

    consumed_cost = ZERO
    consumed_material_cost = ZERO
    for record in material.consumptions:
        cost = mul(record.quantity, consumption_unit_price(record, material.default_unit_price))
        consumed_cost = add(consumed_cost, cost)
        include = material.include_in_costs if record.include_in_costs is None else record.include_in_costs
        if include:
            consumed_material_cost = add(consumed_material_cost, cost)

    remaining = max(ZERO, sub(required, consumed_quantity))
    if remaining <= 0 and consumed_quantity <= 0:
        return None

    unit_price = ZERO
    remaining_cost = ZERO
    source: PriceSource | None = None
    estimate: EstimatedCost | None = None

    if remaining > 0:
        if material.has_price_signal:
            unit_price, source = reservation_unit_price(material)
            remaining_cost = mul(remaining, unit_price)
        else:
            batch_estimate = estimate_price_from_batches(material.batch_history)
            unit_price, source = batch_estimate.unit_price, batch_estimate.price_source
            remaining_cost = mul(remaining, unit_price)
            estimate = EstimatedCost(
                material_name=material.name,
                quantity=remaining,
                unit_price=unit_price,
                cost=remaining_cost,
                price_source=source,
                batch_count=batch_estimate.batch_count,
            )

    material_cost = consumed_material_cost
    if material.include_in_costs:
        material_cost = add(material_cost, remaining_cost)

    return MaterialCostLine(
        material_id=material.material_id,
        name=material.name,
        required_quantity=required,
        consumed_quantity=consumed_quantity,
        remaining_quantity=remaining,
        consumed_cost=consumed_cost,
        remaining_unit_price=unit_price,
        remaining_cost=remaining_cost,
        price_source=source,
        material_cost=material_cost,
        full_cost=add(consumed_cost, remaining_cost),
        estimate=estimate,
    )


@traced_engine("price_allocation", "1.0", fingerprint_fields=("task",))
def calculate_task_costs(task: TaskCostInput) -> TaskCostResult:
    """Full cost recomputation for one task from its current inputs."""
    lines = tuple(
        line
        for line in (allocate_material_cost(m) for m in task.materials)
        if line is not None
    )

    processing_cost = mul(task.processing_cost_per_unit, task.completed_quantity)
    material_total = add(total(line.material_cost for line in lines), processing_cost)
    full_total = add(total(line.full_cost for line in lines), processing_cost)

    quantity = round4(task.quantity)
    if quantity <= 0:
        quantity = round4(1)

    return TaskCostResult(
        task_id=task.task_id,
        total_material_cost=material_total,
        total_full_production_cost=full_total,
        task_quantity=quantity,
        unit_material_cost=div(material_total, quantity),
        unit_full_production_cost=div(full_total, quantity),
        processing_cost=processing_cost,
        lines=lines,
    )
