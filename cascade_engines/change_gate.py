"""
Module: cascade_engines.change_gate
Responsibility:
    Decide whether a recomputed set of derived values differs enough from
    what is stored to justify a write and a follow-on ledger event.

Architecture position:
    Engines -- pure. Every stage service calls ``compare`` before writing.

Invariants enforced:
    - Every listed field is compared independently; totals and per-unit
      values are separate fields because a unit value can move when its
      quantity denominator moves.
    - ``changed`` is ``max |new - old| > tolerance`` (strictly greater).
      A delta exactly equal to the tolerance is no change.
    - A missing or None stored value compares as 0, so a first
      computation of a non-zero value always writes.

Usage:
    decision = compare(task_fields(task), result.cost_fields(),
                       TASK_COST_FIELDS, config.change_tolerance)
    if decision.changed:
        ...
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from cascade_kernel.domain.precision import ZERO, sub, to_decimal

DEFAULT_TOLERANCE = Decimal("0.005")

TASK_COST_FIELDS: tuple[str, ...] = (
    "total_material_cost",
    "unit_material_cost",
    "total_full_production_cost",
    "unit_full_production_cost",
)

BATCH_PRICE_FIELDS: tuple[str, ...] = (
    "unit_price",
    "base_unit_price",
    "additional_cost_per_unit",
)

FACTORY_COST_FIELDS: tuple[str, ...] = (
    "factory_cost_total",
    "factory_cost_per_unit",
    "total_cost_with_factory",
    "unit_cost_with_factory",
)

OVERHEAD_RATE_FIELDS: tuple[str, ...] = (
    "amount",
    "effective_minutes",
    "cost_per_minute",
)


@dataclass(frozen=True)
class ChangeDecision:
    changed: bool
    max_delta: Decimal
    deltas: Mapping[str, Decimal]
    tolerance: Decimal

    @property
    def changed_fields(self) -> tuple[str, ...]:
        return tuple(name for name, delta in self.deltas.items() if delta > self.tolerance)


def compare(
    old: Mapping[str, Any],
    new: Mapping[str, Any],
    fields: Sequence[str],
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> ChangeDecision:
    """Compare stored against recomputed values across ``fields``."""
    deltas: dict[str, Decimal] = {}
    for name in fields:
        deltas[name] = abs(sub(new.get(name), old.get(name)))
    max_delta = max(deltas.values(), default=ZERO)
    tolerance = DEFAULT_TOLERANCE if tolerance is None else to_decimal(tolerance)
    return ChangeDecision(
        changed=max_delta > tolerance,
        max_delta=max_delta,
        deltas=deltas,
        tolerance=tolerance,
    )


def read_fields(document: Any, fields: Sequence[str]) -> dict[str, Any]:
    """Snapshot the named attributes of a model for comparison."""
    return {name: getattr(document, name, None) for name in fields}
