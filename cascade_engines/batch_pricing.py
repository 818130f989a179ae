"""
Module: cascade_engines.batch_pricing
Responsibility:
    Derive each inventory batch's unit price from the purchase order it
    was received against: the discounted line price plus a proportional
    share of the order's VAT-grossed additional costs.

Architecture position:
    Engines -- pure calculation layer. The batch price stage loads the
    purchase order and its batches and persists what this returns.

Formulas:
    additional_costs_gross = sum(value + value * vat_rate / 100) over
                             additional-cost items, else the scalar
                             ``additional_costs``
    weight(batch)          = initial_quantity, or quantity when the batch
                             has no initial quantity
    share(batch)           = gross * weight / sum(weight)
    additional_per_unit    = share / weight
    base_unit_price        = line.unit_price * (100 - line.discount) / 100
    unit_price             = base_unit_price + additional_per_unit

Matching (first hit wins):
    1. the line item whose id equals the batch's ``po_item_id``;
    2. a line item for the batch's material that no earlier batch in this
       pass has claimed;
    3. the first line item for the batch's material.
    Batches with no match are reported as unmatched and are not priced.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
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


class MatchStrategy(str, Enum):
    LINE_ITEM_ID = "line-item-id"
    MATERIAL_UNCLAIMED = "material-unclaimed"
    MATERIAL_FIRST = "material-first"


@dataclass(frozen=True)
class PoLineItem:
    item_id: str
    material_id: str | None
    unit_price: Decimal
    discount: Decimal = ZERO
    quantity: Decimal = ZERO

    @property
    def base_unit_price(self) -> Decimal:
        return div(mul(self.unit_price, sub(100, self.discount)), 100)


@dataclass(frozen=True)
class AdditionalCostItem:
    value: Decimal
    vat_rate: Decimal = ZERO

    @property
    def gross(self) -> Decimal:
        return add(self.value, div(mul(self.value, self.vat_rate), 100))


@dataclass(frozen=True)
class PurchaseOrderPricing:
    po_id: str
    items: tuple[PoLineItem, ...]
    additional_cost_items: tuple[AdditionalCostItem, ...] = ()
    additional_costs: Decimal = ZERO


@dataclass(frozen=True)
class BatchPricingInput:
    batch_id: str
    material_id: str | None
    po_item_id: str | None
    initial_quantity: Decimal
    quantity: Decimal = ZERO

    @property
    def weight(self) -> Decimal:
        initial = to_decimal(self.initial_quantity)
        return initial if initial > 0 else to_decimal(self.quantity)


@dataclass(frozen=True)
class BatchPrice:
    batch_id: str
    po_item_id: str
    match_strategy: MatchStrategy
    base_unit_price: Decimal
    additional_cost_share: Decimal
    additional_cost_per_unit: Decimal
    unit_price: Decimal

    def price_fields(self) -> dict[str, Decimal]:
        return {
            "unit_price": self.unit_price,
            "base_unit_price": self.base_unit_price,
            "additional_cost_per_unit": self.additional_cost_per_unit,
        }


@dataclass(frozen=True)
class BatchPricingResult:
    prices: tuple[BatchPrice, ...]
    unmatched_batch_ids: tuple[str, ...]
    additional_costs_gross: Decimal
    total_weight: Decimal


# ---------------------------------------------------------------------------
# Parsing of stored document fragments
# ---------------------------------------------------------------------------


def parse_line_items(raw: Iterable[Mapping[str, Any]] | None) -> tuple[PoLineItem, ...]:
    items = []
    for entry in raw or ():
        item_id = entry.get("id")
        if item_id in (None, ""):
            continue
        material_id = entry.get("material_id")
        items.append(PoLineItem(
            item_id=str(item_id),
            material_id=str(material_id) if material_id not in (None, "") else None,
            unit_price=to_decimal(entry.get("unit_price")),
            discount=to_decimal(entry.get("discount")),
            quantity=to_decimal(entry.get("quantity")),
        ))
    return tuple(items)


def parse_additional_cost_items(
    raw: Iterable[Mapping[str, Any]] | None,
) -> tuple[AdditionalCostItem, ...]:
    return tuple(
        AdditionalCostItem(
            value=to_decimal(entry.get("value")),
            vat_rate=to_decimal(entry.get("vat_rate")),
        )
        for entry in raw or ()
    )


# ---------------------------------------------------------------------------
# Derivation
# ---------------------------------------------------------------------------


def additional_costs_gross(po: PurchaseOrderPricing) -> Decimal:
    if po.additional_cost_items:
        return total(item.gross for item in po.additional_cost_items)
    return round4(po.additional_costs)


def match_line_items(
    items: Sequence[PoLineItem], batches: Sequence[BatchPricingInput],
) -> tuple[dict[str, tuple[PoLineItem, MatchStrategy]], list[str]]:
    """Assign a line item to each batch, in batch order."""
    by_id = {item.item_id: item for item in items}
    claimed: set[str] = set()
    matches: dict[str, tuple[PoLineItem, MatchStrategy]] = {}
    unmatched: list[str] = []

    for batch in batches:
        match: tuple[PoLineItem, MatchStrategy] | None = None
        if batch.po_item_id and batch.po_item_id in by_id:
            match = (by_id[batch.po_item_id], MatchStrategy.LINE_ITEM_ID)
        elif batch.material_id:
            candidates = [item for item in items if item.material_id == batch.material_id]
            unclaimed = [item for item in candidates if item.item_id not in claimed]
            if unclaimed:
                match = (unclaimed[0], MatchStrategy.MATERIAL_UNCLAIMED)
            elif candidates:
                match = (candidates[0], MatchStrategy.MATERIAL_FIRST)

        if match is None:
            unmatched.append(batch.batch_id)
            continue
        claimed.add(match[0].item_id)
        matches[batch.batch_id] = match

    return matches, unmatched


@traced_engine("batch_pricing", "1.0", fingerprint_fields=("po", "batches"))
def derive_batch_prices(
    po: PurchaseOrderPricing, batches: Sequence[BatchPricingInput],
) -> BatchPricingResult:
    """Recompute unit prices for every batch received against ``po``."""
    gross = additional_costs_gross(po)
    total_weight = total(batch.weight for batch in batches)
    matches, unmatched = match_line_items(po.items, batches)

    prices = []
    for batch in batches:
        if batch.batch_id not in matches:
            continue
        item, strategy = matches[batch.batch_id]
        weight = batch.weight
        share = div(mul(gross, weight), total_weight)
        per_unit = div(share, weight)
        base = item.base_unit_price
        prices.append(BatchPrice(
            batch_id=batch.batch_id,
            po_item_id=item.item_id,
            match_strategy=strategy,
            base_unit_price=base,
            additional_cost_share=share,
            additional_cost_per_unit=per_unit,
            unit_price=add(base, per_unit),
        ))

    return BatchPricingResult(
        prices=tuple(prices),
        unmatched_batch_ids=tuple(unmatched),
        additional_costs_gross=gross,
        total_weight=total_weight,
    )
