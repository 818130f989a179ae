"""
cascade_services.batch_price_service -- stage 1 of the cost cascade.

Responsibility:
    When a purchase order's pricing inputs change, recompute the unit
    price of every inventory batch received against it and record which
    batches moved.

Architecture position:
    Services. Reads through InventorySelector, prices with
    ``cascade_engines.batch_pricing``, gates with ``change_gate`` and
    appends ``batch_price_update`` to the EventLedger.

Invariants enforced:
    - A batch is written only when one of its price fields moves by more
      than the change tolerance; unchanged batches are not touched.
    - At most one ledger event per invocation, listing only written batches.
    - The batch writes and the ledger append share the caller's
      transaction.

Failure modes:
    - Unknown purchase order: logged, nothing written.
    - Batches with no matching line item: logged, left unpriced, and
      reported to the configured alert recipients.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cascade_config.schema import CascadeConfig
from cascade_engines.batch_pricing import (
    BatchPricingInput,
    PurchaseOrderPricing,
    derive_batch_prices,
    parse_additional_cost_items,
    parse_line_items,
)
from cascade_engines.change_gate import BATCH_PRICE_FIELDS, compare, read_fields
from cascade_kernel.db.writer import BatchedWriter
from cascade_kernel.domain.clock import Clock, SystemClock
from cascade_kernel.domain.precision import to_decimal
from cascade_kernel.domain.types import LedgerEventType
from cascade_kernel.logging_config import get_logger
from cascade_kernel.models.purchasing import PurchaseOrderModel
from cascade_kernel.selectors.inventory import InventorySelector
from cascade_services.event_ledger import EventLedger
from cascade_services.notifications import Alert, AlertSeverity, Notifier, notify_safely

logger = get_logger("services.batch_price")

PRICING_INPUT_FIELDS = ("items", "additional_cost_items", "additional_costs")


def pricing_inputs_changed(
    before: Mapping[str, Any] | None, after: Mapping[str, Any] | None,
) -> bool:
    """True when a purchase-order change can move batch prices.

    Creates and deletes never reprice: a new order has no batches yet and a
    deleted one has nothing left to price against.
    """
    if before is None or after is None:
        return False
    for name in PRICING_INPUT_FIELDS:
        if name == "additional_costs":
            if to_decimal(before.get(name)) != to_decimal(after.get(name)):
                return True
        elif list(before.get(name) or []) != list(after.get(name) or []):
            return True
    return False


@dataclass(frozen=True)
class BatchRepriceResult:
    purchase_order_id: str
    batches_seen: int
    changed_batch_ids: tuple[str, ...]
    unmatched_batch_ids: tuple[str, ...]
    event_id: UUID | None = None


class BatchPriceService:
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
        self._inventory = InventorySelector(session, self._config.in_query_limit)

    def reprice_purchase_order(
        self, po_id: UUID | str, reason: str = "purchase_order_updated",
    ) -> BatchRepriceResult:
        po = self._inventory.purchase_order(po_id)
        if po is None:
            logger.warning("purchase_order_not_found", extra={"purchase_order_id": str(po_id)})
            return BatchRepriceResult(str(po_id), 0, (), ())

        batches = self._inventory.batches_for_purchase_order(po.id)
        if not batches:
            logger.info(
                "purchase_order_has_no_batches",
                extra={"purchase_order_id": str(po.id), "po_number": po.number},
            )
            return BatchRepriceResult(str(po.id), 0, (), ())

        result = derive_batch_prices(
            _pricing_input(po),
            [
                BatchPricingInput(
                    batch_id=str(batch.id),
                    material_id=str(batch.material_id),
                    po_item_id=batch.po_item_id,
                    initial_quantity=batch.initial_quantity,
                    quantity=batch.quantity,
                )
                for batch in batches
            ],
        )

        by_id = {str(batch.id): batch for batch in batches}
        now = self._clock.now()
        changed: list[str] = []
        with BatchedWriter(self._session, self._config.write_batch_limit) as writer:
            for price in result.prices:
                batch = by_id[price.batch_id]
                decision = compare(
                    read_fields(batch, BATCH_PRICE_FIELDS),
                    price.price_fields(),
                    BATCH_PRICE_FIELDS,
                    self._config.change_tolerance,
                )
                if not decision.changed:
                    continue
                for field_name, value in price.price_fields().items():
                    setattr(batch, field_name, value)
                batch.last_price_update_reason = f"{reason}: {po.number}"
                batch.last_price_update_at = now
                writer.stage(batch)
                changed.append(price.batch_id)
                logger.info(
                    "batch_price_updated",
                    extra={
                        "batch_id": price.batch_id,
                        "batch_number": batch.batch_number,
                        "unit_price": price.unit_price,
                        "match_strategy": price.match_strategy.value,
                        "max_delta": decision.max_delta,
                    },
                )

        if result.unmatched_batch_ids:
            self._report_unmatched(po, result.unmatched_batch_ids, by_id)

        event_id = None
        if changed:
            event_id = self._ledger.append(
                LedgerEventType.BATCH_PRICE_UPDATE,
                {"batch_ids": changed, "purchase_order_id": str(po.id)},
                source_type="purchase_order",
                source_id=str(po.id),
            )

        logger.info(
            "purchase_order_repriced",
            extra={
                "purchase_order_id": str(po.id),
                "po_number": po.number,
                "batches_seen": len(batches),
                "batches_changed": len(changed),
                "batches_unmatched": len(result.unmatched_batch_ids),
                "additional_costs_gross": result.additional_costs_gross,
            },
        )
        return BatchRepriceResult(
            purchase_order_id=str(po.id),
            batches_seen=len(batches),
            changed_batch_ids=tuple(changed),
            unmatched_batch_ids=result.unmatched_batch_ids,
            event_id=event_id,
        )

    def _report_unmatched(self, po: PurchaseOrderModel, unmatched: tuple[str, ...], by_id) -> None:
        numbers = [by_id[batch_id].batch_number for batch_id in unmatched]
        for batch_id in unmatched:
            logger.warning(
                "batch_unmatched",
                extra={"batch_id": batch_id, "purchase_order_id": str(po.id)},
            )
        notify_safely(self._notifier, Alert(
            user_ids=self._config.alert_user_ids,
            title="Batches without a purchase order line",
            message=(
                f"Purchase order {po.number}: no line item matches batch(es) "
                f"{', '.join(numbers)}; their prices were not updated."
            ),
            severity=AlertSeverity.WARNING,
            metadata={"purchase_order_id": str(po.id), "batch_ids": list(unmatched)},
        ))


def _pricing_input(po: PurchaseOrderModel) -> PurchaseOrderPricing:
    return PurchaseOrderPricing(
        po_id=str(po.id),
        items=parse_line_items(po.items),
        additional_cost_items=parse_additional_cost_items(po.additional_cost_items),
        additional_costs=to_decimal(po.additional_costs),
    )
