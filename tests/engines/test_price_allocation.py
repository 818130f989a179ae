"""
Tests for cascade_engines.price_allocation.

Covers:
- Reservation-weighted remaining price (batch and PO reservations)
- Consumption pricing order (current batch, recorded, default)
- Zero-weight fallback to the material default
- Purchase-history estimate and the no-batches case
- include_in_costs gating (task level and per record)
- Processing cost and per-unit figures
"""

from decimal import Decimal

from cascade_engines.price_allocation import (
    BatchPricePoint,
    BatchReservationInput,
    ConsumptionInput,
    MaterialCostInput,
    PoReservationInput,
    PriceSource,
    TaskCostInput,
    allocate_material_cost,
    calculate_task_costs,
    consumption_unit_price,
    estimate_price_from_batches,
    reservation_unit_price,
)


def D(value) -> Decimal:
    return Decimal(str(value))


def material(**overrides) -> MaterialCostInput:
    fields = {
        "material_id": "mat-1",
        "name": "Steel sheet",
        "required_quantity": D(10),
        "default_unit_price": D(0),
    }
    fields.update(overrides)
    return MaterialCostInput(**fields)


def batch_reservation(reserved, price, converted=0, cached=None, batch_id="b-1"):
    return BatchReservationInput(
        batch_id=batch_id,
        reserved_quantity=D(reserved),
        converted_quantity=D(converted),
        current_batch_price=D(price) if price is not None else None,
        cached_unit_price=D(cached) if cached is not None else None,
    )


class TestEstimateFromBatches:
    def test_weighted_average(self):
        estimate = estimate_price_from_batches([
            BatchPricePoint(D(10), D(10)),
            BatchPricePoint(D(20), D(40)),
        ])
        assert estimate.unit_price == D(18)
        assert estimate.batch_count == 2
        assert estimate.price_source == PriceSource.BATCH_WEIGHTED_AVERAGE

    def test_batches_without_price_or_quantity_ignored(self):
        estimate = estimate_price_from_batches([
            BatchPricePoint(D(0), D(10)),
            BatchPricePoint(D(30), D(0)),
            BatchPricePoint(D(12), D(5)),
        ])
        assert estimate.unit_price == D(12)
        assert estimate.batch_count == 3

    def test_only_unpriced_batches(self):
        estimate = estimate_price_from_batches([BatchPricePoint(D(0), D(10))])
        assert estimate.unit_price == 0
        assert estimate.price_source == PriceSource.NO_PRICED_BATCHES

    def test_no_batches(self):
        estimate = estimate_price_from_batches([])
        assert estimate.unit_price == 0
        assert estimate.batch_count == 0
        assert estimate.price_source == PriceSource.NO_BATCHES


class TestReservationUnitPrice:
    def test_weighted_over_batch_and_po_reservations(self):
        price, source = reservation_unit_price(material(
            batch_reservations=(batch_reservation(5, 10),),
            po_reservations=(
                PoReservationInput("po-res-1", D(5), D(0), D(20), "PO-1"),
            ),
        ))
        assert price == D(15)
        assert source == PriceSource.RESERVATIONS

    def test_converted_quantity_reduces_weight(self):
        price, _ = reservation_unit_price(material(
            batch_reservations=(
                batch_reservation(10, 10, converted=8, batch_id="b-1"),
                batch_reservation(2, 20, batch_id="b-2"),
            ),
        ))
        assert price == D(15)

    def test_batch_price_falls_back_to_cached_then_default(self):
        price, _ = reservation_unit_price(material(
            default_unit_price=D(7),
            batch_reservations=(
                batch_reservation(1, None, cached=9, batch_id="b-1"),
                batch_reservation(1, None, batch_id="b-2"),
            ),
        ))
        assert price == D(8)

    def test_zero_weight_uses_material_default(self):
        price, source = reservation_unit_price(material(
            default_unit_price=D(7),
            batch_reservations=(batch_reservation(5, 10, converted=5),),
        ))
        assert price == D(7)
        assert source == PriceSource.MATERIAL_DEFAULT

    def test_po_reservation_over_converted_counts_as_zero(self):
        price, source = reservation_unit_price(material(
            default_unit_price=D(3),
            po_reservations=(PoReservationInput("r", D(2), D(5), D(50)),),
        ))
        assert price == D(3)
        assert source == PriceSource.MATERIAL_DEFAULT


class TestConsumptionUnitPrice:
    def test_current_batch_price_wins(self):
        record = ConsumptionInput(D(1), recorded_unit_price=D(9), current_batch_price=D(12))
        assert consumption_unit_price(record, D(5)) == D(12)

    def test_recorded_price_when_batch_gone(self):
        record = ConsumptionInput(D(1), recorded_unit_price=D(9))
        assert consumption_unit_price(record, D(5)) == D(9)

    def test_default_price_last(self):
        record = ConsumptionInput(D(1))
        assert consumption_unit_price(record, D(5)) == D(5)


class TestAllocateMaterialCost:
    def test_reserved_material(self):
        line = allocate_material_cost(material(
            batch_reservations=(batch_reservation(10, 12),),
        ))
        assert line.remaining_quantity == D(10)
        assert line.remaining_cost == D(120)
        assert line.material_cost == D(120)
        assert line.full_cost == D(120)
        assert line.estimate is None

    def test_consumed_then_remaining(self):
        line = allocate_material_cost(material(
            consumptions=(ConsumptionInput(D(4), current_batch_price=D(12)),),
            batch_reservations=(batch_reservation(6, 12),),
        ))
        assert line.consumed_quantity == D(4)
        assert line.consumed_cost == D(48)
        assert line.remaining_quantity == D(6)
        assert line.full_cost == D(120)

    def test_over_consumption_leaves_nothing_remaining(self):
        line = allocate_material_cost(material(
            required_quantity=D(2),
            consumptions=(ConsumptionInput(D(3), current_batch_price=D(10)),),
        ))
        assert line.remaining_quantity == 0
        assert line.full_cost == D(30)

    def test_nothing_required_nothing_consumed(self):
        assert allocate_material_cost(material(required_quantity=D(0))) is None

    def test_estimate_from_history(self):
        line = allocate_material_cost(material(
            batch_history=(BatchPricePoint(D(10), D(10)), BatchPricePoint(D(20), D(40))),
        ))
        assert line.remaining_cost == D(180)
        assert line.estimate is not None
        assert line.estimate.price_source == PriceSource.BATCH_WEIGHTED_AVERAGE
        assert line.estimate.to_dict()["is_estimated"] is True

    def test_no_batches_costs_zero(self):
        line = allocate_material_cost(material(default_unit_price=D(99)))
        assert line.remaining_cost == 0
        assert line.estimate.price_source == PriceSource.NO_BATCHES

    def test_excluded_from_material_cost_only(self):
        line = allocate_material_cost(material(
            include_in_costs=False,
            batch_reservations=(batch_reservation(10, 12),),
        ))
        assert line.material_cost == 0
        assert line.full_cost == D(120)

    def test_record_override_of_include_flag(self):
        line = allocate_material_cost(material(
            required_quantity=D(2),
            include_in_costs=False,
            consumptions=(
                ConsumptionInput(D(1), current_batch_price=D(10), include_in_costs=True),
                ConsumptionInput(D(1), current_batch_price=D(10)),
            ),
        ))
        assert line.material_cost == D(10)
        assert line.full_cost == D(20)


class TestCalculateTaskCosts:
    def test_totals_and_unit_costs(self):
        result = calculate_task_costs(TaskCostInput(
            task_id="task-1",
            quantity=D(4),
            completed_quantity=D(5),
            processing_cost_per_unit=D(2),
            materials=(
                material(batch_reservations=(batch_reservation(10, 12),)),
                material(
                    material_id="mat-2",
                    name="Paint",
                    include_in_costs=False,
                    required_quantity=D(1),
                    batch_reservations=(batch_reservation(1, 30, batch_id="b-9"),),
                ),
            ),
        ))
        assert result.processing_cost == D(10)
        assert result.total_material_cost == D(130)
        assert result.total_full_production_cost == D(160)
        assert result.unit_material_cost == D("32.5")
        assert result.unit_full_production_cost == D(40)

    def test_zero_quantity_divides_by_one(self):
        result = calculate_task_costs(TaskCostInput(
            task_id="task-1",
            quantity=D(0),
            materials=(material(batch_reservations=(batch_reservation(10, 12),)),),
        ))
        assert result.task_quantity == 1
        assert result.unit_material_cost == D(120)

    def test_unpriced_materials_reported(self):
        result = calculate_task_costs(TaskCostInput(
            task_id="task-1",
            quantity=D(1),
            materials=(material(name="Unobtainium"),),
        ))
        assert result.unpriced_materials == ("Unobtainium",)
        assert result.estimated_cost_details["mat-1"]["price_source"] == "no-batches"

    def test_no_estimates_gives_none_details(self):
        result = calculate_task_costs(TaskCostInput(
            task_id="task-1",
            quantity=D(1),
            materials=(material(batch_reservations=(batch_reservation(10, 12),)),),
        ))
        assert result.estimated_cost_details is None
        assert result.unpriced_materials == ()
