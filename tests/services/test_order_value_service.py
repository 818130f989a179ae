"""
Tests for cascade_services.order_value_service.

Terminal stage: recosted tasks -> line values and order totals. Emits no
ledger event.
"""

from decimal import Decimal
from uuid import uuid4

import pytest

from cascade_services.order_value_service import OrderValueService


@pytest.fixture
def service(session, config, clock):
    return OrderValueService(session, config, clock)


@pytest.fixture
def costed_order(session, docs):
    order = docs.order(shipping_cost="15")
    task = docs.task(
        quantity=2,
        order=order,
        total_material_cost=Decimal("100"),
        factory_cost_total=Decimal("20"),
        total_cost_with_factory=Decimal("150"),
    )
    order.items = [
        {"id": "line-1", "production_task_id": str(task.id), "quantity": 2, "price": "50"},
        {"id": "line-2", "quantity": 1, "price": "30"},
    ]
    session.flush()
    return order, task


class TestRecalculateForTasks:
    def test_line_and_total_written(self, service, costed_order, clock):
        order, task = costed_order

        result = service.recalculate_for_tasks([task.id])

        assert result.changed_order_ids == (str(order.id),)
        costed, untouched = order.items
        assert costed["production_cost"] == "120.0000"
        assert costed["full_production_cost"] == "150.0000"
        assert costed["production_unit_cost"] == "60.0000"
        assert costed["full_production_unit_cost"] == "125.0000"
        assert costed["value"] == "220.0000"
        assert costed["id"] == "line-1"
        assert untouched["value"] == "30.0000"
        assert order.total_value == Decimal("265")
        assert order.values_updated_at == clock.now()

    def test_idempotent(self, service, costed_order):
        order, task = costed_order
        service.recalculate_for_tasks([task.id])

        result = service.recalculate_for_tasks([task.id])

        assert result.changed_order_ids == ()
        assert order.total_value == Decimal("265")

    def test_task_cost_move_flows_into_order(self, session, service, costed_order):
        order, task = costed_order
        service.recalculate_for_tasks([task.id])

        task.total_material_cost = Decimal("200")
        task.total_cost_with_factory = Decimal("250")
        session.flush()
        service.recalculate_for_tasks([task.id])

        assert order.items[0]["value"] == "320.0000"
        assert order.total_value == Decimal("365")

    def test_additional_items_in_total(self, session, service, costed_order):
        order, task = costed_order
        order.additional_cost_items = [{"value": "10"}, {"value": "-5"}]
        session.flush()

        service.recalculate_for_tasks([task.id])

        assert order.total_value == Decimal("270")

    def test_task_in_no_order(self, service, docs):
        task = docs.task()
        result = service.recalculate_for_tasks([task.id])
        assert result.changed_order_ids == ()

    def test_line_reference_without_task_order_id(self, service, docs):
        task = docs.task(
            total_material_cost=Decimal("100"),
            factory_cost_total=Decimal("10"),
            total_cost_with_factory=Decimal("110"),
        )
        order = docs.order(items=[
            {"id": "line-1", "production_task_id": str(task.id), "quantity": 1, "price": "0"},
        ])

        result = service.recalculate_for_tasks([task.id])

        assert result.changed_order_ids == (str(order.id),)
        assert order.items[0]["production_cost"] == "110.0000"
        assert order.total_value == Decimal("110")

    def test_task_referenced_from_two_orders(self, session, service, docs):
        own = docs.order()
        task = docs.task(
            order=own,
            total_material_cost=Decimal("100"),
            factory_cost_total=Decimal("10"),
            total_cost_with_factory=Decimal("110"),
        )
        line = {"id": "line-1", "production_task_id": str(task.id), "quantity": 1, "price": "0"}
        own.items = [dict(line)]
        other = docs.order(items=[dict(line)])
        unrelated = docs.order(items=[{"id": "line-9", "quantity": 1, "price": "5"}])
        session.flush()

        result = service.recalculate_for_tasks([task.id])

        assert set(result.changed_order_ids) == {str(own.id), str(other.id)}
        assert own.total_value == Decimal("110")
        assert other.total_value == Decimal("110")
        assert unrelated.total_value == Decimal("0")
        assert result.missing_order_ids == ()

    def test_missing_task(self, service):
        missing = uuid4()
        result = service.recalculate_for_tasks([missing])
        assert result.missing_task_ids == (str(missing),)

    def test_emits_no_ledger_event(self, service, costed_order, session):
        from cascade_services.event_ledger import EventLedger

        _, task = costed_order
        service.recalculate_for_tasks([task.id])
        assert EventLedger(session).pending_counts() == {}
