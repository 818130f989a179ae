"""
Integration tests for CascadeOrchestrator.

Drives the whole cascade through its trigger and manual entry points:
purchase order -> batch prices -> task costs -> order values, and work
sessions / journal entries -> overhead periods -> factory cost -> order
values. Every run must converge and a second run must find nothing to do.
"""

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy.orm import Session

from cascade_batch.orchestrator import CascadeOrchestrator
from cascade_batch.stages.base import StageRegistry, StageResult
from cascade_kernel.domain.types import DocumentChange, LedgerEvent
from cascade_services.batch_price_service import BatchRepriceResult
from cascade_services.factory_cost_service import FactoryRunResult
from cascade_services.order_value_service import OrderValueService
from cascade_services.overhead_time_service import OverheadRunResult


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def po_line(material_id, price):
    return {"id": "L1", "material_id": str(material_id), "unit_price": price, "discount": "0"}


@pytest.fixture
def shop(session, docs, orchestrator):
    """50 of a 100-unit steel batch reserved at 10 for a task sold at 2 x 50."""
    steel = docs.material("5", name="Steel")
    po = docs.purchase_order(items=[po_line(steel.id, "10")])
    batch = docs.batch(steel, po, po_item_id="L1", initial_quantity=100, unit_price=10)
    order = docs.order()
    task = docs.task([(steel, 50)], quantity=2, order=order)
    docs.batch_reservation(task, batch, 50)
    order.items = [
        {"id": "line-1", "production_task_id": str(task.id), "quantity": 2, "price": "50"},
    ]
    session.flush()

    orchestrator.recalculate_tasks([task.id])
    orchestrator.run_to_quiescence()
    return po, batch, task, order


def change_po_price(session, po, batch, price):
    before = po.snapshot()
    po.items = [po_line(batch.material_id, price)]
    session.flush()
    return before, po.snapshot()


class TestInitialCosting:
    def test_manual_recalc_reaches_the_order(self, shop):
        _, _, task, order = shop
        assert task.total_material_cost == Decimal("500")
        assert order.total_value == Decimal("600")
        assert order.items[0]["production_cost"] == "500.0000"


class TestPurchaseOrderCascade:
    def test_price_change_flows_to_order(self, session, orchestrator, shop):
        po, batch, task, order = shop
        before, after = change_po_price(session, po, batch, "12")

        repriced = orchestrator.on_purchase_order_changed(before, after)
        summary = orchestrator.run_to_quiescence()

        assert repriced.changed_batch_ids == (str(batch.id),)
        assert batch.unit_price == Decimal("12")
        assert task.total_material_cost == Decimal("600")
        assert order.total_value == Decimal("700")
        assert summary.quiescent is True
        assert summary.rounds == 2
        assert summary.to_dict()["processed_by_type"] == {
            "batch_price_update": 1, "task_cost_update": 1,
        }
        assert summary.pending == {}

    def test_second_run_finds_nothing(self, session, orchestrator, shop):
        po, batch, _, _ = shop
        before, after = change_po_price(session, po, batch, "12")
        orchestrator.on_purchase_order_changed(before, after)
        orchestrator.run_to_quiescence()

        summary = orchestrator.run_to_quiescence()

        assert summary.rounds == 1
        assert summary.processed == 0
        assert summary.quiescent is True

    def test_irrelevant_change_ignored(self, orchestrator, shop):
        po, _, _, _ = shop
        snapshot = po.snapshot()
        assert orchestrator.on_purchase_order_changed(snapshot, dict(snapshot, status="received")) is None
        assert orchestrator.ledger.pending_counts() == {}

    def test_opted_out_task_keeps_its_costs(self, session, orchestrator, shop):
        po, batch, task, order = shop
        task.disable_automatic_cost_updates = True
        session.flush()
        before, after = change_po_price(session, po, batch, "12")

        orchestrator.on_purchase_order_changed(before, after)
        orchestrator.run_to_quiescence()

        assert batch.unit_price == Decimal("12")
        assert task.total_material_cost == Decimal("500")
        assert order.total_value == Decimal("600")

    def test_round_limit(self, session, orchestrator, shop):
        po, batch, _, _ = shop
        before, after = change_po_price(session, po, batch, "12")
        orchestrator.on_purchase_order_changed(before, after)

        summary = orchestrator.run_to_quiescence(max_rounds=1)

        assert summary.rounds == 1
        assert summary.quiescent is False

    def test_manual_reprice(self, session, orchestrator, shop):
        po, batch, task, _ = shop
        change_po_price(session, po, batch, "11")

        result = orchestrator.reprice_purchase_order(po.id)
        orchestrator.run_to_quiescence()

        assert result.changed_batch_ids == (str(batch.id),)
        assert batch.last_price_update_reason == f"manual_reprice: {po.number}"
        assert task.total_material_cost == Decimal("550")


class TestOverheadCascade:
    def test_work_session_adds_factory_cost(self, docs, orchestrator, shop):
        _, _, task, order = shop
        docs.overhead_period(utc(2024, 3, 4), utc(2024, 3, 4, 23, 59), "600")
        work = docs.work_session(task, utc(2024, 3, 4, 9), utc(2024, 3, 4, 11))

        result = orchestrator.on_work_session_changed(None, work.snapshot())
        summary = orchestrator.run_to_quiescence()

        assert len(result.period_ids) == 1
        assert summary.quiescent is True
        assert task.factory_cost_minutes == Decimal("120")
        assert task.factory_cost_total == Decimal("600")
        assert task.total_cost_with_factory == Decimal("1100")
        assert order.items[0]["production_cost"] == "1100.0000"
        assert order.total_value == Decimal("1200")

    def test_posted_journal_entry_adds_factory_cost(self, docs, orchestrator, rate_provider, shop):
        _, _, task, order = shop
        rate_provider.rates[("EUR", date(2024, 3, 29))] = Decimal("4")
        docs.work_session(task, utc(2024, 3, 4, 9), utc(2024, 3, 4, 11))
        rent = docs.account("401", "Rent")
        entry = docs.journal_entry(utc(2024, 3, 10), [(rent, "2400")])

        synced = orchestrator.on_journal_entry_changed(None, entry.snapshot())
        orchestrator.run_to_quiescence()

        assert [s.period_key for s in synced] == ["2024-03"]
        assert synced[0].amount == Decimal("600")
        assert task.factory_cost_total == Decimal("600")
        assert order.total_value == Decimal("1200")

    def test_deleted_period_clears_factory_cost(self, docs, orchestrator, shop):
        _, _, task, order = shop
        period = docs.overhead_period(utc(2024, 3, 4), utc(2024, 3, 4, 23, 59), "600")
        work = docs.work_session(task, utc(2024, 3, 4, 9), utc(2024, 3, 4, 11))
        orchestrator.on_work_session_changed(None, work.snapshot())
        orchestrator.run_to_quiescence()

        orchestrator.on_overhead_period_deleted(period.id)
        orchestrator.run_to_quiescence()

        assert task.factory_cost_total == 0
        assert task.factory_cost_period_id is None
        assert order.total_value == Decimal("600")

    def test_resync_and_recalculate(self, docs, orchestrator, rate_provider):
        rate_provider.rates[("EUR", date(2024, 3, 31))] = Decimal("4")
        docs.journal_entry(utc(2024, 3, 10), [(docs.account("401"), "400")])

        synced = orchestrator.resync_overhead_month(2024, 3)
        recalculated = orchestrator.recalculate_overhead_periods()

        assert synced.created is True
        assert recalculated.period_ids == (synced.period_id,)


class TestDocumentChangeRouting:
    def test_purchase_order(self, session, orchestrator, shop):
        po, batch, _, _ = shop
        before, after = change_po_price(session, po, batch, "12")
        change = DocumentChange("purchase_orders", str(po.id), before, after)
        assert isinstance(orchestrator.on_document_change(change), BatchRepriceResult)

    def test_work_session(self, docs, orchestrator):
        work = docs.work_session(docs.task(), utc(2024, 3, 4, 9), utc(2024, 3, 4, 10))
        change = DocumentChange("work_sessions", str(work.id), None, work.snapshot())
        assert isinstance(orchestrator.on_document_change(change), OverheadRunResult)

    def test_journal_entry(self, docs, orchestrator):
        entry = docs.journal_entry(utc(2024, 3, 10), [])
        change = DocumentChange("journal_entries", str(entry.id), entry.snapshot(), entry.snapshot())
        assert orchestrator.on_document_change(change) == []

    def test_deleted_overhead_period(self, docs, orchestrator):
        period = docs.overhead_period(utc(2024, 3, 4), utc(2024, 3, 5), "10")
        change = DocumentChange("overhead_cost_periods", str(period.id), {"id": str(period.id)}, None)
        assert isinstance(orchestrator.on_document_change(change), FactoryRunResult)

    @pytest.mark.parametrize("collection", ["overhead_cost_periods", "materials"])
    def test_other_changes_ignored(self, orchestrator, collection):
        change = DocumentChange(collection, "doc-1", {"id": "doc-1"}, {"id": "doc-1"})
        assert orchestrator.on_document_change(change) is None


class FailingStage:
    event_type = "batch_price_update"
    description = "Always fails"

    def __init__(self):
        self.calls = 0

    def handle(self, event: LedgerEvent, session: Session) -> StageResult:
        self.calls += 1
        raise RuntimeError("boom")


class TestFailures:
    def test_failed_event_stays_pending_and_is_not_retried(
        self, session, config, clock, rate_provider, notifier,
    ):
        stage = FailingStage()
        registry = StageRegistry()
        registry.register(stage)
        orchestrator = CascadeOrchestrator.from_session(
            session, config, clock, rate_provider, notifier, stage_registry=registry,
        )
        orchestrator.ledger.append("batch_price_update", {"batch_ids": []})

        summary = orchestrator.run_to_quiescence()

        assert stage.calls == 1
        assert summary.failed == 1
        assert summary.pending == {"batch_price_update": 1}
        failure = summary.to_dict()["failures"][0]
        assert failure["error_code"] == "UNHANDLED_EXCEPTION"
        assert failure["error_message"] == "boom"


prices = st.decimals(min_value=1, max_value=50, places=2).map(str)

edits = st.lists(
    st.one_of(
        st.tuples(st.just("po_price"), prices),
        st.tuples(st.just("batch_price"), prices),
        st.tuples(st.just("task_quantity"), st.integers(1, 80)),
        st.tuples(st.just("drain")),
    ),
    min_size=1,
    max_size=6,
)


def build_two_task_shop(session, docs):
    """Two tasks on shared steel batches, one of them referenced from two orders."""
    steel = docs.material("5", name="Steel")
    po = docs.purchase_order(items=[po_line(steel.id, "10")])
    bought = docs.batch(steel, po, po_item_id="L1", initial_quantity=100, unit_price=10)
    stocked = docs.batch(steel, initial_quantity=100, unit_price=8)
    main_order = docs.order()
    frame = docs.task([(steel, 50)], quantity=2, order=main_order)
    bracket = docs.task([(steel, 20)], quantity=1, order=main_order)
    docs.batch_reservation(frame, bought, 30)
    docs.batch_reservation(frame, stocked, 20)
    docs.batch_reservation(bracket, bought, 10)
    main_order.items = [
        {"id": "line-1", "production_task_id": str(frame.id), "quantity": 2, "price": "50"},
        {"id": "line-2", "production_task_id": str(bracket.id), "quantity": 1, "price": "20"},
    ]
    spare_order = docs.order(items=[
        {"id": "line-1", "production_task_id": str(bracket.id), "quantity": 3, "price": "5"},
    ])
    session.flush()
    return po, bought, stocked, (frame, bracket), (main_order, spare_order)


class TestConvergence:
    @given(steps=edits)
    @settings(
        max_examples=40,
        deadline=None,
        suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture],
    )
    def test_edit_sequence_matches_fresh_recomputation(
        self, session, docs, config, clock, orchestrator, steps,
    ):
        po, bought, stocked, tasks, orders = build_two_task_shop(session, docs)
        frame, bracket = tasks
        orchestrator.recalculate_tasks([task.id for task in tasks])
        orchestrator.run_to_quiescence()

        for step in steps:
            if step[0] == "po_price":
                before, after = change_po_price(session, po, bought, step[1])
                orchestrator.on_purchase_order_changed(before, after)
            elif step[0] == "batch_price":
                stocked.unit_price = Decimal(step[1])
                session.flush()
                orchestrator.ledger.append(
                    "batch_price_update", {"batch_ids": [str(stocked.id)]},
                )
            elif step[0] == "task_quantity":
                bracket.materials = [dict(bracket.materials[0], quantity=str(step[1]))]
                session.flush()
                orchestrator.recalculate_tasks([bracket.id])
            else:
                orchestrator.run_to_quiescence()

        summary = orchestrator.run_to_quiescence()
        settled_tasks = [(t.total_material_cost, t.total_cost_with_factory) for t in tasks]
        settled_orders = [(o.total_value, list(o.items)) for o in orders]

        fresh_tasks = orchestrator.recalculate_tasks([task.id for task in tasks])
        fresh_orders = OrderValueService(session, config, clock).recalculate_for_tasks(
            [task.id for task in tasks],
        )

        assert summary.quiescent is True
        assert summary.pending == {}
        assert fresh_tasks.changed_task_ids == ()
        assert fresh_orders.changed_order_ids == ()
        assert [(t.total_material_cost, t.total_cost_with_factory) for t in tasks] == settled_tasks
        assert [(o.total_value, list(o.items)) for o in orders] == settled_orders
        assert Decimal(orders[1].items[0]["production_cost"]) == (
            bracket.total_material_cost + bracket.factory_cost_total
        )
