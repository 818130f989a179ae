"""
Tests for cascade_batch.services.poller.

Uses a file-backed SQLite database: each tick opens its own session and
must see what other sessions committed.
"""

import time
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from cascade_batch.orchestrator import CascadeOrchestrator
from cascade_batch.services.poller import LedgerPoller
from cascade_kernel.db.engine import build_engine, create_tables
from cascade_kernel.models import CustomerOrderModel, LedgerEventModel, ProductionTaskModel
from cascade_services.event_ledger import EventLedger


@pytest.fixture
def file_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'cascade.db'}")
    create_tables(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def seeded(file_factory, clock):
    """A costed task on an order with its task_cost_update still pending."""
    with file_factory() as session:
        order = CustomerOrderModel(order_number="CO-1", items=[])
        session.add(order)
        session.flush()
        task = ProductionTaskModel(
            mo_number="MO-1",
            quantity=Decimal("1"),
            order_id=order.id,
            materials=[],
            total_material_cost=Decimal("40"),
            total_cost_with_factory=Decimal("40"),
        )
        session.add(task)
        session.flush()
        order.items = [
            {"id": "line-1", "production_task_id": str(task.id), "quantity": 1, "price": "10"},
        ]
        EventLedger(session, clock).append("task_cost_update", {"task_ids": [str(task.id)]})
        session.commit()
        return order.id


def make_poller(file_factory, config, clock, rate_provider, notifier, interval=30):
    with file_factory() as session:
        orchestrator = CascadeOrchestrator.from_session(
            session, config, clock, rate_provider, notifier,
        )
    return orchestrator.create_poller(file_factory, interval)


class TestTick:
    def test_tick_runs_cascade_and_commits(
        self, file_factory, seeded, config, clock, rate_provider, notifier,
    ):
        poller = make_poller(file_factory, config, clock, rate_provider, notifier)

        summary = poller.tick()

        assert summary.processed == 1
        assert summary.quiescent is True
        assert poller.ticks == 1
        with file_factory() as session:
            order = session.get(CustomerOrderModel, seeded)
            assert order.total_value == Decimal("50")
            assert all(e.processed for e in session.query(LedgerEventModel))

    def test_idle_tick(self, file_factory, config, clock, rate_provider, notifier):
        poller = make_poller(file_factory, config, clock, rate_provider, notifier)
        summary = poller.tick()
        assert summary.processed == 0
        assert summary.rounds == 1

    def test_failed_tick_returns_none(self, file_factory, captured_logs):
        def broken_factory(session):
            raise RuntimeError("wiring failed")

        poller = LedgerPoller(file_factory, broken_factory, poll_interval_seconds=1)

        assert poller.tick() is None
        assert poller.ticks == 1
        assert any(r["message"] == "poller_tick_failed" for r in captured_logs())


class TestLoop:
    def test_start_and_stop(self, file_factory, config, clock, rate_provider, notifier):
        poller = make_poller(file_factory, config, clock, rate_provider, notifier, interval=0.01)

        poller.start()
        deadline = time.monotonic() + 5
        while poller.ticks < 2 and time.monotonic() < deadline:
            time.sleep(0.01)
        poller.stop(timeout=5)

        assert poller.ticks >= 2
        assert poller.is_running is False
