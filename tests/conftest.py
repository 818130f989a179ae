"""
Pytest fixtures for the cost cascade test suite.

Provides:
- In-memory SQLite engine and a fresh schema per test
- DeterministicClock, default CascadeConfig
- Recording notifier and a static exchange-rate provider
- ``docs``: builders for the documents the cascade reads and writes
- Structured log capture

Every engine is built with ``build_engine`` so SAVEPOINTs and the
Decimal-aware JSON serializer behave as in production.
"""

import json
import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any

import pytest
from sqlalchemy.orm import Session, sessionmaker

from cascade_batch.orchestrator import CascadeOrchestrator
from cascade_config.schema import CascadeConfig
from cascade_kernel.db.engine import build_engine, create_tables
from cascade_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from cascade_kernel.domain.clock import DeterministicClock
from cascade_kernel.domain.types import JournalEntryStatus, OverheadSource, ReservationStatus
from cascade_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from cascade_kernel.models import (
    BatchReservationModel,
    BookkeepingAccountModel,
    ConsumptionRecordModel,
    CustomerOrderModel,
    InventoryBatchModel,
    JournalEntryModel,
    JournalLineModel,
    MaterialModel,
    OverheadCostPeriodModel,
    PoReservationModel,
    ProductionTaskModel,
    PurchaseOrderModel,
    WorkSessionModel,
)
from cascade_services.exchange_rates import ExchangeRateQuote


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture costcascade logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ...):
            ...
            logs = captured_logs()
            assert any(r["message"] == "task_cost_written" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("costcascade")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _immutability_listeners():
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    sess = session_factory()
    yield sess
    sess.rollback()
    sess.close()


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(utc(2024, 3, 15, 12, 0))


@pytest.fixture
def config():
    return CascadeConfig()


class RecordingNotifier:
    def __init__(self):
        self.alerts = []

    def notify(self, alert) -> None:
        self.alerts.append(alert)


class StaticRateProvider:
    """Rates keyed by (currency, date); any other day is unpublished."""

    def __init__(self, rates: dict[tuple[str, date], Decimal] | None = None):
        self.rates = dict(rates or {})
        self.calls: list[tuple[str, date]] = []

    def get_rate(self, currency: str, on_date: date):
        self.calls.append((currency, on_date))
        rate = self.rates.get((currency, on_date))
        if rate is None:
            return None
        return ExchangeRateQuote(currency, rate, on_date, source="static")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def rate_provider():
    return StaticRateProvider()


@pytest.fixture
def orchestrator(session, config, clock, rate_provider, notifier):
    return CascadeOrchestrator.from_session(
        session,
        config=config,
        clock=clock,
        rate_provider=rate_provider,
        notifier=notifier,
    )


# =============================================================================
# Document builders
# =============================================================================


class DocumentFactory:
    """Creates and flushes source documents with sensible defaults."""

    def __init__(self, session: Session):
        self.session = session
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter:04d}"

    def _save(self, model):
        self.session.add(model)
        self.session.flush()
        return model

    def material(self, unit_price: Any = "0", name: str | None = None) -> MaterialModel:
        return self._save(MaterialModel(
            name=name or self._next("MAT"), unit_price=Decimal(str(unit_price)),
        ))

    def purchase_order(
        self,
        items: list[dict] | None = None,
        additional_cost_items: list[dict] | None = None,
        additional_costs: Any = "0",
    ) -> PurchaseOrderModel:
        return self._save(PurchaseOrderModel(
            number=self._next("PO"),
            items=items or [],
            additional_cost_items=additional_cost_items or [],
            additional_costs=Decimal(str(additional_costs)),
        ))

    def batch(
        self,
        material: MaterialModel,
        purchase_order: PurchaseOrderModel | None = None,
        po_item_id: str | None = None,
        initial_quantity: Any = "0",
        quantity: Any = None,
        unit_price: Any = "0",
    ) -> InventoryBatchModel:
        initial = Decimal(str(initial_quantity))
        return self._save(InventoryBatchModel(
            material_id=material.id,
            batch_number=self._next("B"),
            purchase_order_id=purchase_order.id if purchase_order is not None else None,
            po_item_id=po_item_id,
            initial_quantity=initial,
            quantity=initial if quantity is None else Decimal(str(quantity)),
            unit_price=Decimal(str(unit_price)),
            base_unit_price=Decimal(str(unit_price)),
        ))

    def task(
        self,
        materials: list[tuple[MaterialModel, Any]] = (),
        quantity: Any = "1",
        order: CustomerOrderModel | None = None,
        **fields,
    ) -> ProductionTaskModel:
        return self._save(ProductionTaskModel(
            mo_number=self._next("MO"),
            quantity=Decimal(str(quantity)),
            order_id=order.id if order is not None else None,
            materials=[
                {"material_id": str(m.id), "name": m.name, "quantity": str(q)}
                for m, q in materials
            ],
            **fields,
        ))

    def batch_reservation(
        self,
        task: ProductionTaskModel,
        batch: InventoryBatchModel,
        reserved: Any,
        converted: Any = "0",
        status: ReservationStatus = ReservationStatus.PENDING,
        unit_price: Any = None,
    ) -> BatchReservationModel:
        return self._save(BatchReservationModel(
            task_id=task.id,
            material_id=batch.material_id,
            batch_id=batch.id,
            reserved_quantity=Decimal(str(reserved)),
            converted_quantity=Decimal(str(converted)),
            unit_price=Decimal(str(unit_price)) if unit_price is not None else None,
            status=status.value,
        ))

    def po_reservation(
        self,
        task: ProductionTaskModel,
        material: MaterialModel,
        reserved: Any,
        unit_price: Any,
        converted: Any = "0",
    ) -> PoReservationModel:
        return self._save(PoReservationModel(
            task_id=task.id,
            material_id=material.id,
            reserved_quantity=Decimal(str(reserved)),
            converted_quantity=Decimal(str(converted)),
            unit_price=Decimal(str(unit_price)),
            status=ReservationStatus.PENDING.value,
        ))

    def consumption(
        self,
        task: ProductionTaskModel,
        material: MaterialModel,
        quantity: Any,
        batch: InventoryBatchModel | None = None,
        unit_price: Any = None,
        include_in_costs: bool | None = None,
    ) -> ConsumptionRecordModel:
        return self._save(ConsumptionRecordModel(
            task_id=task.id,
            material_id=material.id,
            batch_id=batch.id if batch is not None else None,
            quantity=Decimal(str(quantity)),
            unit_price=Decimal(str(unit_price)) if unit_price is not None else None,
            include_in_costs=include_in_costs,
        ))

    def order(
        self,
        items: list[dict] | None = None,
        shipping_cost: Any = "0",
        additional_cost_items: list[dict] | None = None,
    ) -> CustomerOrderModel:
        return self._save(CustomerOrderModel(
            order_number=self._next("CO"),
            items=items or [],
            shipping_cost=Decimal(str(shipping_cost)),
            additional_cost_items=additional_cost_items or [],
        ))

    def work_session(
        self, task: ProductionTaskModel, start: datetime, end: datetime,
    ) -> WorkSessionModel:
        return self._save(WorkSessionModel(task_id=task.id, start_time=start, end_time=end))

    def overhead_period(
        self,
        start: datetime,
        end: datetime,
        amount: Any,
        excluded_task_ids: list[str] | None = None,
    ) -> OverheadCostPeriodModel:
        return self._save(OverheadCostPeriodModel(
            name=self._next("OH"),
            start_date=start,
            end_date=end,
            amount=Decimal(str(amount)),
            excluded_task_ids=excluded_task_ids or [],
            source=OverheadSource.MANUAL.value,
        ))

    def account(self, number: str, name: str | None = None, is_active: bool = True):
        return self._save(BookkeepingAccountModel(
            number=number, name=name or f"Account {number}", is_active=is_active,
        ))

    def journal_entry(
        self,
        entry_date: datetime,
        lines: list[tuple[BookkeepingAccountModel, Any]],
        status: JournalEntryStatus = JournalEntryStatus.POSTED,
    ) -> JournalEntryModel:
        entry = self._save(JournalEntryModel(
            entry_number=self._next("JE"), entry_date=entry_date, status=status.value,
        ))
        for account, debit in lines:
            self._save(JournalLineModel(
                journal_entry_id=entry.id,
                account_id=account.id,
                debit_amount=Decimal(str(debit)),
            ))
        return entry


@pytest.fixture
def docs(session):
    return DocumentFactory(session)
