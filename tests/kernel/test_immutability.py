"""
Append-only enforcement on consumption records and ledger events.

Listeners are registered for the whole session by conftest; each test
flushes a forbidden change and expects ImmutabilityViolationError.
"""

from decimal import Decimal

import pytest

from cascade_kernel.exceptions import ImmutabilityViolationError
from cascade_kernel.models import LedgerEventModel
from cascade_services.event_ledger import EventLedger


class TestConsumptionRecordImmutability:
    def test_update_blocked(self, session, docs):
        material = docs.material("5")
        task = docs.task([(material, 10)])
        record = docs.consumption(task, material, 2)

        record.quantity = Decimal("3")
        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()
        assert exc_info.value.code == "IMMUTABILITY_VIOLATION"
        assert exc_info.value.entity_type == "ConsumptionRecord"

    def test_delete_blocked(self, session, docs):
        material = docs.material("5")
        task = docs.task([(material, 10)])
        record = docs.consumption(task, material, 2)

        session.delete(record)
        with pytest.raises(ImmutabilityViolationError):
            session.flush()


class TestLedgerEventImmutability:
    def test_processed_flag_may_change(self, session, clock):
        ledger = EventLedger(session, clock)
        event_id = ledger.append("task_cost_update", {"task_ids": ["a"]})
        assert ledger.mark_processed(event_id) is True

    def test_payload_update_blocked(self, session, clock):
        ledger = EventLedger(session, clock)
        event_id = ledger.append("task_cost_update", {"task_ids": ["a"]})
        model = session.get(LedgerEventModel, event_id)

        model.event_type = "batch_price_update"
        with pytest.raises(ImmutabilityViolationError):
            session.flush()

    def test_delete_blocked(self, session, clock):
        ledger = EventLedger(session, clock)
        event_id = ledger.append("task_cost_update", {"task_ids": ["a"]})

        session.delete(session.get(LedgerEventModel, event_id))
        with pytest.raises(ImmutabilityViolationError):
            session.flush()
