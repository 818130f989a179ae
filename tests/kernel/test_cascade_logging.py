"""Tests for the structured logging system (cascade_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from cascade_kernel.exceptions import ExchangeRateUnavailableError
from cascade_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state around each test and restore the suite configuration."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG)


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


class TestStructuredFormatter:
    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_all_logs(stream)[0]
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "costcascade.test"
        assert "ts" in record

    def test_extra_fields_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        task_id = uuid4()
        get_logger("test").info(
            "task_cost_written",
            extra={"task_id": task_id, "total_material_cost": Decimal("12.3400")},
        )

        record = _parse_all_logs(stream)[0]
        assert record["task_id"] == str(task_id)
        assert record["total_material_cost"] == "12.3400"

    def test_exception_attributes_flattened(self):
        from datetime import date

        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ExchangeRateUnavailableError("EUR", date(2024, 3, 31), 7)
        except ExchangeRateUnavailableError:
            get_logger("test").exception("rate_failed")

        record = _parse_all_logs(stream)[0]
        assert record["exc_type"] == "ExchangeRateUnavailableError"
        assert record["exc_code"] == "EXCHANGE_RATE_UNAVAILABLE"
        assert record["exc_currency"] == "EUR"
        assert record["exc_lookback_days"] == 7
        assert "traceback" in record

    def test_below_level_suppressed(self):
        handler, stream = _make_handler()
        configure_logging(level=logging.WARNING, handler=handler)
        get_logger("test").info("quiet")
        assert stream.getvalue() == ""


class TestLogContext:
    def test_bound_fields_appear_on_records(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        with LogContext.bind(event_id="evt-1", stage="task_cost_update"):
            get_logger("test").info("inside")
        get_logger("test").info("outside")

        inside, outside = _parse_all_logs(stream)
        assert inside["event_id"] == "evt-1"
        assert inside["stage"] == "task_cost_update"
        assert "event_id" not in outside

    def test_nested_bind_restores_outer_value(self):
        with LogContext.bind(correlation_id="outer"):
            with LogContext.bind(correlation_id="inner"):
                assert LogContext.get_all()["correlation_id"] == "inner"
            assert LogContext.get_all()["correlation_id"] == "outer"
        assert "correlation_id" not in LogContext.get_all()

    def test_set_rejects_unknown_field(self):
        with pytest.raises(KeyError):
            LogContext.set(tenant="x")

    def test_none_values_ignored(self):
        LogContext.set(source_type=None, source_id="po-1")
        assert LogContext.get_all() == {"source_id": "po-1"}


class TestConfigureLogging:
    def test_idempotent(self):
        handler, _ = _make_handler()
        configure_logging(handler=handler)
        configure_logging(handler=handler)
        assert len(logging.getLogger("costcascade").handlers) == 1

    def test_does_not_propagate(self):
        configure_logging(handler=logging.NullHandler())
        assert logging.getLogger("costcascade").propagate is False
