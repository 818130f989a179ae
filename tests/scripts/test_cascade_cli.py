"""
Tests for scripts/cascade_cli.py.

Each test points the CLI at a fresh SQLite file and reads the JSON it
prints.
"""

import json
from decimal import Decimal

import pytest
from sqlalchemy.orm import Session

from cascade_kernel.db.engine import build_engine, create_tables, reset_engine
from cascade_kernel.models import InventoryBatchModel, MaterialModel, ProductionTaskModel
from scripts.cascade_cli import main


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    monkeypatch.delenv("COSTCASCADE_CONFIG", raising=False)
    yield f"sqlite:///{tmp_path / 'cli.db'}"
    reset_engine()


@pytest.fixture
def estimated_task_id(db_url):
    """Task needing 2 of a material whose only batch was bought at 3."""
    engine = build_engine(db_url)
    create_tables(engine)
    with Session(engine) as session:
        material = MaterialModel(name="Steel", unit_price=Decimal("5"))
        session.add(material)
        session.flush()
        session.add(InventoryBatchModel(
            material_id=material.id,
            batch_number="B-1",
            initial_quantity=Decimal("10"),
            quantity=Decimal("10"),
            unit_price=Decimal("3"),
            base_unit_price=Decimal("3"),
        ))
        task = ProductionTaskModel(
            mo_number="MO-1",
            quantity=Decimal("1"),
            materials=[{"material_id": str(material.id), "name": "Steel", "quantity": "2"}],
        )
        session.add(task)
        session.commit()
        task_id = str(task.id)
    engine.dispose()
    return task_id


def run(capsys, *argv):
    code = main(list(argv))
    captured = capsys.readouterr()
    return code, captured


class TestCommands:
    def test_pending_on_new_database(self, capsys, db_url):
        code, captured = run(capsys, "--database-url", db_url, "--create-tables", "pending")

        assert code == 0
        assert json.loads(captured.out) == {"pending": {}}

    def test_recalc_tasks_with_drain(self, capsys, db_url, estimated_task_id):
        code, captured = run(
            capsys, "--database-url", db_url, "recalc-tasks", estimated_task_id, "--drain",
        )

        assert code == 0
        output = json.loads(captured.out)
        assert output["result"]["changed_task_ids"] == [estimated_task_id]
        assert output["run"]["processed_by_type"] == {"task_cost_update": 1}
        assert output["run"]["quiescent"] is True

    def test_recalc_tasks_without_drain_leaves_event_pending(self, capsys, db_url, estimated_task_id):
        run(capsys, "--database-url", db_url, "recalc-tasks", estimated_task_id)

        code, captured = run(capsys, "--database-url", db_url, "pending")

        assert code == 0
        assert json.loads(captured.out) == {"pending": {"task_cost_update": 1}}

    def test_resync_empty_month(self, capsys, db_url):
        code, captured = run(
            capsys, "--database-url", db_url, "--create-tables", "resync-month", "2024-03",
        )

        assert code == 0
        result = json.loads(captured.out)["result"]
        assert result["period_key"] == "2024-03"
        assert result["period_id"] is None

    def test_recalc_overhead_without_periods(self, capsys, db_url):
        code, captured = run(capsys, "--database-url", db_url, "--create-tables", "recalc-overhead")

        assert code == 0
        assert json.loads(captured.out)["result"]["period_ids"] == []


class TestErrors:
    def test_bad_month_rejected_by_parser(self, capsys, db_url):
        with pytest.raises(SystemExit) as exc_info:
            main(["--database-url", db_url, "resync-month", "2024-13"])
        assert exc_info.value.code == 2

    def test_missing_config_file(self, capsys, db_url, tmp_path):
        code, captured = run(
            capsys, "--database-url", db_url, "--config", str(tmp_path / "nope.yaml"), "pending",
        )

        assert code == 1
        error = json.loads(captured.err.strip().splitlines()[-1])
        assert error["error"] == "CONFIGURATION_INVALID"
        assert "file not found" in error["message"]
