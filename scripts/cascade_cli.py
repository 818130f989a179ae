#!/usr/bin/env python3
"""
Administrative command line for the cost cascade.

Manual re-runs go through the same services as the automatic triggers;
``--drain`` runs the ledger to quiescence afterwards so the change reaches
orders in the same invocation.

Usage:
    python3 scripts/cascade_cli.py [--database-url URL] [--config PATH] COMMAND

Commands:
    drain                          run pending ledger events to quiescence
    pending                        unprocessed ledger events per type
    recalc-tasks TASK_ID...        recompute task costs
    reprice-po PO_ID               recompute batch prices for a purchase order
    resync-month YYYY-MM           rebuild the accounting overhead pool
    recalc-overhead [PERIOD_ID...] recompute effective time (all periods if none)

Output is one JSON document on stdout. Exit status 1 on a cascade error.
"""

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from cascade_batch.orchestrator import CascadeOrchestrator  # noqa: E402
from cascade_config import load_config  # noqa: E402
from cascade_kernel.db.engine import (  # noqa: E402
    create_tables,
    init_engine_from_url,
    reset_engine,
    session_scope,
)
from cascade_kernel.exceptions import CascadeError  # noqa: E402
from cascade_kernel.logging_config import configure_logging  # noqa: E402

DEFAULT_DB_URL = os.environ.get("COSTCASCADE_DATABASE_URL", "sqlite:///costcascade.db")


def _to_jsonable(result):
    if result is None:
        return None
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if dataclasses.is_dataclass(result):
        return dataclasses.asdict(result)
    if isinstance(result, (list, tuple)):
        return [_to_jsonable(item) for item in result]
    return result


def _year_month(value: str) -> tuple[int, int]:
    try:
        year, month = (int(part) for part in value.split("-"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {value!r}") from None
    if not 1 <= month <= 12:
        raise argparse.ArgumentTypeError(f"month out of range in {value!r}")
    return year, month


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Cost cascade administration")
    p.add_argument(
        "--database-url",
        default=DEFAULT_DB_URL,
        help=f"SQLAlchemy URL (default: {DEFAULT_DB_URL!r}, or COSTCASCADE_DATABASE_URL)",
    )
    p.add_argument("--config", default=None, help="Cascade YAML config (default: COSTCASCADE_CONFIG)")
    p.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    p.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG to stderr")

    sub = p.add_subparsers(dest="command", required=True)
    sub.add_parser("drain", help="Run pending ledger events to quiescence")
    sub.add_parser("pending", help="Count unprocessed ledger events per type")

    tasks = sub.add_parser("recalc-tasks", help="Recompute task costs")
    tasks.add_argument("task_ids", nargs="+")

    po = sub.add_parser("reprice-po", help="Recompute batch prices for a purchase order")
    po.add_argument("po_id")

    month = sub.add_parser("resync-month", help="Rebuild the accounting overhead pool")
    month.add_argument("month", type=_year_month, metavar="YYYY-MM")

    overhead = sub.add_parser("recalc-overhead", help="Recompute overhead effective time")
    overhead.add_argument("period_ids", nargs="*")

    for command in (tasks, po, month, overhead):
        command.add_argument("--drain", action="store_true", help="Drain the ledger afterwards")
    return p.parse_args(argv)


def _run(orchestrator: CascadeOrchestrator, args: argparse.Namespace) -> dict:
    if args.command == "pending":
        return {"pending": orchestrator.ledger.pending_counts()}
    if args.command == "drain":
        return {"run": orchestrator.run_to_quiescence().to_dict()}

    if args.command == "recalc-tasks":
        result = orchestrator.recalculate_tasks(args.task_ids)
    elif args.command == "reprice-po":
        result = orchestrator.reprice_purchase_order(args.po_id)
    elif args.command == "resync-month":
        result = orchestrator.resync_overhead_month(*args.month)
    else:
        result = orchestrator.recalculate_overhead_periods(args.period_ids or None)

    output = {"result": _to_jsonable(result)}
    if args.drain:
        output["run"] = orchestrator.run_to_quiescence().to_dict()
    return output


def main(argv=None) -> int:
    args = _parse_args(argv)
    configure_logging(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        config = load_config(args.config)
        init_engine_from_url(args.database_url)
        if args.create_tables:
            create_tables()
        with session_scope() as session:
            orchestrator = CascadeOrchestrator.from_session(session, config=config)
            output = _run(orchestrator, args)
    except CascadeError as exc:
        print(json.dumps({"error": exc.code, "message": str(exc)}), file=sys.stderr)
        return 1
    finally:
        reset_engine()

    print(json.dumps(output, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
