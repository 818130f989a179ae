"""
ORM-level append-only enforcement.

Protected entities:

Entity                  | Rule
------------------------|-------------------------------------------------
ConsumptionRecordModel  | Never updated, never deleted (consumption is a fact)
LedgerEventModel        | Never deleted; only ``processed``/``processed_at``
                        | (and ``updated_at``) may change after insert

The listeners fire on flush, before SQL reaches the database, and raise
ImmutabilityViolationError which aborts the surrounding transaction or
SAVEPOINT.

Usage:

    from cascade_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()   # once at startup; idempotent
"""

from sqlalchemy import event, inspect

from cascade_kernel.exceptions import ImmutabilityViolationError
from cascade_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_LEDGER_MUTABLE_FIELDS = frozenset({"processed", "processed_at", "updated_at"})


def _blocked(entity_type: str, target, operation: str, reason: str) -> ImmutabilityViolationError:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _check_consumption_update(mapper, connection, target):
    changed = [
        attr.key
        for attr in inspect(target).attrs
        if attr.key != "updated_at" and attr.history.has_changes()
    ]
    if changed:
        raise _blocked(
            "ConsumptionRecord", target, "UPDATE",
            f"Consumption records are append-only (changed: {', '.join(sorted(changed))})",
        )


def _check_consumption_delete(mapper, connection, target):
    raise _blocked(
        "ConsumptionRecord", target, "DELETE",
        "Consumption records are append-only",
    )


def _check_ledger_event_update(mapper, connection, target):
    for attr in inspect(target).attrs:
        if attr.key in _LEDGER_MUTABLE_FIELDS:
            continue
        if attr.history.has_changes():
            raise _blocked(
                "LedgerEvent", target, "UPDATE",
                f"Cannot modify field '{attr.key}' on a ledger event",
            )


def _check_ledger_event_delete(mapper, connection, target):
    raise _blocked(
        "LedgerEvent", target, "DELETE",
        "Ledger events are kept for audit and never deleted",
    )


def _listeners():
    from cascade_kernel.models.ledger import LedgerEventModel
    from cascade_kernel.models.production import ConsumptionRecordModel

    return (
        (ConsumptionRecordModel, "before_update", _check_consumption_update),
        (ConsumptionRecordModel, "before_delete", _check_consumption_delete),
        (LedgerEventModel, "before_update", _check_ledger_event_update),
        (LedgerEventModel, "before_delete", _check_ledger_event_delete),
    )


def register_immutability_listeners() -> None:
    for model, name, fn in _listeners():
        if not event.contains(model, name, fn):
            event.listen(model, name, fn)


def unregister_immutability_listeners() -> None:
    """Remove the listeners. TESTS ONLY."""
    for model, name, fn in _listeners():
        if event.contains(model, name, fn):
            event.remove(model, name, fn)
