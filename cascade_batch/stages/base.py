"""
CascadeStage protocol, StageContext and StageRegistry.

Contract:
    ``CascadeStage`` is the interface every cascade stage implements: it
    consumes one ledger event type and recomputes what that event names.
    ``StageRegistry`` maps event types to stages, one stage per type.

Architecture:
    cascade_batch/stages. Imports kernel types and config only; concrete
    stages in cost_stages.py build their services per invocation.

Non-goals:
    Stages do NOT manage transactions or mark events processed. The
    dispatcher owns the SAVEPOINT and the ledger acknowledgement.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sqlalchemy.orm import Session

from cascade_config.schema import CascadeConfig
from cascade_kernel.domain.clock import Clock
from cascade_kernel.domain.types import LedgerEvent
from cascade_kernel.exceptions import StageNotRegisteredError


@dataclass(frozen=True)
class StageResult:
    """Summary a stage reports for one handled event (logged, never persisted)."""

    detail: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StageContext:
    """Collaborators shared by every stage of one orchestrator."""

    config: CascadeConfig
    clock: Clock
    notifier: Any = None


@runtime_checkable
class CascadeStage(Protocol):
    """One cascade stage.

    Contract:
        - ``event_type``: the ledger event type consumed, unique per registry.
        - ``description``: human-readable label for logs and the CLI.
        - ``handle()``: full recomputation for one event inside the
          dispatcher's SAVEPOINT. Raising leaves the event pending.
    """

    @property
    def event_type(self) -> str: ...

    @property
    def description(self) -> str: ...

    def handle(self, event: LedgerEvent, session: Session) -> StageResult:
        ...


class StageRegistry:
    """Registry mapping ledger event types to the stage consuming them."""

    def __init__(self) -> None:
        self._stages: dict[str, CascadeStage] = {}

    def register(self, stage: CascadeStage) -> None:
        """Register a stage.

        Raises:
            ValueError: If a stage for the same event type is already registered.
        """
        if stage.event_type in self._stages:
            raise ValueError(f"Event type '{stage.event_type}' already has a stage")
        self._stages[stage.event_type] = stage

    def get(self, event_type: str) -> CascadeStage:
        try:
            return self._stages[event_type]
        except KeyError:
            raise StageNotRegisteredError(event_type) from None

    def list_stages(self) -> tuple[str, ...]:
        return tuple(sorted(self._stages))

    def __len__(self) -> int:
        return len(self._stages)

    def __contains__(self, event_type: str) -> bool:
        return event_type in self._stages
