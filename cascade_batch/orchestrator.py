"""
CascadeOrchestrator -- DI container and entry points of the cost cascade.

Contract:
    Wires the stage services, the StageRegistry and the dispatcher on one
    session, and exposes:
        - trigger entry points for document-change notifications
          (purchase orders, work sessions, journal entries, deleted
          overhead periods);
        - manual entry points for administrative re-runs, which call the
          same services the triggers call;
        - ``run_to_quiescence()``, which dispatches every ledger event
          type until no more events are produced.

Architecture: cascade_batch (top-level). Canonical entry point for the
    CLI and the poller.

Invariants enforced:
    - All services share one Clock and one CascadeConfig.
    - Triggers write and append inside the caller's transaction; the
      caller commits.
    - ``run_to_quiescence`` stops at ``max_cascade_rounds``; an event that
      fails is not retried again within the same run.

Non-goals:
    - Does NOT commit or manage session lifecycle.
    - Does NOT start the poller automatically.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from cascade_batch.domain.types import CascadeRunSummary, DispatchResult
from cascade_batch.services.dispatcher import LedgerDispatcher
from cascade_batch.services.poller import LedgerPoller
from cascade_batch.stages.base import StageContext, StageRegistry
from cascade_batch.stages.cost_stages import FactoryCostStage, OrderValueStage, TaskCostStage
from cascade_config.schema import CascadeConfig
from cascade_kernel.domain.clock import Clock, SystemClock
from cascade_kernel.domain.types import DocumentChange, LedgerEventType
from cascade_kernel.logging_config import get_logger
from cascade_services.batch_price_service import (
    BatchPriceService,
    BatchRepriceResult,
    pricing_inputs_changed,
)
from cascade_services.event_ledger import EventLedger
from cascade_services.exchange_rates import LookbackRateResolver, NbpRateProvider, RateProvider
from cascade_services.factory_cost_service import FactoryCostService, FactoryRunResult
from cascade_services.notifications import LoggingNotifier, Notifier
from cascade_services.order_value_service import OrderValueService
from cascade_services.overhead_pool_service import OverheadPoolService, PoolSyncResult
from cascade_services.overhead_time_service import OverheadRunResult, OverheadTimeService
from cascade_services.task_cost_service import TaskCostRunResult, TaskCostService

logger = get_logger("batch.orchestrator")

# Upstream stages first.
DISPATCH_ORDER: tuple[str, ...] = (
    LedgerEventType.BATCH_PRICE_UPDATE.value,
    LedgerEventType.OVERHEAD_PERIOD_UPDATE.value,
    LedgerEventType.TASK_COST_UPDATE.value,
)


def _default_stage_registry(context: StageContext) -> StageRegistry:
    """Create a StageRegistry with every ledger-driven stage."""
    registry = StageRegistry()
    registry.register(TaskCostStage(context))
    registry.register(FactoryCostStage(context))
    registry.register(OrderValueStage(context))
    return registry


class CascadeOrchestrator:
    def __init__(
        self,
        session: Session,
        stage_registry: StageRegistry,
        rate_resolver: LookbackRateResolver,
        config: CascadeConfig | None = None,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._session = session
        self._registry = stage_registry
        self._config = config or CascadeConfig()
        self._clock = clock or SystemClock()
        self._notifier = notifier
        self._rate_resolver = rate_resolver

        self._ledger = EventLedger(session, self._clock)
        self._batch_prices = BatchPriceService(
            session, self._ledger, self._config, self._clock, notifier,
        )
        self._task_costs = TaskCostService(
            session, self._ledger, self._config, self._clock, notifier,
        )
        self._order_values = OrderValueService(session, self._config, self._clock)
        self._overhead_time = OverheadTimeService(
            session, self._ledger, self._config, self._clock,
        )
        self._overhead_pool = OverheadPoolService(
            session, self._overhead_time, rate_resolver, self._config, self._clock,
        )
        self._factory_costs = FactoryCostService(session, self._ledger, self._config)

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_session(
        cls,
        session: Session,
        config: CascadeConfig | None = None,
        clock: Clock | None = None,
        rate_provider: RateProvider | None = None,
        notifier: Notifier | None = None,
        stage_registry: StageRegistry | None = None,
    ) -> CascadeOrchestrator:
        """Create a fully wired orchestrator.

        Args:
            session: Session every service reads and writes through.
            config: Cascade configuration (defaults when None).
            clock: Optional clock for deterministic testing.
            rate_provider: Exchange-rate source; the NBP client when None.
            notifier: Alert sink; structured-log alerts when None.
            stage_registry: Optional pre-built registry.
        """
        effective_config = config or CascadeConfig()
        effective_clock = clock or SystemClock()
        effective_notifier = notifier or LoggingNotifier()
        registry = stage_registry if stage_registry is not None else _default_stage_registry(
            StageContext(effective_config, effective_clock, effective_notifier),
        )
        resolver = LookbackRateResolver(
            rate_provider or NbpRateProvider(),
            pool_currency=effective_config.pool_currency,
            lookback_days=effective_config.rate_lookback_days,
        )
        return cls(
            session=session,
            stage_registry=registry,
            rate_resolver=resolver,
            config=effective_config,
            clock=effective_clock,
            notifier=effective_notifier,
        )

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def on_purchase_order_changed(
        self, before: Mapping[str, Any] | None, after: Mapping[str, Any] | None,
    ) -> BatchRepriceResult | None:
        if not pricing_inputs_changed(before, after):
            logger.debug("purchase_order_change_ignored")
            return None
        return self._batch_prices.reprice_purchase_order(after["id"])

    def on_work_session_changed(
        self, before: Mapping[str, Any] | None, after: Mapping[str, Any] | None,
    ) -> OverheadRunResult:
        session_id = (after or before or {}).get("id")
        return self._overhead_time.handle_session_change(before, after, source_id=session_id)

    def on_journal_entry_changed(
        self, before: Mapping[str, Any] | None, after: Mapping[str, Any] | None,
    ) -> list[PoolSyncResult]:
        return self._overhead_pool.handle_journal_entry_change(before, after)

    def on_overhead_period_deleted(self, period_id: UUID | str) -> FactoryRunResult:
        return self._factory_costs.clear_period(period_id)

    def on_document_change(self, change: DocumentChange) -> Any:
        """Route a change notification to the trigger for its collection."""
        if change.collection == "purchase_orders":
            return self.on_purchase_order_changed(change.before, change.after)
        if change.collection == "work_sessions":
            return self.on_work_session_changed(change.before, change.after)
        if change.collection == "journal_entries":
            return self.on_journal_entry_changed(change.before, change.after)
        if change.collection == "overhead_cost_periods" and change.is_delete:
            return self.on_overhead_period_deleted(change.document_id)
        logger.debug(
            "document_change_ignored",
            extra={"collection": change.collection, "document_id": change.document_id},
        )
        return None

    # -------------------------------------------------------------------------
    # Manual re-runs
    # -------------------------------------------------------------------------

    def recalculate_tasks(self, task_ids: Iterable[UUID | str]) -> TaskCostRunResult:
        return self._task_costs.recalculate_tasks(task_ids)

    def reprice_purchase_order(self, po_id: UUID | str) -> BatchRepriceResult:
        return self._batch_prices.reprice_purchase_order(po_id, reason="manual_reprice")

    def resync_overhead_month(self, year: int, month: int) -> PoolSyncResult:
        return self._overhead_pool.sync_month(year, month)

    def recalculate_overhead_periods(
        self, period_ids: Iterable[UUID | str] | None = None,
    ) -> OverheadRunResult:
        if period_ids is None:
            return self._overhead_time.recalculate_all()
        return self._overhead_time.recalculate_periods(period_ids)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def create_dispatcher(self, session: Session | None = None) -> LedgerDispatcher:
        target = session or self._session
        ledger = self._ledger if session is None else EventLedger(target, self._clock)
        return LedgerDispatcher(target, self._registry, self._clock, ledger)

    def dispatch(self, event_type: LedgerEventType | str) -> DispatchResult:
        return self.create_dispatcher().dispatch(event_type, self._config.dispatch_batch_size)

    def run_to_quiescence(self, max_rounds: int | None = None) -> CascadeRunSummary:
        rounds_allowed = max_rounds or self._config.max_cascade_rounds
        dispatcher = self.create_dispatcher()
        failed: set[UUID] = set()
        results: list[DispatchResult] = []
        rounds = 0
        progressed = True

        while progressed and rounds < rounds_allowed:
            rounds += 1
            progressed = False
            for event_type in DISPATCH_ORDER:
                if event_type not in self._registry:
                    continue
                result = dispatcher.dispatch(
                    event_type, self._config.dispatch_batch_size, frozenset(failed),
                )
                if result.outcomes:
                    results.append(result)
                failed |= result.failed_event_ids
                progressed = progressed or result.processed > 0

        summary = CascadeRunSummary(
            rounds=rounds,
            quiescent=not progressed,
            results=tuple(results),
            pending=self._ledger.pending_counts(),
        )
        if progressed:
            logger.warning(
                "cascade_round_limit_reached",
                extra={"rounds": rounds, "pending": dict(summary.pending)},
            )
        logger.info(
            "cascade_run_completed",
            extra={
                "rounds": rounds,
                "processed": summary.processed,
                "failed": summary.failed,
                "quiescent": summary.quiescent,
            },
        )
        return summary

    def create_poller(
        self,
        session_factory: Callable[[], Session],
        poll_interval_seconds: float | None = None,
    ) -> LedgerPoller:
        config = self._config
        clock = self._clock
        notifier = self._notifier
        rate_resolver = self._rate_resolver

        def orchestrator_factory(session: Session) -> CascadeOrchestrator:
            return CascadeOrchestrator(
                session=session,
                stage_registry=self._registry,
                rate_resolver=rate_resolver,
                config=config,
                clock=clock,
                notifier=notifier,
            )

        return LedgerPoller(
            session_factory=session_factory,
            orchestrator_factory=orchestrator_factory,
            poll_interval_seconds=poll_interval_seconds or config.poll_interval_seconds,
        )

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def config(self) -> CascadeConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def ledger(self) -> EventLedger:
        return self._ledger

    @property
    def stage_registry(self) -> StageRegistry:
        return self._registry
