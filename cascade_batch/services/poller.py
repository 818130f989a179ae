"""
LedgerPoller -- in-process polling loop for the poll-driven deployment.

Contract:
    Every ``poll_interval_seconds`` opens a fresh session, runs the cascade
    to quiescence and commits. ``tick()`` is public so tests and the CLI
    can run a single pass without the thread.

Invariants enforced:
    - One session per tick; no state is carried between ticks.
    - A failed tick rolls back and is retried on the next interval.
    - ``stop()`` is honoured between ticks; a running tick completes.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Callable

from sqlalchemy.orm import Session

from cascade_batch.domain.types import CascadeRunSummary
from cascade_kernel.logging_config import LogContext, get_logger

if TYPE_CHECKING:
    from cascade_batch.orchestrator import CascadeOrchestrator

logger = get_logger("batch.poller")


class LedgerPoller:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        orchestrator_factory: Callable[[Session], "CascadeOrchestrator"],
        poll_interval_seconds: float = 30,
    ):
        self._session_factory = session_factory
        self._orchestrator_factory = orchestrator_factory
        self._interval = poll_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.ticks = 0

    def tick(self) -> CascadeRunSummary | None:
        """Run one cascade pass. Returns None when the pass failed."""
        session = self._session_factory()
        try:
            with LogContext.bind(correlation_id=f"poll-{self.ticks + 1}"):
                summary = self._orchestrator_factory(session).run_to_quiescence()
            session.commit()
            return summary
        except Exception:
            session.rollback()
            logger.exception("poller_tick_failed")
            return None
        finally:
            self.ticks += 1
            session.close()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="cascade-ledger-poller", daemon=True,
        )
        self._thread.start()
        logger.info("poller_started", extra={"poll_interval": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("poller_stopped", extra={"ticks": self.ticks})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._interval)
