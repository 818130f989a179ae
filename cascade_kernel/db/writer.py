"""
BatchedWriter -- capped multi-document writes.

Contract:
    ``stage(model)`` queues a dirty or new model; the writer flushes every
    ``batch_limit`` documents and on ``flush()``. Each flush is one round
    trip of at most ``batch_limit`` documents, mirroring the store's cap on
    batched atomic writes.

Non-goals:
    Committing. The caller (the dispatcher's SAVEPOINT or session_scope)
    owns the transaction.
"""

from __future__ import annotations

from sqlalchemy.orm import Session

from cascade_kernel.logging_config import get_logger

logger = get_logger("db.writer")


class BatchedWriter:
    def __init__(self, session: Session, batch_limit: int = 400):
        if batch_limit <= 0:
            raise ValueError(f"batch_limit must be positive, got {batch_limit}")
        self._session = session
        self._batch_limit = batch_limit
        self._pending: list[object] = []
        self.written = 0
        self.batches = 0

    def stage(self, model: object) -> None:
        self._pending.append(model)
        if len(self._pending) >= self._batch_limit:
            self.flush()

    def flush(self) -> int:
        """Write everything queued; return the number of documents written."""
        if not self._pending:
            return 0
        count = len(self._pending)
        self._session.add_all(self._pending)
        self._session.flush()
        self._pending = []
        self.written += count
        self.batches += 1
        logger.debug("batched_write_flushed", extra={"documents": count})
        return count

    def __enter__(self) -> "BatchedWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.flush()
