"""
cascade_services.overhead_pool_service -- monthly overhead pool from the books.

Responsibility:
    Turn posted bookkeeping entries into an accounting-sourced overhead
    cost period per calendar month: aggregate the pool accounts' debit
    turnover, convert it to the base currency, store the provenance and
    refresh the period's cost per minute.

Architecture position:
    Services. Reads journal lines through OverheadSelector, aggregates
    with ``cascade_engines.overhead_pool``, converts through a
    LookbackRateResolver and delegates effective-time work to
    OverheadTimeService.

Invariants enforced:
    - Only changes that move a month's posted turnover trigger a sync:
      an entry becoming posted, a posted entry being reversed, a posted
      entry being deleted. A reversal dated in another month than the
      entry it reverses syncs both months.
    - The accounting period for a month is created only when its pool is
      positive; an existing one is updated in place, down to 0.
    - ``overhead_period_update`` is appended only when the amount or the
      cost per minute moves past the change tolerance, or the period was
      just created.

Failure modes:
    - ExchangeRateUnavailableError / ExchangeRateFetchError propagate.
      Nothing is written for that month and the invocation is retried.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from cascade_config.schema import CascadeConfig
from cascade_engines.overhead_pool import (
    PoolLine,
    aggregate_pool,
    convert_to_base,
    month_of,
    month_window,
)
from cascade_kernel.domain.clock import Clock, SystemClock
from cascade_kernel.domain.precision import ZERO
from cascade_kernel.domain.types import JournalEntryStatus, OverheadSource
from cascade_kernel.logging_config import get_logger
from cascade_kernel.models.overhead import OverheadCostPeriodModel
from cascade_kernel.selectors.overhead import OverheadSelector
from cascade_services.exchange_rates import LookbackRateResolver
from cascade_services.overhead_time_service import OverheadTimeService

logger = get_logger("services.overhead_pool")


class JournalChangeKind(str, Enum):
    POSTED = "posted"
    REVERSED = "reversed"
    DELETED_POSTED = "deleted-posted"
    IGNORED = "ignored"


@dataclass(frozen=True)
class JournalChange:
    kind: JournalChangeKind
    months: tuple[tuple[int, int], ...] = ()


@dataclass(frozen=True)
class PoolSyncResult:
    period_key: str
    period_id: str | None
    created: bool
    changed: bool
    pool_total_local: Decimal
    amount: Decimal
    exchange_rate: Decimal | None = None
    rate_date: date | None = None
    event_id: UUID | None = None


def _entry_month(snapshot: Mapping[str, Any]) -> tuple[int, int] | None:
    value = snapshot.get("entry_date")
    if value in (None, ""):
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return month_of(value)


def _months(*snapshots: Mapping[str, Any]) -> tuple[tuple[int, int], ...]:
    months: list[tuple[int, int]] = []
    for snapshot in snapshots:
        month = _entry_month(snapshot)
        if month is not None and month not in months:
            months.append(month)
    return tuple(months)


def classify_journal_change(
    before: Mapping[str, Any] | None, after: Mapping[str, Any] | None,
) -> JournalChange:
    """Decide whether a journal entry change moves posted turnover, and for which months."""
    posted = JournalEntryStatus.POSTED.value
    reversed_ = JournalEntryStatus.REVERSED.value
    old_status = before.get("status") if before else None
    new_status = after.get("status") if after else None

    if after is None:
        if old_status == posted:
            return JournalChange(JournalChangeKind.DELETED_POSTED, _months(before))
        return JournalChange(JournalChangeKind.IGNORED)

    if new_status == posted and old_status != posted:
        return JournalChange(JournalChangeKind.POSTED, _months(after))

    if new_status == reversed_ and old_status == posted:
        return JournalChange(JournalChangeKind.REVERSED, _months(after, before))

    return JournalChange(JournalChangeKind.IGNORED)


class OverheadPoolService:
    def __init__(
        self,
        session: Session,
        time_service: OverheadTimeService,
        rate_resolver: LookbackRateResolver,
        config: CascadeConfig | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._time = time_service
        self._rates = rate_resolver
        self._config = config or CascadeConfig()
        self._clock = clock or SystemClock()
        self._overhead = OverheadSelector(session, self._config.in_query_limit)

    def handle_journal_entry_change(
        self, before: Mapping[str, Any] | None, after: Mapping[str, Any] | None,
    ) -> list[PoolSyncResult]:
        change = classify_journal_change(before, after)
        entry_id = (after or before or {}).get("id")
        logger.info(
            "journal_entry_change_classified",
            extra={
                "journal_entry_id": entry_id,
                "kind": change.kind.value,
                "months": [f"{y:04d}-{m:02d}" for y, m in change.months],
            },
        )
        return [self.sync_month(year, month, source_id=entry_id) for year, month in change.months]

    def sync_month(self, year: int, month: int, source_id: str | None = None) -> PoolSyncResult:
        window = month_window(year, month)
        accounts = self._config.pool_accounts
        pool = aggregate_pool(
            [
                PoolLine(line.journal_entry_id, line.account_number, line.account_name, line.debit_amount)
                for line in self._overhead.posted_lines(window.start, window.next_start)
            ],
            window.period_key,
            accounts.included,
            accounts.excluded,
            accounts.ignored,
        )
        period = self._overhead.accounting_period(window.period_key)

        if period is None and pool.total_local <= 0:
            logger.info("overhead_pool_empty", extra={"period_key": window.period_key})
            return PoolSyncResult(window.period_key, None, False, False, pool.total_local, ZERO)

        rate = None
        rate_date = None
        amount = ZERO
        if pool.total_local > 0:
            quote = self._rates.get_rate(self._config.base_currency, window.last_day)
            rate, rate_date = quote.rate, quote.rate_date
            amount = convert_to_base(pool.total_local, rate)

        created = period is None
        if created:
            period = OverheadCostPeriodModel(
                name=f"Overhead {window.period_key}",
                start_date=window.start,
                end_date=window.end,
                amount=ZERO,
                currency=self._config.base_currency,
                excluded_task_ids=[],
                source=OverheadSource.ACCOUNTING.value,
                period_key=window.period_key,
            )
            self._session.add(period)
            self._session.flush()

        period.pool_amount_local = pool.total_local
        period.pool_currency = self._config.pool_currency
        period.exchange_rate = rate
        period.rate_date = rate_date
        period.pool_breakdown = pool.breakdown_dict()
        period.pool_entries_count = pool.entries_count

        refresh = self._time.refresh(period, amount=amount)
        event_id = None
        if refresh.decision.changed or created:
            event_id = self._time.announce(
                [refresh.period_id], source_type="journal_entry", source_id=source_id,
            )

        logger.info(
            "overhead_pool_synced",
            extra={
                "period_key": window.period_key,
                "period_id": refresh.period_id,
                "created": created,
                "pool_total_local": pool.total_local,
                "amount": amount,
                "exchange_rate": rate,
                "accounts": pool.accounts_count,
                "rate_changed": refresh.decision.changed,
            },
        )
        return PoolSyncResult(
            period_key=window.period_key,
            period_id=refresh.period_id,
            created=created,
            changed=refresh.decision.changed,
            pool_total_local=pool.total_local,
            amount=amount,
            exchange_rate=rate,
            rate_date=rate_date,
            event_id=event_id,
        )
