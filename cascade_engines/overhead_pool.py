"""
Module: cascade_engines.overhead_pool
Responsibility:
    Aggregate a month's overhead pool from posted journal lines: pick the
    bookkeeping accounts that belong to the pool by number prefix, sum
    their positive debit turnover, and convert the total into the base
    currency.

Architecture position:
    Engines -- pure. The overhead pool stage reads the lines and the rate
    and persists the resulting OverheadCostPeriod fields.

Account selection:
    A trimmed account number belongs to the pool when it starts with an
    included prefix and with no excluded or ignored prefix. Ignored
    prefixes are checked first (whole account groups, e.g. "7"), then
    excluded ones (narrower carve-outs, e.g. "402-01"), then included.
"""

from __future__ import annotations

import calendar
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import UUID

from cascade_engines.tracer import traced_engine
from cascade_kernel.domain.precision import ZERO, add, div, round4


@dataclass(frozen=True)
class PoolLine:
    journal_entry_id: UUID | str
    account_number: str
    account_name: str
    debit_amount: Decimal


@dataclass(frozen=True)
class PoolAccountTotal:
    account_number: str
    account_name: str
    debit_total: Decimal


@dataclass(frozen=True)
class OverheadPool:
    period_key: str
    total_local: Decimal
    breakdown: tuple[PoolAccountTotal, ...]
    entries_count: int

    @property
    def accounts_count(self) -> int:
        return len(self.breakdown)

    def breakdown_dict(self) -> dict[str, Any]:
        return {
            line.account_number: {
                "account_name": line.account_name,
                "debit_total": str(line.debit_total),
            }
            for line in self.breakdown
        }


@dataclass(frozen=True)
class MonthWindow:
    year: int
    month: int
    start: datetime
    end: datetime
    next_start: datetime

    @property
    def period_key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def last_day(self) -> date:
        return self.end.date()


def month_window(year: int, month: int) -> MonthWindow:
    """UTC boundaries of a calendar month; ``end`` is its last microsecond."""
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1..12, got {month}")
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    days = calendar.monthrange(year, month)[1]
    next_start = start + timedelta(days=days)
    return MonthWindow(
        year=year,
        month=month,
        start=start,
        end=next_start - timedelta(microseconds=1),
        next_start=next_start,
    )


def month_of(moment: datetime | date) -> tuple[int, int]:
    if isinstance(moment, datetime) and moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.year, moment.month


def matches_pool(
    account_number: str | None,
    included: Sequence[str],
    excluded: Sequence[str] = (),
    ignored: Sequence[str] = (),
) -> bool:
    if not account_number:
        return False
    number = account_number.strip()
    if any(number.startswith(prefix) for prefix in ignored):
        return False
    if any(number.startswith(prefix) for prefix in excluded):
        return False
    return any(number.startswith(prefix) for prefix in included)


@traced_engine("overhead_pool", "1.0", fingerprint_fields=("lines", "period_key"))
def aggregate_pool(
    lines: Sequence[PoolLine],
    period_key: str,
    included: Sequence[str],
    excluded: Sequence[str] = (),
    ignored: Sequence[str] = (),
) -> OverheadPool:
    """Sum positive debits per pool account, sorted by account number."""
    debits: dict[str, Decimal] = {}
    names: dict[str, str] = {}
    entries: set[str] = set()

    for line in lines:
        entries.add(str(line.journal_entry_id))
        if not matches_pool(line.account_number, included, excluded, ignored):
            continue
        amount = round4(line.debit_amount)
        if amount <= 0:
            continue
        number = line.account_number.strip()
        debits[number] = add(debits.get(number, ZERO), amount)
        names.setdefault(number, line.account_name or number)

    breakdown = tuple(
        PoolAccountTotal(number, names[number], debits[number])
        for number in sorted(debits)
    )
    pool_total = ZERO
    for account in breakdown:
        pool_total = add(pool_total, account.debit_total)

    return OverheadPool(
        period_key=period_key,
        total_local=pool_total,
        breakdown=breakdown,
        entries_count=len(entries),
    )


def convert_to_base(amount_local: Decimal, rate: Decimal) -> Decimal:
    """Local-currency amount over the local-per-base rate."""
    return div(amount_local, rate)
