"""Overhead cost periods and the journal lines that feed the monthly pool."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from sqlalchemy import select

from cascade_kernel.domain.types import JournalEntryStatus, OverheadSource
from cascade_kernel.models.accounting import (
    BookkeepingAccountModel,
    JournalEntryModel,
    JournalLineModel,
)
from cascade_kernel.models.overhead import OverheadCostPeriodModel
from cascade_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class PostedLine:
    """One journal line of a posted entry, joined with its account."""

    journal_entry_id: UUID
    account_number: str
    account_name: str
    debit_amount: Decimal


class OverheadSelector(BaseSelector):
    def periods_by_id(self, period_ids: Iterable[UUID | str]) -> dict[UUID, OverheadCostPeriodModel]:
        return self._by_ids(OverheadCostPeriodModel, period_ids)

    def all_periods(self) -> list[OverheadCostPeriodModel]:
        stmt = select(OverheadCostPeriodModel).order_by(OverheadCostPeriodModel.start_date)
        return list(self.session.execute(stmt).scalars())

    def periods_overlapping(
        self, range_start: datetime, range_end: datetime,
    ) -> list[OverheadCostPeriodModel]:
        """Periods whose ``[start_date, end_date]`` intersects the range."""
        stmt = (
            select(OverheadCostPeriodModel)
            .where(
                OverheadCostPeriodModel.start_date <= range_end,
                OverheadCostPeriodModel.end_date >= range_start,
            )
            .order_by(OverheadCostPeriodModel.start_date)
        )
        return list(self.session.execute(stmt).scalars())

    def accounting_period(self, period_key: str) -> OverheadCostPeriodModel | None:
        stmt = select(OverheadCostPeriodModel).where(
            OverheadCostPeriodModel.source == OverheadSource.ACCOUNTING.value,
            OverheadCostPeriodModel.period_key == period_key,
        )
        return self.session.execute(stmt).scalars().first()

    def posted_lines(self, range_start: datetime, range_end: datetime) -> list[PostedLine]:
        """Lines of posted entries dated in ``[range_start, range_end)`` on active accounts."""
        stmt = (
            select(
                JournalLineModel.journal_entry_id,
                BookkeepingAccountModel.number,
                BookkeepingAccountModel.name,
                JournalLineModel.debit_amount,
            )
            .join(JournalEntryModel, JournalLineModel.journal_entry_id == JournalEntryModel.id)
            .join(BookkeepingAccountModel, JournalLineModel.account_id == BookkeepingAccountModel.id)
            .where(
                JournalEntryModel.status == JournalEntryStatus.POSTED.value,
                JournalEntryModel.entry_date >= range_start,
                JournalEntryModel.entry_date < range_end,
                BookkeepingAccountModel.is_active.is_(True),
            )
        )
        return [
            PostedLine(
                journal_entry_id=row[0],
                account_number=row[1],
                account_name=row[2],
                debit_amount=row[3],
            )
            for row in self.session.execute(stmt)
        ]
