"""
Bookkeeping documents read by the overhead pool stage.

Contract:
    Journal entries are owned by the accounting workflow. The cascade only
    reads posted entries and their lines to aggregate the monthly overhead
    pool; it never writes these tables.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from cascade_kernel.db.base import TrackedBase, UUIDString
from cascade_kernel.domain.types import JournalEntryStatus


class BookkeepingAccountModel(TrackedBase):
    __tablename__ = "bookkeeping_accounts"

    number: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)


class JournalEntryModel(TrackedBase):
    __tablename__ = "journal_entries"

    __table_args__ = (Index("ix_journal_entries_date_status", "entry_date", "status"),)

    entry_number: Mapped[str] = mapped_column(String(50), nullable=False)
    entry_date: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=JournalEntryStatus.DRAFT.value, nullable=False,
    )

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "entry_number": self.entry_number,
            "entry_date": self.entry_date,
            "status": self.status,
        }


class JournalLineModel(TrackedBase):
    __tablename__ = "journal_lines"

    __table_args__ = (Index("ix_journal_lines_entry", "journal_entry_id"),)

    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("journal_entries.id"), nullable=False,
    )
    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("bookkeeping_accounts.id"), nullable=False,
    )
    debit_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
    credit_amount: Mapped[Decimal] = mapped_column(default=Decimal("0"), nullable=False)
