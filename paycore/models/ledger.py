"""Earnings ledger models - append-only instructor earnings."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base
from paycore.fsm.states import LedgerAccount, LedgerEntryState
from paycore.models.types import UTCDateTime, utcnow


class EarningsLedgerEntry(Base):
    """
    One signed monetary fact about an instructor's earnings.

    Credits are positive, debits negative. Rows are never edited except for
    the Pending -> Available maturation; corrections are new reversing rows.
    The commission snapshot used at sale time is stored on every sale row so
    later rule changes cannot alter a historical split.
    """

    __tablename__ = "earnings_ledger_entries"
    __table_args__ = (
        sa.Index("ix_ledger_instructor_account_state", "instructor_id", "account", "state"),
        sa.Index("ix_ledger_state_available_at", "state", "available_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    instructor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    account: Mapped[str] = mapped_column(
        String(20),
        default=LedgerAccount.INSTRUCTOR.value,
        nullable=False,
    )

    # Null for manual adjustments and withdrawals
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    withdrawal_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    # The credit this row reverses
    reverses_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("earnings_ledger_entries.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False)

    # Commission snapshot
    gross_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    platform_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    instructor_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    hold_period_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    commission_setting_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    available_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    matured_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    @property
    def entry_state(self) -> LedgerEntryState:
        return LedgerEntryState(self.state)

    def __repr__(self) -> str:
        return f"<EarningsLedgerEntry {self.instructor_id} {self.account} {self.amount} {self.state}>"


class InstructorAccount(Base):
    """
    One row per instructor, locked FOR UPDATE to serialize balance decisions
    (withdrawal submission/approval, refunds clawing back earnings).
    """

    __tablename__ = "instructor_accounts"

    instructor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<InstructorAccount {self.instructor_id}>"
