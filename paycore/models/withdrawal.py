"""Withdrawal models - payout methods and instructor withdrawal requests."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base
from paycore.fsm.states import WithdrawalStatus
from paycore.models.types import UTCDateTime, utcnow


class WithdrawalMethod(Base):
    """Payout channel with its own limits and fee schedule."""

    __tablename__ = "withdrawal_methods"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)
    method_type: Mapped[str] = mapped_column(String(32), nullable=False)

    min_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("100"), nullable=False)
    max_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("50000"), nullable=False)
    fee_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    fixed_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WithdrawalMethod {self.name}>"


class WithdrawalRequest(Base):
    """
    Instructor payout request.
    Pending -> Approved -> Processed, or Pending -> Rejected | Cancelled.
    """

    __tablename__ = "withdrawal_requests"
    __table_args__ = (
        sa.Index("ix_withdrawal_requests_instructor_status", "instructor_id", "status"),
        sa.CheckConstraint("amount > 0", name="ck_withdrawal_requests_amount_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    instructor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    method_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("withdrawal_methods.id", ondelete="RESTRICT"),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=WithdrawalStatus.PENDING.value,
        nullable=False,
    )
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    rejection_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    external_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<WithdrawalRequest {self.id} {self.amount} {self.status}>"
