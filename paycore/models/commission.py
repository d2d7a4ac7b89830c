"""Commission setting model - scoped revenue split rules."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import Boolean, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base
from paycore.fsm.states import CommissionScope
from paycore.models.types import UTCDateTime, utcnow


class CommissionSetting(Base):
    """
    Revenue split rule at global, category, course or instructor scope.
    Read-only to the engine; written by admin CRUD.
    """

    __tablename__ = "commission_settings"
    __table_args__ = (
        sa.CheckConstraint(
            "platform_rate >= 0 AND instructor_rate >= 0 AND platform_rate + instructor_rate <= 100",
            name="ck_commission_settings_rates",
        ),
        sa.CheckConstraint(
            "hold_period_days >= 0 AND hold_period_days <= 365",
            name="ck_commission_settings_hold_period",
        ),
        sa.Index("ix_commission_settings_scope", "scope", "scope_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    scope: Mapped[str] = mapped_column(
        String(20),
        default=CommissionScope.GLOBAL.value,
        nullable=False,
    )
    # Null for global scope
    scope_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    platform_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    instructor_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    hold_period_days: Mapped[int] = mapped_column(Integer, default=14, nullable=False)

    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    minimum_sale_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    # Active window; null bounds are open-ended
    start_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<CommissionSetting {self.name} {self.scope}:{self.scope_id} {self.platform_rate}/{self.instructor_rate}>"
