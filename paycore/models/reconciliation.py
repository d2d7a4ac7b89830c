"""Reconciliation queue - money situations escalated to a human."""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base
from paycore.fsm.states import ReconciliationStatus
from paycore.models.types import JSONType, UTCDateTime, utcnow


class ReconciliationItem(Base):
    __tablename__ = "reconciliation_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    kind: Mapped[str] = mapped_column(String(40), nullable=False, index=True)

    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    refund_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    withdrawal_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    instructor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    summary: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20),
        default=ReconciliationStatus.OPEN.value,
        nullable=False,
        index=True,
    )
    resolved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<ReconciliationItem {self.kind} {self.status}>"
