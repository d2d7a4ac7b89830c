"""Webhook seen-set and security audit models."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy import Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base
from paycore.models.types import JSONType, UTCDateTime, utcnow


class WebhookEvent(Base):
    """
    One normalized gateway event, keyed by (provider, provider_event_id).

    The unique constraint is the persisted dedup set: an event is applied in
    the same transaction that records it here as processed.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        sa.UniqueConstraint("provider", "provider_event_id", name="uq_webhook_events_provider_event_id"),
        sa.Index("ix_webhook_events_status_received_at", "status", "received_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)

    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    provider_txn_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    merchant_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    provider_refund_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    # Outcome of applying the event (advance / noop / anomaly)
    outcome: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.provider}:{self.provider_event_id} {self.status}>"


class SecurityAuditEvent(Base):
    """Inbound callback that failed authentication or could not be parsed."""

    __tablename__ = "security_audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    remote_addr: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    body_sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    headers: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<SecurityAuditEvent {self.provider} {self.reason}>"
