"""Payment model - one checkout attempt through one gateway."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy import String, Numeric, Uuid, Text
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base
from paycore.fsm.states import KEY_BLOCKING_PAYMENT_STATUSES, PaymentStatus
from paycore.models.types import JSONType, UTCDateTime, utcnow

_BLOCKING_STATUSES_SQL = ", ".join(f"'{s.value}'" for s in sorted(KEY_BLOCKING_PAYMENT_STATUSES, key=lambda s: s.value))


class Payment(Base):
    """
    Checkout attempt and its gateway lifecycle.

    At most one payment per idempotency key may be open or succeeded; the
    partial unique index below backs the orchestrator's check at the
    database level.
    """

    __tablename__ = "payments"
    __table_args__ = (
        sa.Index(
            "uq_payments_idempotency_key_active",
            "idempotency_key",
            unique=True,
            postgresql_where=sa.text(f"status IN ({_BLOCKING_STATUSES_SQL})"),
            sqlite_where=sa.text(f"status IN ({_BLOCKING_STATUSES_SQL})"),
        ),
        sa.Index("ix_payments_gateway_provider_reference", "gateway", "provider_reference"),
        sa.Index("ix_payments_status_expires_at", "status", "expires_at"),
        sa.CheckConstraint("gross_amount > 0", name="ck_payments_gross_amount_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4,
    )

    # What is being sold
    item_type: Mapped[str] = mapped_column(String(32), nullable=False)
    item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instructor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    category_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Who is buying
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cart_id: Mapped[str] = mapped_column(String(64), nullable=False)

    gross_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)

    gateway: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        default=PaymentStatus.CREATED.value,
        nullable=False,
        index=True,
    )

    # sha256(buyer + cart + amount + currency)
    idempotency_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Provider handle issued at initiation (order id, reference number, charge id ...)
    provider_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Provider transaction id, known once the provider confirms
    provider_txn_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Buyer-facing initiation result (redirect url, reference, instructions). No secrets.
    checkout_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    # Latest raw provider payload, kept for audit
    raw_provider_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Provider-side deadline (Fawry reference, bank transfer window)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    initiated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus(self.status)

    @property
    def refundable_amount(self) -> Decimal:
        return self.gross_amount - (self.refunded_amount or Decimal("0.00"))

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.gateway} {self.status}>"
