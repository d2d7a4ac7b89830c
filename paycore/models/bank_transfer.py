"""Bank transfer model - manual proof-of-payment flow."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from paycore.database import Base
from paycore.fsm.states import BankTransferStatus
from paycore.models.types import UTCDateTime, utcnow


class BankTransfer(Base):
    """
    Manual bank transfer awaiting buyer proof and admin review.
    AwaitingProof -> ProofSubmitted -> Verified | Rejected, or Expired.
    """

    __tablename__ = "bank_transfers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False,
    )
    reference_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=BankTransferStatus.AWAITING_PROOF.value,
        nullable=False,
        index=True,
    )

    proof_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    sender_account: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    proof_submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    review_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<BankTransfer {self.reference_number} {self.status}>"
