"""In-process domain events published by the payment orchestrator."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from paycore.fsm.states import ItemType
from paycore.models.payment import Payment


@dataclass(frozen=True)
class SaleCompleted:
    """Everything commission resolution and ledger posting need about a sale."""

    payment_id: uuid.UUID
    instructor_id: str
    item_type: str
    item_id: str
    category_id: Optional[str]
    gross_amount: Decimal
    currency: str
    completed_at: datetime

    @classmethod
    def from_payment(cls, payment: Payment) -> "SaleCompleted":
        return cls(
            payment_id=payment.id,
            instructor_id=payment.instructor_id,
            item_type=payment.item_type,
            item_id=payment.item_id,
            category_id=payment.category_id,
            gross_amount=payment.gross_amount,
            currency=payment.currency,
            completed_at=payment.confirmed_at or payment.updated_at,
        )

    @property
    def course_id(self) -> Optional[str]:
        """Course-scoped commission rules only apply to course sales."""
        return self.item_id if self.item_type == ItemType.COURSE.value else None
