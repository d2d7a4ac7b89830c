"""
Withdrawal Processor - instructor payouts.

Pending -> Approved -> Processed, or Pending -> Rejected | Cancelled.

Submission and approval both decide on the instructor's available balance
while holding the instructor's account row lock, so two approvals racing for
the same money are serialized and the second one sees the first's
reservation.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.errors import (
    AboveMaximum,
    BalanceChanged,
    BelowMinimum,
    Forbidden,
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from paycore.fsm.states import WithdrawalMethodType, WithdrawalRejectionReason, WithdrawalStatus
from paycore.models.types import utcnow
from paycore.models.withdrawal import WithdrawalMethod, WithdrawalRequest
from paycore.services.earnings_ledger import HUNDRED, EarningsLedger, quantize_money

logger = logging.getLogger(__name__)


def calculate_fee(amount: Decimal, method: WithdrawalMethod) -> Decimal:
    """amount x fee% / 100 + fixed fee."""
    percentage_fee = quantize_money(amount * Decimal(method.fee_percentage or 0) / HUNDRED)
    return quantize_money(percentage_fee + Decimal(method.fixed_fee or 0))


class WithdrawalProcessor:
    """Submits, decides and completes instructor withdrawal requests."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = EarningsLedger(db)

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    async def list_methods(self, enabled_only: bool = True) -> List[WithdrawalMethod]:
        query = select(WithdrawalMethod).order_by(WithdrawalMethod.id)
        if enabled_only:
            query = query.where(WithdrawalMethod.is_enabled.is_(True))
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create_method(
        self,
        name: str,
        display_name: str,
        method_type: WithdrawalMethodType,
        min_amount: Decimal = Decimal("100"),
        max_amount: Decimal = Decimal("50000"),
        fee_percentage: Decimal = Decimal("0"),
        fixed_fee: Decimal = Decimal("0"),
    ) -> WithdrawalMethod:
        if min_amount <= 0 or max_amount < min_amount:
            raise ValidationError("Method limits must satisfy 0 < min <= max")
        if not (Decimal("0") <= fee_percentage <= HUNDRED) or fixed_fee < 0:
            raise ValidationError("Fee percentage must be 0-100 and the fixed fee non-negative")

        method = WithdrawalMethod(
            name=name,
            display_name=display_name,
            method_type=WithdrawalMethodType(method_type).value,
            min_amount=min_amount,
            max_amount=max_amount,
            fee_percentage=fee_percentage,
            fixed_fee=fixed_fee,
        )
        self.db.add(method)
        await self.db.commit()
        logger.info(f"Withdrawal method {name} created")
        return method

    async def set_method_enabled(self, method_id: int, enabled: bool) -> WithdrawalMethod:
        method = await self.db.get(WithdrawalMethod, method_id)
        if method is None:
            raise NotFound("Withdrawal method not found", details={"method_id": method_id})
        method.is_enabled = enabled
        await self.db.commit()
        logger.info(f"Withdrawal method {method.name} {'enabled' if enabled else 'disabled'}")
        return method

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def get_request(self, request_id: uuid.UUID, *, lock: bool = False) -> WithdrawalRequest:
        query = select(WithdrawalRequest).where(WithdrawalRequest.id == request_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFound("Withdrawal request not found", details={"request_id": str(request_id)})
        return request

    async def list_requests(
        self,
        instructor_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
        limit: int = 50,
    ) -> List[WithdrawalRequest]:
        query = select(WithdrawalRequest).order_by(WithdrawalRequest.created_at.desc()).limit(limit)
        if instructor_id is not None:
            query = query.where(WithdrawalRequest.instructor_id == instructor_id)
        if status is not None:
            query = query.where(WithdrawalRequest.status == status.value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def submit(self, instructor_id: str, amount: Decimal, method_id: int) -> WithdrawalRequest:
        """
        Create a Pending withdrawal request.

        Raises:
            BelowMinimum / AboveMaximum: amount outside the method's limits.
            InsufficientBalance: amount exceeds the available balance.
            ValidationError: unknown/disabled method, or the fee eats the payout.
        """
        amount = quantize_money(Decimal(amount))
        method = await self.db.get(WithdrawalMethod, method_id)
        if method is None or not method.is_enabled:
            raise ValidationError("Withdrawal method is not available", details={"method_id": method_id})

        if amount < method.min_amount:
            raise BelowMinimum(
                f"Minimum withdrawal for {method.display_name} is {method.min_amount}",
                details={"minimum": str(method.min_amount), "amount": str(amount)},
            )
        if amount > method.max_amount:
            raise AboveMaximum(
                f"Maximum withdrawal for {method.display_name} is {method.max_amount}",
                details={"maximum": str(method.max_amount), "amount": str(amount)},
            )

        fee = calculate_fee(amount, method)
        if fee >= amount:
            raise ValidationError(
                "Withdrawal fee exceeds the amount",
                details={"fee": str(fee), "amount": str(amount)},
            )

        account = await self.ledger.lock_account(instructor_id)
        balance = await self.ledger.get_balance(instructor_id)
        if amount > balance.available:
            raise InsufficientBalance(
                f"Available balance is {balance.available} {balance.currency}",
                details={"available": str(balance.available), "amount": str(amount)},
            )

        request = WithdrawalRequest(
            instructor_id=instructor_id,
            method_id=method.id,
            amount=amount,
            fee=fee,
            net_amount=amount - fee,
            currency=account.currency,
            status=WithdrawalStatus.PENDING.value,
        )
        self.db.add(request)
        await self.db.commit()

        logger.info(
            f"Withdrawal {request.id} submitted by instructor {instructor_id}: "
            f"{amount} {request.currency} via {method.name} (fee {fee})"
        )
        return request

    async def approve(self, request_id: uuid.UUID, admin_id: str) -> WithdrawalRequest:
        """
        Approve a Pending request after re-checking the balance under lock.

        If the balance no longer covers it, the request is rejected with
        reason balance_changed and BalanceChanged is raised.
        """
        instructor_id = (await self.get_request(request_id)).instructor_id
        await self.ledger.lock_account(instructor_id)
        request = await self.get_request(request_id, lock=True)
        self._require_status(request, WithdrawalStatus.PENDING)

        balance = await self.ledger.get_balance(instructor_id)
        if request.amount > balance.available:
            request.status = WithdrawalStatus.REJECTED.value
            request.rejection_reason = WithdrawalRejectionReason.BALANCE_CHANGED.value
            request.rejection_note = f"Available balance dropped to {balance.available}"
            request.reviewed_by = admin_id
            request.rejected_at = utcnow()
            await self.db.commit()
            logger.warning(
                f"Withdrawal {request.id} auto-rejected: {request.amount} requested, "
                f"{balance.available} available"
            )
            raise BalanceChanged(
                "Balance changed since the request was submitted; the request was rejected",
                details={"available": str(balance.available), "amount": str(request.amount)},
            )

        request.status = WithdrawalStatus.APPROVED.value
        request.reviewed_by = admin_id
        request.approved_at = utcnow()
        await self.db.commit()
        logger.info(f"Withdrawal {request.id} approved by {admin_id}")
        return request

    async def reject(self, request_id: uuid.UUID, admin_id: str, note: str = "") -> WithdrawalRequest:
        request = await self.get_request(request_id, lock=True)
        self._require_status(request, WithdrawalStatus.PENDING)

        request.status = WithdrawalStatus.REJECTED.value
        request.rejection_reason = WithdrawalRejectionReason.ADMIN_REJECTED.value
        request.rejection_note = note
        request.reviewed_by = admin_id
        request.rejected_at = utcnow()
        await self.db.commit()
        logger.info(f"Withdrawal {request.id} rejected by {admin_id}: {note}")
        return request

    async def cancel(self, request_id: uuid.UUID, instructor_id: str) -> WithdrawalRequest:
        request = await self.get_request(request_id, lock=True)
        if request.instructor_id != instructor_id:
            raise Forbidden("Withdrawal belongs to another instructor")
        self._require_status(request, WithdrawalStatus.PENDING)

        request.status = WithdrawalStatus.CANCELLED.value
        await self.db.commit()
        logger.info(f"Withdrawal {request.id} cancelled by instructor {instructor_id}")
        return request

    async def mark_processed(
        self,
        request_id: uuid.UUID,
        external_reference: str,
        admin_id: str,
    ) -> WithdrawalRequest:
        """Record the payout and debit the ledger."""
        if not external_reference:
            raise ValidationError("External payout reference is required")

        instructor_id = (await self.get_request(request_id)).instructor_id
        await self.ledger.lock_account(instructor_id)
        request = await self.get_request(request_id, lock=True)
        self._require_status(request, WithdrawalStatus.APPROVED)

        await self.ledger.post_withdrawal(request)
        request.status = WithdrawalStatus.PROCESSED.value
        request.external_reference = external_reference
        request.processed_at = utcnow()
        await self.db.commit()

        logger.info(f"Withdrawal {request.id} processed by {admin_id} (ref {external_reference})")
        return request

    @staticmethod
    def _require_status(request: WithdrawalRequest, expected: WithdrawalStatus) -> None:
        if request.status != expected.value:
            raise InvalidTransition(
                f"Withdrawal is {request.status}, expected {expected.value}",
                details={"request_id": str(request.id), "status": request.status},
            )

    @staticmethod
    def to_dict(request: WithdrawalRequest) -> Dict[str, Any]:
        return {
            "id": str(request.id),
            "instructor_id": request.instructor_id,
            "method_id": request.method_id,
            "amount": str(request.amount),
            "fee": str(request.fee),
            "net_amount": str(request.net_amount),
            "currency": request.currency,
            "status": request.status,
            "rejection_reason": request.rejection_reason,
            "rejection_note": request.rejection_note,
            "external_reference": request.external_reference,
            "created_at": request.created_at.isoformat() if request.created_at else None,
            "approved_at": request.approved_at.isoformat() if request.approved_at else None,
            "processed_at": request.processed_at.isoformat() if request.processed_at else None,
        }
