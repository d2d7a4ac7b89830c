"""
Instructor API.
Balance, earnings history and withdrawal requests.
"""

import logging
import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.api.deps import get_instructor_id
from paycore.database import get_db
from paycore.services.earnings_ledger import EarningsLedger
from paycore.services.withdrawal_service import WithdrawalProcessor

router = APIRouter()
logger = logging.getLogger(__name__)


class WithdrawalSubmitRequest(BaseModel):
    amount: Decimal
    method_id: int


@router.get("/balance")
async def get_balance(
    instructor_id: str = Depends(get_instructor_id),
    db: AsyncSession = Depends(get_db),
):
    balance = await EarningsLedger(db).get_balance(instructor_id)
    return {
        "instructor_id": instructor_id,
        "currency": balance.currency,
        "available": str(balance.available),
        "pending": str(balance.pending),
        "reserved": str(balance.reserved),
    }


@router.get("/earnings")
async def list_earnings(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    instructor_id: str = Depends(get_instructor_id),
    db: AsyncSession = Depends(get_db),
):
    entries = await EarningsLedger(db).list_entries(instructor_id, limit=limit, offset=offset)
    return {
        "entries": [
            {
                "id": str(e.id),
                "payment_id": str(e.payment_id) if e.payment_id else None,
                "withdrawal_id": str(e.withdrawal_id) if e.withdrawal_id else None,
                "amount": str(e.amount),
                "currency": e.currency,
                "state": e.state,
                "gross_amount": str(e.gross_amount) if e.gross_amount is not None else None,
                "instructor_rate": str(e.instructor_rate) if e.instructor_rate is not None else None,
                "description": e.description,
                "available_at": e.available_at.isoformat() if e.available_at else None,
                "created_at": e.created_at.isoformat(),
            }
            for e in entries
        ]
    }


@router.get("/withdrawal-methods")
async def list_withdrawal_methods(
    _: str = Depends(get_instructor_id),
    db: AsyncSession = Depends(get_db),
):
    methods = await WithdrawalProcessor(db).list_methods()
    return {
        "methods": [
            {
                "id": m.id,
                "name": m.name,
                "display_name": m.display_name,
                "method_type": m.method_type,
                "min_amount": str(m.min_amount),
                "max_amount": str(m.max_amount),
                "fee_percentage": str(m.fee_percentage),
                "fixed_fee": str(m.fixed_fee),
            }
            for m in methods
        ]
    }


@router.post("/withdrawals")
async def submit_withdrawal(
    request: WithdrawalSubmitRequest,
    instructor_id: str = Depends(get_instructor_id),
    db: AsyncSession = Depends(get_db),
):
    withdrawal = await WithdrawalProcessor(db).submit(instructor_id, request.amount, request.method_id)
    return WithdrawalProcessor.to_dict(withdrawal)


@router.get("/withdrawals")
async def list_withdrawals(
    instructor_id: str = Depends(get_instructor_id),
    db: AsyncSession = Depends(get_db),
):
    requests = await WithdrawalProcessor(db).list_requests(instructor_id=instructor_id)
    return {"withdrawals": [WithdrawalProcessor.to_dict(r) for r in requests]}


@router.post("/withdrawals/{request_id}/cancel")
async def cancel_withdrawal(
    request_id: uuid.UUID,
    instructor_id: str = Depends(get_instructor_id),
    db: AsyncSession = Depends(get_db),
):
    withdrawal = await WithdrawalProcessor(db).cancel(request_id, instructor_id)
    return WithdrawalProcessor.to_dict(withdrawal)
