"""
Admin Withdrawal Endpoints.
Review queue, payout completion and withdrawal method management.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.api.deps import verify_admin_key
from paycore.database import get_db
from paycore.fsm.states import WithdrawalMethodType, WithdrawalStatus
from paycore.services.withdrawal_service import WithdrawalProcessor

router = APIRouter()
logger = logging.getLogger(__name__)


class RejectRequest(BaseModel):
    note: str = Field(..., min_length=1)


class ProcessRequest(BaseModel):
    external_reference: str = Field(..., min_length=1)


class CreateMethodRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str
    method_type: WithdrawalMethodType
    min_amount: Decimal = Decimal("100")
    max_amount: Decimal = Decimal("50000")
    fee_percentage: Decimal = Decimal("0")
    fixed_fee: Decimal = Decimal("0")


class MethodEnabledRequest(BaseModel):
    enabled: bool


@router.get("/withdrawals")
async def list_withdrawals(
    status: Optional[WithdrawalStatus] = WithdrawalStatus.PENDING,
    instructor_id: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_admin_key),
):
    requests = await WithdrawalProcessor(db).list_requests(instructor_id=instructor_id, status=status, limit=200)
    return {"withdrawals": [WithdrawalProcessor.to_dict(r) for r in requests]}


@router.post("/withdrawals/{request_id}/approve")
async def approve_withdrawal(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    """
    Approve after re-checking the balance. If it no longer covers the
    request, the request is rejected (balance_changed) and 422 is returned.
    """
    withdrawal = await WithdrawalProcessor(db).approve(request_id, admin_id)
    return WithdrawalProcessor.to_dict(withdrawal)


@router.post("/withdrawals/{request_id}/reject")
async def reject_withdrawal(
    request_id: uuid.UUID,
    request: RejectRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    withdrawal = await WithdrawalProcessor(db).reject(request_id, admin_id, request.note)
    return WithdrawalProcessor.to_dict(withdrawal)


@router.post("/withdrawals/{request_id}/process")
async def process_withdrawal(
    request_id: uuid.UUID,
    request: ProcessRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    """Mark an approved withdrawal as paid out and debit the ledger."""
    withdrawal = await WithdrawalProcessor(db).mark_processed(request_id, request.external_reference, admin_id)
    return WithdrawalProcessor.to_dict(withdrawal)


@router.post("/withdrawal-methods")
async def create_withdrawal_method(
    request: CreateMethodRequest,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_admin_key),
):
    method = await WithdrawalProcessor(db).create_method(
        name=request.name,
        display_name=request.display_name,
        method_type=request.method_type,
        min_amount=request.min_amount,
        max_amount=request.max_amount,
        fee_percentage=request.fee_percentage,
        fixed_fee=request.fixed_fee,
    )
    return {"status": "success", "id": method.id, "name": method.name}


@router.post("/withdrawal-methods/{method_id}/enabled")
async def set_withdrawal_method_enabled(
    method_id: int,
    request: MethodEnabledRequest,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_admin_key),
):
    method = await WithdrawalProcessor(db).set_method_enabled(method_id, request.enabled)
    return {"status": "success", "id": method.id, "is_enabled": method.is_enabled}
