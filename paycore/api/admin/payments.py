"""
Admin Payment Endpoints.
Refunds, bank transfer review, the reconciliation queue, manual ledger
adjustments and on-demand settlement.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from redis.asyncio.client import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.api.checkout import payment_view
from paycore.api.deps import get_registry, verify_admin_key
from paycore.database import get_db
from paycore.fsm.states import BankTransferStatus, ReconciliationKind, ReconciliationStatus
from paycore.gateways import GatewayRegistry
from paycore.models.bank_transfer import BankTransfer
from paycore.models.reconciliation import ReconciliationItem
from paycore.models.refund import Refund
from paycore.redis import get_redis
from paycore.services.bank_transfer_service import BankTransferService
from paycore.services.earnings_ledger import EarningsLedger
from paycore.services.payment_orchestrator import PaymentOrchestrator
from paycore.services.reconciliation_service import ReconciliationService
from paycore.services.refund_service import RefundProcessor
from paycore.services.settlement_service import SettlementService

router = APIRouter()
logger = logging.getLogger(__name__)


class RefundRequest(BaseModel):
    amount: Decimal
    reason: str = ""


class ReviewRequest(BaseModel):
    notes: str = ""


class ExtendRequest(BaseModel):
    days: int = Field(3, ge=1, le=30)


class ResolveRequest(BaseModel):
    note: str = ""


class AdjustmentRequest(BaseModel):
    instructor_id: str = Field(..., min_length=1)
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    reason: str = Field(..., min_length=1)


def refund_view(refund: Refund) -> Dict[str, Any]:
    return {
        "id": str(refund.id),
        "payment_id": str(refund.payment_id),
        "amount": str(refund.amount),
        "currency": refund.currency,
        "status": refund.status,
        "provider_refund_id": refund.provider_refund_id,
        "initiated_by_provider": refund.initiated_by_provider,
        "failure_reason": refund.failure_reason,
        "created_at": refund.created_at.isoformat(),
    }


def transfer_view(transfer: BankTransfer) -> Dict[str, Any]:
    return {
        "id": str(transfer.id),
        "payment_id": str(transfer.payment_id),
        "reference_number": transfer.reference_number,
        "status": transfer.status,
        "proof_url": transfer.proof_url,
        "sender_name": transfer.sender_name,
        "sender_account": transfer.sender_account,
        "review_notes": transfer.review_notes,
        "expires_at": transfer.expires_at.isoformat(),
    }


def item_view(item: ReconciliationItem) -> Dict[str, Any]:
    return {
        "id": str(item.id),
        "kind": item.kind,
        "status": item.status,
        "summary": item.summary,
        "payment_id": str(item.payment_id) if item.payment_id else None,
        "refund_id": str(item.refund_id) if item.refund_id else None,
        "withdrawal_id": str(item.withdrawal_id) if item.withdrawal_id else None,
        "instructor_id": item.instructor_id,
        "details": item.details,
        "created_at": item.created_at.isoformat(),
        "resolved_by": item.resolved_by,
    }


# ----------------------------------------------------------------------
# Payments and refunds
# ----------------------------------------------------------------------


@router.get("/payments/{payment_id}")
async def get_payment(
    payment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
    _: str = Depends(verify_admin_key),
):
    payment = await PaymentOrchestrator(db, registry).get_payment(payment_id)
    refunds = await RefundProcessor(db, registry).list_refunds(payment_id)
    ledger = EarningsLedger(db)
    return {
        **payment_view(payment),
        "buyer_id": payment.buyer_id,
        "instructor_id": payment.instructor_id,
        "provider_reference": payment.provider_reference,
        "provider_txn_id": payment.provider_txn_id,
        "instructor_net": str(await ledger.payment_net(payment_id)),
        "refunds": [refund_view(r) for r in refunds],
    }


@router.post("/payments/{payment_id}/refunds")
async def refund_payment(
    payment_id: uuid.UUID,
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
    admin_id: str = Depends(verify_admin_key),
):
    """Full or partial refund; earnings are reversed at the recorded split."""
    refund = await RefundProcessor(db, registry).refund(payment_id, request.amount, request.reason, admin_id)
    return refund_view(refund)


# ----------------------------------------------------------------------
# Bank transfers
# ----------------------------------------------------------------------


@router.get("/bank-transfers")
async def list_bank_transfers(
    status: Optional[BankTransferStatus] = BankTransferStatus.PROOF_SUBMITTED,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_admin_key),
):
    transfers = await BankTransferService(db).list_transfers(status)
    return {"transfers": [transfer_view(t) for t in transfers]}


@router.post("/bank-transfers/{transfer_id}/verify")
async def verify_bank_transfer(
    transfer_id: uuid.UUID,
    request: ReviewRequest,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
    redis: Optional[Redis] = Depends(get_redis),
    admin_id: str = Depends(verify_admin_key),
):
    transfer = await BankTransferService(db, registry, redis).verify(transfer_id, admin_id, request.notes)
    return transfer_view(transfer)


@router.post("/bank-transfers/{transfer_id}/reject")
async def reject_bank_transfer(
    transfer_id: uuid.UUID,
    request: ReviewRequest,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
    redis: Optional[Redis] = Depends(get_redis),
    admin_id: str = Depends(verify_admin_key),
):
    transfer = await BankTransferService(db, registry, redis).reject(transfer_id, admin_id, request.notes)
    return transfer_view(transfer)


@router.post("/bank-transfers/{transfer_id}/request-info")
async def request_transfer_info(
    transfer_id: uuid.UUID,
    request: ReviewRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    transfer = await BankTransferService(db).request_more_info(transfer_id, admin_id, request.notes)
    return transfer_view(transfer)


@router.post("/bank-transfers/{transfer_id}/extend")
async def extend_bank_transfer(
    transfer_id: uuid.UUID,
    request: ExtendRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    transfer = await BankTransferService(db).extend_expiry(transfer_id, admin_id, days=request.days)
    return transfer_view(transfer)


# ----------------------------------------------------------------------
# Reconciliation queue
# ----------------------------------------------------------------------


@router.get("/reconciliation")
async def list_reconciliation_items(
    status: Optional[ReconciliationStatus] = ReconciliationStatus.OPEN,
    kind: Optional[ReconciliationKind] = None,
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_admin_key),
):
    items = await ReconciliationService(db).list_items(status=status, kind=kind)
    return {"items": [item_view(i) for i in items]}


@router.post("/reconciliation/{item_id}/resolve")
async def resolve_reconciliation_item(
    item_id: uuid.UUID,
    request: ResolveRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    item = await ReconciliationService(db).resolve(item_id, admin_id, request.note)
    return item_view(item)


# ----------------------------------------------------------------------
# Ledger
# ----------------------------------------------------------------------


@router.post("/ledger/adjustments")
async def create_ledger_adjustment(
    request: AdjustmentRequest,
    db: AsyncSession = Depends(get_db),
    admin_id: str = Depends(verify_admin_key),
):
    """Manual credit (positive) or debit (negative) of an instructor's available balance."""
    entry = await EarningsLedger(db).post_adjustment(
        request.instructor_id,
        request.amount,
        request.currency.upper(),
        request.reason,
        admin_id,
    )
    await db.commit()
    return {"status": "success", "entry_id": str(entry.id), "amount": str(entry.amount), "state": entry.state}


@router.post("/settlement/run")
async def run_settlement(
    db: AsyncSession = Depends(get_db),
    _: str = Depends(verify_admin_key),
):
    """Run one settlement cycle now (the worker runs it hourly)."""
    return await SettlementService(db).run()
