"""
Checkout API.
Starts payments, reports their status and takes bank transfer proofs.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from redis.asyncio.client import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.api.deps import get_buyer_id, get_registry
from paycore.database import get_db
from paycore.errors import Forbidden
from paycore.fsm.states import GatewayType, ItemType
from paycore.gateways import GatewayRegistry, recommend_gateway
from paycore.gateways.base import BuyerInfo
from paycore.models.payment import Payment
from paycore.redis import get_redis
from paycore.services.bank_transfer_service import BankTransferService
from paycore.services.payment_orchestrator import Cart, PaymentOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)


class InitiateCheckoutRequest(BaseModel):
    """Cart snapshot handed over by the storefront."""
    cart_id: str = Field(..., min_length=1, max_length=64)
    gateway_type: GatewayType
    item_type: ItemType
    item_id: str = Field(..., min_length=1, max_length=64)
    instructor_id: str = Field(..., min_length=1, max_length=64)
    category_id: Optional[str] = None
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    description: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class ProofRequest(BaseModel):
    proof_url: str = Field(..., min_length=1)
    sender_name: Optional[str] = None
    sender_account: Optional[str] = None


def payment_view(payment: Payment) -> Dict[str, Any]:
    return {
        "payment_id": str(payment.id),
        "status": payment.status,
        "gateway": payment.gateway,
        "amount": str(payment.gross_amount),
        "refunded_amount": str(payment.refunded_amount),
        "currency": payment.currency,
        "checkout": payment.checkout_data,
        "expires_at": payment.expires_at.isoformat() if payment.expires_at else None,
        "failure_reason": payment.failure_reason,
    }


@router.post("/initiate")
async def initiate_checkout(
    request: InitiateCheckoutRequest,
    buyer_id: str = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
):
    """
    Start checkout for a cart.

    Returns what the buyer needs next: a redirect URL, a client secret,
    a Fawry reference number with its expiry, or bank transfer instructions.
    """
    cart = Cart(
        cart_id=request.cart_id,
        buyer=BuyerInfo(
            buyer_id=buyer_id,
            email=request.email,
            phone=request.phone,
            first_name=request.first_name,
            last_name=request.last_name,
        ),
        item_type=request.item_type.value,
        item_id=request.item_id,
        instructor_id=request.instructor_id,
        category_id=request.category_id,
        amount=request.amount,
        currency=request.currency,
        description=request.description,
    )
    payment = await PaymentOrchestrator(db, registry).initiate(cart, request.gateway_type)
    return payment_view(payment)


@router.get("/gateways")
async def list_gateways(
    country: str = Query("", max_length=2),
    amount: Decimal = Query(Decimal("0")),
    registry: GatewayRegistry = Depends(get_registry),
):
    """Enabled gateways and the one recommended for the buyer's country."""
    enabled = registry.enabled
    return {
        "recommended": recommend_gateway(country, amount, enabled).value,
        "enabled": [g.value for g in enabled],
    }


@router.get("/{payment_id}/status")
async def payment_status(
    payment_id: uuid.UUID,
    buyer_id: str = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
):
    payment = await PaymentOrchestrator(db, registry).get_payment(payment_id)
    if payment.buyer_id != buyer_id:
        raise Forbidden("Payment belongs to another buyer")
    return payment_view(payment)


@router.post("/{payment_id}/confirm")
async def confirm_payment(
    payment_id: uuid.UUID,
    buyer_id: str = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
):
    """
    Client-side confirmation hook (Stripe client secret flow).
    The status is re-read from the gateway, never taken from the client.
    """
    orchestrator = PaymentOrchestrator(db, registry)
    payment = await orchestrator.get_payment(payment_id)
    if payment.buyer_id != buyer_id:
        raise Forbidden("Payment belongs to another buyer")
    payment = await orchestrator.confirm(payment_id)
    return payment_view(payment)


@router.post("/{payment_id}/cancel")
async def cancel_checkout(
    payment_id: uuid.UUID,
    buyer_id: str = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
):
    payment = await PaymentOrchestrator(db, registry).cancel_checkout(payment_id, buyer_id)
    return payment_view(payment)


@router.post("/bank-transfers/{reference_number}/proof")
async def submit_transfer_proof(
    reference_number: str,
    request: ProofRequest,
    buyer_id: str = Depends(get_buyer_id),
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
    redis: Optional[Redis] = Depends(get_redis),
):
    transfer = await BankTransferService(db, registry, redis).submit_proof(
        reference_number,
        buyer_id,
        request.proof_url,
        sender_name=request.sender_name,
        sender_account=request.sender_account,
    )
    return {
        "status": "success",
        "reference_number": transfer.reference_number,
        "transfer_status": transfer.status,
    }
