"""
Bank Transfer Service - manual proof-of-payment review.

AwaitingProof -> ProofSubmitted -> Verified | Rejected, or Expired.

Admin decisions do not touch the payment directly. They are signed with the
application secret and handed to the webhook reconciler like any provider
callback, so a decision is deduplicated and goes through the same state
machine as every other gateway event.
"""

import json
import logging
import uuid
from datetime import timedelta
from typing import List, Optional

from redis.asyncio.client import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.config import settings
from paycore.errors import Forbidden, InvalidTransition, NotFound, PaymentError, ValidationError
from paycore.fsm.machine import TransitionDecision, decide_transition
from paycore.fsm.states import BankTransferStatus, GatewayType, PaymentStatus
from paycore.gateways import GatewayRegistry
from paycore.gateways.bank_transfer import SIGNATURE_HEADER, sign_internal_event
from paycore.models.bank_transfer import BankTransfer
from paycore.models.payment import Payment
from paycore.models.types import utcnow
from paycore.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


class BankTransferService:
    """Buyer proof uploads and admin review of manual bank transfers."""

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[GatewayRegistry] = None,
        redis: Optional[Redis] = None,
    ):
        self.db = db
        self.registry = registry
        self.redis = redis

    async def _get(self, transfer_id: uuid.UUID) -> BankTransfer:
        result = await self.db.execute(
            select(BankTransfer)
            .where(BankTransfer.id == transfer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        transfer = result.scalar_one_or_none()
        if transfer is None:
            raise NotFound("Bank transfer not found", details={"transfer_id": str(transfer_id)})
        return transfer

    async def get_by_reference(self, reference_number: str) -> BankTransfer:
        result = await self.db.execute(
            select(BankTransfer)
            .where(BankTransfer.reference_number == reference_number)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        transfer = result.scalar_one_or_none()
        if transfer is None:
            raise NotFound("Bank transfer not found", details={"reference_number": reference_number})
        return transfer

    async def list_transfers(
        self,
        status: Optional[BankTransferStatus] = BankTransferStatus.PROOF_SUBMITTED,
        limit: int = 50,
    ) -> List[BankTransfer]:
        query = select(BankTransfer).order_by(BankTransfer.created_at).limit(limit)
        if status is not None:
            query = query.where(BankTransfer.status == status.value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def _payment(self, transfer: BankTransfer) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == transfer.payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    @staticmethod
    def _require_status(transfer: BankTransfer, expected: BankTransferStatus) -> None:
        if transfer.status != expected.value:
            raise InvalidTransition(
                f"Bank transfer is {transfer.status}, expected {expected.value}",
                details={"reference_number": transfer.reference_number, "status": transfer.status},
            )

    # ------------------------------------------------------------------
    # Buyer
    # ------------------------------------------------------------------

    async def submit_proof(
        self,
        reference_number: str,
        buyer_id: str,
        proof_url: str,
        sender_name: Optional[str] = None,
        sender_account: Optional[str] = None,
    ) -> BankTransfer:
        if not proof_url:
            raise ValidationError("Proof of transfer is required")

        transfer = await self.get_by_reference(reference_number)
        payment = await self._payment(transfer)
        if payment.buyer_id != buyer_id:
            raise Forbidden("Bank transfer belongs to another buyer")
        self._require_status(transfer, BankTransferStatus.AWAITING_PROOF)
        if transfer.expires_at <= utcnow():
            raise InvalidTransition("Bank transfer window has expired")

        transfer.status = BankTransferStatus.PROOF_SUBMITTED.value
        transfer.proof_url = proof_url
        transfer.sender_name = sender_name
        transfer.sender_account = sender_account
        transfer.proof_submitted_at = utcnow()

        # Under review: the expiry sweep must leave it alone
        payment.expires_at = None
        if decide_transition(payment.payment_status, PaymentStatus.PENDING_CONFIRMATION) == TransitionDecision.ADVANCE:
            payment.status = PaymentStatus.PENDING_CONFIRMATION.value

        await self.db.commit()
        logger.info(f"Proof submitted for bank transfer {reference_number} (payment {payment.id})")
        return transfer

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    async def verify(self, transfer_id: uuid.UUID, admin_id: str, notes: str = "") -> BankTransfer:
        """Accept the proof; the payment succeeds through the webhook pipeline."""
        return await self._decide(transfer_id, admin_id, notes, BankTransferStatus.VERIFIED)

    async def reject(self, transfer_id: uuid.UUID, admin_id: str, notes: str = "") -> BankTransfer:
        """Refuse the proof; the payment fails through the webhook pipeline."""
        if not notes:
            raise ValidationError("A rejection reason is required")
        return await self._decide(transfer_id, admin_id, notes, BankTransferStatus.REJECTED)

    async def _decide(
        self,
        transfer_id: uuid.UUID,
        admin_id: str,
        notes: str,
        decision: BankTransferStatus,
    ) -> BankTransfer:
        if not settings.secret_key:
            raise ValidationError("SECRET_KEY must be set to sign bank transfer decisions")

        transfer = await self._get(transfer_id)
        self._require_status(transfer, BankTransferStatus.PROOF_SUBMITTED)
        payment = await self._payment(transfer)

        transfer.status = decision.value
        transfer.reviewed_by = admin_id
        transfer.review_notes = notes
        transfer.reviewed_at = utcnow()
        await self.db.flush()

        body = json.dumps(
            {
                "event_id": f"bank_transfer:{transfer.id}:{decision.value}",
                "status": decision.value,
                "payment_id": str(payment.id),
                "reference_number": transfer.reference_number,
                "amount": str(payment.gross_amount),
                "currency": payment.currency,
                "notes": notes,
            }
        ).encode()
        headers = {SIGNATURE_HEADER: sign_internal_event(body, settings.secret_key)}

        # Commits the review together with the payment transition
        response = await WebhookReconciler(self.db, self.registry, self.redis).handle(
            GatewayType.BANK_TRANSFER.value,
            body,
            headers,
        )
        if response["status"] != "ok":
            raise PaymentError(
                "Bank transfer decision could not be applied",
                details={"reference_number": transfer.reference_number, "result": response["status"]},
            )

        logger.info(f"Bank transfer {transfer.reference_number} {decision.value} by {admin_id}")
        return transfer

    async def request_more_info(self, transfer_id: uuid.UUID, admin_id: str, notes: str) -> BankTransfer:
        """Send the buyer back to upload a better proof with a fresh window."""
        transfer = await self._get(transfer_id)
        self._require_status(transfer, BankTransferStatus.PROOF_SUBMITTED)
        payment = await self._payment(transfer)

        expires_at = utcnow() + timedelta(days=settings.bank_transfer_expiry_days)
        transfer.status = BankTransferStatus.AWAITING_PROOF.value
        transfer.review_notes = notes
        transfer.reviewed_by = admin_id
        transfer.expires_at = expires_at
        payment.expires_at = expires_at

        await self.db.commit()
        logger.info(f"More information requested for bank transfer {transfer.reference_number} by {admin_id}")
        return transfer

    async def extend_expiry(self, transfer_id: uuid.UUID, admin_id: str, days: int = 3) -> BankTransfer:
        if days <= 0 or days > 30:
            raise ValidationError("Extension must be between 1 and 30 days")

        transfer = await self._get(transfer_id)
        self._require_status(transfer, BankTransferStatus.AWAITING_PROOF)
        payment = await self._payment(transfer)
        if not payment.payment_status.is_open:
            raise InvalidTransition(f"Payment is already {payment.status}")

        transfer.expires_at = max(transfer.expires_at, utcnow()) + timedelta(days=days)
        payment.expires_at = transfer.expires_at

        await self.db.commit()
        logger.info(
            f"Bank transfer {transfer.reference_number} extended by {days} days to "
            f"{transfer.expires_at.isoformat()} by {admin_id}"
        )
        return transfer
