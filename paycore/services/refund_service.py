"""
Refund Processor - gateway refunds and the earnings they claw back.

Refunds we start go Pending (committed before the gateway call) and are
completed from the gateway's answer. Refunds reported by a provider callback
are matched to ours by provider refund id, or recorded as provider-initiated.
Money effects (refunded amount, payment status, ledger reversal) are applied
exactly once per refund.
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.errors import (
    GatewayAmbiguous,
    GatewayRejected,
    InvalidTransition,
    NotFound,
    RetryExhausted,
    ValidationError,
)
from paycore.fsm.machine import TransitionDecision, decide_transition
from paycore.fsm.states import GatewayType, PaymentStatus, ReconciliationKind, RefundStatus
from paycore.gateways import GatewayRegistry, get_gateway_registry
from paycore.gateways.base import GatewayEvent, RefundResult
from paycore.models.payment import Payment
from paycore.models.refund import Refund
from paycore.models.types import utcnow
from paycore.services.earnings_ledger import EarningsLedger, quantize_money
from paycore.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

_REFUNDABLE_STATUSES = (PaymentStatus.SUCCEEDED.value, PaymentStatus.PARTIALLY_REFUNDED.value)

# Refund rows that hold (or may hold) part of the payment's refundable amount
_COMMITTED_REFUND_STATUSES = (RefundStatus.PENDING.value, RefundStatus.SUCCEEDED.value, RefundStatus.AMBIGUOUS.value)


class RefundProcessor:
    """Drives refunds through the payment's gateway and the earnings ledger."""

    def __init__(self, db: AsyncSession, registry: Optional[GatewayRegistry] = None):
        self.db = db
        self.registry = registry or get_gateway_registry()
        self.ledger = EarningsLedger(db)
        self.reconciliation = ReconciliationService(db)

    async def _lock_payment(self, payment_id: uuid.UUID) -> Payment:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFound("Payment not found", details={"payment_id": str(payment_id)})
        return payment

    async def _committed_refunds(self, payment_id: uuid.UUID) -> Decimal:
        total = (
            await self.db.execute(
                select(func.coalesce(func.sum(Refund.amount), 0)).where(
                    Refund.payment_id == payment_id,
                    Refund.status.in_(_COMMITTED_REFUND_STATUSES),
                )
            )
        ).scalar_one()
        return Decimal(str(total))

    async def list_refunds(self, payment_id: uuid.UUID) -> List[Refund]:
        result = await self.db.execute(
            select(Refund).where(Refund.payment_id == payment_id).order_by(Refund.created_at)
        )
        return list(result.scalars().all())

    async def refund(
        self,
        payment_id: uuid.UUID,
        amount: Decimal,
        reason: str = "",
        requested_by: Optional[str] = None,
    ) -> Refund:
        """
        Refund all or part of a succeeded payment.

        Raises:
            InvalidTransition: the payment has not been paid.
            ValidationError: amount is not positive or exceeds what is left.
            GatewayAmbiguous: refund outcome unknown; queued for review.
            RetryExhausted / GatewayRejected: the gateway did not refund.
        """
        amount = quantize_money(Decimal(amount))
        payment = await self._lock_payment(payment_id)

        if payment.status not in _REFUNDABLE_STATUSES:
            raise InvalidTransition(
                f"Cannot refund a payment that is {payment.status}",
                details={"payment_id": str(payment.id), "status": payment.status},
            )

        refundable = payment.gross_amount - await self._committed_refunds(payment.id)
        if amount <= 0 or amount > refundable:
            raise ValidationError(
                f"Refund amount must be between 0.01 and {refundable}",
                details={"amount": str(amount), "refundable": str(refundable)},
            )

        refund = Refund(
            payment_id=payment.id,
            amount=amount,
            currency=payment.currency,
            reason=reason,
            status=RefundStatus.PENDING.value,
            requested_by=requested_by,
        )
        self.db.add(refund)
        await self.db.commit()
        logger.info(f"Refund {refund.id} of {amount} {payment.currency} requested for payment {payment.id}")

        adapter = self.registry.get(GatewayType(payment.gateway))
        txn_id = payment.provider_txn_id or payment.provider_reference
        try:
            result = await adapter.refund(txn_id, amount, payment.currency, reason)
        except GatewayAmbiguous as exc:
            refund.status = RefundStatus.AMBIGUOUS.value
            refund.failure_reason = exc.message
            await self.reconciliation.open_item(
                ReconciliationKind.GATEWAY_AMBIGUOUS,
                f"Refund {refund.id} of {amount} {payment.currency} on payment {payment.id} has an unknown outcome",
                payment_id=payment.id,
                refund_id=refund.id,
                details=exc.details,
            )
            await self.db.commit()
            raise
        except (RetryExhausted, GatewayRejected) as exc:
            refund.status = RefundStatus.FAILED.value
            refund.failure_reason = exc.message
            refund.completed_at = utcnow()
            await self.db.commit()
            logger.warning(f"Refund {refund.id} failed at {payment.gateway}: {exc.message}")
            raise

        if result.status == RefundStatus.FAILED:
            refund.status = RefundStatus.FAILED.value
            refund.failure_reason = result.failure_reason or "refused by provider"
            refund.raw_provider_payload = result.raw or None
            refund.completed_at = utcnow()
            await self.db.commit()
            logger.warning(f"Refund {refund.id} refused by {payment.gateway}: {refund.failure_reason}")
            raise GatewayRejected(
                f"{payment.gateway} refused the refund: {refund.failure_reason}",
                details={"refund_id": str(refund.id)},
            )

        await self._complete_refund(refund.id, result)
        await self.db.commit()
        return refund

    async def _complete_refund(self, refund_id: uuid.UUID, result: RefundResult) -> None:
        refund = await self.db.get(Refund, refund_id)
        payment = await self._lock_payment(refund.payment_id)
        await self.db.refresh(refund)

        already_applied = self._is_applied(refund)
        refund.status = RefundStatus.SUCCEEDED.value if result.status == RefundStatus.SUCCEEDED else RefundStatus.PENDING.value
        refund.provider_refund_id = refund.provider_refund_id or result.provider_refund_id or f"local:{refund.id}"
        refund.raw_provider_payload = result.raw or None
        if result.status == RefundStatus.SUCCEEDED:
            refund.completed_at = utcnow()

        if already_applied:
            logger.info(f"Refund {refund.id} was already applied from a provider callback")
            return

        await self._apply_money(payment, refund)

        if result.requires_manual_payout:
            await self.reconciliation.open_item(
                ReconciliationKind.MANUAL_REFUND_PAYOUT,
                f"Pay {refund.amount} {refund.currency} back to buyer {payment.buyer_id} for payment {payment.id}",
                payment_id=payment.id,
                refund_id=refund.id,
                details={"gateway": payment.gateway, "provider_reference": payment.provider_reference},
            )

    @staticmethod
    def _is_applied(refund: Refund) -> bool:
        # Pre-call rows are Pending with no provider id
        if refund.status == RefundStatus.SUCCEEDED.value:
            return True
        return refund.status == RefundStatus.PENDING.value and refund.provider_refund_id is not None

    async def _apply_money(self, payment: Payment, refund: Refund) -> TransitionDecision:
        refunded = (payment.refunded_amount or Decimal("0")) + refund.amount
        target = PaymentStatus.REFUNDED if refunded >= payment.gross_amount else PaymentStatus.PARTIALLY_REFUNDED
        decision = decide_transition(payment.payment_status, target)
        if decision != TransitionDecision.ADVANCE:
            await self.reconciliation.open_item(
                ReconciliationKind.STATE_ANOMALY,
                f"Refund {refund.id} cannot move payment {payment.id} from {payment.status} to {target.value}",
                payment_id=payment.id,
                refund_id=refund.id,
            )
            return TransitionDecision.ANOMALY

        previous = payment.status
        payment.refunded_amount = refunded
        payment.status = target.value
        payment.refunded_at = utcnow()
        await self.ledger.reverse(
            payment.id,
            refund.amount,
            full_refund=target == PaymentStatus.REFUNDED,
            reason=f"Refund {refund.id}",
        )
        logger.info(
            f"Payment {payment.id}: {previous} -> {target.value}, refunded {refunded} of {payment.gross_amount}"
        )
        return TransitionDecision.ADVANCE

    async def record_provider_refund(self, payment: Payment, event: GatewayEvent) -> TransitionDecision:
        """
        Apply a refund reported by the provider. The payment is already locked
        by the caller, which also owns the transaction.
        """
        if event.provider_refund_id:
            result = await self.db.execute(
                select(Refund).where(
                    Refund.payment_id == payment.id,
                    Refund.provider_refund_id == event.provider_refund_id,
                )
            )
            known = result.scalar_one_or_none()
            if known is not None:
                if known.status == RefundStatus.PENDING.value:
                    known.status = RefundStatus.SUCCEEDED.value
                    known.completed_at = utcnow()
                logger.info(f"Provider refund {event.provider_refund_id} already recorded as {known.id}")
                return TransitionDecision.NOOP

        amount = quantize_money(Decimal(event.amount)) if event.amount is not None else payment.refundable_amount

        # A refund we started whose gateway answer has not been seen yet
        result = await self.db.execute(
            select(Refund)
            .where(
                Refund.payment_id == payment.id,
                Refund.amount == amount,
                Refund.provider_refund_id.is_(None),
                Refund.status.in_([RefundStatus.PENDING.value, RefundStatus.AMBIGUOUS.value]),
            )
            .order_by(Refund.created_at)
        )
        ours = result.scalars().first()
        if ours is not None:
            ours.status = RefundStatus.SUCCEEDED.value
            ours.provider_refund_id = event.provider_refund_id or f"event:{event.provider_event_id}"
            ours.raw_provider_payload = event.raw or None
            ours.completed_at = utcnow()
            logger.info(f"Refund {ours.id} confirmed by provider callback {event.provider_event_id}")
            return await self._apply_money(payment, ours)

        if payment.status not in _REFUNDABLE_STATUSES or amount <= 0 or amount > payment.refundable_amount:
            await self.reconciliation.open_item(
                ReconciliationKind.STATE_ANOMALY,
                f"Provider reported a refund of {amount} {payment.currency} on payment {payment.id} "
                f"({payment.status}, refundable {payment.refundable_amount})",
                payment_id=payment.id,
                details={"event_id": event.provider_event_id, "provider_refund_id": event.provider_refund_id},
            )
            return TransitionDecision.ANOMALY

        refund = Refund(
            payment_id=payment.id,
            amount=amount,
            currency=payment.currency,
            reason="Refunded at provider",
            status=RefundStatus.SUCCEEDED.value,
            provider_refund_id=event.provider_refund_id or f"event:{event.provider_event_id}",
            initiated_by_provider=True,
            raw_provider_payload=event.raw or None,
            completed_at=utcnow(),
        )
        self.db.add(refund)
        await self.db.flush()
        logger.info(f"Provider-initiated refund {refund.provider_refund_id} recorded for payment {payment.id}")
        return await self._apply_money(payment, refund)
