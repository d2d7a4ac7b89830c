"""
Payment Orchestrator - owns the Payment state machine.

Initiates checkouts through the gateway adapters and applies normalized
gateway events. Every event is applied under the payment's row lock and
recorded in the webhook seen-set in the same transaction, so a replay is a
no-op and reordered deliveries can only move a payment forward.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.config import settings
from paycore.errors import (
    DuplicateIdempotencyKey,
    Forbidden,
    GatewayAmbiguous,
    GatewayRejected,
    InvalidTransition,
    NotFound,
    RetryExhausted,
    SignatureInvalid,
    ValidationError,
)
from paycore.fsm.machine import TransitionDecision, decide_transition, target_for_event
from paycore.fsm.states import (
    KEY_BLOCKING_PAYMENT_STATUSES,
    BankTransferStatus,
    GatewayEventType,
    GatewayType,
    InitiationKind,
    PaymentStatus,
    ReconciliationKind,
    WebhookEventStatus,
)
from paycore.gateways import GatewayRegistry, get_gateway_registry
from paycore.gateways.base import BuyerInfo, GatewayEvent, InitiateRequest
from paycore.models.bank_transfer import BankTransfer
from paycore.models.payment import Payment
from paycore.models.types import utcnow
from paycore.models.webhook_event import WebhookEvent
from paycore.services.commission_resolver import CommissionResolver
from paycore.services.earnings_ledger import EarningsLedger
from paycore.services.events import SaleCompleted
from paycore.services.reconciliation_service import ReconciliationService
from paycore.services.refund_service import RefundProcessor

logger = logging.getLogger(__name__)

# Marks a payment whose initiation provably never reached the provider
NOT_EXECUTED_PREFIX = "not_executed:"

_OPEN_STATUSES = [PaymentStatus.INITIATED.value, PaymentStatus.PENDING_CONFIRMATION.value]


@dataclass
class Cart:
    """What the buyer is paying for, as handed over by the storefront."""

    cart_id: str
    buyer: BuyerInfo
    item_type: str
    item_id: str
    instructor_id: str
    amount: Decimal
    currency: str
    category_id: Optional[str] = None
    description: str = ""


@dataclass
class ApplyResult:
    """What happened when an event was applied."""

    outcome: str
    payment: Optional[Payment] = None

    @property
    def changed_state(self) -> bool:
        return self.outcome == TransitionDecision.ADVANCE.value


def compute_idempotency_key(buyer_id: str, cart_id: str, amount: Decimal, currency: str) -> str:
    """sha256 over buyer + cart + amount + currency."""
    raw = f"{buyer_id}|{cart_id}|{Decimal(amount).quantize(Decimal('0.01'))}|{currency.upper()}"
    return hashlib.sha256(raw.encode()).hexdigest()


class PaymentOrchestrator:
    """Checkout initiation, event application and expiry for payments."""

    def __init__(self, db: AsyncSession, registry: Optional[GatewayRegistry] = None):
        self.db = db
        self.registry = registry or get_gateway_registry()
        self.reconciliation = ReconciliationService(db)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_payment(self, payment_id: uuid.UUID, *, lock: bool = False) -> Payment:
        query = select(Payment).where(Payment.id == payment_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.execution_options(populate_existing=True))
        payment = result.scalar_one_or_none()
        if payment is None:
            raise NotFound("Payment not found", details={"payment_id": str(payment_id)})
        return payment

    async def _blocking_payment(self, idempotency_key: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.idempotency_key == idempotency_key,
                Payment.status.in_([s.value for s in KEY_BLOCKING_PAYMENT_STATUSES]),
            )
            .with_for_update()
        )
        return result.scalars().first()

    async def _find_for_event(self, event: GatewayEvent) -> Optional[Payment]:
        payment = None
        if event.merchant_reference:
            try:
                payment_id = uuid.UUID(str(event.merchant_reference))
            except ValueError:
                payment_id = None
            if payment_id is not None:
                result = await self.db.execute(
                    select(Payment)
                    .where(Payment.id == payment_id)
                    .with_for_update()
                    .execution_options(populate_existing=True)
                )
                payment = result.scalar_one_or_none()

        if payment is None and event.provider_txn_id:
            result = await self.db.execute(
                select(Payment)
                .where(
                    Payment.gateway == event.provider.value,
                    (Payment.provider_txn_id == event.provider_txn_id)
                    | (Payment.provider_reference == event.provider_txn_id),
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            payment = result.scalars().first()

        if payment is not None and payment.gateway != event.provider.value:
            logger.warning(
                f"Event {event.provider_event_id} from {event.provider.value} references "
                f"payment {payment.id} on {payment.gateway}; ignoring"
            )
            return None
        return payment

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------

    async def initiate(self, cart: Cart, gateway_type: GatewayType) -> Payment:
        """
        Create a Payment for the cart and start checkout with the gateway.

        Raises:
            ValidationError: non-positive amount, unsupported gateway/currency.
            DuplicateIdempotencyKey: an active or paid payment exists for the cart.
            RetryExhausted: the provider never received the request.
            GatewayAmbiguous: the provider may have received it; queued for review.
            GatewayRejected: the provider refused the checkout.
        """
        amount = Decimal(cart.amount)
        currency = (cart.currency or "").upper()
        if amount <= 0:
            raise ValidationError("Cart total must be greater than zero", details={"amount": str(amount)})
        if len(currency) != 3:
            raise ValidationError("Currency must be an ISO 4217 code", details={"currency": cart.currency})

        adapter = self.registry.get(gateway_type)
        if not adapter.supports_currency(currency):
            raise ValidationError(
                f"{adapter.gateway_type.value} does not accept {currency}",
                details={"gateway": adapter.gateway_type.value, "currency": currency},
            )

        key = compute_idempotency_key(cart.buyer.buyer_id, cart.cart_id, amount, currency)
        existing = await self._blocking_payment(key)
        if existing is not None:
            if self._superseded(existing):
                existing.status = PaymentStatus.CANCELLED.value
                existing.cancelled_at = utcnow()
                logger.info(f"Payment {existing.id} never reached its gateway; superseded by a new attempt")
            else:
                existing_id, existing_status = str(existing.id), existing.status
                await self.db.rollback()
                raise DuplicateIdempotencyKey(existing_id, existing_status)

        payment = Payment(
            item_type=cart.item_type,
            item_id=cart.item_id,
            instructor_id=cart.instructor_id,
            category_id=cart.category_id,
            buyer_id=cart.buyer.buyer_id,
            cart_id=cart.cart_id,
            gross_amount=amount,
            currency=currency,
            gateway=adapter.gateway_type.value,
            status=PaymentStatus.CREATED.value,
            idempotency_key=key,
        )
        self.db.add(payment)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            winner = await self._blocking_payment(key)
            winner_id = str(winner.id) if winner else ""
            winner_status = winner.status if winner else ""
            await self.db.rollback()
            raise DuplicateIdempotencyKey(winner_id, winner_status)

        logger.info(f"Payment {payment.id} created: {amount} {currency} via {payment.gateway}")

        base = settings.public_base_url.rstrip("/")
        request = InitiateRequest(
            payment_id=str(payment.id),
            amount=amount,
            currency=currency,
            buyer=cart.buyer,
            description=cart.description or f"{cart.item_type} {cart.item_id}",
            success_url=f"{base}/checkout/{payment.id}/return",
            cancel_url=f"{base}/checkout/{payment.id}/return?cancelled=1",
            webhook_url=f"{base}/webhooks/{payment.gateway}",
            idempotency_key=key,
        )

        try:
            result = await adapter.initiate(request)
        except RetryExhausted as exc:
            payment.status = PaymentStatus.INITIATED.value
            payment.initiated_at = utcnow()
            payment.failure_reason = f"{NOT_EXECUTED_PREFIX} {exc.message}"
            await self.db.commit()
            logger.warning(f"Payment {payment.id}: {payment.gateway} unavailable after retries")
            raise
        except GatewayAmbiguous as exc:
            await self._mark_ambiguous(payment, exc)
            raise
        except GatewayRejected as exc:
            payment.status = PaymentStatus.FAILED.value
            payment.failed_at = utcnow()
            payment.failure_reason = exc.message
            await self.db.commit()
            logger.info(f"Payment {payment.id} rejected by {payment.gateway}: {exc.message}")
            raise
        except (KeyError, ValueError) as exc:
            # Provider answered 2xx with a body we could not read
            ambiguous = GatewayAmbiguous(
                f"{payment.gateway} returned an unreadable response",
                details={"provider": payment.gateway, "error": repr(exc)},
            )
            await self._mark_ambiguous(payment, ambiguous)
            raise ambiguous from exc

        payment.status = PaymentStatus.INITIATED.value
        payment.initiated_at = utcnow()
        payment.provider_reference = result.provider_reference
        payment.checkout_data = result.buyer_payload()
        payment.expires_at = result.expires_at
        payment.raw_provider_payload = result.raw or None

        if result.kind == InitiationKind.BANK_INSTRUCTIONS:
            self.db.add(
                BankTransfer(
                    payment_id=payment.id,
                    reference_number=result.reference_number,
                    expires_at=result.expires_at,
                )
            )

        await self.db.commit()
        logger.info(f"Payment {payment.id} initiated with {payment.gateway} ({result.kind.value})")
        return payment

    @staticmethod
    def _superseded(existing: Payment) -> bool:
        return (
            existing.status == PaymentStatus.INITIATED.value
            and existing.provider_reference is None
            and (existing.failure_reason or "").startswith(NOT_EXECUTED_PREFIX)
        )

    async def _mark_ambiguous(self, payment: Payment, exc: GatewayAmbiguous) -> None:
        payment.status = PaymentStatus.INITIATED.value
        payment.initiated_at = utcnow()
        payment.failure_reason = f"ambiguous: {exc.message}"
        await self.reconciliation.open_item(
            ReconciliationKind.GATEWAY_AMBIGUOUS,
            f"Initiation of payment {payment.id} with {payment.gateway} has an unknown outcome",
            payment_id=payment.id,
            details=exc.details,
        )
        await self.db.commit()
        logger.error(f"Payment {payment.id}: ambiguous initiation with {payment.gateway}")

    # ------------------------------------------------------------------
    # Event application
    # ------------------------------------------------------------------

    async def apply_event(self, event: GatewayEvent) -> ApplyResult:
        """
        Apply a verified gateway event. Idempotent per (provider, provider_event_id).

        Does not commit; the caller owns the transaction so the seen-set
        record and the state change land together.
        """
        if not event.signature_verified:
            logger.warning(f"Refusing unverified event {event.provider.value}:{event.provider_event_id}")
            raise SignatureInvalid("Event signature was not verified")

        payment = await self._find_for_event(event)

        record = await self._seen_record(event)
        if record is not None and record.status != WebhookEventStatus.FAILED.value:
            logger.info(f"Duplicate event {event.provider.value}:{event.provider_event_id} ignored")
            return ApplyResult(outcome="duplicate", payment=payment)
        if record is None:
            record = WebhookEvent(provider=event.provider.value, provider_event_id=event.provider_event_id, attempts=0)

        # Every NOT NULL column is set before the row joins the session; the
        # lookups below autoflush it. The final status is set once decided.
        self._fill_record(record, event)
        record.status = WebhookEventStatus.PROCESSED.value
        record.attempts = (record.attempts or 0) + 1
        record.last_error = None
        self.db.add(record)

        if payment is None:
            record.status = WebhookEventStatus.UNMATCHED.value
            record.processed_at = utcnow()
            await self.db.flush()
            logger.warning(
                f"Event {event.provider.value}:{event.provider_event_id} matches no payment "
                f"(txn {event.provider_txn_id}, ref {event.merchant_reference})"
            )
            return ApplyResult(outcome="unmatched")

        record.payment_id = payment.id

        if event.event_type == GatewayEventType.REFUNDED:
            decision = await RefundProcessor(self.db, self.registry).record_provider_refund(payment, event)
        else:
            decision = await self._transition(payment, event)

        record.outcome = decision.value
        record.status = (
            WebhookEventStatus.ANOMALY.value if decision == TransitionDecision.ANOMALY else WebhookEventStatus.PROCESSED.value
        )
        record.processed_at = utcnow()
        await self.db.flush()
        return ApplyResult(outcome=decision.value, payment=payment)

    @staticmethod
    def _fill_record(record: WebhookEvent, event: GatewayEvent) -> None:
        record.event_type = event.event_type.value
        record.provider_txn_id = event.provider_txn_id
        record.merchant_reference = event.merchant_reference
        record.provider_refund_id = event.provider_refund_id
        record.amount = event.amount
        record.currency = event.currency
        record.payload = event.raw or None

    async def recorded_elsewhere(self, event: GatewayEvent) -> bool:
        """
        True when the event's seen-set row exists and is not waiting for a
        retry. Used after a rollback to tell a concurrent duplicate apart
        from a processing failure.
        """
        record = await self._seen_record(event)
        return record is not None and record.status != WebhookEventStatus.FAILED.value

    async def record_failure(self, event: GatewayEvent, exc: Exception) -> WebhookEvent:
        """Store the event as ``failed`` so the retry worker re-drives it. Commits."""
        record = await self._seen_record(event)
        if record is None:
            record = WebhookEvent(provider=event.provider.value, provider_event_id=event.provider_event_id, attempts=0)

        self._fill_record(record, event)
        record.status = WebhookEventStatus.FAILED.value
        record.attempts = (record.attempts or 0) + 1
        record.last_error = repr(exc)[:2000]
        self.db.add(record)
        await self.db.commit()
        return record

    async def _seen_record(self, event: GatewayEvent) -> Optional[WebhookEvent]:
        result = await self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == event.provider.value,
                WebhookEvent.provider_event_id == event.provider_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def _transition(self, payment: Payment, event: GatewayEvent) -> TransitionDecision:
        target = target_for_event(event.event_type)
        current = payment.payment_status
        decision = decide_transition(current, target)

        if decision == TransitionDecision.ADVANCE and target == PaymentStatus.SUCCEEDED:
            if not self._amount_matches(payment, event):
                await self.reconciliation.open_item(
                    ReconciliationKind.AMOUNT_MISMATCH,
                    f"Payment {payment.id} success reported for {event.amount} {event.currency}, "
                    f"expected {payment.gross_amount} {payment.currency}",
                    payment_id=payment.id,
                    details={"event_id": event.provider_event_id, "provider": event.provider.value},
                )
                return TransitionDecision.ANOMALY

        if decision == TransitionDecision.ANOMALY:
            await self.reconciliation.open_item(
                ReconciliationKind.STATE_ANOMALY,
                f"Payment {payment.id} is {current.value}; refused {event.event_type.value} event",
                payment_id=payment.id,
                details={
                    "event_id": event.provider_event_id,
                    "provider": event.provider.value,
                    "current": current.value,
                    "target": target.value,
                },
            )
            return decision

        if decision == TransitionDecision.NOOP:
            logger.info(
                f"Payment {payment.id}: {event.event_type.value} event does not advance {current.value}"
            )
            if event.provider_txn_id and not payment.provider_txn_id and current != PaymentStatus.CANCELLED:
                payment.provider_txn_id = event.provider_txn_id
            return decision

        self._advance(payment, target, event)
        if target == PaymentStatus.SUCCEEDED:
            await self._publish_sale(payment)
        return decision

    @staticmethod
    def _amount_matches(payment: Payment, event: GatewayEvent) -> bool:
        if event.amount is not None and Decimal(event.amount) != payment.gross_amount:
            return False
        if event.currency and event.currency.upper() != payment.currency:
            return False
        return True

    def _advance(self, payment: Payment, target: PaymentStatus, event: GatewayEvent) -> None:
        now = utcnow()
        previous = payment.status
        payment.status = target.value
        if event.provider_txn_id:
            payment.provider_txn_id = event.provider_txn_id
        if event.raw:
            payment.raw_provider_payload = event.raw

        if target == PaymentStatus.SUCCEEDED:
            payment.confirmed_at = now
            payment.failure_reason = None
        elif target == PaymentStatus.FAILED:
            payment.failed_at = now
            payment.failure_reason = event.failure_reason or event.event_type.value
        elif target == PaymentStatus.CANCELLED:
            payment.cancelled_at = now

        logger.info(
            f"Payment {payment.id}: {previous} -> {target.value} on {event.provider.value} "
            f"{event.event_type.value} event {event.provider_event_id}"
        )

    async def _publish_sale(self, payment: Payment) -> None:
        """SaleCompleted: resolve the commission and post earnings in this transaction."""
        sale = SaleCompleted.from_payment(payment)
        commission = await CommissionResolver(self.db).resolve(
            instructor_id=sale.instructor_id,
            course_id=sale.course_id,
            category_id=sale.category_id,
            sale_date=sale.completed_at,
            sale_amount=sale.gross_amount,
        )
        await EarningsLedger(self.db).post_sale(sale, commission)

    # ------------------------------------------------------------------
    # Synchronous confirmation, buyer cancel, expiry
    # ------------------------------------------------------------------

    async def confirm(self, payment_id: uuid.UUID) -> Payment:
        """
        Ask the gateway for the payment's state instead of trusting the client.
        """
        payment = await self.get_payment(payment_id)
        if not payment.payment_status.is_open or not payment.provider_reference:
            return payment

        adapter = self.registry.get(GatewayType(payment.gateway))
        event = await adapter.query_status(payment.provider_reference, str(payment.id))
        if event is None:
            return payment

        try:
            await self.apply_event(event)
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            if isinstance(exc, IntegrityError) and await self.recorded_elsewhere(event):
                logger.info(f"Payment {payment_id}: status event {event.provider_event_id} already recorded")
            else:
                logger.error(f"Payment {payment_id}: failed to apply status event: {exc}", exc_info=True)
                await self.record_failure(event, exc)
        return await self.get_payment(payment_id)

    async def cancel_checkout(self, payment_id: uuid.UUID, buyer_id: str) -> Payment:
        payment = await self.get_payment(payment_id, lock=True)
        if payment.buyer_id != buyer_id:
            raise Forbidden("Payment belongs to another buyer")
        if payment.status not in (PaymentStatus.CREATED.value, PaymentStatus.INITIATED.value):
            raise InvalidTransition(
                f"Cannot cancel a payment that is {payment.status}",
                details={"payment_id": str(payment.id), "status": payment.status},
            )

        transfer = await self._bank_transfer(payment.id)
        if transfer is not None:
            if transfer.status != BankTransferStatus.AWAITING_PROOF.value:
                raise InvalidTransition("Transfer proof is already under review")
            transfer.status = BankTransferStatus.EXPIRED.value

        payment.status = PaymentStatus.CANCELLED.value
        payment.cancelled_at = utcnow()
        await self.db.commit()
        logger.info(f"Payment {payment.id} cancelled by buyer {buyer_id}")
        return payment

    async def _bank_transfer(self, payment_id: uuid.UUID) -> Optional[BankTransfer]:
        result = await self.db.execute(select(BankTransfer).where(BankTransfer.payment_id == payment_id))
        return result.scalar_one_or_none()

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """
        Cancel payments still waiting past their provider deadline.

        Conditional update, so a payment confirmed concurrently is left alone.
        """
        now = now or utcnow()
        expired_ids = (
            await self.db.execute(
                update(Payment)
                .where(
                    Payment.status.in_(_OPEN_STATUSES),
                    Payment.expires_at.is_not(None),
                    Payment.expires_at <= now,
                )
                .values(status=PaymentStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
                .returning(Payment.id)
                .execution_options(synchronize_session=False)
            )
        ).scalars().all()

        if expired_ids:
            await self.db.execute(
                update(BankTransfer)
                .where(
                    BankTransfer.payment_id.in_(expired_ids),
                    BankTransfer.status == BankTransferStatus.AWAITING_PROOF.value,
                )
                .values(status=BankTransferStatus.EXPIRED.value)
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

        for payment_id in expired_ids:
            logger.info(f"Payment {payment_id} expired unpaid; cancelled")
        return len(expired_ids)
