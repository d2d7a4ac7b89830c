"""
Tests for checkout initiation and gateway event application.
"""

import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from paycore.errors import (
    DuplicateIdempotencyKey,
    Forbidden,
    GatewayAmbiguous,
    GatewayRejected,
    InvalidTransition,
    RetryExhausted,
    SignatureInvalid,
    ValidationError,
)
from paycore.fsm.machine import TransitionDecision
from paycore.fsm.states import (
    CommissionScope,
    GatewayEventType,
    GatewayType,
    PaymentStatus,
    ReconciliationKind,
    WebhookEventStatus,
)
from paycore.gateways import GatewayRegistry
from paycore.gateways.base import BuyerInfo, GatewayEvent
from paycore.models.commission import CommissionSetting
from paycore.models.ledger import EarningsLedgerEntry
from paycore.models.payment import Payment
from paycore.models.reconciliation import ReconciliationItem
from paycore.models.types import utcnow
from paycore.models.webhook_event import WebhookEvent
from paycore.services.payment_orchestrator import Cart, PaymentOrchestrator, compute_idempotency_key
from paycore.services.webhook_reconciler import WebhookReconciler

from conftest import FakeGateway, captured_event


async def items_of(db, kind):
    result = await db.execute(select(ReconciliationItem).where(ReconciliationItem.kind == kind.value))
    return list(result.scalars().all())


async def ledger_entries(db, payment_id):
    result = await db.execute(select(EarningsLedgerEntry).where(EarningsLedgerEntry.payment_id == payment_id))
    return list(result.scalars().all())


class TestIdempotencyKey:
    def test_same_cart_same_key(self):
        a = compute_idempotency_key("buyer-1", "cart-1", Decimal("100"), "egp")
        b = compute_idempotency_key("buyer-1", "cart-1", Decimal("100.00"), "EGP")
        assert a == b

    def test_amount_changes_key(self):
        a = compute_idempotency_key("buyer-1", "cart-1", Decimal("100"), "EGP")
        b = compute_idempotency_key("buyer-1", "cart-1", Decimal("100.01"), "EGP")
        assert a != b


# ---------------------------------------------------------------------------
# Initiation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initiate_stores_checkout_data(db, checkout, gateway):
    payment = await checkout(amount="450.00")

    assert payment.status == PaymentStatus.INITIATED.value
    assert payment.provider_reference == "ord_1"
    assert payment.checkout_data == {"kind": "redirect", "redirect_url": "https://pay.example.com/ord_1"}
    assert payment.initiated_at is not None

    [request] = gateway.initiated
    assert request.payment_id == str(payment.id)
    assert request.amount == Decimal("450.00")
    assert request.webhook_url.endswith("/webhooks/paymob")


@pytest.mark.asyncio
async def test_second_checkout_for_same_cart_is_refused(checkout):
    first = await checkout(cart_id="cart-42")
    first_id = str(first.id)

    with pytest.raises(DuplicateIdempotencyKey) as exc_info:
        await checkout(cart_id="cart-42")

    assert exc_info.value.payment_id == first_id
    assert exc_info.value.payment_status == PaymentStatus.INITIATED.value


@pytest.mark.asyncio
async def test_failed_payment_does_not_block_a_retry(checkout, gateway):
    gateway.initiate_error = GatewayRejected("card network declined", details={"provider": "paymob"})
    with pytest.raises(GatewayRejected):
        await checkout(cart_id="cart-7")

    gateway.initiate_error = None
    retry = await checkout(cart_id="cart-7")
    assert retry.status == PaymentStatus.INITIATED.value


@pytest.mark.asyncio
async def test_unreachable_gateway_leaves_a_supersedable_payment(db, checkout, gateway):
    gateway.initiate_error = RetryExhausted("paymob unreachable", details={"provider": "paymob"})
    with pytest.raises(RetryExhausted):
        await checkout(cart_id="cart-9")

    # Nothing reached the provider, so there is nothing to reconcile
    assert (await db.execute(select(ReconciliationItem))).scalars().all() == []

    gateway.initiate_error = None
    retry = await checkout(cart_id="cart-9")
    assert retry.status == PaymentStatus.INITIATED.value

    payments = (await db.execute(select(Payment).where(Payment.cart_id == "cart-9"))).scalars().all()
    statuses = sorted(p.status for p in payments)
    assert statuses == [PaymentStatus.CANCELLED.value, PaymentStatus.INITIATED.value]


@pytest.mark.asyncio
async def test_ambiguous_initiation_is_queued_for_review(db, checkout, gateway):
    gateway.initiate_error = GatewayAmbiguous("read timed out", details={"provider": "paymob"})
    with pytest.raises(GatewayAmbiguous):
        await checkout(cart_id="cart-amb")

    [item] = await items_of(db, ReconciliationKind.GATEWAY_AMBIGUOUS)
    assert item.payment_id is not None

    # The provider may hold a live order, so the cart stays blocked
    gateway.initiate_error = None
    with pytest.raises(DuplicateIdempotencyKey):
        await checkout(cart_id="cart-amb")


@pytest.mark.asyncio
async def test_rejected_initiation_fails_the_payment(db, checkout, gateway):
    gateway.initiate_error = GatewayRejected("invalid merchant", details={"provider": "paymob"})
    with pytest.raises(GatewayRejected):
        await checkout(cart_id="cart-rej")

    payment = (await db.execute(select(Payment).where(Payment.cart_id == "cart-rej"))).scalar_one()
    assert payment.status == PaymentStatus.FAILED.value
    assert payment.failure_reason == "invalid merchant"


@pytest.mark.asyncio
async def test_unsupported_currency_and_bad_amounts(checkout):
    with pytest.raises(ValidationError):
        await checkout(currency="USD")
    with pytest.raises(ValidationError):
        await checkout(amount="0")
    with pytest.raises(ValidationError):
        await checkout(gateway_type=GatewayType.STRIPE)


# ---------------------------------------------------------------------------
# Event application
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_capture_succeeds_and_posts_earnings(db, checkout, capture):
    payment = await checkout(amount="1000.00")

    result = await capture(payment)

    assert result.outcome == TransitionDecision.ADVANCE.value
    assert payment.status == PaymentStatus.SUCCEEDED.value
    assert payment.confirmed_at is not None
    assert len(await ledger_entries(db, payment.id)) == 2


@pytest.mark.asyncio
async def test_replayed_event_is_a_duplicate(db, checkout, capture):
    payment = await checkout()
    await capture(payment)

    again = await capture(payment)

    assert again.outcome == "duplicate"
    assert len(await ledger_entries(db, payment.id)) == 2


@pytest.mark.asyncio
async def test_late_pending_event_does_not_move_back(db, checkout, capture, registry):
    payment = await checkout()
    await capture(payment)

    orchestrator = PaymentOrchestrator(db, registry)
    pending = GatewayEvent(
        provider=GatewayType.PAYMOB,
        provider_event_id=f"cb:{payment.id}:pending",
        event_type=GatewayEventType.PENDING,
        signature_verified=True,
        merchant_reference=str(payment.id),
    )
    result = await orchestrator.apply_event(pending)
    await db.commit()

    assert result.outcome == TransitionDecision.NOOP.value
    payment = await orchestrator.get_payment(payment.id)
    assert payment.status == PaymentStatus.SUCCEEDED.value


@pytest.mark.asyncio
async def test_amount_mismatch_is_an_anomaly(db, checkout, capture):
    payment = await checkout(amount="1000.00")

    result = await capture(payment, amount=Decimal("10.00"))

    assert result.outcome == TransitionDecision.ANOMALY.value
    assert payment.status == PaymentStatus.INITIATED.value
    assert len(await items_of(db, ReconciliationKind.AMOUNT_MISMATCH)) == 1
    assert await ledger_entries(db, payment.id) == []


@pytest.mark.asyncio
async def test_failure_after_success_is_an_anomaly(db, paid, registry):
    payment = await paid()

    failed = GatewayEvent(
        provider=GatewayType.PAYMOB,
        provider_event_id=f"cb:{payment.id}:failed",
        event_type=GatewayEventType.FAILED,
        signature_verified=True,
        merchant_reference=str(payment.id),
    )
    result = await PaymentOrchestrator(db, registry).apply_event(failed)
    await db.commit()

    assert result.outcome == TransitionDecision.ANOMALY.value
    assert payment.status == PaymentStatus.SUCCEEDED.value
    assert len(await items_of(db, ReconciliationKind.STATE_ANOMALY)) == 1


@pytest.mark.asyncio
async def test_event_for_unknown_payment_is_unmatched(db, registry):
    event = GatewayEvent(
        provider=GatewayType.PAYMOB,
        provider_event_id="cb:999:captured",
        event_type=GatewayEventType.CAPTURED,
        signature_verified=True,
        provider_txn_id="999",
        merchant_reference=str(uuid.uuid4()),
        amount=Decimal("10.00"),
    )
    result = await PaymentOrchestrator(db, registry).apply_event(event)
    await db.commit()

    assert result.outcome == "unmatched"
    assert result.payment is None


@pytest.mark.asyncio
async def test_unverified_event_is_refused(db, checkout, registry):
    payment = await checkout()
    event = captured_event(payment)
    event.signature_verified = False

    with pytest.raises(SignatureInvalid):
        await PaymentOrchestrator(db, registry).apply_event(event)


# ---------------------------------------------------------------------------
# Confirmation, cancellation, expiry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_confirm_uses_the_gateway_status(db, checkout, gateway, registry):
    payment = await checkout()
    gateway.status_event = captured_event(payment, event_id=f"status:{payment.id}")

    confirmed = await PaymentOrchestrator(db, registry).confirm(payment.id)

    assert confirmed.status == PaymentStatus.SUCCEEDED.value
    assert len(await ledger_entries(db, payment.id)) == 2


@pytest.mark.asyncio
async def test_confirm_without_news_changes_nothing(db, checkout, registry):
    payment = await checkout()
    confirmed = await PaymentOrchestrator(db, registry).confirm(payment.id)
    assert confirmed.status == PaymentStatus.INITIATED.value


@pytest.mark.asyncio
async def test_buyer_can_cancel_an_open_checkout(db, checkout, registry):
    payment = await checkout()
    orchestrator = PaymentOrchestrator(db, registry)

    with pytest.raises(Forbidden):
        await orchestrator.cancel_checkout(payment.id, "someone-else")

    cancelled = await orchestrator.cancel_checkout(payment.id, "buyer-1")
    assert cancelled.status == PaymentStatus.CANCELLED.value

    with pytest.raises(InvalidTransition):
        await orchestrator.cancel_checkout(payment.id, "buyer-1")


@pytest.mark.asyncio
async def test_expired_reference_payment_is_cancelled_and_late_capture_flagged(db):
    """Fawry reference paid after its 48h window is never credited."""
    fawry = FakeGateway(GatewayType.FAWRY, currencies={"EGP"})
    fawry.expires_at = utcnow() + timedelta(hours=48)
    registry = GatewayRegistry([fawry])
    orchestrator = PaymentOrchestrator(db, registry)

    payment = await orchestrator.initiate(
        Cart(
            cart_id="cart-fawry",
            buyer=BuyerInfo(buyer_id="buyer-1"),
            item_type="course",
            item_id="course-1",
            instructor_id="inst-1",
            amount=Decimal("250.00"),
            currency="EGP",
        ),
        GatewayType.FAWRY,
    )

    assert await orchestrator.expire_stale(utcnow() + timedelta(hours=47)) == 0
    assert await orchestrator.expire_stale(utcnow() + timedelta(hours=49)) == 1

    payment = await orchestrator.get_payment(payment.id)
    assert payment.status == PaymentStatus.CANCELLED.value

    result = await orchestrator.apply_event(captured_event(payment))
    await db.commit()

    assert result.outcome == TransitionDecision.ANOMALY.value
    assert await ledger_entries(db, payment.id) == []
    assert len(await items_of(db, ReconciliationKind.STATE_ANOMALY)) == 1


@pytest.mark.asyncio
async def test_applied_event_is_kept_in_the_seen_set(db, checkout, capture):
    payment = await checkout(amount="1000.00")

    await capture(payment)

    [record] = (await db.execute(select(WebhookEvent))).scalars().all()
    assert record.provider_event_id == f"cb:{payment.id}:captured"
    assert record.event_type == GatewayEventType.CAPTURED.value
    assert record.status == WebhookEventStatus.PROCESSED.value
    assert record.outcome == TransitionDecision.ADVANCE.value
    assert record.attempts == 1
    assert record.payment_id == payment.id


@pytest.mark.asyncio
async def test_confirm_queues_a_status_event_it_could_not_apply(db, checkout, gateway, registry):
    payment = await checkout()
    payment_id = payment.id
    gateway.status_event = captured_event(payment, event_id=f"status:{payment_id}")

    orchestrator = PaymentOrchestrator(db, registry)
    orchestrator.apply_event = AsyncMock(
        side_effect=IntegrityError("INSERT INTO earnings_ledger_entries", {}, Exception("CHECK constraint failed"))
    )
    confirmed = await orchestrator.confirm(payment_id)

    assert confirmed.status == PaymentStatus.INITIATED.value
    [record] = (await db.execute(select(WebhookEvent))).scalars().all()
    assert record.status == WebhookEventStatus.FAILED.value
    assert record.provider_event_id == f"status:{payment_id}"

    # The retry worker picks it up
    stats = await WebhookReconciler(db, registry).retry_failed()
    assert stats["succeeded"] == 1
    payment = await PaymentOrchestrator(db, registry).get_payment(payment_id)
    assert payment.status == PaymentStatus.SUCCEEDED.value


async def sell(db, registry, item_type, item_id, cart_id):
    orchestrator = PaymentOrchestrator(db, registry)
    payment = await orchestrator.initiate(
        Cart(
            cart_id=cart_id,
            buyer=BuyerInfo(buyer_id="buyer-1"),
            item_type=item_type,
            item_id=item_id,
            instructor_id="inst-1",
            amount=Decimal("100.00"),
            currency="EGP",
        ),
        GatewayType.PAYMOB,
    )
    await orchestrator.apply_event(captured_event(payment))
    await db.commit()
    return payment


@pytest.mark.asyncio
async def test_course_rule_only_applies_to_course_sales(db, registry):
    db.add(
        CommissionSetting(
            name="Flagship course",
            scope=CommissionScope.COURSE.value,
            scope_id="item-7",
            platform_rate=Decimal("10"),
            instructor_rate=Decimal("90"),
            hold_period_days=7,
        )
    )
    await db.commit()

    course = await sell(db, registry, "course", "item-7", "cart-course")
    book = await sell(db, registry, "book", "item-7", "cart-book")

    [course_credit] = [e for e in await ledger_entries(db, course.id) if e.account == "instructor"]
    [book_credit] = [e for e in await ledger_entries(db, book.id) if e.account == "instructor"]
    assert course_credit.amount == Decimal("90.00")
    # Platform default, not the course rule
    assert book_credit.amount == Decimal("70.00")
    assert book_credit.commission_setting_id is None
