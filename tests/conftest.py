"""
Pytest configuration and fixtures.
"""

import json
import os
import uuid
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

# Settings are read once at import time
os.environ["DATABASE_URL"] = ""
os.environ["REDIS_URL"] = ""
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["PAYMOB_HMAC_SECRET"] = "paymob-hmac-secret"
os.environ["FAWRY_MERCHANT_CODE"] = "MERCH01"
os.environ["FAWRY_SECURE_KEY"] = "fawry-secure-key"
os.environ["TAP_SECRET_KEY"] = "sk_test_tap"
os.environ["HYPERPAY_WEBHOOK_KEY"] = "000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_stripe"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["GATEWAY_BACKOFF_SECONDS"] = "0"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import paycore.models  # noqa: F401
from paycore.database import Base
from paycore.fsm.states import GatewayEventType, GatewayType, InitiationKind, RefundStatus
from paycore.gateways import GatewayRegistry
from paycore.gateways.bank_transfer import BankTransferAdapter
from paycore.gateways.base import (
    BuyerInfo,
    GatewayAdapter,
    GatewayEvent,
    InboundWebhook,
    InitiateRequest,
    ProviderInitResult,
    RefundResult,
)
from paycore.models.payment import Payment
from paycore.services.payment_orchestrator import Cart, PaymentOrchestrator

# Use in-memory SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite://"


class FakeGateway(GatewayAdapter):
    """
    Scriptable stand-in for a provider.

    Callbacks are JSON bodies authenticated by an ``X-Test-Signature: valid``
    header.
    """

    def __init__(self, gateway_type: GatewayType = GatewayType.PAYMOB, currencies=frozenset()):
        self.gateway_type = gateway_type
        self.supported_currencies = frozenset(currencies)
        self.initiate_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.refund_result: Optional[RefundResult] = None
        self.status_event: Optional[GatewayEvent] = None
        self.expires_at: Optional[datetime] = None
        self.initiated: List[InitiateRequest] = []
        self.refunds: List[tuple] = []

    async def initiate(self, request: InitiateRequest) -> ProviderInitResult:
        self.initiated.append(request)
        if self.initiate_error is not None:
            raise self.initiate_error
        reference = f"ord_{len(self.initiated)}"
        return ProviderInitResult(
            kind=InitiationKind.REDIRECT,
            provider_reference=reference,
            redirect_url=f"https://pay.example.com/{reference}",
            expires_at=self.expires_at,
        )

    def verify_webhook_signature(self, webhook: InboundWebhook) -> bool:
        return webhook.header("X-Test-Signature") == "valid"

    def parse_webhook(self, webhook: InboundWebhook) -> Optional[GatewayEvent]:
        payload = json.loads(webhook.raw_body)
        if payload.get("type") == "ping":
            return None
        return GatewayEvent(
            provider=self.gateway_type,
            provider_event_id=payload["id"],
            event_type=GatewayEventType(payload["type"]),
            signature_verified=True,
            provider_txn_id=payload.get("txn_id"),
            merchant_reference=payload.get("payment_id"),
            amount=Decimal(payload["amount"]) if payload.get("amount") else None,
            currency=payload.get("currency"),
            provider_refund_id=payload.get("refund_id"),
            raw=payload,
        )

    async def refund(self, provider_txn_id: str, amount: Decimal, currency: str, reason: str = "") -> RefundResult:
        self.refunds.append((provider_txn_id, amount, currency))
        if self.refund_error is not None:
            raise self.refund_error
        if self.refund_result is not None:
            return self.refund_result
        return RefundResult(status=RefundStatus.SUCCEEDED, provider_refund_id=f"rf_{len(self.refunds)}")

    async def query_status(self, provider_reference: str, merchant_reference: str) -> Optional[GatewayEvent]:
        return self.status_event


def captured_event(payment: Payment, amount: Optional[Decimal] = None, event_id: Optional[str] = None) -> GatewayEvent:
    return GatewayEvent(
        provider=GatewayType(payment.gateway),
        provider_event_id=event_id or f"cb:{payment.id}:captured",
        event_type=GatewayEventType.CAPTURED,
        signature_verified=True,
        provider_txn_id=f"txn-{payment.id.hex[:12]}",
        merchant_reference=str(payment.id),
        amount=payment.gross_amount if amount is None else amount,
        currency=payment.currency,
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for a test."""
    async_session = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway(GatewayType.PAYMOB, currencies={"EGP"})


@pytest.fixture
def registry(gateway) -> GatewayRegistry:
    return GatewayRegistry([gateway, BankTransferAdapter()])


@pytest.fixture
def checkout(db, registry):
    """Factory: initiate a payment for a fresh cart."""

    async def _checkout(
        amount: str = "1000.00",
        currency: str = "EGP",
        instructor_id: str = "inst-1",
        buyer_id: str = "buyer-1",
        cart_id: Optional[str] = None,
        item_id: str = "course-1",
        category_id: Optional[str] = None,
        gateway_type: GatewayType = GatewayType.PAYMOB,
    ) -> Payment:
        cart = Cart(
            cart_id=cart_id or f"cart-{uuid.uuid4().hex[:8]}",
            buyer=BuyerInfo(buyer_id=buyer_id, email="buyer@example.com", first_name="Mona"),
            item_type="course",
            item_id=item_id,
            instructor_id=instructor_id,
            amount=Decimal(amount),
            currency=currency,
            category_id=category_id,
            description="Python for data analysis",
        )
        return await PaymentOrchestrator(db, registry).initiate(cart, gateway_type)

    return _checkout


@pytest.fixture
def capture(db, registry):
    """Factory: apply a gateway capture callback for a payment."""

    async def _capture(payment: Payment, amount: Optional[Decimal] = None, event_id: Optional[str] = None):
        result = await PaymentOrchestrator(db, registry).apply_event(captured_event(payment, amount, event_id))
        await db.commit()
        return result

    return _capture


@pytest.fixture
def paid(checkout, capture):
    """Factory: a payment that the gateway has reported as captured."""

    async def _paid(**kwargs) -> Payment:
        payment = await checkout(**kwargs)
        await capture(payment)
        return payment

    return _paid
