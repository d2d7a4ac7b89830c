"""
Tests for the gateway adapters and their HTTP client.
"""

import hashlib
import hmac
import json
import os
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from paycore.config import settings
from paycore.errors import GatewayAmbiguous, GatewayRejected, RetryExhausted
from paycore.fsm.states import GatewayEventType, GatewayType, InitiationKind, RefundStatus
from paycore.gateways import GatewayRegistry, recommend_gateway
from paycore.gateways.bank_transfer import BankTransferAdapter, sign_internal_event
from paycore.gateways.base import (
    BuyerInfo,
    InboundWebhook,
    InitiateRequest,
    format_amount,
    from_minor_units,
    to_minor_units,
)
from paycore.gateways.fawry import FawryAdapter, sha256_signature
from paycore.gateways.http import GatewayHttpClient
from paycore.gateways.hyperpay import HyperpayAdapter, classify_result_code
from paycore.gateways.paymob import PaymobAdapter, compute_transaction_hmac
from paycore.gateways.stripe_gateway import StripeAdapter
from paycore.gateways.tap import TapAdapter, charge_hashstring


def make_request(amount="1000.00", currency="EGP"):
    return InitiateRequest(
        payment_id="6f1c2a9e-0000-4000-8000-000000000001",
        amount=Decimal(amount),
        currency=currency,
        buyer=BuyerInfo(buyer_id="buyer-1", email="mona@example.com", first_name="Mona", last_name="Adel"),
        description="Python for data analysis",
        success_url="http://localhost:8000/checkout/1/return",
        cancel_url="http://localhost:8000/checkout/1/return?cancelled=1",
        webhook_url="http://localhost:8000/webhooks/paymob",
        idempotency_key="key-1",
    )


def webhook(provider, body, headers=None, query=None):
    raw = body if isinstance(body, bytes) else json.dumps(body).encode()
    return InboundWebhook(provider=provider, raw_body=raw, headers=headers or {}, query_params=query or {})


class TestMoney:
    def test_minor_units(self):
        assert to_minor_units(Decimal("1000.50"), "EGP") == 100050
        assert to_minor_units(Decimal("1.234"), "KWD") == 1234
        assert from_minor_units(100050, "EGP") == Decimal("1000.50")

    def test_format_amount_uses_currency_exponent(self):
        assert format_amount(Decimal("5"), "EGP") == "5.00"
        assert format_amount(Decimal("5"), "KWD") == "5.000"


class TestRecommendGateway:
    def test_egypt_small_basket_goes_to_fawry(self):
        assert recommend_gateway("EG", Decimal("80")) == GatewayType.FAWRY
        assert recommend_gateway("eg", Decimal("500")) == GatewayType.PAYMOB

    def test_gulf(self):
        assert recommend_gateway("SA", Decimal("500")) == GatewayType.TAP
        assert recommend_gateway("AE", Decimal("500")) == GatewayType.HYPERPAY

    def test_rest_of_world_and_fallback(self):
        assert recommend_gateway("DE", Decimal("500")) == GatewayType.STRIPE
        assert recommend_gateway("SA", Decimal("500"), enabled=[GatewayType.STRIPE]) == GatewayType.STRIPE
        assert (
            recommend_gateway("SA", Decimal("500"), enabled=[GatewayType.PAYMOB, GatewayType.FAWRY])
            == GatewayType.PAYMOB
        )


class TestRegistry:
    def test_disabled_gateway(self):
        registry = GatewayRegistry([BankTransferAdapter()])
        assert registry.find("paymob") is None
        assert registry.find("not-a-gateway") is None
        assert registry.enabled == [GatewayType.BANK_TRANSFER]


# ---------------------------------------------------------------------------
# HTTP client classification
# ---------------------------------------------------------------------------


def client_for(handler):
    return GatewayHttpClient(
        "acme",
        "https://api.acme.test",
        max_attempts=3,
        backoff_seconds=0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_503_is_retried_then_exhausted():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    with pytest.raises(RetryExhausted):
        await client_for(handler).request("POST", "/charges", json_body={})
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_429_then_success():
    responses = iter([httpx.Response(429), httpx.Response(200, json={"id": "ok"})])

    response = await client_for(lambda request: next(responses)).request("POST", "/charges", json_body={})
    assert response.json() == {"id": "ok"}


@pytest.mark.asyncio
async def test_500_on_unsafe_call_is_ambiguous():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500)

    with pytest.raises(GatewayAmbiguous):
        await client_for(handler).request("POST", "/charges", json_body={})
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_500_on_safe_call_is_retried():
    responses = iter([httpx.Response(500), httpx.Response(200, json={"status": "PAID"})])

    response = await client_for(lambda request: next(responses)).request("GET", "/status", safe=True)
    assert response.json() == {"status": "PAID"}


@pytest.mark.asyncio
async def test_4xx_is_rejected():
    with pytest.raises(GatewayRejected) as exc_info:
        await client_for(lambda request: httpx.Response(400, text="bad amount")).request("POST", "/charges")
    assert exc_info.value.details["status_code"] == 400


@pytest.mark.asyncio
async def test_connection_refused_is_not_executed():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RetryExhausted):
        await client_for(handler).request("POST", "/charges")


@pytest.mark.asyncio
async def test_read_timeout_on_unsafe_call_is_ambiguous():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayAmbiguous):
        await client_for(handler).request("POST", "/charges")


# ---------------------------------------------------------------------------
# Paymob
# ---------------------------------------------------------------------------


def paymob_transaction(**overrides):
    obj = {
        "id": 192036465,
        "amount_cents": 100000,
        "created_at": "2026-03-01T12:00:00.000000",
        "currency": "EGP",
        "error_occured": False,
        "has_parent_transaction": False,
        "integration_id": 4000,
        "is_3d_secure": True,
        "is_auth": False,
        "is_capture": False,
        "is_refunded": False,
        "is_standalone_payment": True,
        "is_voided": False,
        "order": {"id": 217503754, "merchant_order_id": "6f1c2a9e-0000-4000-8000-000000000001"},
        "owner": 302852,
        "pending": False,
        "source_data": {"pan": "2346", "sub_type": "MasterCard", "type": "card"},
        "success": True,
    }
    obj.update(overrides)
    return obj


@pytest.mark.asyncio
async def test_paymob_initiate_registers_order_and_payment_key():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        if request.url.path == "/api/auth/tokens":
            return httpx.Response(201, json={"token": "auth-token"})
        if request.url.path == "/api/ecommerce/orders":
            body = json.loads(request.content)
            assert body["amount_cents"] == 100000
            assert body["merchant_order_id"] == "6f1c2a9e-0000-4000-8000-000000000001"
            return httpx.Response(201, json={"id": 217503754})
        return httpx.Response(201, json={"token": "pk_abc"})

    adapter = PaymobAdapter(transport=httpx.MockTransport(handler))
    result = await adapter.initiate(make_request())

    assert paths == ["/api/auth/tokens", "/api/ecommerce/orders", "/api/acceptance/payment_keys"]
    assert result.kind == InitiationKind.REDIRECT
    assert result.provider_reference == "217503754"
    assert result.redirect_url.endswith("payment_token=pk_abc")


class TestPaymobCallbacks:
    adapter = PaymobAdapter()

    def test_valid_hmac_is_accepted(self):
        obj = paymob_transaction()
        signature = compute_transaction_hmac(obj, "paymob-hmac-secret")
        hook = webhook(GatewayType.PAYMOB, {"type": "TRANSACTION", "obj": obj}, query={"hmac": signature})

        assert self.adapter.verify_webhook_signature(hook)

        event = self.adapter.parse_webhook(hook)
        assert event.event_type == GatewayEventType.CAPTURED
        assert event.provider_event_id == "cb:192036465:captured"
        assert event.amount == Decimal("1000.00")
        assert event.merchant_reference == "6f1c2a9e-0000-4000-8000-000000000001"

    def test_tampered_amount_fails_hmac(self):
        obj = paymob_transaction()
        signature = compute_transaction_hmac(obj, "paymob-hmac-secret")
        obj["amount_cents"] = 100
        hook = webhook(GatewayType.PAYMOB, {"type": "TRANSACTION", "obj": obj}, query={"hmac": signature})
        assert not self.adapter.verify_webhook_signature(hook)

    def test_missing_hmac_fails(self):
        hook = webhook(GatewayType.PAYMOB, {"type": "TRANSACTION", "obj": paymob_transaction()})
        assert not self.adapter.verify_webhook_signature(hook)

    def test_refund_transaction(self):
        obj = paymob_transaction(id=555, is_refund=True, parent_transaction=192036465, amount_cents=30000)
        event = self.adapter.parse_webhook(webhook(GatewayType.PAYMOB, {"type": "TRANSACTION", "obj": obj}))
        assert event.event_type == GatewayEventType.REFUNDED
        assert event.provider_txn_id == "192036465"
        assert event.provider_refund_id == "555"

    def test_other_callback_types_are_ignored(self):
        hook = webhook(GatewayType.PAYMOB, {"type": "TOKEN", "obj": {}})
        assert self.adapter.parse_webhook(hook) is None


# ---------------------------------------------------------------------------
# Fawry
# ---------------------------------------------------------------------------


def fawry_notification(status="PAID"):
    payload = {
        "fawryRefNumber": "9990002233",
        "merchantRefNumber": "6f1c2a9e-0000-4000-8000-000000000001",
        "paymentAmount": 250.0,
        "orderAmount": 250.0,
        "orderStatus": status,
        "paymentMethod": "PAYATFAWRY",
        "paymentRefrenceNumber": "77881",
    }
    payload["messageSignature"] = sha256_signature(
        "9990002233",
        "6f1c2a9e-0000-4000-8000-000000000001",
        "250.00",
        "250.00",
        status,
        "PAYATFAWRY",
        "77881",
        "fawry-secure-key",
    )
    return payload


class TestFawryCallbacks:
    adapter = FawryAdapter()

    def test_signed_notification(self):
        hook = webhook(GatewayType.FAWRY, fawry_notification())
        assert self.adapter.verify_webhook_signature(hook)

        event = self.adapter.parse_webhook(hook)
        assert event.event_type == GatewayEventType.CAPTURED
        assert event.provider_txn_id == "9990002233"
        assert event.amount == Decimal("250.0")

    def test_status_change_breaks_signature(self):
        payload = fawry_notification()
        payload["orderStatus"] = "EXPIRED"
        assert not self.adapter.verify_webhook_signature(webhook(GatewayType.FAWRY, payload))

    def test_expired_reference(self):
        event = self.adapter.parse_webhook(webhook(GatewayType.FAWRY, fawry_notification("EXPIRED")))
        assert event.event_type == GatewayEventType.EXPIRED


@pytest.mark.asyncio
async def test_fawry_initiate_returns_reference_number():
    def handler(request):
        return httpx.Response(
            200,
            json={"statusCode": 200, "referenceNumber": "9990002233", "expirationTime": 1772452800000},
        )

    result = await FawryAdapter(transport=httpx.MockTransport(handler)).initiate(make_request("250.00"))

    assert result.kind == InitiationKind.REFERENCE_NUMBER
    assert result.reference_number == "9990002233"
    assert result.expires_at.year == 2026


@pytest.mark.asyncio
async def test_fawry_refusal_is_rejected():
    def handler(request):
        return httpx.Response(200, json={"statusCode": 9901, "statusDescription": "Invalid signature"})

    with pytest.raises(GatewayRejected):
        await FawryAdapter(transport=httpx.MockTransport(handler)).initiate(make_request("250.00"))


# ---------------------------------------------------------------------------
# Tap
# ---------------------------------------------------------------------------


class TestTapCallbacks:
    adapter = TapAdapter()
    charge = {
        "id": "chg_TS05A2720261234",
        "amount": 500,
        "currency": "SAR",
        "status": "CAPTURED",
        "reference": {"gateway": "123456", "payment": "0503200001", "order": "6f1c2a9e-0000-4000-8000-000000000001"},
        "transaction": {"created": "1772366400000"},
    }

    def test_hashstring(self):
        hook = webhook(
            GatewayType.TAP,
            self.charge,
            headers={"hashstring": charge_hashstring(self.charge, "sk_test_tap")},
        )
        assert self.adapter.verify_webhook_signature(hook)

        event = self.adapter.parse_webhook(hook)
        assert event.provider_event_id == "post:chg_TS05A2720261234:CAPTURED"
        assert event.amount == Decimal("500")

    def test_wrong_secret(self):
        hook = webhook(GatewayType.TAP, self.charge, headers={"hashstring": charge_hashstring(self.charge, "other")})
        assert not self.adapter.verify_webhook_signature(hook)

    def test_non_charge_objects_are_ignored(self):
        assert self.adapter.parse_webhook(webhook(GatewayType.TAP, {"id": "re_123", "status": "REFUNDED"})) is None


@pytest.mark.asyncio
async def test_tap_response_without_url_is_ambiguous():
    def handler(request):
        return httpx.Response(200, json={"id": "chg_1", "status": "INITIATED"})

    with pytest.raises(GatewayAmbiguous):
        await TapAdapter(transport=httpx.MockTransport(handler)).initiate(make_request("500", "SAR"))


# ---------------------------------------------------------------------------
# Hyperpay
# ---------------------------------------------------------------------------


def encrypted_notification(payload, key_hex=None):
    key = bytes.fromhex(key_hex or os.environ["HYPERPAY_WEBHOOK_KEY"])
    iv = os.urandom(12)
    sealed = AESGCM(key).encrypt(iv, json.dumps(payload).encode(), None)
    ciphertext, tag = sealed[:-16], sealed[-16:]
    return webhook(
        GatewayType.HYPERPAY,
        ciphertext.hex().upper().encode(),
        headers={"X-Initialization-Vector": iv.hex(), "X-Authentication-Tag": tag.hex()},
    )


class TestHyperpayCallbacks:
    adapter = HyperpayAdapter()
    notification = {
        "type": "PAYMENT",
        "payload": {
            "id": "8ac7a4a1845f7e1f0184",
            "paymentType": "DB",
            "result": {"code": "000.000.000", "description": "Transaction succeeded"},
            "amount": "750.00",
            "currency": "AED",
            "merchantTransactionId": "6f1c2a9e-0000-4000-8000-000000000001",
        },
    }

    def test_decrypts_and_parses(self):
        hook = encrypted_notification(self.notification)
        assert self.adapter.verify_webhook_signature(hook)

        event = self.adapter.parse_webhook(hook)
        assert event.event_type == GatewayEventType.CAPTURED
        assert event.amount == Decimal("750.00")
        assert event.currency == "AED"

    def test_wrong_key_is_not_authentic(self):
        hook = encrypted_notification(self.notification, key_hex="ff" * 32)
        assert not self.adapter.verify_webhook_signature(hook)

    def test_result_codes(self):
        assert classify_result_code("000.000.000") == "success"
        assert classify_result_code("000.100.110") == "success"
        assert classify_result_code("000.200.000") == "pending"
        assert classify_result_code("800.100.151") == "failed"


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


def stripe_signed(payload):
    body = json.dumps(payload)
    timestamp = int(time.time())
    signature = hmac.new(
        settings.stripe_webhook_secret.encode(),
        f"{timestamp}.{body}".encode(),
        hashlib.sha256,
    ).hexdigest()
    return webhook(GatewayType.STRIPE, body.encode(), headers={"Stripe-Signature": f"t={timestamp},v1={signature}"})


class TestStripe:
    event = {
        "id": "evt_1PqZ",
        "object": "event",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_3PqZ",
                "object": "payment_intent",
                "amount": 4900,
                "amount_received": 4900,
                "currency": "usd",
                "metadata": {"payment_id": "6f1c2a9e-0000-4000-8000-000000000001"},
            }
        },
    }

    def test_signed_event(self):
        adapter = StripeAdapter()
        hook = stripe_signed(self.event)
        assert adapter.verify_webhook_signature(hook)

        event = adapter.parse_webhook(hook)
        assert event.provider_event_id == "evt_1PqZ"
        assert event.event_type == GatewayEventType.CAPTURED
        assert event.amount == Decimal("49.00")
        assert event.currency == "USD"

    def test_unsigned_event(self):
        hook = webhook(GatewayType.STRIPE, self.event, headers={"Stripe-Signature": "t=1,v1=deadbeef"})
        assert not StripeAdapter().verify_webhook_signature(hook)

    @pytest.mark.asyncio
    async def test_initiate_returns_client_secret(self):
        intent = {"id": "pi_3PqZ", "client_secret": "pi_3PqZ_secret_abc", "status": "requires_payment_method"}
        with patch("stripe.PaymentIntent.create", MagicMock(return_value=intent)) as create:
            result = await StripeAdapter().initiate(make_request("49.00", "USD"))

        assert result.kind == InitiationKind.CLIENT_SECRET
        assert result.client_secret == "pi_3PqZ_secret_abc"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 4900
        assert kwargs["idempotency_key"] == "key-1"


# ---------------------------------------------------------------------------
# Bank transfer
# ---------------------------------------------------------------------------


class TestBankTransfer:
    adapter = BankTransferAdapter()

    def test_internal_event_signature(self):
        body = json.dumps(
            {"event_id": "bt:BT-1:verified", "status": "verified", "payment_id": "p-1", "amount": "500.00"}
        ).encode()
        signed = webhook(
            GatewayType.BANK_TRANSFER,
            body,
            headers={"X-Paycore-Signature": sign_internal_event(body, settings.secret_key)},
        )
        assert self.adapter.verify_webhook_signature(signed)
        assert self.adapter.parse_webhook(signed).event_type == GatewayEventType.CAPTURED

        forged = webhook(GatewayType.BANK_TRANSFER, body, headers={"X-Paycore-Signature": "0" * 64})
        assert not self.adapter.verify_webhook_signature(forged)

    @pytest.mark.asyncio
    async def test_initiate_hands_out_instructions(self):
        result = await self.adapter.initiate(make_request("500.00"))
        assert result.kind == InitiationKind.BANK_INSTRUCTIONS
        assert result.reference_number.startswith("BT-")
        assert result.bank_instructions["reference_number"] == result.reference_number

    @pytest.mark.asyncio
    async def test_refund_needs_manual_payout(self):
        result = await self.adapter.refund("BT-ABC", Decimal("500"), "EGP")
        assert result.status == RefundStatus.PENDING
        assert result.requires_manual_payout
