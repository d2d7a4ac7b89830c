"""
Paymob (Accept) adapter.

Checkout is order registration followed by a payment key that is rendered in
Paymob's hosted iframe. Transaction callbacks are authenticated with an HMAC
over a fixed, ordered list of transaction fields passed as ``?hmac=``.
"""

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from paycore.config import Settings, settings as default_settings
from paycore.fsm.states import GatewayEventType, GatewayType, InitiationKind, RefundStatus
from paycore.gateways.base import (
    GatewayAdapter,
    GatewayEvent,
    InboundWebhook,
    InitiateRequest,
    ProviderInitResult,
    RefundResult,
    WebhookParseError,
    from_minor_units,
    to_minor_units,
)
from paycore.gateways.http import GatewayHttpClient

logger = logging.getLogger(__name__)

# Order of fields concatenated for the transaction callback HMAC
HMAC_FIELDS = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)

PAYMENT_KEY_EXPIRATION_SECONDS = 3600


def _lookup(obj: Dict[str, Any], dotted: str) -> Any:
    value: Any = obj
    for part in dotted.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _hmac_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def compute_transaction_hmac(obj: Dict[str, Any], secret: str, algorithm: str = "sha512") -> str:
    message = "".join(_hmac_value(_lookup(obj, name)) for name in HMAC_FIELDS)
    digest = hashlib.sha512 if algorithm == "sha512" else hashlib.sha256
    return hmac.new(secret.encode(), message.encode(), digest).hexdigest()


class PaymobAdapter(GatewayAdapter):
    gateway_type = GatewayType.PAYMOB
    supported_currencies = frozenset({"EGP"})

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or default_settings
        self.http = GatewayHttpClient(
            "paymob",
            self.config.paymob_base_url,
            transport=transport,
        )

    async def _auth_token(self) -> str:
        response = await self.http.request(
            "POST",
            "/api/auth/tokens",
            json_body={"api_key": self.config.paymob_api_key},
            safe=True,
        )
        return response.json()["token"]

    async def initiate(self, request: InitiateRequest) -> ProviderInitResult:
        token = await self._auth_token()
        amount_cents = to_minor_units(request.amount, request.currency)

        order = (
            await self.http.request(
                "POST",
                "/api/ecommerce/orders",
                json_body={
                    "auth_token": token,
                    "delivery_needed": False,
                    "amount_cents": amount_cents,
                    "currency": request.currency,
                    "merchant_order_id": request.payment_id,
                    "items": [],
                },
            )
        ).json()

        buyer = request.buyer
        payment_key = (
            await self.http.request(
                "POST",
                "/api/acceptance/payment_keys",
                json_body={
                    "auth_token": token,
                    "amount_cents": amount_cents,
                    "expiration": PAYMENT_KEY_EXPIRATION_SECONDS,
                    "order_id": order["id"],
                    "currency": request.currency,
                    "integration_id": self.config.paymob_integration_id,
                    "billing_data": {
                        "first_name": buyer.first_name or "NA",
                        "last_name": buyer.last_name or "NA",
                        "email": buyer.email or "NA",
                        "phone_number": buyer.phone or "NA",
                        "apartment": "NA",
                        "floor": "NA",
                        "street": "NA",
                        "building": "NA",
                        "city": "NA",
                        "country": "EG",
                        "state": "NA",
                        "postal_code": "NA",
                        "shipping_method": "NA",
                    },
                },
                safe=True,
            )
        ).json()

        redirect_url = (
            f"{self.config.paymob_base_url.rstrip('/')}/api/acceptance/iframes/"
            f"{self.config.paymob_iframe_id}?payment_token={payment_key['token']}"
        )
        logger.info(f"Paymob order {order['id']} registered for payment {request.payment_id}")
        return ProviderInitResult(
            kind=InitiationKind.REDIRECT,
            provider_reference=str(order["id"]),
            redirect_url=redirect_url,
            raw={"order_id": order["id"]},
        )

    def verify_webhook_signature(self, webhook: InboundWebhook) -> bool:
        received = webhook.query_params.get("hmac", "")
        if not received or not self.config.paymob_hmac_secret:
            return False
        try:
            obj = json.loads(webhook.raw_body).get("obj")
        except (ValueError, AttributeError):
            return False
        if not isinstance(obj, dict):
            return False
        expected = compute_transaction_hmac(obj, self.config.paymob_hmac_secret, self.config.paymob_hmac_algorithm)
        return hmac.compare_digest(expected, received.lower())

    def parse_webhook(self, webhook: InboundWebhook) -> Optional[GatewayEvent]:
        try:
            payload = json.loads(webhook.raw_body)
        except ValueError as exc:
            raise WebhookParseError("Paymob callback is not JSON") from exc

        if payload.get("type") != "TRANSACTION":
            return None
        obj = payload.get("obj")
        if not isinstance(obj, dict) or "id" not in obj:
            raise WebhookParseError("Paymob callback has no transaction object")

        return self._event_from_transaction(obj, "cb")

    def _event_from_transaction(self, obj: Dict[str, Any], source: str) -> GatewayEvent:
        currency = obj.get("currency") or "EGP"
        txn_id = str(obj["id"])
        provider_txn_id = txn_id
        refund_id = None

        if obj.get("success") and obj.get("is_refund"):
            event_type = GatewayEventType.REFUNDED
            provider_txn_id = str(obj.get("parent_transaction") or txn_id)
            refund_id = txn_id
        elif obj.get("success") and obj.get("is_voided"):
            event_type = GatewayEventType.CANCELLED
        elif obj.get("pending"):
            event_type = GatewayEventType.PENDING
        elif obj.get("success"):
            event_type = GatewayEventType.AUTHORIZED if obj.get("is_auth") else GatewayEventType.CAPTURED
        else:
            event_type = GatewayEventType.FAILED

        data_message = _lookup(obj, "data.message")
        return GatewayEvent(
            provider=self.gateway_type,
            provider_event_id=f"{source}:{txn_id}:{event_type.value}",
            event_type=event_type,
            signature_verified=True,
            provider_txn_id=provider_txn_id,
            merchant_reference=_lookup(obj, "order.merchant_order_id"),
            amount=from_minor_units(obj.get("amount_cents", 0), currency),
            currency=currency,
            provider_refund_id=refund_id,
            failure_reason=data_message if event_type == GatewayEventType.FAILED else None,
            raw=obj,
        )

    async def refund(self, provider_txn_id: str, amount: Decimal, currency: str, reason: str = "") -> RefundResult:
        token = await self._auth_token()
        body = (
            await self.http.request(
                "POST",
                "/api/acceptance/void_refund/refund",
                json_body={
                    "auth_token": token,
                    "transaction_id": provider_txn_id,
                    "amount_cents": to_minor_units(amount, currency),
                },
            )
        ).json()

        if body.get("success"):
            status = RefundStatus.SUCCEEDED
        elif body.get("pending"):
            status = RefundStatus.PENDING
        else:
            status = RefundStatus.FAILED
        return RefundResult(
            status=status,
            provider_refund_id=str(body.get("id")) if body.get("id") else None,
            failure_reason=_lookup(body, "data.message") if status == RefundStatus.FAILED else None,
            raw=body,
        )

    async def query_status(self, provider_reference: str, merchant_reference: str) -> Optional[GatewayEvent]:
        token = await self._auth_token()
        obj = (
            await self.http.request(
                "POST",
                "/api/ecommerce/orders/transaction_inquiry",
                json_body={"auth_token": token, "merchant_order_id": merchant_reference},
                safe=True,
            )
        ).json()
        if not obj or "id" not in obj:
            return None
        return self._event_from_transaction(obj, "inquiry")
