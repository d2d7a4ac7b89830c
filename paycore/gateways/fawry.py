"""
Fawry adapter.

"Pay at Fawry" issues a reference number the buyer pays in cash at any
Fawry outlet before it expires. Every request and notification is signed
with SHA-256 over a documented field concatenation ending in the merchant's
secure key.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from paycore.config import Settings, settings as default_settings
from paycore.errors import GatewayRejected
from paycore.fsm.states import GatewayEventType, GatewayType, InitiationKind, RefundStatus
from paycore.gateways.base import (
    GatewayAdapter,
    GatewayEvent,
    InboundWebhook,
    InitiateRequest,
    ProviderInitResult,
    RefundResult,
    WebhookParseError,
    format_amount,
)
from paycore.gateways.http import GatewayHttpClient
from paycore.models.types import utcnow

logger = logging.getLogger(__name__)

PAYMENT_METHOD = "PAYATFAWRY"

ORDER_STATUS_EVENTS = {
    "NEW": GatewayEventType.PENDING,
    "UNPAID": GatewayEventType.PENDING,
    "PAID": GatewayEventType.CAPTURED,
    "CANCELED": GatewayEventType.CANCELLED,
    "EXPIRED": GatewayEventType.EXPIRED,
    "FAILED": GatewayEventType.FAILED,
    "REFUNDED": GatewayEventType.REFUNDED,
    "PARTIAL_REFUNDED": GatewayEventType.REFUNDED,
}


def sha256_signature(*parts: Any) -> str:
    return hashlib.sha256("".join("" if p is None else str(p) for p in parts).encode()).hexdigest()


def _two_dp(value: Any) -> str:
    return f"{Decimal(str(value)).quantize(Decimal('0.01')):.2f}"


class FawryAdapter(GatewayAdapter):
    gateway_type = GatewayType.FAWRY
    supported_currencies = frozenset({"EGP"})

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or default_settings
        self.http = GatewayHttpClient("fawry", self.config.fawry_base_url, transport=transport)

    async def initiate(self, request: InitiateRequest) -> ProviderInitResult:
        merchant_code = self.config.fawry_merchant_code
        amount = format_amount(request.amount, request.currency)
        expires_at = utcnow() + timedelta(hours=self.config.fawry_expiry_hours)

        body = {
            "merchantCode": merchant_code,
            "merchantRefNum": request.payment_id,
            "customerProfileId": request.buyer.buyer_id,
            "customerName": request.buyer.full_name,
            "customerMobile": request.buyer.phone or "",
            "customerEmail": request.buyer.email or "",
            "paymentMethod": PAYMENT_METHOD,
            "amount": amount,
            "currencyCode": request.currency,
            "description": request.description,
            "paymentExpiry": int(expires_at.timestamp() * 1000),
            "chargeItems": [
                {
                    "itemId": request.payment_id,
                    "description": request.description,
                    "price": amount,
                    "quantity": 1,
                }
            ],
            "signature": sha256_signature(
                merchant_code,
                request.payment_id,
                request.buyer.buyer_id,
                PAYMENT_METHOD,
                amount,
                self.config.fawry_secure_key,
            ),
        }

        data = (await self.http.request("POST", "/ECommerceWeb/Fawry/payments/charge", json_body=body)).json()
        if str(data.get("statusCode")) != "200" or not data.get("referenceNumber"):
            raise GatewayRejected(
                data.get("statusDescription") or "Fawry refused to issue a reference number",
                details={"provider": "fawry", "status_code": data.get("statusCode")},
            )

        reference = str(data["referenceNumber"])
        if data.get("expirationTime"):
            expires_at = datetime.fromtimestamp(int(data["expirationTime"]) / 1000, tz=timezone.utc)

        logger.info(f"Fawry reference {reference} issued for payment {request.payment_id}")
        return ProviderInitResult(
            kind=InitiationKind.REFERENCE_NUMBER,
            provider_reference=reference,
            reference_number=reference,
            expires_at=expires_at,
            raw=data,
        )

    def _notification_signature(self, payload: Dict[str, Any]) -> str:
        return sha256_signature(
            payload.get("fawryRefNumber"),
            payload.get("merchantRefNumber"),
            _two_dp(payload.get("paymentAmount", 0)),
            _two_dp(payload.get("orderAmount", 0)),
            payload.get("orderStatus"),
            payload.get("paymentMethod"),
            payload.get("paymentRefrenceNumber") or "",
            self.config.fawry_secure_key,
        )

    def verify_webhook_signature(self, webhook: InboundWebhook) -> bool:
        if not self.config.fawry_secure_key:
            return False
        try:
            payload = json.loads(webhook.raw_body)
        except ValueError:
            return False
        if not isinstance(payload, dict):
            return False
        received = str(payload.get("messageSignature") or "")
        if not received:
            return False
        try:
            expected = self._notification_signature(payload)
        except ArithmeticError:
            return False
        return hmac.compare_digest(expected, received.lower())

    def parse_webhook(self, webhook: InboundWebhook) -> Optional[GatewayEvent]:
        try:
            payload = json.loads(webhook.raw_body)
        except ValueError as exc:
            raise WebhookParseError("Fawry notification is not JSON") from exc
        return self._event_from_payload(payload, "notify")

    def _event_from_payload(self, payload: Dict[str, Any], source: str) -> Optional[GatewayEvent]:
        order_status = str(payload.get("orderStatus") or "").upper()
        event_type = ORDER_STATUS_EVENTS.get(order_status)
        if event_type is None:
            logger.info(f"Ignoring Fawry order status {order_status!r}")
            return None

        fawry_ref = payload.get("fawryRefNumber") or payload.get("referenceNumber")
        if not fawry_ref:
            raise WebhookParseError("Fawry notification has no reference number")

        is_refund = event_type == GatewayEventType.REFUNDED
        amount = (payload.get("refundAmount") if is_refund else None) or payload.get("paymentAmount") or payload.get("orderAmount")

        return GatewayEvent(
            provider=self.gateway_type,
            provider_event_id=f"{source}:{fawry_ref}:{order_status}" + (f":{_two_dp(amount)}" if is_refund and amount is not None else ""),
            event_type=event_type,
            signature_verified=True,
            provider_txn_id=str(fawry_ref),
            merchant_reference=payload.get("merchantRefNumber"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency="EGP",
            provider_refund_id=f"{fawry_ref}:refund:{_two_dp(amount)}" if is_refund and amount is not None else None,
            failure_reason=payload.get("statusDescription") if event_type == GatewayEventType.FAILED else None,
            raw=payload,
        )

    async def refund(self, provider_txn_id: str, amount: Decimal, currency: str, reason: str = "") -> RefundResult:
        merchant_code = self.config.fawry_merchant_code
        refund_amount = format_amount(amount, currency)
        body = {
            "merchantCode": merchant_code,
            "referenceNumber": provider_txn_id,
            "refundAmount": refund_amount,
            "reason": reason,
            "signature": sha256_signature(
                merchant_code,
                provider_txn_id,
                refund_amount,
                reason,
                self.config.fawry_secure_key,
            ),
        }
        data = (await self.http.request("POST", "/ECommerceWeb/Fawry/payments/refund", json_body=body)).json()
        if str(data.get("statusCode")) == "200":
            return RefundResult(
                status=RefundStatus.SUCCEEDED,
                provider_refund_id=f"{provider_txn_id}:refund:{refund_amount}",
                raw=data,
            )
        return RefundResult(
            status=RefundStatus.FAILED,
            failure_reason=data.get("statusDescription"),
            raw=data,
        )

    async def query_status(self, provider_reference: str, merchant_reference: str) -> Optional[GatewayEvent]:
        merchant_code = self.config.fawry_merchant_code
        data = (
            await self.http.request(
                "GET",
                "/ECommerceWeb/Fawry/payments/status/v2",
                params={
                    "merchantCode": merchant_code,
                    "merchantRefNumber": merchant_reference,
                    "signature": sha256_signature(merchant_code, merchant_reference, self.config.fawry_secure_key),
                },
                safe=True,
            )
        ).json()
        if str(data.get("statusCode")) != "200":
            return None
        return self._event_from_payload(data, "status")
