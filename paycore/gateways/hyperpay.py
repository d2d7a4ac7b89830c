"""
Hyperpay (OPPWA COPYandPAY) adapter.

A checkout id is prepared server-side and the buyer pays in the hosted
payment widget. Notifications are AES-256-GCM encrypted: the body is the hex
ciphertext, the IV and auth tag arrive as hex headers. A notification is
authentic exactly when it decrypts under our key.
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

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

logger = logging.getLogger(__name__)

# OPPWA result code groups
_SUCCESS = re.compile(r"^(000\.000\.|000\.100\.1|000\.[36])")
_PENDING = re.compile(r"^(000\.200|800\.400\.5|100\.400\.500)")
_CHECKOUT_CREATED = re.compile(r"^000\.200\.100")


def classify_result_code(code: str) -> str:
    """Map an OPPWA result code to success / pending / failed."""
    if _SUCCESS.match(code or ""):
        return "success"
    if _PENDING.match(code or ""):
        return "pending"
    return "failed"


class HyperpayAdapter(GatewayAdapter):
    gateway_type = GatewayType.HYPERPAY
    supported_currencies = frozenset({"SAR", "AED", "KWD", "BHD", "QAR", "OMR", "USD"})

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or default_settings
        self.http = GatewayHttpClient(
            "hyperpay",
            self.config.hyperpay_base_url,
            headers={"Authorization": f"Bearer {self.config.hyperpay_access_token}"},
            transport=transport,
        )

    async def initiate(self, request: InitiateRequest) -> ProviderInitResult:
        form = {
            "entityId": self.config.hyperpay_entity_id,
            "amount": format_amount(request.amount, request.currency),
            "currency": request.currency,
            "paymentType": "DB",
            "merchantTransactionId": request.payment_id,
            "customer.email": request.buyer.email or "",
            "customer.givenName": request.buyer.first_name or "",
            "customer.surname": request.buyer.last_name or "",
            "shopperResultUrl": request.success_url,
            "notificationUrl": request.webhook_url,
        }
        data = (await self.http.request("POST", "/v1/checkouts", form=form)).json()
        code = (data.get("result") or {}).get("code", "")
        if not _CHECKOUT_CREATED.match(code) or not data.get("id"):
            raise GatewayRejected(
                (data.get("result") or {}).get("description") or "Hyperpay refused the checkout",
                details={"provider": "hyperpay", "result_code": code},
            )

        checkout_id = data["id"]
        logger.info(f"Hyperpay checkout {checkout_id} prepared for payment {request.payment_id}")
        return ProviderInitResult(
            kind=InitiationKind.REDIRECT,
            provider_reference=checkout_id,
            redirect_url=f"{self.config.hyperpay_base_url.rstrip('/')}/v1/paymentWidgets.js?checkoutId={checkout_id}",
            raw={"id": checkout_id, "result_code": code},
        )

    def _decrypt(self, webhook: InboundWebhook) -> Optional[Dict[str, Any]]:
        if not self.config.hyperpay_webhook_key:
            return None
        try:
            key = bytes.fromhex(self.config.hyperpay_webhook_key)
            iv = bytes.fromhex(webhook.header("X-Initialization-Vector"))
            tag = bytes.fromhex(webhook.header("X-Authentication-Tag"))
            ciphertext = bytes.fromhex(webhook.raw_body.decode().strip())
        except (ValueError, UnicodeDecodeError):
            return None
        if not iv or not tag or len(key) != 32:
            return None
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            return None
        try:
            payload = json.loads(plaintext)
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None

    def verify_webhook_signature(self, webhook: InboundWebhook) -> bool:
        return self._decrypt(webhook) is not None

    def parse_webhook(self, webhook: InboundWebhook) -> Optional[GatewayEvent]:
        notification = self._decrypt(webhook)
        if notification is None:
            raise WebhookParseError("Hyperpay notification could not be decrypted")
        if notification.get("type") != "PAYMENT":
            return None
        payment = notification.get("payload")
        if not isinstance(payment, dict) or not payment.get("id"):
            raise WebhookParseError("Hyperpay notification has no payment payload")
        return self._event_from_payment(payment, "notify")

    def _event_from_payment(self, payment: Dict[str, Any], source: str) -> Optional[GatewayEvent]:
        result = payment.get("result") or {}
        outcome = classify_result_code(result.get("code", ""))
        payment_type = payment.get("paymentType", "DB")
        refund_id = None

        if payment_type == "RF":
            if outcome != "success":
                return None
            event_type = GatewayEventType.REFUNDED
            provider_txn_id = payment.get("referencedId")
            refund_id = payment["id"]
        elif payment_type in ("DB", "CP", "PA"):
            provider_txn_id = payment["id"]
            if outcome == "success":
                event_type = GatewayEventType.AUTHORIZED if payment_type == "PA" else GatewayEventType.CAPTURED
            elif outcome == "pending":
                event_type = GatewayEventType.PENDING
            else:
                event_type = GatewayEventType.FAILED
        elif payment_type == "RV":
            event_type = GatewayEventType.CANCELLED
            provider_txn_id = payment.get("referencedId")
        else:
            logger.info(f"Ignoring Hyperpay payment type {payment_type!r}")
            return None

        amount = payment.get("amount")
        return GatewayEvent(
            provider=self.gateway_type,
            provider_event_id=f"{source}:{payment['id']}:{event_type.value}",
            event_type=event_type,
            signature_verified=True,
            provider_txn_id=provider_txn_id,
            merchant_reference=payment.get("merchantTransactionId"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=payment.get("currency"),
            provider_refund_id=refund_id,
            failure_reason=result.get("description") if event_type == GatewayEventType.FAILED else None,
            raw=payment,
        )

    async def refund(self, provider_txn_id: str, amount: Decimal, currency: str, reason: str = "") -> RefundResult:
        data = (
            await self.http.request(
                "POST",
                f"/v1/payments/{provider_txn_id}",
                form={
                    "entityId": self.config.hyperpay_entity_id,
                    "amount": format_amount(amount, currency),
                    "currency": currency,
                    "paymentType": "RF",
                },
            )
        ).json()
        result = data.get("result") or {}
        outcome = classify_result_code(result.get("code", ""))
        status = {
            "success": RefundStatus.SUCCEEDED,
            "pending": RefundStatus.PENDING,
        }.get(outcome, RefundStatus.FAILED)
        return RefundResult(
            status=status,
            provider_refund_id=data.get("id"),
            failure_reason=result.get("description") if status == RefundStatus.FAILED else None,
            raw=data,
        )

    async def query_status(self, provider_reference: str, merchant_reference: str) -> Optional[GatewayEvent]:
        data = (
            await self.http.request(
                "GET",
                f"/v1/checkouts/{provider_reference}/payment",
                params={"entityId": self.config.hyperpay_entity_id},
                safe=True,
            )
        ).json()
        if not data.get("id"):
            # Checkout not yet paid; nothing to apply
            return None
        return self._event_from_payment(data, "status")
