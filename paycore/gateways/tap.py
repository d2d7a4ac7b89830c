"""
Tap Payments adapter (Gulf region).

Charges are created against the hosted page (source ``src_all``) and the
buyer is redirected to ``transaction.url``. Tap posts the charge object to
``post.url`` with a ``hashstring`` header: HMAC-SHA256 over the charge's
identifying fields.
"""

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from paycore.config import Settings, settings as default_settings
from paycore.errors import GatewayAmbiguous
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

CHARGE_STATUS_EVENTS = {
    "INITIATED": GatewayEventType.PENDING,
    "IN_PROGRESS": GatewayEventType.PENDING,
    "AUTHORIZED": GatewayEventType.AUTHORIZED,
    "CAPTURED": GatewayEventType.CAPTURED,
    "DECLINED": GatewayEventType.FAILED,
    "FAILED": GatewayEventType.FAILED,
    "RESTRICTED": GatewayEventType.FAILED,
    "CANCELLED": GatewayEventType.CANCELLED,
    "ABANDONED": GatewayEventType.CANCELLED,
    "VOID": GatewayEventType.CANCELLED,
    "TIMEDOUT": GatewayEventType.EXPIRED,
}

REFUND_STATUSES = {
    "REFUNDED": RefundStatus.SUCCEEDED,
    "PENDING": RefundStatus.PENDING,
    "IN_PROGRESS": RefundStatus.PENDING,
    "INITIATED": RefundStatus.PENDING,
}


def charge_hashstring(charge: Dict[str, Any], secret: str) -> str:
    currency = charge.get("currency") or ""
    amount = charge.get("amount")
    amount_str = format_amount(Decimal(str(amount)), currency) if amount is not None and currency else ""
    reference = charge.get("reference") or {}
    transaction = charge.get("transaction") or {}
    message = (
        f"x_id{charge.get('id', '')}"
        f"x_amount{amount_str}"
        f"x_currency{currency}"
        f"x_gateway_reference{reference.get('gateway', '')}"
        f"x_payment_reference{reference.get('payment', '')}"
        f"x_status{charge.get('status', '')}"
        f"x_created{transaction.get('created', '')}"
    )
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


class TapAdapter(GatewayAdapter):
    gateway_type = GatewayType.TAP
    supported_currencies = frozenset({"SAR", "KWD", "AED", "BHD", "QAR", "OMR", "EGP", "USD"})

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or default_settings
        self.http = GatewayHttpClient(
            "tap",
            self.config.tap_base_url,
            headers={"Authorization": f"Bearer {self.config.tap_secret_key}"},
            transport=transport,
        )

    async def initiate(self, request: InitiateRequest) -> ProviderInitResult:
        buyer = request.buyer
        body = {
            "amount": float(request.amount),
            "currency": request.currency,
            "threeDSecure": True,
            "save_card": False,
            "description": request.description,
            "reference": {"transaction": request.payment_id, "order": request.payment_id},
            "metadata": {"payment_id": request.payment_id},
            "customer": {
                "first_name": buyer.first_name or buyer.full_name,
                "last_name": buyer.last_name or "",
                "email": buyer.email or "",
            },
            "source": {"id": "src_all"},
            "post": {"url": request.webhook_url},
            "redirect": {"url": request.success_url},
        }
        charge = (
            await self.http.request(
                "POST",
                "/v2/charges",
                json_body=body,
                headers={"Idempotency-Key": request.idempotency_key},
            )
        ).json()

        redirect_url = (charge.get("transaction") or {}).get("url")
        if not charge.get("id") or not redirect_url:
            raise GatewayAmbiguous(
                "Tap charge response is missing id or transaction url",
                details={"provider": "tap", "payment_id": request.payment_id},
            )

        logger.info(f"Tap charge {charge['id']} created for payment {request.payment_id}")
        return ProviderInitResult(
            kind=InitiationKind.REDIRECT,
            provider_reference=charge["id"],
            redirect_url=redirect_url,
            raw={"id": charge["id"], "status": charge.get("status")},
        )

    def verify_webhook_signature(self, webhook: InboundWebhook) -> bool:
        received = webhook.header("hashstring")
        if not received or not self.config.tap_secret_key:
            return False
        try:
            charge = json.loads(webhook.raw_body)
        except ValueError:
            return False
        if not isinstance(charge, dict):
            return False
        try:
            expected = charge_hashstring(charge, self.config.tap_secret_key)
        except ArithmeticError:
            return False
        return hmac.compare_digest(expected, received.lower())

    def parse_webhook(self, webhook: InboundWebhook) -> Optional[GatewayEvent]:
        try:
            charge = json.loads(webhook.raw_body)
        except ValueError as exc:
            raise WebhookParseError("Tap callback is not JSON") from exc
        if not isinstance(charge, dict) or not str(charge.get("id", "")).startswith("chg_"):
            # Refund and authorize objects are tracked through their own API responses
            return None
        return self._event_from_charge(charge, "post")

    def _event_from_charge(self, charge: Dict[str, Any], source: str) -> Optional[GatewayEvent]:
        status = str(charge.get("status") or "").upper()
        event_type = CHARGE_STATUS_EVENTS.get(status)
        if event_type is None:
            logger.info(f"Ignoring Tap charge status {status!r}")
            return None

        reference = charge.get("reference") or {}
        response = charge.get("response") or {}
        amount = charge.get("amount")
        return GatewayEvent(
            provider=self.gateway_type,
            provider_event_id=f"{source}:{charge['id']}:{status}",
            event_type=event_type,
            signature_verified=True,
            provider_txn_id=charge["id"],
            merchant_reference=reference.get("order") or (charge.get("metadata") or {}).get("payment_id"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=charge.get("currency"),
            failure_reason=response.get("message") if event_type == GatewayEventType.FAILED else None,
            raw=charge,
        )

    async def refund(self, provider_txn_id: str, amount: Decimal, currency: str, reason: str = "") -> RefundResult:
        data = (
            await self.http.request(
                "POST",
                "/v2/refunds",
                json_body={
                    "charge_id": provider_txn_id,
                    "amount": float(amount),
                    "currency": currency,
                    "reason": reason or "requested_by_customer",
                    "reference": {"merchant": provider_txn_id},
                },
            )
        ).json()
        status = REFUND_STATUSES.get(str(data.get("status") or "").upper(), RefundStatus.FAILED)
        return RefundResult(
            status=status,
            provider_refund_id=data.get("id"),
            failure_reason=(data.get("response") or {}).get("message") if status == RefundStatus.FAILED else None,
            raw=data,
        )

    async def query_status(self, provider_reference: str, merchant_reference: str) -> Optional[GatewayEvent]:
        charge = (await self.http.request("GET", f"/v2/charges/{provider_reference}", safe=True)).json()
        if not charge.get("id"):
            return None
        return self._event_from_charge(charge, "status")
