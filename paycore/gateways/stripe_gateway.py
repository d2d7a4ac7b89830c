"""
Stripe adapter (international cards).

Uses the official SDK. The SDK is synchronous, so calls run in a worker
thread. Payment Intents are created with our idempotency key; the buyer
confirms client-side with the returned ``client_secret``.
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from paycore.config import Settings, settings as default_settings
from paycore.errors import GatewayAmbiguous, GatewayRejected, RetryExhausted
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

logger = logging.getLogger(__name__)

INTENT_EVENTS = {
    "payment_intent.processing": GatewayEventType.PENDING,
    "payment_intent.amount_capturable_updated": GatewayEventType.AUTHORIZED,
    "payment_intent.succeeded": GatewayEventType.CAPTURED,
    "payment_intent.payment_failed": GatewayEventType.FAILED,
    "payment_intent.canceled": GatewayEventType.CANCELLED,
}

INTENT_STATUSES = {
    "processing": GatewayEventType.PENDING,
    "requires_capture": GatewayEventType.AUTHORIZED,
    "succeeded": GatewayEventType.CAPTURED,
    "canceled": GatewayEventType.CANCELLED,
}

REFUND_STATUSES = {
    "succeeded": RefundStatus.SUCCEEDED,
    "pending": RefundStatus.PENDING,
    "requires_action": RefundStatus.PENDING,
}


class StripeAdapter(GatewayAdapter):
    gateway_type = GatewayType.STRIPE
    # Any currency Stripe settles; validated by Stripe itself
    supported_currencies = frozenset()

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config or default_settings
        stripe.api_key = self.config.stripe_secret_key
        stripe.max_network_retries = max(0, self.config.gateway_max_attempts - 1)

    async def _call(self, operation: str, func: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, **kwargs)
        except stripe.CardError as exc:
            logger.info(f"Stripe {operation} declined: {exc.user_message or exc}")
            raise GatewayRejected(
                exc.user_message or "Card declined",
                details={"provider": "stripe", "decline_code": getattr(exc, "code", None)},
            ) from exc
        except (stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError) as exc:
            logger.error(f"Stripe {operation} rejected: {exc}")
            raise GatewayRejected(
                "Stripe rejected the request",
                details={"provider": "stripe", "error": str(exc)},
            ) from exc
        except stripe.RateLimitError as exc:
            logger.warning(f"Stripe {operation} rate limited: {exc}")
            raise RetryExhausted(
                "stripe is unavailable, please try another payment method",
                details={"provider": "stripe", "error": str(exc)},
            ) from exc
        except stripe.StripeError as exc:
            # Connection errors and 5xx after the SDK's own idempotent retries
            logger.error(f"Stripe {operation} outcome unknown: {exc}")
            raise GatewayAmbiguous(
                "Stripe did not confirm the request; it may have been executed",
                details={"provider": "stripe", "error": str(exc)},
            ) from exc

    async def initiate(self, request: InitiateRequest) -> ProviderInitResult:
        intent = await self._call(
            "initiate",
            stripe.PaymentIntent.create,
            amount=to_minor_units(request.amount, request.currency),
            currency=request.currency.lower(),
            description=request.description,
            receipt_email=request.buyer.email,
            metadata={"payment_id": request.payment_id, "buyer_id": request.buyer.buyer_id},
            automatic_payment_methods={"enabled": True},
            idempotency_key=request.idempotency_key,
        )
        logger.info(f"Stripe intent {intent['id']} created for payment {request.payment_id}")
        return ProviderInitResult(
            kind=InitiationKind.CLIENT_SECRET,
            provider_reference=intent["id"],
            client_secret=intent["client_secret"],
            raw={"id": intent["id"], "status": intent.get("status")},
        )

    def verify_webhook_signature(self, webhook: InboundWebhook) -> bool:
        signature = webhook.header("Stripe-Signature")
        if not signature or not self.config.stripe_webhook_secret:
            return False
        try:
            stripe.Webhook.construct_event(
                webhook.raw_body.decode("utf-8"),
                signature,
                self.config.stripe_webhook_secret,
            )
        except (stripe.SignatureVerificationError, ValueError):
            return False
        return True

    def parse_webhook(self, webhook: InboundWebhook) -> Optional[GatewayEvent]:
        try:
            event = json.loads(webhook.raw_body)
        except ValueError as exc:
            raise WebhookParseError("Stripe event is not JSON") from exc

        event_kind = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}
        event_id = event.get("id")
        if not event_id:
            raise WebhookParseError("Stripe event has no id")

        if event_kind in INTENT_EVENTS:
            return self._event_from_intent(obj, INTENT_EVENTS[event_kind], event_id)
        if event_kind == "charge.refunded":
            return self._event_from_refunded_charge(obj, event_id)
        if event_kind in ("refund.created", "refund.updated", "charge.refund.updated"):
            return self._event_from_refund(obj, event_id)

        logger.info(f"Ignoring Stripe event {event_kind}")
        return None

    def _event_from_intent(self, intent: Dict[str, Any], event_type: GatewayEventType, event_id: str) -> GatewayEvent:
        currency = (intent.get("currency") or "").upper()
        amount_field = "amount_received" if event_type == GatewayEventType.CAPTURED else "amount"
        failure = (intent.get("last_payment_error") or {}).get("message")
        return GatewayEvent(
            provider=self.gateway_type,
            provider_event_id=event_id,
            event_type=event_type,
            signature_verified=True,
            provider_txn_id=intent.get("id"),
            merchant_reference=(intent.get("metadata") or {}).get("payment_id"),
            amount=from_minor_units(intent.get(amount_field) or intent.get("amount", 0), currency),
            currency=currency,
            failure_reason=failure if event_type == GatewayEventType.FAILED else None,
            raw=intent,
        )

    def _event_from_refunded_charge(self, charge: Dict[str, Any], event_id: str) -> Optional[GatewayEvent]:
        refunds = (charge.get("refunds") or {}).get("data") or []
        if not refunds:
            # Newer API versions omit the list; refund.* events carry each refund instead
            return None
        return self._event_from_refund(refunds[0], event_id, metadata=charge.get("metadata"))

    def _event_from_refund(
        self,
        refund: Dict[str, Any],
        event_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[GatewayEvent]:
        if refund.get("status") != "succeeded":
            return None
        currency = (refund.get("currency") or "").upper()
        return GatewayEvent(
            provider=self.gateway_type,
            provider_event_id=event_id,
            event_type=GatewayEventType.REFUNDED,
            signature_verified=True,
            provider_txn_id=refund.get("payment_intent"),
            merchant_reference=(metadata or {}).get("payment_id"),
            amount=from_minor_units(refund.get("amount", 0), currency),
            currency=currency,
            provider_refund_id=refund.get("id"),
            raw=refund,
        )

    async def refund(self, provider_txn_id: str, amount: Decimal, currency: str, reason: str = "") -> RefundResult:
        refund = await self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=provider_txn_id,
            amount=to_minor_units(amount, currency),
            metadata={"reason": reason} if reason else {},
        )
        status = REFUND_STATUSES.get(refund.get("status"), RefundStatus.FAILED)
        return RefundResult(
            status=status,
            provider_refund_id=refund["id"],
            failure_reason=refund.get("failure_reason") if status == RefundStatus.FAILED else None,
            raw={"id": refund["id"], "status": refund.get("status")},
        )

    async def query_status(self, provider_reference: str, merchant_reference: str) -> Optional[GatewayEvent]:
        intent = await self._call("query_status", stripe.PaymentIntent.retrieve, id=provider_reference)
        status = intent.get("status")
        event_type = INTENT_STATUSES.get(status)
        if event_type is None and status == "requires_payment_method" and intent.get("last_payment_error"):
            event_type = GatewayEventType.FAILED
        if event_type is None:
            return None
        return self._event_from_intent(dict(intent), event_type, f"status:{intent['id']}:{status}")
