"""
Manual bank transfer "gateway".

There is no provider API. Initiation hands the buyer our bank details and a
reference to quote; an admin later verifies or rejects the uploaded proof.
Admin decisions are delivered to the webhook pipeline as internal events
signed with the application secret, so they are deduplicated and applied
exactly like provider callbacks.
"""

import hashlib
import hmac
import json
import logging
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional

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
)
from paycore.models.types import utcnow

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Paycore-Signature"

DECISION_EVENTS = {
    "verified": GatewayEventType.CAPTURED,
    "rejected": GatewayEventType.FAILED,
    "expired": GatewayEventType.EXPIRED,
}


def generate_reference_number() -> str:
    return f"BT-{secrets.token_hex(5).upper()}"


def sign_internal_event(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class BankTransferAdapter(GatewayAdapter):
    gateway_type = GatewayType.BANK_TRANSFER
    supported_currencies = frozenset()

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config or default_settings

    def instructions(self, reference_number: str, amount: Decimal, currency: str) -> Dict[str, Any]:
        return {
            "bank_name": self.config.bank_name,
            "account_name": self.config.bank_account_name,
            "account_number": self.config.bank_account_number,
            "iban": self.config.bank_iban,
            "swift_code": self.config.bank_swift,
            "reference_number": reference_number,
            "amount": str(amount),
            "currency": currency,
            "note": "Quote the reference number in the transfer description.",
        }

    async def initiate(self, request: InitiateRequest) -> ProviderInitResult:
        reference = generate_reference_number()
        expires_at = utcnow() + timedelta(days=self.config.bank_transfer_expiry_days)
        logger.info(f"Bank transfer reference {reference} issued for payment {request.payment_id}")
        return ProviderInitResult(
            kind=InitiationKind.BANK_INSTRUCTIONS,
            provider_reference=reference,
            reference_number=reference,
            expires_at=expires_at,
            bank_instructions=self.instructions(reference, request.amount, request.currency),
        )

    def verify_webhook_signature(self, webhook: InboundWebhook) -> bool:
        received = webhook.header(SIGNATURE_HEADER)
        if not received or not self.config.secret_key:
            return False
        expected = sign_internal_event(webhook.raw_body, self.config.secret_key)
        return hmac.compare_digest(expected, received)

    def parse_webhook(self, webhook: InboundWebhook) -> Optional[GatewayEvent]:
        try:
            payload = json.loads(webhook.raw_body)
        except ValueError as exc:
            raise WebhookParseError("Bank transfer event is not JSON") from exc

        event_type = DECISION_EVENTS.get(payload.get("status", ""))
        if event_type is None or not payload.get("event_id"):
            raise WebhookParseError("Bank transfer event has no decision")

        amount = payload.get("amount")
        return GatewayEvent(
            provider=self.gateway_type,
            provider_event_id=payload["event_id"],
            event_type=event_type,
            signature_verified=True,
            provider_txn_id=payload.get("reference_number"),
            merchant_reference=payload.get("payment_id"),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=payload.get("currency"),
            failure_reason=payload.get("notes") if event_type == GatewayEventType.FAILED else None,
            raw=payload,
        )

    async def refund(self, provider_txn_id: str, amount: Decimal, currency: str, reason: str = "") -> RefundResult:
        # Money goes back by hand; the refund is accepted and queued for payout
        return RefundResult(
            status=RefundStatus.PENDING,
            provider_refund_id=f"{provider_txn_id}:manual:{secrets.token_hex(4)}",
            requires_manual_payout=True,
        )

    async def query_status(self, provider_reference: str, merchant_reference: str) -> Optional[GatewayEvent]:
        return None
