"""
Webhook Reconciler - single entry point for provider callbacks.

verify signature -> parse -> dedup -> PaymentOrchestrator.apply_event.

A callback that fails authentication is answered 200 (so the provider stops
retrying) and written to the security audit table; nothing else happens.
A callback that fails while being applied is stored as ``failed`` and
re-driven by the retry worker.
"""

import hashlib
import logging
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from redis.asyncio.client import Redis
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.config import settings
from paycore.errors import NotFound
from paycore.fsm.states import (
    GatewayEventType,
    GatewayType,
    ReconciliationKind,
    WebhookEventStatus,
)
from paycore.gateways import GatewayRegistry, get_gateway_registry
from paycore.gateways.base import GatewayEvent, InboundWebhook, WebhookParseError
from paycore.models.types import utcnow
from paycore.models.webhook_event import SecurityAuditEvent, WebhookEvent
from paycore.services.payment_orchestrator import PaymentOrchestrator
from paycore.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

SEEN_CACHE_TTL = timedelta(days=7)

_REDACTED_HEADERS = {"authorization", "cookie", "x-admin-key"}


def _seen_key(provider: str, event_id: str) -> str:
    return f"webhook:seen:{provider}:{event_id}"


class WebhookReconciler:
    """Authenticates, deduplicates and applies inbound gateway callbacks."""

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[GatewayRegistry] = None,
        redis: Optional[Redis] = None,
    ):
        self.db = db
        self.registry = registry or get_gateway_registry()
        self.redis = redis
        self.orchestrator = PaymentOrchestrator(db, self.registry)

    async def handle(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        query_params: Optional[Mapping[str, str]] = None,
        remote_addr: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Process one callback. The returned dict is the 200 response body;
        only an unknown provider raises.
        """
        adapter = self.registry.find(provider)
        if adapter is None:
            raise NotFound(f"Unknown payment provider: {provider}")

        webhook = InboundWebhook(
            provider=adapter.gateway_type,
            raw_body=raw_body,
            headers=headers,
            query_params=query_params or {},
            remote_addr=remote_addr,
        )

        if not adapter.verify_webhook_signature(webhook):
            await self._audit(webhook, "signature_invalid")
            logger.warning(f"Rejected {provider} callback from {remote_addr}: bad signature")
            return {"status": "ignored"}

        try:
            event = adapter.parse_webhook(webhook)
        except WebhookParseError as exc:
            await self._audit(webhook, "unparseable")
            logger.warning(f"Could not parse {provider} callback: {exc}")
            return {"status": "ignored"}

        if event is None:
            logger.debug(f"{provider} callback carries no payment event; acknowledged")
            return {"status": "ignored"}

        return await self.process_event(event)

    async def process_event(self, event: GatewayEvent) -> Dict[str, Any]:
        provider = event.provider.value
        if await self._seen_in_cache(provider, event.provider_event_id):
            logger.info(f"Duplicate {provider} event {event.provider_event_id} (cache)")
            return {"status": "ok", "outcome": "duplicate"}

        try:
            result = await self.orchestrator.apply_event(event)
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            if isinstance(exc, IntegrityError) and await self.orchestrator.recorded_elsewhere(event):
                logger.info(f"Duplicate {provider} event {event.provider_event_id} (concurrent)")
                return {"status": "ok", "outcome": "duplicate"}
            logger.error(f"Failed to apply {provider} event {event.provider_event_id}: {exc}", exc_info=True)
            await self.orchestrator.record_failure(event, exc)
            return {"status": "queued"}

        await self._remember(provider, event.provider_event_id)
        payment_id = str(result.payment.id) if result.payment is not None else None
        return {"status": "ok", "outcome": result.outcome, "payment_id": payment_id}

    # ------------------------------------------------------------------
    # Retry queue
    # ------------------------------------------------------------------

    async def retry_failed(self, limit: int = 50) -> Dict[str, int]:
        """Re-drive failed events; escalate those past the attempt budget."""
        result = await self.db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.status == WebhookEventStatus.FAILED.value)
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        )
        records = list(result.scalars().all())

        stats = {"retried": 0, "succeeded": 0, "failed": 0, "escalated": 0}
        for record in records:
            if record.attempts >= settings.webhook_max_attempts:
                await self._escalate(record)
                stats["escalated"] += 1
                continue

            stats["retried"] += 1
            response = await self.process_event(self._event_from_record(record))
            if response["status"] == "queued":
                stats["failed"] += 1
            else:
                stats["succeeded"] += 1

        if records:
            logger.info(f"Webhook retry run: {stats}")
        return stats

    @staticmethod
    def _event_from_record(record: WebhookEvent) -> GatewayEvent:
        # Only events that passed signature verification are ever stored
        return GatewayEvent(
            provider=GatewayType(record.provider),
            provider_event_id=record.provider_event_id,
            event_type=GatewayEventType(record.event_type),
            signature_verified=True,
            provider_txn_id=record.provider_txn_id,
            merchant_reference=record.merchant_reference,
            amount=record.amount,
            currency=record.currency,
            provider_refund_id=record.provider_refund_id,
            received_at=record.received_at,
            raw=record.payload or {},
        )

    async def _escalate(self, record: WebhookEvent) -> None:
        record.status = WebhookEventStatus.ANOMALY.value
        record.outcome = "retries_exhausted"
        record.processed_at = utcnow()
        await ReconciliationService(self.db).open_item(
            ReconciliationKind.WEBHOOK_RETRIES_EXHAUSTED,
            f"{record.provider} event {record.provider_event_id} failed {record.attempts} times",
            payment_id=record.payment_id,
            details={"last_error": record.last_error, "event_type": record.event_type},
        )
        await self.db.commit()

    # ------------------------------------------------------------------
    # Audit and seen-cache
    # ------------------------------------------------------------------

    async def _audit(self, webhook: InboundWebhook, reason: str) -> None:
        headers = {k: v for k, v in webhook.headers.items() if k.lower() not in _REDACTED_HEADERS}
        self.db.add(
            SecurityAuditEvent(
                provider=webhook.provider.value,
                reason=reason,
                remote_addr=webhook.remote_addr,
                body_sha256=hashlib.sha256(webhook.raw_body).hexdigest(),
                headers=headers,
            )
        )
        await self.db.commit()

    async def _seen_in_cache(self, provider: str, event_id: str) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(await self.redis.exists(_seen_key(provider, event_id)))
        except RedisError as e:
            logger.warning(f"Webhook seen-cache unavailable: {e}")
            return False

    async def _remember(self, provider: str, event_id: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(_seen_key(provider, event_id), "1", ex=int(SEEN_CACHE_TTL.total_seconds()))
        except RedisError as e:
            logger.warning(f"Webhook seen-cache unavailable: {e}")
