"""
Webhook Retry Worker.

Every 5 minutes: re-drives webhook events stored as failed. Events that keep
failing past WEBHOOK_MAX_ATTEMPTS are escalated to the reconciliation queue.
"""

import asyncio
import logging

from paycore.workers.celery_app import celery_app
from paycore.database import get_db_context
from paycore.redis import RedisClient

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def retry_failed_webhooks(self, limit: int = 50):
    try:
        return asyncio.run(_retry_failed_webhooks(limit))
    except Exception as e:
        logger.error(f"Webhook retry run failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60)


async def _retry_failed_webhooks(limit: int):
    from paycore.services.webhook_reconciler import WebhookReconciler

    try:
        async with get_db_context() as db:
            return await WebhookReconciler(db, redis=RedisClient.get_client()).retry_failed(limit)
    finally:
        # The client is bound to this task's event loop
        await RedisClient.close()
