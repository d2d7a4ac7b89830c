"""
Payment Expiry Worker.

Every 15 minutes: cancels payments still Initiated/PendingConfirmation after
their provider deadline (Fawry reference, bank transfer window).
"""

import asyncio
import logging

from paycore.workers.celery_app import celery_app
from paycore.database import get_db_context

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def expire_stale_payments(self):
    try:
        expired = asyncio.run(_expire_stale_payments())
        if expired:
            logger.info(f"Expired {expired} unpaid payments")
        return {"expired": expired}
    except Exception as e:
        logger.error(f"Payment expiry sweep failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60)


async def _expire_stale_payments() -> int:
    from paycore.services.payment_orchestrator import PaymentOrchestrator

    async with get_db_context() as db:
        return await PaymentOrchestrator(db).expire_stale()
