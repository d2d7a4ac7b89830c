"""
Settlement Worker.

Hourly: matures Pending earnings whose hold period has passed and queues a
"balance available" notice per instructor.
"""

import asyncio
import logging
from decimal import Decimal

from paycore.workers.celery_app import celery_app
from paycore.database import get_db_context

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def mature_earnings(self):
    """
    Celery task for one settlement cycle.

    Re-running it (or running it on two workers at once) matures nothing twice.
    """
    try:
        result = asyncio.run(_mature_earnings())
        logger.info(f"Settlement complete: {result}")
        return result
    except Exception as e:
        logger.error(f"Settlement run failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60)


def _queue_notice(instructor_id: str, amount: Decimal, currency: str, entries: int) -> None:
    from paycore.workers.notifications import dispatch_notification

    dispatch_notification.delay(
        "balance_available",
        instructor_id,
        {"amount": str(amount), "currency": currency, "entries": entries},
    )


async def _mature_earnings():
    from paycore.services.settlement_service import SettlementService

    async with get_db_context() as db:
        return await SettlementService(db, notify=_queue_notice).run()
