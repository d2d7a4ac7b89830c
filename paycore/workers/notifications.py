"""
Notification Worker.

On demand: delivers one instructor notice through the dispatcher.
"""

import asyncio
import logging
from typing import Any, Dict

from paycore.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def dispatch_notification(self, kind: str, instructor_id: str, payload: Dict[str, Any]):
    from paycore.services.notification_service import NotificationService

    try:
        delivered = asyncio.run(NotificationService().send(kind, instructor_id, payload))
    except Exception as e:
        logger.error(f"Notification {kind} for {instructor_id} failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60)

    if not delivered:
        raise self.retry(countdown=60)
    return {"delivered": True}
