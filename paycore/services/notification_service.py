"""
Notification Service - instructor-facing notices.

Delivery is a JSON POST to the configured dispatcher. With no dispatcher
configured notices are only logged.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from paycore.config import settings

logger = logging.getLogger(__name__)

BALANCE_AVAILABLE = "balance_available"


class NotificationService:
    """Posts notices to the notification dispatcher."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = settings.notification_webhook_url if webhook_url is None else webhook_url
        self.transport = transport

    async def send(self, kind: str, instructor_id: str, payload: Dict[str, Any]) -> bool:
        """
        Deliver one notice.

        Returns True when the dispatcher accepted it (or when running
        log-only), False on a non-2xx answer. Network errors propagate so
        the calling task can retry.
        """
        message = {"kind": kind, "instructor_id": instructor_id, **payload}
        if not self.webhook_url:
            logger.info(f"Notification ({kind}) for instructor {instructor_id}: {payload}")
            return True

        async with httpx.AsyncClient(
            timeout=settings.gateway_timeout_seconds,
            transport=self.transport,
        ) as client:
            response = await client.post(self.webhook_url, json=message)

        if response.status_code >= 400:
            logger.error(
                f"Notification dispatcher refused {kind} for {instructor_id}: "
                f"{response.status_code} {response.text[:200]}"
            )
            return False

        logger.info(f"Notification {kind} sent to instructor {instructor_id}")
        return True

    async def balance_available(self, instructor_id: str, amount: str, currency: str, entries: int) -> bool:
        return await self.send(
            BALANCE_AVAILABLE,
            instructor_id,
            {"amount": amount, "currency": currency, "entries": entries},
        )
