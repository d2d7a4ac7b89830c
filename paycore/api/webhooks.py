"""
Gateway Webhook Handler.
One route for every provider; the reconciler picks the adapter.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from redis.asyncio.client import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.api.deps import get_registry
from paycore.database import get_db
from paycore.gateways import GatewayRegistry
from paycore.redis import get_redis
from paycore.services.webhook_reconciler import WebhookReconciler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/{provider}")
async def gateway_webhook(
    provider: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    registry: GatewayRegistry = Depends(get_registry),
    redis: Optional[Redis] = Depends(get_redis),
):
    """
    Receive a provider callback.

    Always 200 once the callback is recorded, whatever the business outcome,
    so providers do not retry-storm. Unknown providers get 404.
    """
    # Raw body is needed as-is for signature verification
    body = await request.body()
    logger.info(f"{provider} webhook received ({len(body)} bytes)")

    return await WebhookReconciler(db, registry, redis).handle(
        provider,
        body,
        dict(request.headers),
        query_params=dict(request.query_params),
        remote_addr=request.client.host if request.client else None,
    )
