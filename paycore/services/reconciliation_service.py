"""
Reconciliation Service - queue of money situations that need a human.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from paycore.errors import InvalidTransition, NotFound
from paycore.fsm.states import ReconciliationKind, ReconciliationStatus
from paycore.models.reconciliation import ReconciliationItem
from paycore.models.types import utcnow

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Opens, lists and resolves reconciliation items."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def open_item(
        self,
        kind: ReconciliationKind,
        summary: str,
        *,
        payment_id: Optional[uuid.UUID] = None,
        refund_id: Optional[uuid.UUID] = None,
        withdrawal_id: Optional[uuid.UUID] = None,
        instructor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationItem:
        """Record an item in the caller's transaction. Does not commit."""
        item = ReconciliationItem(
            kind=kind.value,
            summary=summary,
            payment_id=payment_id,
            refund_id=refund_id,
            withdrawal_id=withdrawal_id,
            instructor_id=instructor_id,
            details=details,
        )
        self.db.add(item)
        await self.db.flush()

        logger.warning(
            f"Reconciliation item opened: {kind.value} - {summary}",
            extra={"reconciliation_kind": kind.value, "payment_id": str(payment_id) if payment_id else None},
        )
        return item

    async def list_items(
        self,
        status: Optional[ReconciliationStatus] = ReconciliationStatus.OPEN,
        kind: Optional[ReconciliationKind] = None,
        limit: int = 100,
    ) -> List[ReconciliationItem]:
        query = select(ReconciliationItem).order_by(ReconciliationItem.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(ReconciliationItem.status == status.value)
        if kind is not None:
            query = query.where(ReconciliationItem.kind == kind.value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def resolve(self, item_id: uuid.UUID, resolved_by: str, note: str = "") -> ReconciliationItem:
        item = await self.db.get(ReconciliationItem, item_id)
        if item is None:
            raise NotFound("Reconciliation item not found", details={"item_id": str(item_id)})
        if item.status == ReconciliationStatus.RESOLVED.value:
            raise InvalidTransition("Reconciliation item is already resolved")

        item.status = ReconciliationStatus.RESOLVED.value
        item.resolved_by = resolved_by
        item.resolution_note = note
        item.resolved_at = utcnow()
        await self.db.commit()

        logger.info(f"Reconciliation item {item_id} resolved by {resolved_by}")
        return item
