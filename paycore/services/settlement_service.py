"""
Settlement Scheduler body - matures pending earnings.

Safe to run concurrently and to re-run: maturation is a conditional update
on ``state = pending``, so each entry is matured by exactly one run.
"""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from paycore.fsm.states import LedgerAccount
from paycore.models.types import utcnow
from paycore.services.earnings_ledger import EarningsLedger

logger = logging.getLogger(__name__)

# (instructor_id, amount, currency, entry count)
Notifier = Callable[[str, Decimal, str, int], Optional[Awaitable[None]]]


class SettlementService:
    """One settlement cycle: mature, then notify per instructor."""

    def __init__(self, db: AsyncSession, notify: Optional[Notifier] = None):
        self.db = db
        self.ledger = EarningsLedger(db)
        self.notify = notify

    async def run(self, as_of: Optional[datetime] = None) -> Dict[str, int]:
        as_of = as_of or utcnow()
        matured = await self.ledger.mature_entries(as_of)
        await self.db.commit()

        totals: Dict[Tuple[str, str], Decimal] = defaultdict(Decimal)
        counts: Dict[Tuple[str, str], int] = defaultdict(int)
        for entry in matured:
            if entry.account != LedgerAccount.INSTRUCTOR.value:
                continue
            key = (entry.instructor_id, entry.currency)
            totals[key] += entry.amount
            counts[key] += 1

        if self.notify is not None:
            for (instructor_id, currency), amount in totals.items():
                pending = self.notify(instructor_id, amount, currency, counts[(instructor_id, currency)])
                if pending is not None:
                    await pending

        logger.info(
            f"Settlement run as of {as_of.isoformat()}: {len(matured)} entries matured "
            f"for {len(totals)} instructors"
        )
        return {"matured": len(matured), "instructors": len(totals)}
