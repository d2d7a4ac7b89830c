"""
Earnings Ledger Service - append-only instructor earnings.

Every sale posts an instructor credit (Pending until the hold period ends)
and an informational platform entry. Balances are projections over the
entries, never stored columns. Anything that decides on an instructor's
balance first locks that instructor's ``instructor_accounts`` row.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from paycore.config import settings
from paycore.errors import ValidationError
from paycore.fsm.states import LedgerAccount, LedgerEntryState, ReconciliationKind, WithdrawalStatus
from paycore.models.ledger import EarningsLedgerEntry, InstructorAccount
from paycore.models.types import utcnow
from paycore.models.withdrawal import WithdrawalRequest
from paycore.services.commission_resolver import ResolvedCommission
from paycore.services.events import SaleCompleted
from paycore.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def split_sale(gross: Decimal, platform_rate: Decimal, instructor_rate: Decimal) -> tuple:
    """
    Return (instructor_share, platform_share) in cents.

    When the rates cover the whole sale the platform takes the rounding
    remainder, so the two shares always add back up to the gross.
    """
    instructor_share = quantize_money(gross * instructor_rate / HUNDRED)
    if platform_rate + instructor_rate == HUNDRED:
        platform_share = gross - instructor_share
    else:
        platform_share = quantize_money(gross * platform_rate / HUNDRED)
    return instructor_share, platform_share


@dataclass
class Balance:
    instructor_id: str
    currency: str
    pending: Decimal
    ledger_available: Decimal
    reserved: Decimal

    @property
    def available(self) -> Decimal:
        return self.ledger_available - self.reserved


class EarningsLedger:
    """Posts, matures and reverses ledger entries and projects balances."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Account lock
    # ------------------------------------------------------------------

    async def lock_account(self, instructor_id: str, currency: Optional[str] = None) -> InstructorAccount:
        """Create the instructor's account row if missing and lock it FOR UPDATE."""
        dialect = self.db.get_bind().dialect.name
        insert_fn = pg_insert if dialect == "postgresql" else sqlite_insert
        await self.db.execute(
            insert_fn(InstructorAccount)
            .values(
                instructor_id=instructor_id,
                currency=currency or settings.default_currency,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["instructor_id"])
        )
        result = await self.db.execute(
            select(InstructorAccount)
            .where(InstructorAccount.instructor_id == instructor_id)
            .with_for_update()
        )
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    async def _sale_credits(self, payment_id: uuid.UUID) -> List[EarningsLedgerEntry]:
        result = await self.db.execute(
            select(EarningsLedgerEntry)
            .where(
                EarningsLedgerEntry.payment_id == payment_id,
                EarningsLedgerEntry.reverses_entry_id.is_(None),
                EarningsLedgerEntry.amount > 0,
            )
            .order_by(EarningsLedgerEntry.account)
        )
        return list(result.scalars().all())

    async def post_sale(self, sale: SaleCompleted, commission: ResolvedCommission) -> List[EarningsLedgerEntry]:
        """
        Post the instructor's Pending credit and the platform's entry for a sale.

        A payment is posted at most once; a second call returns the
        existing entries.
        """
        existing = await self._sale_credits(sale.payment_id)
        if existing:
            logger.info(f"Sale {sale.payment_id} already posted to the ledger")
            return existing

        account = await self.lock_account(sale.instructor_id, sale.currency)

        instructor_share, platform_share = split_sale(
            sale.gross_amount,
            commission.platform_rate,
            commission.instructor_rate,
        )
        now = utcnow()
        available_at = now + timedelta(days=commission.hold_period_days)

        snapshot = dict(
            gross_amount=sale.gross_amount,
            platform_rate=commission.platform_rate,
            instructor_rate=commission.instructor_rate,
            hold_period_days=commission.hold_period_days,
            commission_setting_id=commission.setting_id,
        )
        instructor_entry = EarningsLedgerEntry(
            instructor_id=sale.instructor_id,
            account=LedgerAccount.INSTRUCTOR.value,
            payment_id=sale.payment_id,
            amount=instructor_share,
            currency=sale.currency,
            state=LedgerEntryState.PENDING.value,
            available_at=available_at,
            description=f"Sale of {sale.item_type} {sale.item_id}",
            created_at=now,
            **snapshot,
        )
        platform_entry = EarningsLedgerEntry(
            instructor_id=sale.instructor_id,
            account=LedgerAccount.PLATFORM.value,
            payment_id=sale.payment_id,
            amount=platform_share,
            currency=sale.currency,
            state=LedgerEntryState.PENDING.value,
            available_at=available_at,
            description=f"Platform commission on {sale.item_type} {sale.item_id}",
            created_at=now,
            **snapshot,
        )
        self.db.add_all([instructor_entry, platform_entry])
        await self.db.flush()

        logger.info(
            f"Ledger: sale {sale.payment_id} posted {instructor_share} {sale.currency} pending for "
            f"instructor {sale.instructor_id} until {available_at.isoformat()} (platform {platform_share})"
        )
        if sale.currency != account.currency:
            await self._flag_foreign_currency(sale, account)
        return [instructor_entry, platform_entry]

    async def mature_entries(self, as_of: Optional[datetime] = None) -> List[EarningsLedgerEntry]:
        """
        Move Pending entries whose hold period has passed to Available.

        The conditional update on ``state = pending`` makes concurrent runs
        safe: an entry is matured by exactly one of them.
        """
        as_of = as_of or utcnow()
        candidate_ids = (
            await self.db.execute(
                select(EarningsLedgerEntry.id)
                .where(
                    EarningsLedgerEntry.state == LedgerEntryState.PENDING.value,
                    EarningsLedgerEntry.available_at <= as_of,
                )
                .with_for_update(skip_locked=True)
            )
        ).scalars().all()
        if not candidate_ids:
            return []

        matured_ids = (
            await self.db.execute(
                update(EarningsLedgerEntry)
                .where(
                    EarningsLedgerEntry.id.in_(candidate_ids),
                    EarningsLedgerEntry.state == LedgerEntryState.PENDING.value,
                )
                .values(state=LedgerEntryState.AVAILABLE.value, matured_at=as_of)
                .returning(EarningsLedgerEntry.id)
                .execution_options(synchronize_session=False)
            )
        ).scalars().all()
        if not matured_ids:
            return []

        result = await self.db.execute(
            select(EarningsLedgerEntry)
            .where(EarningsLedgerEntry.id.in_(matured_ids))
            .execution_options(populate_existing=True)
        )
        matured = list(result.scalars().all())
        logger.info(f"Ledger: matured {len(matured)} entries as of {as_of.isoformat()}")
        return matured

    async def reverse(
        self,
        payment_id: uuid.UUID,
        refund_amount: Decimal,
        *,
        full_refund: bool = False,
        reason: str = "Refund",
    ) -> List[EarningsLedgerEntry]:
        """
        Claw back earnings for a refund of ``refund_amount`` (gross).

        Each share is reversed with the rates recorded at sale time. A final
        full refund reverses exactly what is left so the payment nets to zero.
        The instructor's balance may go negative; that is escalated, not
        clamped.
        """
        credits = await self._sale_credits(payment_id)
        if not credits:
            logger.warning(f"Ledger: no sale entries to reverse for payment {payment_id}")
            return []

        instructor_id = credits[0].instructor_id
        await self.lock_account(instructor_id, credits[0].currency)

        reversals: List[EarningsLedgerEntry] = []
        for credit in credits:
            already = (
                await self.db.execute(
                    select(func.coalesce(func.sum(EarningsLedgerEntry.amount), 0)).where(
                        EarningsLedgerEntry.reverses_entry_id == credit.id
                    )
                )
            ).scalar_one()
            remaining = credit.amount + Decimal(str(already))
            if remaining <= 0:
                continue

            if full_refund:
                share = remaining
            else:
                rate = credit.instructor_rate if credit.account == LedgerAccount.INSTRUCTOR.value else credit.platform_rate
                share = min(quantize_money(refund_amount * Decimal(rate) / HUNDRED), remaining)
            if share <= 0:
                continue

            reversal = EarningsLedgerEntry(
                instructor_id=credit.instructor_id,
                account=credit.account,
                payment_id=payment_id,
                reverses_entry_id=credit.id,
                amount=-share,
                currency=credit.currency,
                state=LedgerEntryState.REVERSED.value,
                gross_amount=credit.gross_amount,
                platform_rate=credit.platform_rate,
                instructor_rate=credit.instructor_rate,
                hold_period_days=credit.hold_period_days,
                commission_setting_id=credit.commission_setting_id,
                description=f"{reason}: {refund_amount} {credit.currency} of payment {payment_id}",
            )
            self.db.add(reversal)
            reversals.append(reversal)

        await self.db.flush()
        for reversal in reversals:
            logger.info(
                f"Ledger: reversed {reversal.amount} {reversal.currency} ({reversal.account}) "
                f"for payment {payment_id}"
            )

        await self._flag_negative_balance(instructor_id, payment_id=payment_id)
        return reversals

    async def post_adjustment(
        self,
        instructor_id: str,
        amount: Decimal,
        currency: str,
        reason: str,
        admin_id: str,
    ) -> EarningsLedgerEntry:
        """Manual credit (positive) or debit (negative) against the available balance."""
        amount = quantize_money(Decimal(amount))
        if amount == 0:
            raise ValidationError("Adjustment amount cannot be zero")
        if not reason:
            raise ValidationError("Adjustment needs a reason")

        await self.lock_account(instructor_id, currency)
        entry = EarningsLedgerEntry(
            instructor_id=instructor_id,
            account=LedgerAccount.INSTRUCTOR.value,
            amount=amount,
            currency=currency,
            state=LedgerEntryState.AVAILABLE.value if amount > 0 else LedgerEntryState.REVERSED.value,
            available_at=utcnow(),
            description=f"Manual adjustment by {admin_id}: {reason}",
        )
        self.db.add(entry)
        await self.db.flush()

        logger.info(f"Ledger: manual adjustment {amount} {currency} for instructor {instructor_id} by {admin_id}")
        if amount < 0:
            await self._flag_negative_balance(instructor_id)
        return entry

    async def post_withdrawal(self, request: WithdrawalRequest) -> EarningsLedgerEntry:
        """Debit a processed withdrawal. Caller holds the account lock."""
        entry = EarningsLedgerEntry(
            instructor_id=request.instructor_id,
            account=LedgerAccount.INSTRUCTOR.value,
            withdrawal_id=request.id,
            amount=-request.amount,
            currency=request.currency,
            state=LedgerEntryState.WITHDRAWN_HOLD.value,
            description=f"Withdrawal {request.id}",
        )
        self.db.add(entry)
        await self.db.flush()
        logger.info(f"Ledger: withdrawal {request.id} debited {request.amount} {request.currency}")
        return entry

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    async def get_balance(self, instructor_id: str) -> Balance:
        """
        Project the instructor's balance in the account currency. Call under
        ``lock_account`` when the result drives a money decision.

        Entries in any other currency are left out; ``post_sale`` queues
        them for review.
        """
        account = await self.db.get(InstructorAccount, instructor_id)
        currency = account.currency if account else settings.default_currency

        credit = aliased(EarningsLedgerEntry)
        rows = (
            await self.db.execute(
                select(
                    EarningsLedgerEntry.state,
                    credit.state,
                    func.sum(EarningsLedgerEntry.amount),
                )
                .outerjoin(credit, EarningsLedgerEntry.reverses_entry_id == credit.id)
                .where(
                    EarningsLedgerEntry.instructor_id == instructor_id,
                    EarningsLedgerEntry.account == LedgerAccount.INSTRUCTOR.value,
                    EarningsLedgerEntry.currency == currency,
                )
                .group_by(EarningsLedgerEntry.state, credit.state)
            )
        ).all()

        pending = ZERO
        ledger_available = ZERO
        for state, credit_state, total in rows:
            total = Decimal(str(total or 0))
            if state == LedgerEntryState.PENDING.value:
                pending += total
            elif state == LedgerEntryState.REVERSED.value and credit_state == LedgerEntryState.PENDING.value:
                pending += total
            else:
                ledger_available += total

        reserved = (
            await self.db.execute(
                select(func.coalesce(func.sum(WithdrawalRequest.amount), 0)).where(
                    WithdrawalRequest.instructor_id == instructor_id,
                    WithdrawalRequest.status == WithdrawalStatus.APPROVED.value,
                    WithdrawalRequest.currency == currency,
                )
            )
        ).scalar_one()

        return Balance(
            instructor_id=instructor_id,
            currency=currency,
            pending=quantize_money(pending),
            ledger_available=quantize_money(ledger_available),
            reserved=quantize_money(Decimal(str(reserved))),
        )

    async def get_available_balance(self, instructor_id: str) -> Decimal:
        """Withdrawable balance, read under the instructor's account lock."""
        await self.lock_account(instructor_id)
        return (await self.get_balance(instructor_id)).available

    async def list_entries(self, instructor_id: str, limit: int = 50, offset: int = 0) -> List[EarningsLedgerEntry]:
        result = await self.db.execute(
            select(EarningsLedgerEntry)
            .where(
                EarningsLedgerEntry.instructor_id == instructor_id,
                EarningsLedgerEntry.account == LedgerAccount.INSTRUCTOR.value,
            )
            .order_by(EarningsLedgerEntry.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def payment_net(self, payment_id: uuid.UUID, account: LedgerAccount = LedgerAccount.INSTRUCTOR) -> Decimal:
        """Net ledger contribution of one payment for one account."""
        total = (
            await self.db.execute(
                select(func.coalesce(func.sum(EarningsLedgerEntry.amount), 0)).where(
                    EarningsLedgerEntry.payment_id == payment_id,
                    EarningsLedgerEntry.account == account.value,
                )
            )
        ).scalar_one()
        return quantize_money(Decimal(str(total)))

    async def _flag_foreign_currency(self, sale: SaleCompleted, account: InstructorAccount) -> None:
        logger.warning(
            f"Ledger: sale {sale.payment_id} is in {sale.currency} but instructor {sale.instructor_id} "
            f"is settled in {account.currency}; kept out of the balance"
        )
        await ReconciliationService(self.db).open_item(
            ReconciliationKind.CURRENCY_MISMATCH,
            f"Sale {sale.payment_id} for instructor {sale.instructor_id} is in {sale.currency}, "
            f"account currency is {account.currency}",
            payment_id=sale.payment_id,
            instructor_id=sale.instructor_id,
            details={"sale_currency": sale.currency, "account_currency": account.currency},
        )

    async def _flag_negative_balance(self, instructor_id: str, payment_id: Optional[uuid.UUID] = None) -> None:
        balance = await self.get_balance(instructor_id)
        if balance.available >= 0:
            return
        await ReconciliationService(self.db).open_item(
            ReconciliationKind.NEGATIVE_BALANCE,
            f"Instructor {instructor_id} balance is {balance.available} {balance.currency} after a clawback",
            payment_id=payment_id,
            instructor_id=instructor_id,
            details={
                "available": str(balance.available),
                "pending": str(balance.pending),
                "reserved": str(balance.reserved),
            },
        )
