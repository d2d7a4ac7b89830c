"""
Tests for the withdrawal processor.
"""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from paycore.database import Base
from paycore.errors import (
    AboveMaximum,
    BalanceChanged,
    BelowMinimum,
    Forbidden,
    InsufficientBalance,
    InvalidTransition,
    ValidationError,
)
from paycore.fsm.states import (
    LedgerEntryState,
    WithdrawalMethodType,
    WithdrawalRejectionReason,
    WithdrawalStatus,
)
from paycore.models.ledger import EarningsLedgerEntry
from paycore.models.withdrawal import WithdrawalMethod
from paycore.services.earnings_ledger import EarningsLedger
from paycore.services.withdrawal_service import WithdrawalProcessor, calculate_fee


@pytest_asyncio.fixture
async def method(db):
    return await WithdrawalProcessor(db).create_method(
        name="instapay",
        display_name="InstaPay",
        method_type=WithdrawalMethodType.INSTAPAY,
        min_amount=Decimal("100"),
        max_amount=Decimal("5000"),
        fee_percentage=Decimal("1.5"),
        fixed_fee=Decimal("5"),
    )


async def fund(db, instructor_id="inst-1", amount="1000"):
    await EarningsLedger(db).post_adjustment(instructor_id, Decimal(amount), "EGP", "opening balance", "admin-1")
    await db.commit()


class TestCalculateFee:
    def test_percentage_plus_fixed(self):
        method = WithdrawalMethod(fee_percentage=Decimal("1.5"), fixed_fee=Decimal("5"))
        assert calculate_fee(Decimal("600"), method) == Decimal("14.00")

    def test_no_fee(self):
        method = WithdrawalMethod(fee_percentage=Decimal("0"), fixed_fee=Decimal("0"))
        assert calculate_fee(Decimal("250"), method) == Decimal("0.00")


@pytest.mark.asyncio
async def test_submit_creates_pending_request(db, method):
    await fund(db)
    request = await WithdrawalProcessor(db).submit("inst-1", Decimal("600"), method.id)

    assert request.status == WithdrawalStatus.PENDING.value
    assert request.fee == Decimal("14.00")
    assert request.net_amount == Decimal("586.00")
    assert request.currency == "EGP"

    # Pending requests do not reserve money
    balance = await EarningsLedger(db).get_balance("inst-1")
    assert balance.available == Decimal("1000.00")


@pytest.mark.asyncio
async def test_submit_enforces_method_limits(db, method):
    await fund(db, amount="10000")
    processor = WithdrawalProcessor(db)

    with pytest.raises(BelowMinimum):
        await processor.submit("inst-1", Decimal("99.99"), method.id)
    with pytest.raises(AboveMaximum):
        await processor.submit("inst-1", Decimal("5000.01"), method.id)


@pytest.mark.asyncio
async def test_submit_rejects_amount_above_available(db, method):
    await fund(db, amount="500")
    with pytest.raises(InsufficientBalance):
        await WithdrawalProcessor(db).submit("inst-1", Decimal("600"), method.id)


@pytest.mark.asyncio
async def test_submit_refuses_disabled_method(db, method):
    await fund(db)
    processor = WithdrawalProcessor(db)
    await processor.set_method_enabled(method.id, False)

    with pytest.raises(ValidationError):
        await processor.submit("inst-1", Decimal("200"), method.id)


@pytest.mark.asyncio
async def test_fee_must_leave_a_payout(db):
    processor = WithdrawalProcessor(db)
    pricey = await processor.create_method(
        name="wire",
        display_name="International wire",
        method_type=WithdrawalMethodType.BANK_TRANSFER,
        min_amount=Decimal("10"),
        max_amount=Decimal("5000"),
        fixed_fee=Decimal("50"),
    )
    await fund(db)

    with pytest.raises(ValidationError):
        await processor.submit("inst-1", Decimal("40"), pricey.id)


@pytest.mark.asyncio
async def test_second_approval_sees_the_first(db, method):
    """Two requests (600 and 700) against 1000: the second approval is auto-rejected."""
    await fund(db)
    processor = WithdrawalProcessor(db)

    first = await processor.submit("inst-1", Decimal("600"), method.id)
    second = await processor.submit("inst-1", Decimal("700"), method.id)

    approved = await processor.approve(first.id, "admin-1")
    assert approved.status == WithdrawalStatus.APPROVED.value

    with pytest.raises(BalanceChanged):
        await processor.approve(second.id, "admin-1")

    second = await processor.get_request(second.id)
    assert second.status == WithdrawalStatus.REJECTED.value
    assert second.rejection_reason == WithdrawalRejectionReason.BALANCE_CHANGED.value

    balance = await EarningsLedger(db).get_balance("inst-1")
    assert balance.reserved == Decimal("600.00")
    assert balance.available == Decimal("400.00")


@pytest.mark.asyncio
async def test_processing_debits_the_ledger(db, method):
    await fund(db)
    processor = WithdrawalProcessor(db)
    request = await processor.submit("inst-1", Decimal("600"), method.id)
    await processor.approve(request.id, "admin-1")

    processed = await processor.mark_processed(request.id, "IPN-2026-0001", "admin-1")

    assert processed.status == WithdrawalStatus.PROCESSED.value
    assert processed.external_reference == "IPN-2026-0001"

    debit = (
        await db.execute(select(EarningsLedgerEntry).where(EarningsLedgerEntry.withdrawal_id == request.id))
    ).scalar_one()
    assert debit.amount == Decimal("-600.00")
    assert debit.state == LedgerEntryState.WITHDRAWN_HOLD.value

    balance = await EarningsLedger(db).get_balance("inst-1")
    assert balance.reserved == Decimal("0.00")
    assert balance.available == Decimal("400.00")


@pytest.mark.asyncio
async def test_only_approved_requests_can_be_processed(db, method):
    await fund(db)
    processor = WithdrawalProcessor(db)
    request = await processor.submit("inst-1", Decimal("200"), method.id)

    with pytest.raises(InvalidTransition):
        await processor.mark_processed(request.id, "REF-1", "admin-1")


@pytest.mark.asyncio
async def test_reject_and_cancel(db, method):
    await fund(db)
    processor = WithdrawalProcessor(db)
    first = await processor.submit("inst-1", Decimal("200"), method.id)
    second = await processor.submit("inst-1", Decimal("300"), method.id)

    rejected = await processor.reject(first.id, "admin-1", "Account name mismatch")
    assert rejected.rejection_reason == WithdrawalRejectionReason.ADMIN_REJECTED.value

    with pytest.raises(Forbidden):
        await processor.cancel(second.id, "inst-2")

    cancelled = await processor.cancel(second.id, "inst-1")
    assert cancelled.status == WithdrawalStatus.CANCELLED.value

    with pytest.raises(InvalidTransition):
        await processor.approve(cancelled.id, "admin-1")


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """
    File-backed SQLite where every transaction starts with BEGIN IMMEDIATE,
    so sessions on separate connections serialize the way row locks do.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'withdrawals.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _driver_autocommit(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.mark.asyncio
async def test_simultaneous_approvals_cannot_overdraw(file_engine):
    """600 and 700 approved at the same time against 1000: exactly one goes through."""
    sessions = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)

    async with sessions() as db:
        processor = WithdrawalProcessor(db)
        method = await processor.create_method(
            name="instapay",
            display_name="InstaPay",
            method_type=WithdrawalMethodType.INSTAPAY,
            min_amount=Decimal("100"),
            max_amount=Decimal("5000"),
        )
        await fund(db)
        first = await processor.submit("inst-1", Decimal("600"), method.id)
        second = await processor.submit("inst-1", Decimal("700"), method.id)

    async def approve(request_id, admin_id):
        async with sessions() as db:
            return await WithdrawalProcessor(db).approve(request_id, admin_id)

    outcomes = await asyncio.gather(
        approve(first.id, "admin-1"),
        approve(second.id, "admin-2"),
        return_exceptions=True,
    )

    approved = [o for o in outcomes if not isinstance(o, Exception)]
    refused = [o for o in outcomes if isinstance(o, Exception)]
    assert len(approved) == 1
    assert len(refused) == 1
    assert isinstance(refused[0], BalanceChanged)

    async with sessions() as db:
        statuses = sorted(r.status for r in await WithdrawalProcessor(db).list_requests(instructor_id="inst-1"))
        balance = await EarningsLedger(db).get_balance("inst-1")

    assert statuses == [WithdrawalStatus.APPROVED.value, WithdrawalStatus.REJECTED.value]
    assert balance.reserved == approved[0].amount
    assert balance.available >= 0


@pytest.mark.asyncio
async def test_approval_locks_the_account_before_reading_the_balance(db, method):
    await fund(db)
    request = await WithdrawalProcessor(db).submit("inst-1", Decimal("600"), method.id)

    statements = []

    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    engine = db.bind.sync_engine
    event.listen(engine, "before_cursor_execute", record)
    try:
        await WithdrawalProcessor(db).approve(request.id, "admin-1")
    finally:
        event.remove(engine, "before_cursor_execute", record)

    account_lock = next(i for i, s in enumerate(statements) if "instructor_accounts" in s)
    balance_read = next(i for i, s in enumerate(statements) if "FROM earnings_ledger_entries" in s)
    assert account_lock < balance_read
