import asyncio
from decimal import Decimal
import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from custody.exceptions import AllocationConflict, InsufficientFunds, ValidationError
from custody.models.balance import LedgerEntry, LedgerEntryType
from custody.services.balance_ledger import BalanceLedger


async def _seed(session_factory, user_id, asset, amount):
    async with session_factory() as db:
        await BalanceLedger().credit(db, user_id, asset, Decimal(amount))
        await db.commit()


async def _balance(session_factory, user_id, asset):
    async with session_factory() as db:
        return await BalanceLedger().get_balance(db, user_id, asset)


@pytest.mark.asyncio
async def test_credit_creates_balance(session_factory):
    ledger = BalanceLedger()
    async with session_factory() as db:
        balance = await ledger.credit(db, 1, "eth", Decimal("1.5"), reference_id="deposit:1")
        await db.commit()
    assert balance.asset == "ETH"
    assert balance.available == Decimal("1.5")
    assert balance.locked == Decimal("0")
    assert balance.version == 1


@pytest.mark.asyncio
async def test_lock_moves_available_to_locked(session_factory):
    await _seed(session_factory, 1, "USDT", "100")
    async with session_factory() as db:
        balance = await BalanceLedger().lock(db, 1, "USDT", Decimal("52"))
        await db.commit()
    assert balance.available == Decimal("48")
    assert balance.locked == Decimal("52")


@pytest.mark.asyncio
async def test_lock_more_than_available_fails(session_factory):
    await _seed(session_factory, 1, "USDT", "10")
    async with session_factory() as db:
        with pytest.raises(InsufficientFunds):
            await BalanceLedger().lock(db, 1, "USDT", Decimal("10.01"))
    balance = await _balance(session_factory, 1, "USDT")
    assert balance.available == Decimal("10")
    assert balance.locked == Decimal("0")


@pytest.mark.asyncio
async def test_lock_without_balance_fails(session_factory):
    async with session_factory() as db:
        with pytest.raises(InsufficientFunds):
            await BalanceLedger().lock(db, 1, "BTC", Decimal("0.1"))


@pytest.mark.asyncio
async def test_unlock_is_floored_at_locked(session_factory):
    await _seed(session_factory, 1, "ETH", "2")
    ledger = BalanceLedger()
    async with session_factory() as db:
        await ledger.lock(db, 1, "ETH", Decimal("0.5"))
        balance = await ledger.unlock(db, 1, "ETH", Decimal("3"))
        await db.commit()
    assert balance.available == Decimal("2")
    assert balance.locked == Decimal("0")


@pytest.mark.asyncio
async def test_debit_consumes_locked_funds(session_factory):
    await _seed(session_factory, 1, "ETH", "2")
    ledger = BalanceLedger()
    async with session_factory() as db:
        await ledger.lock(db, 1, "ETH", Decimal("1.2"))
        balance = await ledger.debit(db, 1, "ETH", Decimal("1.2"))
        await db.commit()
    assert balance.available == Decimal("0.8")
    assert balance.locked == Decimal("0")

    async with session_factory() as db:
        with pytest.raises(InsufficientFunds):
            await ledger.debit(db, 1, "ETH", Decimal("0.1"))


@pytest.mark.asyncio
async def test_settle_moves_locked_source_into_destination(session_factory):
    await _seed(session_factory, 1, "USDT", "100")
    ledger = BalanceLedger()
    async with session_factory() as db:
        await ledger.lock(db, 1, "USDT", Decimal("60"))
        source, dest = await ledger.settle(
            db, 1, "USDT", "ETH", Decimal("60"), Decimal("0.0199"), reference_id="swap:9"
        )
        await db.commit()
    assert source.available == Decimal("40")
    assert source.locked == Decimal("0")
    assert dest.available == Decimal("0.0199")


@pytest.mark.asyncio
async def test_settle_failure_rolls_back_both_legs(session_factory):
    await _seed(session_factory, 1, "USDT", "100")
    ledger = BalanceLedger()
    async with session_factory() as db:
        await ledger.lock(db, 1, "USDT", Decimal("10"))
        await db.commit()

    async with session_factory() as db:
        with pytest.raises(InsufficientFunds):
            await ledger.settle(db, 1, "USDT", "ETH", Decimal("20"), Decimal("0.01"))
        await db.rollback()

    usdt = await _balance(session_factory, 1, "USDT")
    assert usdt.locked == Decimal("10")
    assert await _balance(session_factory, 1, "ETH") is None


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1"), Decimal("NaN")])
async def test_non_positive_amount_rejected(session_factory, amount):
    async with session_factory() as db:
        with pytest.raises(ValidationError):
            await BalanceLedger().credit(db, 1, "ETH", amount)


@pytest.mark.asyncio
async def test_sequence_keeps_balances_non_negative_and_audited(session_factory):
    ledger = BalanceLedger()
    steps = [
        ("credit", "5"), ("lock", "2"), ("lock", "4"), ("unlock", "1"),
        ("debit", "1"), ("credit", "0.25"), ("lock", "3.25"), ("debit", "5"),
    ]
    async with session_factory() as db:
        for op, amount in steps:
            try:
                balance = await getattr(ledger, op)(db, 7, "ETH", Decimal(amount))
            except InsufficientFunds:
                continue
            assert balance.available >= 0
            assert balance.locked >= 0
        await db.commit()

    balance = await _balance(session_factory, 7, "ETH")
    # credit 5, lock 2, (lock 4 refused), unlock 1, debit 1, credit .25, lock 3.25, (debit 5 refused)
    assert balance.available == Decimal("1")
    assert balance.locked == Decimal("3.25")

    async with session_factory() as db:
        entries = list(await db.scalars(select(LedgerEntry).where(LedgerEntry.user_id == 7).order_by(LedgerEntry.id)))
    assert len(entries) == 6
    assert entries[-1].entry_type == LedgerEntryType.lock
    assert entries[-1].available_after == Decimal("1")


@pytest.mark.asyncio
async def test_same_reference_cannot_be_credited_twice(session_factory):
    ledger = BalanceLedger()
    async with session_factory() as db:
        await ledger.credit(db, 1, "ETH", Decimal("1"), reference_id="deposit:42")
        await db.commit()

    async with session_factory() as db:
        with pytest.raises(IntegrityError):
            await ledger.credit(db, 1, "ETH", Decimal("1"), reference_id="deposit:42")
        await db.rollback()

    balance = await _balance(session_factory, 1, "ETH")
    assert balance.available == Decimal("1")


class RacingLedger(BalanceLedger):
    """Lets another writer commit between the read and the conditional write."""

    def __init__(self, session_factory, races=1, **kwargs):
        super().__init__(**kwargs)
        self.session_factory = session_factory
        self.races = races

    async def get_balance(self, db, user_id, asset):
        balance = await super().get_balance(db, user_id, asset)
        if self.races > 0:
            self.races -= 1
            async with self.session_factory() as other:
                await BalanceLedger().credit(other, user_id, asset, Decimal("1"))
                await other.commit()
        return balance


@pytest.mark.asyncio
async def test_version_conflict_is_retried(session_factory):
    await _seed(session_factory, 1, "ETH", "1")
    ledger = RacingLedger(session_factory, races=1)
    async with session_factory() as db:
        balance = await ledger.lock(db, 1, "ETH", Decimal("1.5"))
        await db.commit()
    # The racing credit landed first; the retried lock sees it
    assert balance.available == Decimal("0.5")
    assert balance.locked == Decimal("1.5")
    assert balance.version == 3


@pytest.mark.asyncio
async def test_persistent_conflict_gives_up(session_factory):
    await _seed(session_factory, 1, "ETH", "1")
    ledger = RacingLedger(session_factory, races=10, max_retries=3)
    async with session_factory() as db:
        with pytest.raises(AllocationConflict):
            await ledger.lock(db, 1, "ETH", Decimal("0.5"))


@pytest.mark.asyncio
async def test_unlock_entry_records_released_amount(session_factory):
    await _seed(session_factory, 1, "ETH", "2")
    ledger = BalanceLedger()
    async with session_factory() as db:
        await ledger.lock(db, 1, "ETH", Decimal("0.5"))
        await ledger.unlock(db, 1, "ETH", Decimal("3"), reference_id="withdrawal:9")
        await db.commit()

    async with session_factory() as db:
        entry = await db.scalar(select(LedgerEntry).where(LedgerEntry.entry_type == LedgerEntryType.unlock))
    assert entry.amount == Decimal("0.5")
    assert entry.locked_after == Decimal("0")


@pytest.mark.asyncio
async def test_concurrent_locks_never_overdraw(session_factory):
    await _seed(session_factory, 1, "USDT", "100")

    async def lock_in_own_session():
        async with session_factory() as db:
            await BalanceLedger().lock(db, 1, "USDT", Decimal("60"))
            await db.commit()

    results = await asyncio.gather(*(lock_in_own_session() for _ in range(4)), return_exceptions=True)
    assert results.count(None) == 1
    assert sum(isinstance(r, InsufficientFunds) for r in results) == 3

    balance = await _balance(session_factory, 1, "USDT")
    assert balance.available == Decimal("40")
    assert balance.locked == Decimal("60")
