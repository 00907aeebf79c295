from decimal import Decimal
from typing import Callable, Optional
from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from custody.config import settings
from custody.exceptions import AllocationConflict, InsufficientFunds, ValidationError
from custody.models.balance import Balance, LedgerEntry, LedgerEntryType

ZERO = Decimal("0")


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value or 0))


class BalanceLedger:
    """Per-user, per-asset available/locked balances.

    Operations run inside the caller's session so they can be committed
    together with other writes (deposit status, withdrawal record). Each write
    is conditioned on the version that was read; a mismatch means another
    writer got there first, so the row is re-read and the step retried.
    """

    def __init__(self, max_retries: Optional[int] = None):
        self.max_retries = max_retries or settings.OPTIMISTIC_MAX_RETRIES

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_balance(self, db: AsyncSession, user_id: int, asset: str) -> Optional[Balance]:
        return await db.scalar(
            select(Balance)
            .where(Balance.user_id == user_id, Balance.asset == asset.upper())
            .execution_options(populate_existing=True)
        )

    async def list_balances(self, db: AsyncSession, user_id: int) -> list[Balance]:
        return list(await db.scalars(
            select(Balance).where(Balance.user_id == user_id).order_by(Balance.asset)
        ))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def lock(self, db: AsyncSession, user_id: int, asset: str, amount, reference_id: Optional[str] = None) -> Balance:
        amount = self._positive(amount)

        def apply(available: Decimal, locked: Decimal):
            if available < amount:
                raise InsufficientFunds(
                    f"Insufficient {asset} balance. Available: {available}, required: {amount}"
                )
            return available - amount, locked + amount

        return await self._mutate(db, user_id, asset, apply, LedgerEntryType.lock, amount, reference_id)

    async def unlock(self, db: AsyncSession, user_id: int, asset: str, amount, reference_id: Optional[str] = None) -> Balance:
        amount = self._positive(amount)

        def apply(available: Decimal, locked: Decimal):
            released = min(amount, locked)
            return available + released, locked - released

        return await self._mutate(db, user_id, asset, apply, LedgerEntryType.unlock, amount, reference_id)

    async def credit(self, db: AsyncSession, user_id: int, asset: str, amount, reference_id: Optional[str] = None) -> Balance:
        amount = self._positive(amount)

        def apply(available: Decimal, locked: Decimal):
            return available + amount, locked

        return await self._mutate(
            db, user_id, asset, apply, LedgerEntryType.credit, amount, reference_id, create=True
        )

    async def debit(self, db: AsyncSession, user_id: int, asset: str, amount, reference_id: Optional[str] = None) -> Balance:
        """Remove funds that were previously locked (e.g. a withdrawal settled on chain)."""
        amount = self._positive(amount)

        def apply(available: Decimal, locked: Decimal):
            if locked < amount:
                raise InsufficientFunds(
                    f"Insufficient locked {asset}. Locked: {locked}, debiting: {amount}"
                )
            return available, locked - amount

        return await self._mutate(db, user_id, asset, apply, LedgerEntryType.debit, amount, reference_id)

    async def settle(
        self,
        db: AsyncSession,
        user_id: int,
        source_asset: str,
        dest_asset: str,
        source_amount,
        dest_amount,
        reference_id: Optional[str] = None,
    ) -> tuple[Balance, Balance]:
        """Consume locked source funds and credit the destination asset.

        ``dest_amount`` is the amount actually received, as reported by the
        caller. Both legs are written in the caller's transaction, so a failure
        on either side rolls back both.
        """
        source_amount = self._positive(source_amount)
        dest_amount = self._positive(dest_amount)

        def take(available: Decimal, locked: Decimal):
            if locked < source_amount:
                raise InsufficientFunds(
                    f"Insufficient locked {source_asset}. Locked: {locked}, settling: {source_amount}"
                )
            return available, locked - source_amount

        def give(available: Decimal, locked: Decimal):
            return available + dest_amount, locked

        source = await self._mutate(
            db, user_id, source_asset, take, LedgerEntryType.settle_out, source_amount, reference_id
        )
        dest = await self._mutate(
            db, user_id, dest_asset, give, LedgerEntryType.settle_in, dest_amount, reference_id, create=True
        )
        return source, dest

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _positive(amount) -> Decimal:
        value = _dec(amount)
        if not value.is_finite() or value <= ZERO:
            raise ValidationError(f"Amount must be positive, got {amount}")
        return value

    async def _load_or_create(self, db: AsyncSession, user_id: int, asset: str, create: bool) -> Balance:
        balance = await self.get_balance(db, user_id, asset)
        if balance is not None:
            return balance
        if not create:
            raise InsufficientFunds(f"No {asset} balance for user {user_id}")

        balance = Balance(user_id=user_id, asset=asset.upper(), available=ZERO, locked=ZERO, version=0)
        db.add(balance)
        try:
            await db.flush()
        except IntegrityError as e:
            # A concurrent writer created the row; the whole unit is retried by the caller
            raise AllocationConflict(f"Balance row for user {user_id} {asset} created concurrently") from e
        return balance

    async def _mutate(
        self,
        db: AsyncSession,
        user_id: int,
        asset: str,
        apply: Callable[[Decimal, Decimal], tuple[Decimal, Decimal]],
        entry_type: str,
        amount: Decimal,
        reference_id: Optional[str],
        create: bool = False,
    ) -> Balance:
        asset = asset.upper()
        for attempt in range(self.max_retries):
            balance = await self._load_or_create(db, user_id, asset, create)
            available, locked = apply(_dec(balance.available), _dec(balance.locked))
            if available < ZERO or locked < ZERO:
                raise InsufficientFunds(f"{asset} balance for user {user_id} would go negative")

            result = await db.execute(
                update(Balance)
                .where(Balance.id == balance.id, Balance.version == balance.version)
                .values(available=available, locked=locked, version=balance.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                if entry_type == LedgerEntryType.unlock:
                    # Floored at what was locked; record what actually moved
                    amount = _dec(balance.locked) - locked
                db.add(LedgerEntry(
                    user_id=user_id,
                    asset=asset,
                    entry_type=entry_type,
                    amount=amount,
                    available_after=available,
                    locked_after=locked,
                    reference_id=reference_id,
                ))
                await db.flush()
                await db.refresh(balance)
                return balance

            logger.debug(
                f"Balance version conflict user={user_id} asset={asset} "
                f"op={entry_type}, retry {attempt + 1}/{self.max_retries}"
            )

        raise AllocationConflict(
            f"Balance for user {user_id} {asset} kept changing; gave up after {self.max_retries} attempts"
        )
