from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Awaitable, Callable, Optional
from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import func

from custody.config import ChainConfig, get_chain_configs, settings
from custody.database import AsyncSessionLocal
from custody.exceptions import (
    InvalidAddress,
    InvalidState,
    NotFound,
    PermissionDenied,
    UnsupportedChain,
    ValidationError,
)
from custody.models.withdrawal import Withdrawal, WithdrawalStatus, WITHDRAWAL_TRANSITIONS
from custody.services import address_derivation
from custody.services.balance_ledger import BalanceLedger
from custody.services.monitors.base import ChainMonitor
from custody.services.monitors.registry import build_monitor


@dataclass
class FeeEstimate:
    network_fee: Decimal
    total: Decimal
    currency: str


LedgerStep = Callable[[AsyncSession, Withdrawal], Awaitable[object]]


class WithdrawalService:
    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        chains: Optional[dict[str, ChainConfig]] = None,
        monitors: Optional[dict[str, ChainMonitor]] = None,
        ledger: Optional[BalanceLedger] = None,
        fee_buffer: Optional[Decimal] = None,
    ):
        self.session_factory = session_factory
        self.chains = chains if chains is not None else get_chain_configs()
        self.monitors: dict[str, ChainMonitor] = dict(monitors or {})
        self._owned: list[ChainMonitor] = []
        self.ledger = ledger or BalanceLedger()
        self.fee_buffer = fee_buffer if fee_buffer is not None else settings.FEE_SAFETY_BUFFER

    def _chain(self, chain: str) -> ChainConfig:
        config = self.chains.get(chain.upper()) if isinstance(chain, str) else None
        if config is None:
            raise UnsupportedChain(f"Unsupported chain: {chain}")
        return config

    def _monitor(self, config: ChainConfig) -> ChainMonitor:
        monitor = self.monitors.get(config.chain)
        if monitor is None:
            monitor = build_monitor(config, session_factory=self.session_factory)
            self.monitors[config.chain] = monitor
            self._owned.append(monitor)
        return monitor

    async def aclose(self) -> None:
        for monitor in self._owned:
            await monitor.aclose()
        self._owned.clear()

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    def validate_address(self, chain: str, address) -> bool:
        config = self.chains.get(chain.upper()) if isinstance(chain, str) else None
        if config is None:
            return False
        return address_derivation.validate_address(config.address_family, address, config.network)

    async def estimate_fees(self, chain: str, amount) -> FeeEstimate:
        config = self._chain(chain)
        amount = self._amount(amount)
        if config.token_contract:
            # Static rate in the withdrawn token; the buffer only covers market estimates
            return FeeEstimate(
                network_fee=config.fallback_fee, total=amount + config.fallback_fee, currency=config.asset
            )
        try:
            raw_fee = await self._monitor(config).estimate_network_fee(amount)
            network_fee = (raw_fee * (1 + self.fee_buffer)).quantize(
                Decimal(1).scaleb(-config.decimals), rounding=ROUND_UP
            )
        except Exception as e:
            # Never block a withdrawal on the fee market; fall back to the static fee
            logger.warning(f"[{config.chain}] Fee estimation failed, using fallback {config.fallback_fee}: {e}")
            network_fee = config.fallback_fee
        return FeeEstimate(network_fee=network_fee, total=amount + network_fee, currency=config.asset)

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    @staticmethod
    def _amount(amount) -> Decimal:
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except ArithmeticError as e:
            raise ValidationError(f"Invalid amount: {amount}") from e
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be greater than 0")
        return value

    async def request_withdrawal(self, user_id: int, chain: str, amount, destination_address: str) -> Withdrawal:
        config = self._chain(chain)
        amount = self._amount(amount)
        if not self.validate_address(config.chain, destination_address):
            raise InvalidAddress(f"Invalid {config.chain} address: {destination_address}")

        fee = await self.estimate_fees(config.chain, amount)

        async with self.session_factory() as db:
            try:
                withdrawal = Withdrawal(
                    user_id=user_id,
                    chain=config.chain,
                    asset=config.asset,
                    amount=amount,
                    destination_address=destination_address,
                    status=WithdrawalStatus.pending,
                    network_fee=fee.network_fee,
                    total_deducted=fee.total,
                )
                db.add(withdrawal)
                await db.flush()
                await self.ledger.lock(
                    db, user_id, config.asset, fee.total, reference_id=f"withdrawal:{withdrawal.id}"
                )
                await db.commit()
            except Exception:
                # Lock and record are one unit; neither survives alone
                await db.rollback()
                raise
            await db.refresh(withdrawal)

        logger.info(
            f"Withdrawal {withdrawal.id} requested by user {user_id}: {amount} {config.asset} "
            f"+ fee {fee.network_fee} to {destination_address}"
        )
        return withdrawal

    async def cancel_withdrawal(self, withdrawal_id: int, user_id: int) -> Withdrawal:
        async def release(db: AsyncSession, w: Withdrawal):
            return await self.ledger.unlock(
                db, w.user_id, w.asset, w.total_deducted, reference_id=f"withdrawal:{w.id}"
            )

        withdrawal = await self._transition(
            withdrawal_id, WithdrawalStatus.cancelled,
            values={"completed_at": func.now()},
            ledger_step=release,
            user_id=user_id,
        )
        logger.info(f"Withdrawal {withdrawal_id} cancelled by user {user_id}")
        return withdrawal

    async def get_withdrawal(self, withdrawal_id: int) -> Withdrawal:
        async with self.session_factory() as db:
            withdrawal = await db.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal

    async def list_withdrawals(self, user_id: Optional[int] = None, status: Optional[str] = None) -> list[Withdrawal]:
        query = select(Withdrawal).order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
        if user_id is not None:
            query = query.where(Withdrawal.user_id == user_id)
        if status:
            query = query.where(Withdrawal.status == status)
        async with self.session_factory() as db:
            return list(await db.scalars(query))

    # ------------------------------------------------------------------
    # Signer callbacks
    # ------------------------------------------------------------------

    async def start_processing(self, withdrawal_id: int) -> Withdrawal:
        return await self._transition(
            withdrawal_id, WithdrawalStatus.processing, values={"processed_at": func.now()}
        )

    async def record_broadcast(self, withdrawal_id: int, tx_hash: str) -> Withdrawal:
        if not tx_hash:
            raise ValidationError("tx_hash is required")
        return await self._transition(
            withdrawal_id, WithdrawalStatus.broadcasted, values={"tx_hash": tx_hash}
        )

    async def record_confirmed(self, withdrawal_id: int) -> Withdrawal:
        async def settle(db: AsyncSession, w: Withdrawal):
            return await self.ledger.debit(
                db, w.user_id, w.asset, w.total_deducted, reference_id=f"withdrawal:{w.id}"
            )

        return await self._transition(
            withdrawal_id, WithdrawalStatus.confirmed,
            values={"completed_at": func.now()},
            ledger_step=settle,
        )

    async def record_failed(self, withdrawal_id: int, reason: str = "") -> Withdrawal:
        async def release(db: AsyncSession, w: Withdrawal):
            return await self.ledger.unlock(
                db, w.user_id, w.asset, w.total_deducted, reference_id=f"withdrawal:{w.id}"
            )

        return await self._transition(
            withdrawal_id, WithdrawalStatus.failed,
            values={"completed_at": func.now(), "failure_reason": (reason or "")[:500] or None},
            ledger_step=release,
        )

    async def _transition(
        self,
        withdrawal_id: int,
        target: str,
        values: Optional[dict] = None,
        ledger_step: Optional[LedgerStep] = None,
        user_id: Optional[int] = None,
    ) -> Withdrawal:
        async with self.session_factory() as db:
            withdrawal = await db.get(Withdrawal, withdrawal_id)
            if withdrawal is None:
                raise NotFound(f"Withdrawal {withdrawal_id} not found")
            if user_id is not None and withdrawal.user_id != user_id:
                raise PermissionDenied(f"Withdrawal {withdrawal_id} belongs to another user")

            current = withdrawal.status
            if target not in WITHDRAWAL_TRANSITIONS.get(current, set()):
                raise InvalidState(f"Withdrawal {withdrawal_id} cannot move from {current} to {target}")

            try:
                result = await db.execute(
                    update(Withdrawal)
                    .where(Withdrawal.id == withdrawal_id, Withdrawal.status == current)
                    .values(status=target, **(values or {}))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidState(f"Withdrawal {withdrawal_id} changed concurrently")
                if ledger_step is not None:
                    await ledger_step(db, withdrawal)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
            await db.refresh(withdrawal)

        logger.info(f"Withdrawal {withdrawal_id}: {current} -> {target}")
        return withdrawal
