import asyncio
from dataclasses import dataclass, field
from typing import Optional
from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.sql import func

from custody.config import ChainConfig, get_chain_configs, settings
from custody.database import AsyncSessionLocal
from custody.exceptions import CustodyError, InvalidState, NotFound, ReorgDetected, UnsupportedChain
from custody.models.deposit import Deposit, DepositStatus
from custody.services.balance_ledger import BalanceLedger
from custody.services.monitors.base import ChainMonitor
from custody.services.monitors.registry import build_monitor


@dataclass
class SweepReport:
    checked: int = 0
    updated: int = 0
    confirmed: int = 0
    credited: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class ConfirmationTracker:
    """Moves deposits DETECTED -> CONFIRMING -> CONFIRMED -> CREDITED.

    Every transition is an UPDATE guarded by the status that was read, so a
    sweep racing another sweep (or a scan) loses quietly instead of applying a
    transition twice. Crediting flips CONFIRMED -> CREDITED and writes the
    balance in one transaction; only the writer that changed the row credits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        chains: Optional[dict[str, ChainConfig]] = None,
        monitors: Optional[dict[str, ChainMonitor]] = None,
        ledger: Optional[BalanceLedger] = None,
        deposit_timeout: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.chains = chains if chains is not None else get_chain_configs()
        self.monitors: dict[str, ChainMonitor] = dict(monitors or {})
        self._owned: list[ChainMonitor] = []
        self.ledger = ledger or BalanceLedger()
        self.deposit_timeout = deposit_timeout or settings.SWEEP_DEPOSIT_TIMEOUT_SEC

    def _monitor(self, chain: str) -> ChainMonitor:
        monitor = self.monitors.get(chain)
        if monitor is not None:
            return monitor
        config = self.chains.get(chain)
        if config is None:
            raise UnsupportedChain(f"No configuration for chain {chain}")
        monitor = build_monitor(config, session_factory=self.session_factory)
        self.monitors[chain] = monitor
        self._owned.append(monitor)
        return monitor

    async def aclose(self) -> None:
        for monitor in self._owned:
            await monitor.aclose()
        self._owned.clear()

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        async with self.session_factory() as db:
            deposits = list(await db.scalars(
                select(Deposit).where(Deposit.status.in_(DepositStatus.OPEN)).order_by(Deposit.id)
            ))

        for deposit in deposits:
            report.checked += 1
            try:
                await asyncio.wait_for(self._advance(deposit, report), timeout=self.deposit_timeout)
                continue
            except asyncio.TimeoutError:
                message = f"timed out after {self.deposit_timeout}s"
            except Exception as e:
                message = e.message if isinstance(e, CustodyError) else f"{e.__class__.__name__}: {e}"
            report.errors.append(f"deposit {deposit.id} ({deposit.chain} {deposit.tx_hash}): {message}")
            logger.error(f"Confirmation check failed for deposit {deposit.id}: {message}")

        if report.checked:
            logger.info(
                f"Confirmation sweep: checked={report.checked} updated={report.updated} "
                f"confirmed={report.confirmed} credited={report.credited} "
                f"failed={report.failed} errors={len(report.errors)}"
            )
        return report

    async def _advance(self, deposit: Deposit, report: SweepReport) -> None:
        # Left CONFIRMED by an interrupted sweep
        if deposit.status == DepositStatus.confirmed:
            if await self._credit(deposit.id):
                report.credited += 1
            return

        monitor = self._monitor(deposit.chain)
        try:
            confirmations, block_number = await monitor.get_confirmations(deposit)
        except ReorgDetected as e:
            if await self._fail(deposit, e.message):
                report.failed += 1
            return

        required = deposit.required_confirmations
        if confirmations >= required:
            status = DepositStatus.confirmed
        elif confirmations > 0:
            status = DepositStatus.confirming
        else:
            status = deposit.status

        if (
            status == deposit.status
            and confirmations == deposit.confirmations
            and (block_number is None or block_number == deposit.block_number)
        ):
            return

        values = {"confirmations": confirmations, "status": status}
        if block_number is not None:
            values["block_number"] = block_number

        async with self.session_factory() as db:
            result = await db.execute(
                update(Deposit)
                .where(Deposit.id == deposit.id, Deposit.status == deposit.status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            return

        report.updated += 1
        if status == DepositStatus.confirmed:
            report.confirmed += 1
            logger.info(
                f"Deposit {deposit.id} confirmed ({confirmations}/{required}) "
                f"{deposit.amount} {deposit.asset} on {deposit.chain}"
            )
            if await self._credit(deposit.id):
                report.credited += 1

    async def _fail(self, deposit: Deposit, reason: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(Deposit)
                .where(Deposit.id == deposit.id, Deposit.status == deposit.status)
                .values(status=DepositStatus.failed, failure_reason=reason[:500])
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount == 1:
            logger.warning(f"Deposit {deposit.id} failed: {reason}")
            return True
        return False

    async def _credit(self, deposit_id: int) -> bool:
        """Credit a CONFIRMED deposit exactly once. Returns False if another writer won."""
        async with self.session_factory() as db:
            # The status flip is the first write so it takes the row lock before anything is read
            result = await db.execute(
                update(Deposit)
                .where(Deposit.id == deposit_id, Deposit.status == DepositStatus.confirmed)
                .values(status=DepositStatus.credited, credited_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return False

            deposit = await db.get(Deposit, deposit_id, populate_existing=True)
            await self.ledger.credit(
                db, deposit.user_id, deposit.asset, deposit.amount,
                reference_id=f"deposit:{deposit.id}",
            )
            await db.commit()

        logger.info(
            f"Credited {deposit.amount} {deposit.asset} to user {deposit.user_id} from deposit {deposit.id}"
        )
        return True

    async def credit_deposit(self, deposit_id: int) -> Deposit:
        """Operator retry for a deposit stuck in CONFIRMED. No-op if already credited."""
        async with self.session_factory() as db:
            deposit = await db.get(Deposit, deposit_id)
        if deposit is None:
            raise NotFound(f"Deposit {deposit_id} not found")
        if deposit.status == DepositStatus.credited:
            return deposit
        if deposit.status != DepositStatus.confirmed:
            raise InvalidState(f"Deposit {deposit_id} is {deposit.status}, only CONFIRMED deposits can be credited")

        await self._credit(deposit_id)
        async with self.session_factory() as db:
            return await db.get(Deposit, deposit_id)
