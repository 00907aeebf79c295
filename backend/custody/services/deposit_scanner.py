import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from custody.config import ChainConfig, get_chain_configs, settings
from custody.core.redis import get_redis
from custody.database import AsyncSessionLocal
from custody.exceptions import CustodyError
from custody.models.deposit import DepositAddress, DepositAddressStatus
from custody.services.confirmation_tracker import ConfirmationTracker, SweepReport
from custody.services.monitors.base import ChainMonitor
from custody.services.monitors.registry import build_monitor

SCAN_SLOT_KEY = "custody:deposit_scan:slot"

# Deletes the slot only if this process still owns it
_RELEASE_SLOT_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


@dataclass
class ChainScanReport:
    chain: str
    addresses_scanned: int = 0
    deposits_detected: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class CycleReport:
    chains: dict[str, ChainScanReport] = field(default_factory=dict)
    sweep: Optional[SweepReport] = None
    errors: list[str] = field(default_factory=list)

    @property
    def deposits_detected(self) -> int:
        return sum(c.deposits_detected for c in self.chains.values())

    @property
    def all_errors(self) -> list[str]:
        collected = list(self.errors)
        for chain_report in self.chains.values():
            collected.extend(chain_report.errors)
        if self.sweep is not None:
            collected.extend(self.sweep.errors)
        return collected


def _describe(e: Exception) -> str:
    if isinstance(e, CustodyError):
        return e.message
    return f"{e.__class__.__name__}: {e}"


class DepositScanner:
    """Periodic scan of every active deposit address, followed by a sweep.

    Only one cycle runs at a time: a process-local lock covers overlapping
    triggers in this process, a Redis slot covers other processes. A trigger
    that finds a cycle in flight is skipped, not queued.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        chains: Optional[dict[str, ChainConfig]] = None,
        monitors: Optional[dict[str, ChainMonitor]] = None,
        tracker: Optional[ConfirmationTracker] = None,
        redis_factory: Callable[[], Awaitable] = get_redis,
        address_timeout: Optional[float] = None,
        slot_ttl: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.chains = chains if chains is not None else get_chain_configs()
        self._owned: list[ChainMonitor] = []
        if monitors is None:
            monitors = {}
            for name, config in self.chains.items():
                monitors[name] = build_monitor(config, session_factory=session_factory)
                self._owned.append(monitors[name])
        self.monitors = monitors
        self.tracker = tracker or ConfirmationTracker(
            session_factory, chains=self.chains, monitors=self.monitors
        )
        self.redis_factory = redis_factory
        self.address_timeout = address_timeout or settings.SCAN_ADDRESS_TIMEOUT_SEC
        self.slot_ttl = slot_ttl or settings.SCAN_LOCK_TTL_SEC

        self._cycle_lock = asyncio.Lock()
        self._sweep_lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._stopping = False

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(self, scheduler: AsyncIOScheduler) -> None:
        scheduler.add_job(
            self.run_cycle, "interval",
            seconds=settings.DEPOSIT_SCAN_INTERVAL_SEC,
            id="deposit_scan", max_instances=1, coalesce=True, replace_existing=True,
        )
        scheduler.add_job(
            self.run_sweep, "interval",
            seconds=settings.CONFIRMATION_SWEEP_INTERVAL_SEC,
            id="confirmation_sweep", max_instances=1, coalesce=True, replace_existing=True,
        )
        self._scheduler = scheduler

    async def shutdown(self) -> None:
        """Stop scheduling and wait for the in-flight cycle and sweep to finish."""
        self._stopping = True
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        async with self._cycle_lock:
            pass
        async with self._sweep_lock:
            pass
        for monitor in self._owned:
            await monitor.aclose()
        self._owned.clear()
        await self.tracker.aclose()
        logger.info("Deposit scanner stopped")

    # ------------------------------------------------------------------
    # Cross-process slot
    # ------------------------------------------------------------------

    async def _acquire_slot(self) -> tuple[bool, Optional[str]]:
        token = uuid.uuid4().hex
        try:
            redis = await self.redis_factory()
            acquired = await redis.set(SCAN_SLOT_KEY, token, nx=True, ex=self.slot_ttl)
        except (RedisError, OSError) as e:
            # Duplicate work across processes is harmless (unique keys and
            # guarded transitions), so a Redis outage must not stop scanning
            logger.warning(f"Scan slot unavailable, continuing with process lock only: {e}")
            return True, None
        return bool(acquired), token

    async def _release_slot(self, token: Optional[str]) -> None:
        if token is None:
            return
        try:
            redis = await self.redis_factory()
            await redis.eval(_RELEASE_SLOT_SCRIPT, 1, SCAN_SLOT_KEY, token)
        except (RedisError, OSError) as e:
            logger.warning(f"Could not release scan slot, it expires in {self.slot_ttl}s: {e}")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Optional[CycleReport]:
        if self._stopping:
            return None
        if self._cycle_lock.locked():
            logger.warning("Deposit scan already in flight, skipping trigger")
            return None

        async with self._cycle_lock:
            acquired, token = await self._acquire_slot()
            if not acquired:
                logger.warning("Deposit scan running in another process, skipping trigger")
                return None
            try:
                return await self._cycle()
            finally:
                await self._release_slot(token)

    async def _cycle(self) -> CycleReport:
        report = CycleReport()
        results = await asyncio.gather(*(self.scan_chain(name) for name in self.chains))
        for chain_report in results:
            report.chains[chain_report.chain] = chain_report

        report.sweep = await self.run_sweep(wait=True)

        scanned = sum(c.addresses_scanned for c in report.chains.values())
        errors = report.all_errors
        logger.info(
            f"Deposit scan cycle: chains={len(report.chains)} addresses={scanned} "
            f"new_deposits={report.deposits_detected} errors={len(errors)}"
        )
        for error in errors:
            logger.warning(f"Scan cycle error: {error}")
        return report

    async def _active_addresses(self, chain: str) -> list[DepositAddress]:
        async with self.session_factory() as db:
            return list(await db.scalars(
                select(DepositAddress).where(
                    DepositAddress.chain == chain,
                    DepositAddress.status == DepositAddressStatus.active,
                ).order_by(DepositAddress.id)
            ))

    async def scan_chain(self, chain: str) -> ChainScanReport:
        """Scan every active address on ``chain``. Never raises."""
        report = ChainScanReport(chain=chain)
        config = self.chains.get(chain)
        monitor = self.monitors.get(chain)
        if config is None or monitor is None:
            report.errors.append(f"{chain}: no monitor configured")
            return report

        try:
            addresses = await self._active_addresses(chain)
        except Exception as e:
            report.errors.append(f"{chain}: {_describe(e)}")
            logger.error(f"[{chain}] Could not load deposit addresses: {e}")
            return report

        semaphore = asyncio.Semaphore(max(config.max_concurrency, 1))

        async def scan_one(record: DepositAddress):
            async with semaphore:
                report.addresses_scanned += 1
                try:
                    created = await asyncio.wait_for(
                        monitor.monitor_address(record.address, record.user_id),
                        timeout=self.address_timeout,
                    )
                except asyncio.TimeoutError:
                    report.errors.append(f"{chain}:{record.address}: timed out after {self.address_timeout}s")
                    return
                except Exception as e:
                    report.errors.append(f"{chain}:{record.address}: {_describe(e)}")
                    return
                report.deposits_detected += len(created)

        await asyncio.gather(*(scan_one(a) for a in addresses))
        return report

    async def run_sweep(self, wait: bool = False) -> Optional[SweepReport]:
        """Run the confirmation sweep; a scheduled trigger is skipped while one is running."""
        if self._stopping and not wait:
            return None
        if self._sweep_lock.locked() and not wait:
            logger.debug("Confirmation sweep already in flight, skipping trigger")
            return None
        async with self._sweep_lock:
            try:
                return await self.tracker.sweep()
            except Exception as e:
                logger.error(f"Confirmation sweep failed: {_describe(e)}")
                return SweepReport(errors=[f"sweep: {_describe(e)}"])
