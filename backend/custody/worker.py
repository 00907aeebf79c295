"""Standalone deposit worker: runs the scan and sweep schedule without the API.

    python -m custody.worker
"""
import asyncio
import signal
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger
from custody.core.redis import close_redis
from custody.logging_setup import configure_logging
from custody.services.deposit_scanner import DepositScanner


async def run_worker() -> None:
    configure_logging()
    scanner = DepositScanner()
    scheduler = AsyncIOScheduler()
    scanner.schedule(scheduler)
    scheduler.start()
    logger.info(f"Deposit worker started for chains: {', '.join(scanner.chains) or 'none'}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    # First cycle immediately rather than one interval after start
    await scanner.run_cycle()
    await stop.wait()

    logger.info("Shutdown requested, waiting for in-flight cycle")
    await scanner.shutdown()
    await close_redis()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
