from typing import Optional
import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from custody.config import ChainConfig
from custody.database import AsyncSessionLocal
from custody.exceptions import UnsupportedChain
from custody.services.monitors.account import AccountMonitor
from custody.services.monitors.base import ChainMonitor
from custody.services.monitors.utxo import UtxoMonitor

MONITOR_TYPES: dict[str, type[ChainMonitor]] = {
    "account": AccountMonitor,
    "utxo": UtxoMonitor,
}


def build_monitor(
    config: ChainConfig,
    session_factory: async_sessionmaker = AsyncSessionLocal,
    client: Optional[httpx.AsyncClient] = None,
) -> ChainMonitor:
    monitor_cls = MONITOR_TYPES.get(config.kind)
    if monitor_cls is None:
        raise UnsupportedChain(f"No monitor for chain kind '{config.kind}' ({config.chain})")
    return monitor_cls(config, session_factory=session_factory, client=client)
