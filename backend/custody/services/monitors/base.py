from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional
import httpx
from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from custody.config import ChainConfig, settings
from custody.database import AsyncSessionLocal
from custody.exceptions import UpstreamUnavailable
from custody.models.deposit import Deposit, DepositAddress, DepositStatus


@dataclass
class DetectedTransfer:
    """One inbound transfer seen on chain, already summed per (tx, address)."""

    tx_hash: str
    amount: Decimal
    block_number: Optional[int]
    confirmations: int


def to_units(raw: int, decimals: int) -> Decimal:
    return Decimal(int(raw)).scaleb(-decimals)


class ChainMonitor:
    """Polls one network for inbound transfers to deposit addresses.

    Subclasses implement ``fetch_transfers``, ``get_confirmations`` and
    ``estimate_network_fee``; recording and deduplication live here.
    """

    kind: str = ""

    def __init__(
        self,
        config: ChainConfig,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.chain = config.chain
        self.required_confirmations = config.required_confirmations
        self.session_factory = session_factory
        self.client = client or httpx.AsyncClient(timeout=settings.CHAIN_HTTP_TIMEOUT_SEC)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"{self.chain} endpoint unreachable: {e.__class__.__name__}: {e}") from e
        if resp.status_code >= 500 or resp.status_code == 429:
            raise UpstreamUnavailable(f"{self.chain} endpoint returned HTTP {resp.status_code}")
        return resp

    async def _get_json(self, url: str, **kwargs) -> Any:
        resp = await self._request("GET", url, **kwargs)
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"{self.chain} GET {url} failed with HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"{self.chain} returned malformed JSON") from e

    # ------------------------------------------------------------------
    # Capability interface
    # ------------------------------------------------------------------

    # Account-model chains scan block ranges and keep a per-address
    # high-water mark; UTXO explorers return full history per address.
    uses_watermark: bool = False

    async def get_tip_height(self) -> int:
        raise NotImplementedError

    async def fetch_transfers(self, address: str, watermark: Optional[int], tip: int) -> list[DetectedTransfer]:
        raise NotImplementedError

    async def get_confirmations(self, deposit: Deposit) -> tuple[int, Optional[int]]:
        """Return (confirmations, block_number); raise ReorgDetected if the tx is gone."""
        raise NotImplementedError

    async def estimate_network_fee(self, amount: Decimal) -> Decimal:
        raise NotImplementedError

    async def monitor_address(self, address: str, user_id: int) -> list[Deposit]:
        """Record deposits to ``address`` not seen before and return them."""
        async with self.session_factory() as db:
            record = await db.scalar(
                select(DepositAddress).where(
                    DepositAddress.chain == self.chain,
                    DepositAddress.address == address,
                )
            )
        watermark = record.last_scanned_block if record else None

        tip = await self.get_tip_height()
        if self.uses_watermark and watermark is not None and watermark >= tip:
            return []

        transfers = await self.fetch_transfers(address, watermark, tip)
        # Dust below the chain minimum is never recorded
        transfers = [t for t in transfers if t.amount > 0 and t.amount >= self.config.min_deposit]

        return await self._record(address, user_id, transfers, tip if self.uses_watermark else None)

    async def _record(
        self,
        address: str,
        user_id: int,
        transfers: list[DetectedTransfer],
        new_watermark: Optional[int],
    ) -> list[Deposit]:
        async with self.session_factory() as db:
            known = set()
            if transfers:
                known = set(await db.scalars(
                    select(Deposit.tx_hash).where(
                        Deposit.chain == self.chain,
                        Deposit.address == address,
                        Deposit.tx_hash.in_([t.tx_hash for t in transfers]),
                    )
                ))

            created = []
            for t in transfers:
                if t.tx_hash in known:
                    continue
                deposit = Deposit(
                    user_id=user_id,
                    chain=self.chain,
                    asset=self.config.asset,
                    tx_hash=t.tx_hash,
                    address=address,
                    amount=t.amount,
                    confirmations=t.confirmations,
                    required_confirmations=self.required_confirmations,
                    block_number=t.block_number,
                    status=DepositStatus.detected,
                )
                db.add(deposit)
                created.append(deposit)
                known.add(t.tx_hash)

            if new_watermark is not None:
                # Advances in the same transaction that records the deposits
                await db.execute(
                    update(DepositAddress)
                    .where(DepositAddress.chain == self.chain, DepositAddress.address == address)
                    .values(last_scanned_block=new_watermark)
                )

            try:
                await db.commit()
            except IntegrityError:
                # A concurrent scan recorded the same transfer; the watermark
                # rolled back too, so the next scan picks up anything missed
                await db.rollback()
                logger.warning(f"[{self.chain}] Concurrent deposit insert for {address}, deferring to next scan")
                return []

        for d in created:
            logger.info(
                f"[{self.chain}] Detected deposit {d.amount} {d.asset} to {address} "
                f"tx={d.tx_hash} ({d.confirmations}/{self.required_confirmations} confirmations)"
            )
        return created
