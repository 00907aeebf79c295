from decimal import Decimal
from typing import Optional
from sqlalchemy import select

from custody.exceptions import ReorgDetected, UpstreamUnavailable
from custody.models.deposit import Deposit
from custody.services.monitors.base import ChainMonitor, DetectedTransfer, to_units

# Esplora returns 25 confirmed transactions per page
ESPLORA_PAGE_SIZE = 25
TYPICAL_TX_VBYTES = 141
FEE_TARGET_BLOCKS = "3"


class UtxoMonitor(ChainMonitor):
    """Bitcoin over an Esplora REST API."""

    kind = "utxo"

    @property
    def base_url(self) -> str:
        return self.config.rpc_url.rstrip("/")

    async def get_tip_height(self) -> int:
        resp = await self._request("GET", f"{self.base_url}/blocks/tip/height")
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"{self.chain} tip height failed with HTTP {resp.status_code}")
        try:
            return int(resp.text.strip())
        except ValueError as e:
            raise UpstreamUnavailable(f"{self.chain} returned a non-numeric tip height") from e

    async def _known_txids(self, address: str) -> set[str]:
        async with self.session_factory() as db:
            return set(await db.scalars(
                select(Deposit.tx_hash).where(Deposit.chain == self.chain, Deposit.address == address)
            ))

    def _confirmations(self, status: dict, tip: int) -> tuple[int, Optional[int]]:
        if status and status.get("confirmed") and status.get("block_height") is not None:
            height = int(status["block_height"])
            return max(tip - height + 1, 0), height
        return 0, None

    async def fetch_transfers(self, address: str, watermark: Optional[int], tip: int) -> list[DetectedTransfer]:
        known = await self._known_txids(address)
        transfers: dict[str, DetectedTransfer] = {}

        url = f"{self.base_url}/address/{address}/txs"
        while True:
            page = await self._get_json(url)
            if not page:
                break

            for tx in page:
                txid = tx["txid"]
                if txid in known or txid in transfers:
                    continue
                value = sum(
                    int(out.get("value") or 0)
                    for out in tx.get("vout", [])
                    if out.get("scriptpubkey_address") == address
                )
                if value <= 0:
                    continue
                confirmations, height = self._confirmations(tx.get("status") or {}, tip)
                transfers[txid] = DetectedTransfer(
                    tx_hash=txid,
                    amount=to_units(value, self.config.decimals),
                    block_number=height,
                    confirmations=confirmations,
                )

            confirmed = [tx for tx in page if (tx.get("status") or {}).get("confirmed")]
            if len(confirmed) < ESPLORA_PAGE_SIZE or all(tx["txid"] in known for tx in confirmed):
                break
            url = f"{self.base_url}/address/{address}/txs/chain/{confirmed[-1]['txid']}"

        return list(transfers.values())

    async def get_confirmations(self, deposit: Deposit) -> tuple[int, Optional[int]]:
        resp = await self._request("GET", f"{self.base_url}/tx/{deposit.tx_hash}/status")
        if resp.status_code == 404:
            raise ReorgDetected(f"Transaction {deposit.tx_hash} no longer found on {self.chain}")
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"{self.chain} tx status failed with HTTP {resp.status_code}")
        try:
            status = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"{self.chain} returned malformed tx status") from e

        if not status.get("confirmed"):
            return 0, None
        tip = await self.get_tip_height()
        return self._confirmations(status, tip)

    async def estimate_network_fee(self, amount: Decimal) -> Decimal:
        rates = await self._get_json(f"{self.base_url}/fee-estimates")
        rate = rates.get(FEE_TARGET_BLOCKS) if isinstance(rates, dict) else None
        if rate is None:
            raise UpstreamUnavailable(f"{self.chain} fee estimate for {FEE_TARGET_BLOCKS} blocks unavailable")
        sats = Decimal(str(rate)) * TYPICAL_TX_VBYTES
        return sats.scaleb(-self.config.decimals)
