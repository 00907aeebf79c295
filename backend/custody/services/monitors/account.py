from decimal import Decimal
from typing import Any, Optional
import httpx
from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker

from custody.config import ChainConfig, settings
from custody.database import AsyncSessionLocal
from custody.exceptions import ReorgDetected, UpstreamUnavailable
from custody.models.deposit import Deposit
from custody.services.monitors.base import ChainMonitor, DetectedTransfer, to_units

TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
NATIVE_TRANSFER_GAS = 21000
NATIVE_DECIMALS = 18


def _address_topic(address: str) -> str:
    return "0x" + address.lower().replace("0x", "").rjust(64, "0")


class AccountMonitor(ChainMonitor):
    """EVM-style chains (ETH, MATIC, BSC) over JSON-RPC.

    Native transfers come from an Etherscan-compatible explorer, since plain
    JSON-RPC cannot list transactions by recipient. Token deposits are read
    from ERC-20 ``Transfer`` logs filtered on the recipient topic.
    """

    kind = "account"
    uses_watermark = True

    def __init__(
        self,
        config: ChainConfig,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        client: Optional[httpx.AsyncClient] = None,
        lookback_blocks: Optional[int] = None,
        log_chunk_blocks: Optional[int] = None,
        rescan_blocks: Optional[int] = None,
    ):
        super().__init__(config, session_factory, client)
        self.lookback_blocks = lookback_blocks if lookback_blocks is not None else settings.SCAN_LOOKBACK_BLOCKS
        self.log_chunk_blocks = log_chunk_blocks or settings.LOG_CHUNK_BLOCKS
        self.rescan_blocks = rescan_blocks if rescan_blocks is not None else settings.SCAN_RESCAN_BLOCKS

    @property
    def is_token(self) -> bool:
        return bool(self.config.token_contract)

    async def _rpc(self, method: str, params: list) -> Any:
        resp = await self._request(
            "POST",
            self.config.rpc_url,
            json={
                "jsonrpc": "2.0",
                "method": method,
                "params": params,
                "id": 1,
            },
        )
        if resp.status_code != 200:
            raise UpstreamUnavailable(f"{self.chain} RPC {method} failed with HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"{self.chain} RPC {method} returned malformed JSON") from e
        if data.get("error"):
            raise UpstreamUnavailable(f"{self.chain} RPC {method} error: {data['error']}")
        return data.get("result")

    async def get_tip_height(self) -> int:
        result = await self._rpc("eth_blockNumber", [])
        if not result:
            raise UpstreamUnavailable(f"{self.chain} RPC returned no block number")
        return int(result, 16)

    async def fetch_transfers(self, address: str, watermark: Optional[int], tip: int) -> list[DetectedTransfer]:
        if watermark is None:
            from_block = max(tip - self.lookback_blocks, 0)
        else:
            # Re-read recent blocks a lagging explorer or node may have indexed late
            from_block = max(watermark + 1 - self.rescan_blocks, 0)

        if self.is_token:
            return await self._token_transfers(address, from_block, tip)
        return await self._native_transfers(address, from_block, tip)

    async def _native_transfers(self, address: str, from_block: int, to_block: int) -> list[DetectedTransfer]:
        if not self.config.explorer_url:
            raise UpstreamUnavailable(f"{self.chain} has no explorer endpoint for native transfer history")

        params = {
            "module": "account",
            "action": "txlist",
            "address": address,
            "startblock": from_block,
            "endblock": to_block,
            "sort": "asc",
        }
        if self.config.explorer_api_key:
            params["apikey"] = self.config.explorer_api_key

        data = await self._get_json(self.config.explorer_url, params=params)
        result = data.get("result")
        if data.get("status") != "1":
            # Explorers answer status "0" both for "no transactions" and for errors
            if isinstance(result, list) and not result:
                return []
            raise UpstreamUnavailable(f"{self.chain} explorer error: {data.get('message')}: {result}")

        transfers: dict[str, DetectedTransfer] = {}
        for tx in result:
            if (tx.get("to") or "").lower() != address.lower():
                continue
            if tx.get("isError", "0") != "0" or tx.get("txreceipt_status", "1") == "0":
                continue
            value = int(tx.get("value") or 0)
            if value <= 0:
                continue
            block = int(tx["blockNumber"])
            tx_hash = tx["hash"].lower()
            amount = to_units(value, self.config.decimals)
            if tx_hash in transfers:
                transfers[tx_hash].amount += amount
            else:
                transfers[tx_hash] = DetectedTransfer(
                    tx_hash=tx_hash,
                    amount=amount,
                    block_number=block,
                    confirmations=max(to_block - block, 0),
                )
        return list(transfers.values())

    async def _token_transfers(self, address: str, from_block: int, to_block: int) -> list[DetectedTransfer]:
        contract = self.config.token_contract.lower()
        recipient_topic = _address_topic(address)

        transfers: dict[str, DetectedTransfer] = {}
        start = from_block
        while start <= to_block:
            end = min(start + self.log_chunk_blocks - 1, to_block)
            logs = await self._rpc("eth_getLogs", [{
                "fromBlock": hex(start),
                "toBlock": hex(end),
                "address": contract,
                "topics": [TRANSFER_EVENT_TOPIC, None, recipient_topic],
            }])
            for log in logs or []:
                if log.get("removed"):
                    continue
                if (log.get("address") or "").lower() != contract:
                    continue
                topics = log.get("topics", [])
                if len(topics) < 3 or topics[0] != TRANSFER_EVENT_TOPIC:
                    continue
                if "0x" + topics[2][-40:].lower() != address.lower():
                    continue

                raw_amount = int(log["data"], 16)
                if raw_amount <= 0:
                    continue
                tx_hash = log["transactionHash"].lower()
                block = int(log["blockNumber"], 16)
                amount = to_units(raw_amount, self.config.decimals)
                # Several Transfer logs in one tx to the same address make one deposit
                if tx_hash in transfers:
                    transfers[tx_hash].amount += amount
                else:
                    transfers[tx_hash] = DetectedTransfer(
                        tx_hash=tx_hash,
                        amount=amount,
                        block_number=block,
                        confirmations=max(to_block - block, 0),
                    )
            start = end + 1
        return list(transfers.values())

    async def get_confirmations(self, deposit: Deposit) -> tuple[int, Optional[int]]:
        receipt = await self._rpc("eth_getTransactionReceipt", [deposit.tx_hash])
        if not receipt:
            raise ReorgDetected(f"Transaction {deposit.tx_hash} no longer found on {self.chain}")
        if receipt.get("status") != "0x1":
            raise ReorgDetected(f"Transaction {deposit.tx_hash} reverted on {self.chain}")

        block = int(receipt["blockNumber"], 16)
        tip = await self.get_tip_height()
        return max(tip - block, 0), block

    async def estimate_network_fee(self, amount: Decimal) -> Decimal:
        if self.is_token:
            # Charged in the withdrawn token, not in gas
            return self.config.fallback_fee

        gas_price = await self._rpc("eth_gasPrice", [])
        if not gas_price:
            raise UpstreamUnavailable(f"{self.chain} RPC returned no gas price")
        fee = to_units(int(gas_price, 16) * NATIVE_TRANSFER_GAS, NATIVE_DECIMALS)
        logger.debug(f"[{self.chain}] Network fee estimate {fee} {self.config.asset}")
        return fee
