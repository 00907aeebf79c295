from decimal import Decimal
import httpx
import pytest
from custody.exceptions import ReorgDetected, UpstreamUnavailable
from custody.models.deposit import Deposit, DepositStatus
from custody.services.monitors.utxo import UtxoMonitor

ADDRESS = "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq"
OTHER = "1A1zP1eP5QGefi2DMPTfTL5SLmv7DivfNa"


def _tx(txid, outputs, height=None):
    status = {"confirmed": True, "block_height": height} if height is not None else {"confirmed": False}
    return {
        "txid": txid,
        "vout": [{"scriptpubkey_address": addr, "value": value} for addr, value in outputs],
        "status": status,
    }


class FakeEsplora:
    def __init__(self, tip=800000):
        self.tip = tip
        self.pages = {}
        self.statuses = {}
        self.fees = {"1": 25.0, "3": 10.0, "6": 5.0}
        self.paths = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")
        self.paths.append(path)
        if path == "/blocks/tip/height":
            return httpx.Response(200, text=str(self.tip))
        if path == "/fee-estimates":
            return httpx.Response(200, json=self.fees)
        if path.startswith("/tx/") and path.endswith("/status"):
            txid = path.split("/")[2]
            if txid not in self.statuses:
                return httpx.Response(404, text="Transaction not found")
            return httpx.Response(200, json=self.statuses[txid])
        if path in self.pages:
            return httpx.Response(200, json=self.pages[path])
        return httpx.Response(200, json=[])

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.mark.asyncio
async def test_outputs_to_address_are_summed(session_factory, chains):
    esplora = FakeEsplora(tip=800000)
    esplora.pages[f"/address/{ADDRESS}/txs"] = [
        _tx("aa" * 32, [(ADDRESS, 100_000), (OTHER, 5_000), (ADDRESS, 50_000)], height=799998),
        _tx("bb" * 32, [(ADDRESS, 20_000)]),
        _tx("cc" * 32, [(OTHER, 90_000)], height=799990),
        _tx("dd" * 32, [(ADDRESS, 500)], height=799990),
    ]
    monitor = UtxoMonitor(chains["BTC"], session_factory, client=esplora.client())

    created = {d.tx_hash: d for d in await monitor.monitor_address(ADDRESS, 1)}
    assert set(created) == {"aa" * 32, "bb" * 32}

    confirmed = created["aa" * 32]
    assert confirmed.amount == Decimal("0.0015")
    assert confirmed.confirmations == 3
    assert confirmed.block_number == 799998
    assert confirmed.status == DepositStatus.detected

    pending = created["bb" * 32]
    assert pending.amount == Decimal("0.0002")
    assert pending.confirmations == 0
    assert pending.block_number is None

    # Already recorded: repeated scans stay empty
    assert await monitor.monitor_address(ADDRESS, 1) == []
    await monitor.aclose()


@pytest.mark.asyncio
async def test_history_is_paginated(session_factory, chains):
    esplora = FakeEsplora(tip=800100)
    first_page = [_tx(f"{i:064x}", [(ADDRESS, 10_000)], height=800000 + i) for i in range(25)]
    esplora.pages[f"/address/{ADDRESS}/txs"] = first_page
    esplora.pages[f"/address/{ADDRESS}/txs/chain/{first_page[-1]['txid']}"] = [
        _tx("ff" * 32, [(ADDRESS, 30_000)], height=799000),
    ]
    monitor = UtxoMonitor(chains["BTC"], session_factory, client=esplora.client())

    created = await monitor.monitor_address(ADDRESS, 1)
    assert len(created) == 26
    assert f"/address/{ADDRESS}/txs/chain/{first_page[-1]['txid']}" in esplora.paths


@pytest.mark.asyncio
async def test_confirmations_and_missing_tx(session_factory, chains):
    esplora = FakeEsplora(tip=800000)
    esplora.statuses["aa" * 32] = {"confirmed": True, "block_height": 799998}
    esplora.statuses["bb" * 32] = {"confirmed": False}
    monitor = UtxoMonitor(chains["BTC"], session_factory, client=esplora.client())

    assert await monitor.get_confirmations(Deposit(chain="BTC", tx_hash="aa" * 32)) == (3, 799998)
    assert await monitor.get_confirmations(Deposit(chain="BTC", tx_hash="bb" * 32)) == (0, None)
    with pytest.raises(ReorgDetected):
        await monitor.get_confirmations(Deposit(chain="BTC", tx_hash="ee" * 32))


@pytest.mark.asyncio
async def test_fee_from_three_block_target(session_factory, chains):
    esplora = FakeEsplora()
    monitor = UtxoMonitor(chains["BTC"], session_factory, client=esplora.client())
    # 10 sat/vB * 141 vB
    assert await monitor.estimate_network_fee(Decimal("0.1")) == Decimal("0.0000141")

    esplora.fees = {}
    with pytest.raises(UpstreamUnavailable):
        await monitor.estimate_network_fee(Decimal("0.1"))


@pytest.mark.asyncio
async def test_server_error_raises_unavailable(session_factory, chains):
    def handler(request):
        return httpx.Response(503)

    monitor = UtxoMonitor(chains["BTC"], session_factory, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(UpstreamUnavailable):
        await monitor.monitor_address(ADDRESS, 1)
