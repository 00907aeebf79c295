import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from decimal import Decimal
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from custody.config import ChainConfig
from custody.database import Base
import custody.models  # noqa: F401 - register all models

# BIP32 test vector 1 master key
TEST_XPUB = (
    "xpub661MyMwAqRbcFtXgS5sYJABqqG9YLmC4Q1Rdap9gSE8NqtwybGhePY2gZ29ESFjqJoCu1Rupje8YtGqsefD265TMg7usUDFdp6W1EGMcet8"
)
TEST_XPRV = (
    "xprv9s21ZrQH143K3QTDL4LXw2F7HEK3wJUD2nW2nRk4stbPy6cq3jPPqjiChkVvvNKmPGJxWUtg6LnF5kejMRNNU3TGtRBeJgk33yuGBxrMPHi"
)
USDT_CONTRACT = "0xc2132d05d31c914a87c6611c10748aeb04b58e8f"


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File-backed so concurrent sessions get their own connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/custody.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def chains():
    return {
        "ETH": ChainConfig(
            chain="ETH", kind="account", asset="ETH", decimals=18,
            required_confirmations=12,
            rpc_url="https://rpc.test/eth",
            explorer_url="https://explorer.test/api",
            xpub=TEST_XPUB,
            min_deposit=Decimal("0.0001"), fallback_fee=Decimal("0.002"),
        ),
        "MATIC": ChainConfig(
            chain="MATIC", kind="account", asset="USDT", decimals=6,
            required_confirmations=128,
            rpc_url="https://rpc.test/polygon",
            token_contract=USDT_CONTRACT,
            xpub=TEST_XPUB,
            min_deposit=Decimal("0.01"), fallback_fee=Decimal("2"),
        ),
        "BTC": ChainConfig(
            chain="BTC", kind="utxo", asset="BTC", decimals=8,
            required_confirmations=3,
            rpc_url="https://esplora.test/api",
            address_family="btc",
            xpub=TEST_XPUB,
            min_deposit=Decimal("0.0001"), fallback_fee=Decimal("0.0001"),
        ),
    }


class FakeMonitor:
    """Scripted stand-in for a chain monitor."""

    def __init__(self, required_confirmations=12, fee=Decimal("0.001")):
        self.required_confirmations = required_confirmations
        self.fee = fee
        self.depths = {}
        self.detected = {}
        self.calls = []
        self.closed = False

    async def monitor_address(self, address, user_id):
        self.calls.append(address)
        result = self.detected.get(address, [])
        if isinstance(result, Exception):
            raise result
        return result

    async def get_confirmations(self, deposit):
        depth = self.depths[deposit.tx_hash]
        if isinstance(depth, Exception):
            raise depth
        return depth

    async def estimate_network_fee(self, amount):
        if isinstance(self.fee, Exception):
            raise self.fee
        return self.fee

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_monitor():
    return FakeMonitor
