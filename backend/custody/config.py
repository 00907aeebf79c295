from decimal import Decimal
from typing import Optional
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    DATABASE_URL: str
    REDIS_URL: str
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    LOG_LEVEL: str = "INFO"

    # Chains scanned by the deposit worker
    ENABLED_CHAINS: list[str] = ["ETH", "MATIC", "BSC", "BTC"]

    # EVM JSON-RPC endpoints
    ETHEREUM_RPC_URL: str = "https://eth.llamarpc.com"
    POLYGON_RPC_URL: str = "https://polygon-rpc.com"
    BSC_RPC_URL: str = "https://bsc-dataseed.binance.org/"

    # Etherscan-compatible explorers (native transfer history)
    ETH_EXPLORER_URL: str = "https://api.etherscan.io/api"
    MATIC_EXPLORER_URL: str = "https://api.polygonscan.com/api"
    BSC_EXPLORER_URL: str = "https://api.bscscan.com/api"
    ETH_SCAN_API_KEY: str = ""
    MATIC_SCAN_API_KEY: str = ""
    BSC_SCAN_API_KEY: str = ""

    # Esplora REST endpoint for BTC
    BTC_API_URL: str = "https://blockstream.info/api"
    BTC_NETWORK: str = "mainnet"

    # Confirmation depth per chain (deeper for higher reorg risk)
    ETH_REQUIRED_CONFIRMATIONS: int = 12
    MATIC_REQUIRED_CONFIRMATIONS: int = 128
    BSC_REQUIRED_CONFIRMATIONS: int = 15
    BTC_REQUIRED_CONFIRMATIONS: int = 3

    # Optional ERC-20 deposits on Polygon (e.g. USDT instead of native MATIC)
    MATIC_TOKEN_SYMBOL: str = ""
    MATIC_TOKEN_CONTRACT: str = ""
    MATIC_TOKEN_DECIMALS: int = 6

    # Account-level extended public keys, never private keys
    ETH_XPUB: str = ""
    BTC_XPUB: str = ""

    # Scheduling
    DEPOSIT_SCAN_INTERVAL_SEC: int = 30
    CONFIRMATION_SWEEP_INTERVAL_SEC: int = 30
    SCAN_LOCK_TTL_SEC: int = 300

    # Upstream limits
    SCAN_ADDRESS_TIMEOUT_SEC: float = 20.0
    CHAIN_HTTP_TIMEOUT_SEC: float = 10.0
    SCAN_LOOKBACK_BLOCKS: int = 1000
    # Recent blocks re-read on every scan; explorers and load-balanced nodes lag the tip
    SCAN_RESCAN_BLOCKS: int = 12
    LOG_CHUNK_BLOCKS: int = 2000
    CHAIN_MAX_CONCURRENCY: int = 5

    # Persistence limits
    DB_COMMAND_TIMEOUT_SEC: float = 15.0
    SWEEP_DEPOSIT_TIMEOUT_SEC: float = 30.0

    OPTIMISTIC_MAX_RETRIES: int = 5
    FEE_SAFETY_BUFFER: Decimal = Decimal("0.10")

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def convert_database_url(cls, v):
        if isinstance(v, str) and v.startswith("postgresql://"):
            return v.replace("postgresql://", "postgresql+asyncpg://", 1)
        return v


settings = Settings()


class ChainConfig(BaseModel):
    """Static description of one monitored network."""

    chain: str
    kind: str  # "account" or "utxo"
    asset: str
    decimals: int
    required_confirmations: int
    rpc_url: str
    explorer_url: str = ""
    explorer_api_key: str = ""
    token_contract: Optional[str] = None
    address_family: str = "evm"
    network: str = "mainnet"
    xpub: str = ""
    min_deposit: Decimal = Decimal("0")
    fallback_fee: Decimal = Decimal("0")
    max_concurrency: int = 5

    @property
    def counter_id(self) -> str:
        return f"deposit_index:{self.address_family}"


def get_chain_configs(source: Optional[Settings] = None) -> dict[str, ChainConfig]:
    s = source or settings
    configs = {
        "ETH": ChainConfig(
            chain="ETH", kind="account", asset="ETH", decimals=18,
            required_confirmations=s.ETH_REQUIRED_CONFIRMATIONS,
            rpc_url=s.ETHEREUM_RPC_URL,
            explorer_url=s.ETH_EXPLORER_URL, explorer_api_key=s.ETH_SCAN_API_KEY,
            xpub=s.ETH_XPUB,
            min_deposit=Decimal("0.0001"), fallback_fee=Decimal("0.002"),
            max_concurrency=s.CHAIN_MAX_CONCURRENCY,
        ),
        "MATIC": ChainConfig(
            chain="MATIC", kind="account", asset="MATIC", decimals=18,
            required_confirmations=s.MATIC_REQUIRED_CONFIRMATIONS,
            rpc_url=s.POLYGON_RPC_URL,
            explorer_url=s.MATIC_EXPLORER_URL, explorer_api_key=s.MATIC_SCAN_API_KEY,
            xpub=s.ETH_XPUB,
            min_deposit=Decimal("0.0001"), fallback_fee=Decimal("0.01"),
            max_concurrency=s.CHAIN_MAX_CONCURRENCY,
        ),
        "BSC": ChainConfig(
            chain="BSC", kind="account", asset="BNB", decimals=18,
            required_confirmations=s.BSC_REQUIRED_CONFIRMATIONS,
            rpc_url=s.BSC_RPC_URL,
            explorer_url=s.BSC_EXPLORER_URL, explorer_api_key=s.BSC_SCAN_API_KEY,
            xpub=s.ETH_XPUB,
            min_deposit=Decimal("0.0001"), fallback_fee=Decimal("0.001"),
            max_concurrency=s.CHAIN_MAX_CONCURRENCY,
        ),
        "BTC": ChainConfig(
            chain="BTC", kind="utxo", asset="BTC", decimals=8,
            required_confirmations=s.BTC_REQUIRED_CONFIRMATIONS,
            rpc_url=s.BTC_API_URL,
            address_family="btc", network=s.BTC_NETWORK,
            xpub=s.BTC_XPUB,
            min_deposit=Decimal("0.0001"), fallback_fee=Decimal("0.0001"),
            max_concurrency=s.CHAIN_MAX_CONCURRENCY,
        ),
    }
    if s.MATIC_TOKEN_CONTRACT:
        # Polygon deposits are tracked as the configured token rather than native MATIC
        configs["MATIC"] = configs["MATIC"].model_copy(update={
            "asset": s.MATIC_TOKEN_SYMBOL or "USDT",
            "decimals": s.MATIC_TOKEN_DECIMALS,
            "token_contract": s.MATIC_TOKEN_CONTRACT,
            "min_deposit": Decimal("0.01"),
            "fallback_fee": Decimal("1"),
        })
    return {name: cfg for name, cfg in configs.items() if name in s.ENABLED_CHAINS}
