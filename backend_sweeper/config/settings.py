"""
Application settings and environment configuration.

Responsibilities:
- Load configuration from environment variables and .env files.
- Validate required settings and provide defaults for optional ones.
- Expose typed settings (RPC URLs, chain id, token, DB URL, worker cadence)
  for use across the chain client, agent worker, and API server.

The master wallet's business parameters (reserve, gas amount, thresholds,
auto_sweep_enabled) are not here: they live in the master_wallet_config table
and are managed through WalletRegistry.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache

from backend_sweeper.config.env import (
    BSC_MAINNET_CHAIN_ID,
    DEFAULT_TOKEN_CONTRACT,
    DEFAULT_TOKEN_DECIMALS,
    env_float,
    env_int,
    env_str,
    get_database_url,
    get_rpc_urls,
    load_sweeper_env,
)

DEFAULT_CONFIRMATION_DEPTH = 12
DEFAULT_CONFIRMATION_TIMEOUT_SEC = 180.0
DEFAULT_RPC_TIMEOUT_SEC = 15.0
DEFAULT_RPC_MAX_RETRIES = 3
DEFAULT_RPC_BACKOFF_BASE_SEC = 0.5
DEFAULT_SWEEP_INTERVAL_SEC = 300.0  # every 5 minutes
DEFAULT_SWEEP_CONCURRENCY = 8
DEFAULT_WALLET_LOCK_WAIT_SEC = 30.0
DEFAULT_TOKEN_TRANSFER_GAS_LIMIT = 65_000
DEFAULT_NATIVE_TRANSFER_GAS_LIMIT = 21_000


@dataclass
class Settings:
    """Process-level settings; one instance per process via get_settings()."""

    rpc_urls: list[str] = field(default_factory=lambda: ["http://127.0.0.1:8545"])
    chain_id: int = BSC_MAINNET_CHAIN_ID
    token_address: str = DEFAULT_TOKEN_CONTRACT
    token_decimals: int = DEFAULT_TOKEN_DECIMALS
    asset_symbol: str = "USDT"
    native_symbol: str = "BNB"
    database_url: str = "sqlite:///sweeper.db"
    private_key_secret: str = ""
    """Fernet key used by the SecretStore to encrypt deposit wallet keys."""
    master_wallet_address: str = ""
    master_wallet_private_key: str = ""
    """Imported into the SecretStore at startup, then dropped from Settings."""
    confirmation_depth: int = DEFAULT_CONFIRMATION_DEPTH
    confirmation_timeout_sec: float = DEFAULT_CONFIRMATION_TIMEOUT_SEC
    rpc_timeout_sec: float = DEFAULT_RPC_TIMEOUT_SEC
    rpc_max_retries: int = DEFAULT_RPC_MAX_RETRIES
    rpc_backoff_base_sec: float = DEFAULT_RPC_BACKOFF_BASE_SEC
    sweep_interval_sec: float = DEFAULT_SWEEP_INTERVAL_SEC
    sweep_concurrency: int = DEFAULT_SWEEP_CONCURRENCY
    wallet_lock_wait_sec: float = DEFAULT_WALLET_LOCK_WAIT_SEC
    token_transfer_gas_limit: int = DEFAULT_TOKEN_TRANSFER_GAS_LIMIT
    native_transfer_gas_limit: int = DEFAULT_NATIVE_TRANSFER_GAS_LIMIT
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    def __post_init__(self) -> None:
        self.confirmation_depth = max(1, int(self.confirmation_depth))
        self.rpc_max_retries = max(0, int(self.rpc_max_retries))
        self.sweep_interval_sec = max(1.0, float(self.sweep_interval_sec))
        self.sweep_concurrency = max(1, int(self.sweep_concurrency))


def load_settings() -> Settings:
    """Build Settings from environment with defaults."""
    load_sweeper_env()
    return Settings(
        rpc_urls=get_rpc_urls(),
        chain_id=env_int("CHAIN_ID", BSC_MAINNET_CHAIN_ID),
        token_address=env_str("TOKEN_CONTRACT_ADDRESS")
        or env_str("NEXT_PUBLIC_USDT_CONTRACT_ADDRESS", DEFAULT_TOKEN_CONTRACT),
        token_decimals=env_int("TOKEN_DECIMALS", DEFAULT_TOKEN_DECIMALS),
        asset_symbol=env_str("ASSET_SYMBOL", "USDT"),
        native_symbol=env_str("NATIVE_SYMBOL", "BNB"),
        database_url=get_database_url(),
        private_key_secret=env_str("PRIVATE_KEY_SECRET"),
        master_wallet_address=env_str("MASTER_WALLET_ADDRESS"),
        master_wallet_private_key=env_str("MASTER_WALLET_PRIVATE_KEY")
        or env_str("HOT_WALLET_PRIVATE_KEY"),
        confirmation_depth=env_int("CONFIRMATION_DEPTH", DEFAULT_CONFIRMATION_DEPTH),
        confirmation_timeout_sec=env_float("CONFIRMATION_TIMEOUT_SEC", DEFAULT_CONFIRMATION_TIMEOUT_SEC),
        rpc_timeout_sec=env_float("RPC_TIMEOUT_SEC", DEFAULT_RPC_TIMEOUT_SEC),
        rpc_max_retries=env_int("RPC_MAX_RETRIES", DEFAULT_RPC_MAX_RETRIES),
        rpc_backoff_base_sec=env_float("RPC_BACKOFF_BASE_SEC", DEFAULT_RPC_BACKOFF_BASE_SEC),
        sweep_interval_sec=env_float("SWEEP_INTERVAL_SEC", DEFAULT_SWEEP_INTERVAL_SEC),
        sweep_concurrency=env_int("SWEEP_CONCURRENCY", DEFAULT_SWEEP_CONCURRENCY),
        wallet_lock_wait_sec=env_float("WALLET_LOCK_WAIT_SEC", DEFAULT_WALLET_LOCK_WAIT_SEC),
        token_transfer_gas_limit=env_int("TOKEN_TRANSFER_GAS_LIMIT", DEFAULT_TOKEN_TRANSFER_GAS_LIMIT),
        native_transfer_gas_limit=env_int("NATIVE_TRANSFER_GAS_LIMIT", DEFAULT_NATIVE_TRANSFER_GAS_LIMIT),
        api_host=env_str("API_HOST", "0.0.0.0"),
        api_port=env_int("API_PORT", 8000),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the current application settings.

    Cached for the process lifetime; tests build Settings(...) directly instead.
    """
    return load_settings()
