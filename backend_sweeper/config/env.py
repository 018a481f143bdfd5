"""
Environment variable loading and validation for the sweeper.

- BSC_RPC_URL: primary JSON-RPC endpoint (read from .env)
- BSC_RPC_FALLBACK_URLS: comma-separated fallback endpoints, tried in order
- CHAIN_ID: EVM chain id used when signing (default: 56, BSC mainnet)
- TOKEN_CONTRACT_ADDRESS: swept token contract (default: BSC USDT)
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

# Project root: config is backend_sweeper/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

BSC_MAINNET_CHAIN_ID = 56
DEFAULT_RPC_URL = "https://bsc-dataseed1.binance.org/"
DEFAULT_FALLBACK_RPC_URLS = (
    "https://bsc-dataseed2.binance.org/",
    "https://bsc-dataseed3.binance.org/",
)
# BEP20 USDT
DEFAULT_TOKEN_CONTRACT = "0x55d398326f99059fF775485246999027B3197955"
DEFAULT_TOKEN_DECIMALS = 18


def load_sweeper_env() -> None:
    """Load .env from project root. Safe to call multiple times; never overrides set vars."""
    from dotenv import load_dotenv

    if _ENV_PATH.is_file():
        load_dotenv(_ENV_PATH, override=False)


def env_str(name: str, default: str = "") -> str:
    """Return a stripped env value, or default when unset/blank."""
    raw = (os.getenv(name) or "").strip()
    return raw or default


def env_int(name: str, default: int) -> int:
    raw = env_str(name)
    return int(raw) if raw else default


def env_float(name: str, default: float) -> float:
    raw = env_str(name)
    return float(raw) if raw else default


def get_rpc_urls() -> list[str]:
    """
    Resolve the JSON-RPC endpoint list from env.
    Order: BSC_RPC_URL first, then BSC_RPC_FALLBACK_URLS; duplicates dropped.
    """
    load_sweeper_env()
    primary = env_str("BSC_RPC_URL") or env_str("NEXT_PUBLIC_BSC_RPC_URL") or DEFAULT_RPC_URL
    raw_fallbacks = env_str("BSC_RPC_FALLBACK_URLS")
    if raw_fallbacks:
        fallbacks = [u.strip() for u in raw_fallbacks.split(",") if u.strip()]
    else:
        fallbacks = list(DEFAULT_FALLBACK_RPC_URLS)
    urls: list[str] = []
    for url in [primary, *fallbacks]:
        if url not in urls:
            urls.append(url)
    return urls


def get_database_url() -> str:
    """Return SWEEPER_DB_URL / DATABASE_URL if set; else SQLite from SWEEPER_DB_PATH or default."""
    load_sweeper_env()
    url = env_str("SWEEPER_DB_URL") or env_str("DATABASE_URL")
    if url:
        return url
    path = env_str("SWEEPER_DB_PATH", "sweeper.db")
    return f"sqlite:///{path}"


def mask_url(url: str) -> str:
    """Strip credentials/api keys from an RPC URL before it is logged."""
    if "api-key=" in url:
        url = url.split("api-key=")[0] + "api-key=***"
    if "@" in url and "//" in url:
        scheme, rest = url.split("//", 1)
        url = f"{scheme}//***@{rest.split('@', 1)[1]}"
    return url
