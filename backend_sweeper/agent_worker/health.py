"""Hot wallet status and the master low-balance alert."""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from backend_sweeper.chain.client import ChainClient
from backend_sweeper.core.exceptions import NetworkError
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.registry import WalletRegistry
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)


@dataclass
class HotWalletStatus:
    address: str
    native_balance: Decimal
    asset_balance: Decimal
    is_connected: bool
    last_update: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "native_balance": str(self.native_balance),
            "asset_balance": str(self.asset_balance),
            "is_connected": self.is_connected,
            "last_update": self.last_update,
        }


def get_hot_wallet_status(registry: WalletRegistry, chain: ChainClient) -> HotWalletStatus:
    """Balances of the hot wallet; is_connected=False (zero balances) when the RPC is down."""
    cfg = registry.get_master_config()
    now = int(time.time())
    try:
        native = chain.get_native_balance(cfg.address)
        asset = chain.get_balance(cfg.address)
    except NetworkError as e:
        logger.warning("hot_wallet_status_unavailable", wallet_id=cfg.address[:10], error=str(e))
        return HotWalletStatus(cfg.address, Decimal("0"), Decimal("0"), False, now)
    return HotWalletStatus(cfg.address, native, asset, True, now)


def check_master_balance(
    registry: WalletRegistry,
    ledger: PersistenceLedger,
    chain: ChainClient,
) -> str | None:
    """
    Compare the master native balance with min_reserve. When below, record a
    failed batch gas-operation and return the alert message; else None.
    """
    cfg = registry.get_master_config()
    native = chain.get_native_balance(cfg.address)
    if native >= cfg.min_reserve:
        return None
    message = f"master wallet native balance {native} is below reserve {cfg.min_reserve}"
    logger.warning(
        "master_balance_low",
        wallet_id=cfg.address[:10],
        native_balance=native,
        min_reserve=cfg.min_reserve,
    )
    ledger.log_gas_operation(
        "batch",
        "failed",
        wallet_address=cfg.address,
        native_amount=native,
        error_message=message,
    )
    return message
