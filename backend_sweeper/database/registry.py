"""
WalletRegistry: per-user deposit wallets and the singleton master wallet config.

No chain I/O. Addresses are stored in EIP-55 checksum form so lookups are
case-insensitive from the caller's point of view.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from backend_sweeper.core.exceptions import ConfigurationError, NotFoundError
from backend_sweeper.database.database import Database
from backend_sweeper.database.models import DepositWallet, MasterWalletConfig, Tier
from backend_sweeper.database.tables import DepositWalletRow, MasterWalletConfigRow
from backend_sweeper.sweeper_logging import get_logger
from backend_sweeper.utils.wallet_utils import is_valid_wallet, normalize_address, to_decimal

if TYPE_CHECKING:
    from backend_sweeper.keystore.store import SecretStore

logger = get_logger(__name__)


@dataclass
class WalletFilter:
    """Optional filter for list_wallets(). Unset fields do not filter."""

    user_id: str | None = None
    tier: Tier | None = None
    monitored_only: bool = True
    addresses: list[str] | None = None


def _wallet_from_row(row: DepositWalletRow) -> DepositWallet:
    return DepositWallet(
        address=row.address,
        user_id=row.user_id,
        secret_handle=row.secret_handle,
        last_scanned_at=row.last_scanned_at,
        tier=Tier(row.tier or Tier.NONE.value),
        last_balance=to_decimal(row.last_balance),
        is_monitored=bool(row.is_monitored),
        created_at=row.created_at,
    )


def _config_from_row(row: MasterWalletConfigRow) -> MasterWalletConfig:
    return MasterWalletConfig(
        address=row.wallet_address,
        secret_handle=row.secret_handle,
        min_reserve=to_decimal(row.min_bnb_reserve),
        gas_distribution_amount=to_decimal(row.gas_distribution_amount),
        sweep_threshold_high=to_decimal(row.sweep_threshold_high),
        sweep_threshold_medium=to_decimal(row.sweep_threshold_medium),
        sweep_threshold_low=to_decimal(row.sweep_threshold_low),
        auto_sweep_enabled=bool(row.auto_sweep_enabled),
        withdrawal_reserve=to_decimal(row.withdrawal_reserve),
        updated_at=row.updated_at,
    )


def validate_master_config(cfg: MasterWalletConfig) -> MasterWalletConfig:
    """Return cfg with a checksummed address, or raise ConfigurationError."""
    if not is_valid_wallet(cfg.address):
        raise ConfigurationError(f"invalid master wallet address: {cfg.address!r}")
    if not cfg.secret_handle:
        raise ConfigurationError("master wallet secret handle is required")
    low, medium, high = cfg.sweep_threshold_low, cfg.sweep_threshold_medium, cfg.sweep_threshold_high
    if not (low < medium < high):
        raise ConfigurationError(
            f"sweep thresholds must satisfy low < medium < high (got {low}, {medium}, {high})"
        )
    if low < 0:
        raise ConfigurationError("sweep thresholds must be non-negative")
    if cfg.min_reserve < 0:
        raise ConfigurationError("min_reserve must be non-negative")
    if cfg.gas_distribution_amount <= 0:
        raise ConfigurationError("gas_distribution_amount must be positive")
    if cfg.withdrawal_reserve < 0:
        raise ConfigurationError("withdrawal_reserve must be non-negative")
    cfg.address = normalize_address(cfg.address)
    return cfg


class WalletRegistry:
    """Deposit wallet records plus master wallet configuration."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # deposit wallets
    # ------------------------------------------------------------------

    def list_wallets(self, filter: WalletFilter | None = None) -> list[DepositWallet]:
        f = filter or WalletFilter()
        with self.db.session_scope() as session:
            q = session.query(DepositWalletRow)
            if f.monitored_only:
                q = q.filter(DepositWalletRow.is_monitored.is_(True))
            if f.user_id:
                q = q.filter(DepositWalletRow.user_id == f.user_id)
            if f.tier is not None:
                q = q.filter(DepositWalletRow.tier == Tier(f.tier).value)
            if f.addresses is not None:
                wanted = [normalize_address(a) for a in f.addresses if is_valid_wallet(a)]
                q = q.filter(DepositWalletRow.address.in_(wanted))
            rows = q.order_by(DepositWalletRow.id.asc()).all()
            return [_wallet_from_row(r) for r in rows]

    def get_wallet(self, address: str) -> DepositWallet:
        """Raises NotFoundError for unknown (or malformed) addresses."""
        if not is_valid_wallet(address):
            raise NotFoundError(f"wallet {address!r} not found")
        checksum = normalize_address(address)
        with self.db.session_scope() as session:
            row = session.query(DepositWalletRow).filter(DepositWalletRow.address == checksum).first()
            if row is None:
                raise NotFoundError(f"wallet {checksum} not found")
            return _wallet_from_row(row)

    def register_wallet(self, address: str, user_id: str, secret_handle: str) -> DepositWallet:
        """
        Insert a deposit wallet. Returns the existing record if the address is
        already registered (idempotent).
        """
        try:
            checksum = normalize_address(address)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        if not user_id:
            raise ConfigurationError("user_id is required")
        try:
            with self.db.session_scope() as session:
                row = DepositWalletRow(
                    address=checksum,
                    user_id=str(user_id),
                    secret_handle=secret_handle,
                    last_balance="0",
                    tier=Tier.NONE.value,
                    is_monitored=True,
                    created_at=int(time.time()),
                )
                session.add(row)
                session.flush()
                wallet = _wallet_from_row(row)
            logger.info("wallet_registered", wallet_id=checksum[:10], user_id=user_id)
            return wallet
        except IntegrityError:
            logger.info("wallet_already_exists", wallet_id=checksum[:10])
            return self.get_wallet(checksum)

    def provision_wallet(self, user_id: str, secret_store: SecretStore) -> str:
        """Generate a fresh account, store its key encrypted, register it; return the address."""
        address, handle = secret_store.generate()
        self.register_wallet(address, user_id, handle)
        return address

    def update_scan_state(
        self,
        address: str,
        *,
        balance: Decimal | None = None,
        tier: Tier | None = None,
        scanned_at: int | None = None,
    ) -> None:
        """Record the balance/tier/last-scanned timestamp observed by a scan or sweep."""
        values: dict = {}
        if balance is not None:
            values["last_balance"] = str(balance)
        if tier is not None:
            values["tier"] = Tier(tier).value
        if scanned_at is not None:
            values["last_scanned_at"] = int(scanned_at)
        if not values:
            return
        with self.db.session_scope() as session:
            updated = (
                session.query(DepositWalletRow)
                .filter(DepositWalletRow.address == address)
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                raise NotFoundError(f"wallet {address} not found")

    def set_monitored(self, address: str, monitored: bool) -> None:
        with self.db.session_scope() as session:
            updated = (
                session.query(DepositWalletRow)
                .filter(DepositWalletRow.address == normalize_address(address))
                .update({"is_monitored": bool(monitored)}, synchronize_session=False)
            )
            if updated != 1:
                raise NotFoundError(f"wallet {address} not found")

    # ------------------------------------------------------------------
    # master wallet config
    # ------------------------------------------------------------------

    def has_master_config(self) -> bool:
        with self.db.session_scope() as session:
            return session.query(MasterWalletConfigRow).first() is not None

    def get_master_config(self) -> MasterWalletConfig:
        """Raises ConfigurationError when no master wallet has been configured."""
        with self.db.session_scope() as session:
            row = session.query(MasterWalletConfigRow).order_by(MasterWalletConfigRow.id.asc()).first()
            if row is None:
                raise ConfigurationError("master wallet is not configured")
            return _config_from_row(row)

    def set_master_config(self, cfg: MasterWalletConfig) -> MasterWalletConfig:
        """Validate and upsert the singleton config."""
        cfg = validate_master_config(cfg)
        now = int(time.time())
        with self.db.session_scope() as session:
            row = session.query(MasterWalletConfigRow).order_by(MasterWalletConfigRow.id.asc()).first()
            if row is None:
                row = MasterWalletConfigRow()
                session.add(row)
            row.wallet_address = cfg.address
            row.secret_handle = cfg.secret_handle
            row.min_bnb_reserve = str(cfg.min_reserve)
            row.gas_distribution_amount = str(cfg.gas_distribution_amount)
            row.sweep_threshold_high = str(cfg.sweep_threshold_high)
            row.sweep_threshold_medium = str(cfg.sweep_threshold_medium)
            row.sweep_threshold_low = str(cfg.sweep_threshold_low)
            row.withdrawal_reserve = str(cfg.withdrawal_reserve)
            row.auto_sweep_enabled = bool(cfg.auto_sweep_enabled)
            row.updated_at = now
        cfg.updated_at = now
        logger.info(
            "master_config_updated",
            wallet_id=cfg.address[:10],
            min_reserve=cfg.min_reserve,
            gas_distribution_amount=cfg.gas_distribution_amount,
            auto_sweep_enabled=cfg.auto_sweep_enabled,
        )
        return cfg

    def set_auto_sweep(self, enabled: bool) -> None:
        with self.db.session_scope() as session:
            row = session.query(MasterWalletConfigRow).order_by(MasterWalletConfigRow.id.asc()).first()
            if row is None:
                raise ConfigurationError("master wallet is not configured")
            row.auto_sweep_enabled = bool(enabled)
            row.updated_at = int(time.time())
