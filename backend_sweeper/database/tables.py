"""
SQLAlchemy tables for the registry, ledger and secret store.

Amounts are stored as strings (Decimal text) so no backend rounds them; the
ledger converts to Decimal at the boundary. Timestamps are Unix seconds.
"""

from __future__ import annotations

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

_ACTIVE_SWEEP_WHERE = "status IN ('pending', 'in_progress')"


class DepositWalletRow(Base):
    """One row per user deposit address."""

    __tablename__ = "deposit_wallets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String(42), unique=True, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    secret_handle = Column(String(64), nullable=False)
    last_scanned_at = Column(Integer, nullable=True)
    last_balance = Column(String(80), nullable=False, default="0")
    tier = Column(String(16), nullable=False, default="none", index=True)
    is_monitored = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(Integer, nullable=True)


class MasterWalletConfigRow(Base):
    """Singleton master/hot wallet configuration; only the first row is used."""

    __tablename__ = "master_wallet_config"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False)
    secret_handle = Column(String(64), nullable=False)
    min_bnb_reserve = Column(String(80), nullable=False, default="1.0")
    gas_distribution_amount = Column(String(80), nullable=False, default="0.001")
    sweep_threshold_high = Column(String(80), nullable=False, default="100.00")
    sweep_threshold_medium = Column(String(80), nullable=False, default="20.00")
    sweep_threshold_low = Column(String(80), nullable=False, default="5.00")
    withdrawal_reserve = Column(String(80), nullable=False, default="0")
    auto_sweep_enabled = Column(Boolean, nullable=False, default=False)
    updated_at = Column(Integer, nullable=True)


class DepositRow(Base):
    __tablename__ = "deposits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(String(80), nullable=False)
    asset = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    gas_tx_hash = Column(String(66), nullable=True)
    sweep_tx_hash = Column(String(66), nullable=True)
    error_message = Column(String(1024), nullable=True)
    created_at = Column(Integer, nullable=False, index=True)
    updated_at = Column(Integer, nullable=True)


class SweepOperationRow(Base):
    """
    Sweep attempt. The partial unique index is the storage-level guard for
    "one active sweep per wallet" across processes.
    """

    __tablename__ = "sweep_operations"
    __table_args__ = (
        Index(
            "ux_sweep_operations_active_wallet",
            "wallet_address",
            unique=True,
            sqlite_where=text(_ACTIVE_SWEEP_WHERE),
            postgresql_where=text(_ACTIVE_SWEEP_WHERE),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False, index=True)
    amount = Column(String(80), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    gas_tx_hash = Column(String(66), nullable=True)
    sweep_tx_hash = Column(String(66), nullable=True)
    error_message = Column(String(1024), nullable=True)
    deposit_ids = Column(String(1024), nullable=True)  # JSON array of deposit ids
    created_at = Column(Integer, nullable=False, index=True)
    updated_at = Column(Integer, nullable=True)


class WithdrawalRow(Base):
    """Withdrawal request; id is the idempotency key supplied by the user-facing flow."""

    __tablename__ = "withdrawals"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    to_address = Column(String(64), nullable=False)
    amount = Column(String(80), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    tx_hash = Column(String(66), nullable=True)
    error_message = Column(String(1024), nullable=True)
    created_at = Column(Integer, nullable=False, index=True)
    processed_at = Column(Integer, nullable=True)


class StatusHistoryRow(Base):
    """Append-only audit trail of every status change."""

    __tablename__ = "status_history"
    __table_args__ = (Index("ix_status_history_entity", "entity_type", "entity_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(16), nullable=False)
    entity_id = Column(String(64), nullable=False)
    from_status = Column(String(16), nullable=True)
    to_status = Column(String(16), nullable=False)
    note = Column(String(1024), nullable=True)
    created_at = Column(Integer, nullable=False)


class GasOperationRow(Base):
    __tablename__ = "gas_operations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    operation_type = Column(String(16), nullable=False, index=True)
    wallet_address = Column(String(42), nullable=True, index=True)
    native_amount = Column(String(80), nullable=False, default="0")
    gas_used = Column(Integer, nullable=False, default=0)
    fee_native = Column(String(80), nullable=False, default="0")
    status = Column(String(16), nullable=False, index=True)
    tx_hash = Column(String(66), nullable=True)
    error_message = Column(String(1024), nullable=True)
    created_at = Column(Integer, nullable=False, index=True)


class WalletSecretRow(Base):
    """Fernet-encrypted private key behind an opaque handle."""

    __tablename__ = "wallet_secrets"

    handle = Column(String(64), primary_key=True)
    address = Column(String(42), unique=True, nullable=False, index=True)
    encrypted_key = Column(Text, nullable=False)
    created_at = Column(Integer, nullable=False)
