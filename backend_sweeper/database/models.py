"""
Domain models for database entities.

Deposit wallets, the master wallet configuration, deposits, sweep operations,
withdrawal requests and gas operations. Used by the registry/ledger layer;
no ORM coupling so the agent worker never touches SQLAlchemy rows.

Amounts are Decimal in token (or native) units; timestamps are Unix seconds.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from backend_sweeper.core.exceptions import InvalidTransitionError


class Tier(str, Enum):
    """Scan/sweep cadence tier. Ordered HIGH > MEDIUM > LOW > NONE."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"

    @property
    def rank(self) -> int:
        return TIER_RANK[self]


TIER_RANK: dict[Tier, int] = {
    Tier.HIGH: 3,
    Tier.MEDIUM: 2,
    Tier.LOW: 1,
    Tier.NONE: 0,
}


class DepositStatus(str, Enum):
    DETECTED = "detected"
    GAS_FUNDED = "gas_funded"
    SWEPT = "swept"
    FAILED = "failed"


class SweepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ENTITY_DEPOSIT = "deposit"
ENTITY_SWEEP = "sweep"
ENTITY_WITHDRAWAL = "withdrawal"

# Forward-only lifecycles. Terminal states have no outgoing edges.
ALLOWED_TRANSITIONS: dict[str, dict[str, frozenset[str]]] = {
    ENTITY_DEPOSIT: {
        DepositStatus.DETECTED.value: frozenset({DepositStatus.GAS_FUNDED.value, DepositStatus.FAILED.value}),
        DepositStatus.GAS_FUNDED.value: frozenset({DepositStatus.SWEPT.value, DepositStatus.FAILED.value}),
        DepositStatus.SWEPT.value: frozenset(),
        DepositStatus.FAILED.value: frozenset(),
    },
    ENTITY_SWEEP: {
        SweepStatus.PENDING.value: frozenset({SweepStatus.IN_PROGRESS.value, SweepStatus.FAILED.value}),
        SweepStatus.IN_PROGRESS.value: frozenset({SweepStatus.COMPLETED.value, SweepStatus.FAILED.value}),
        SweepStatus.COMPLETED.value: frozenset(),
        SweepStatus.FAILED.value: frozenset(),
    },
    ENTITY_WITHDRAWAL: {
        WithdrawalStatus.PENDING.value: frozenset({WithdrawalStatus.PROCESSING.value, WithdrawalStatus.FAILED.value}),
        WithdrawalStatus.PROCESSING.value: frozenset({WithdrawalStatus.COMPLETED.value, WithdrawalStatus.FAILED.value}),
        WithdrawalStatus.COMPLETED.value: frozenset(),
        WithdrawalStatus.FAILED.value: frozenset(),
    },
}


def check_transition(entity_type: str, current: str, new: str) -> None:
    """Raise InvalidTransitionError unless current -> new is a forward edge."""
    allowed = ALLOWED_TRANSITIONS[entity_type].get(current, frozenset())
    if new not in allowed:
        raise InvalidTransitionError(
            f"{entity_type} status cannot move from {current!r} to {new!r}"
        )


def _amount_dict(obj: Any) -> dict[str, Any]:
    """asdict() with Decimals and enums rendered as strings (API/JSON friendly)."""
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, Decimal):
            data[key] = str(value)
        elif isinstance(value, Enum):
            data[key] = value.value
    return data


@dataclass
class SweepThresholds:
    """Token balance thresholds; lower bound of each tier is inclusive."""

    high: Decimal
    medium: Decimal
    low: Decimal


@dataclass
class DepositWallet:
    """Per-user deposit address. Never deleted while the owning account exists."""

    address: str
    user_id: str
    secret_handle: str
    last_scanned_at: int | None = None
    """Unix timestamp of the last gated scan; None until first scanned."""
    tier: Tier = Tier.NONE
    last_balance: Decimal = Decimal("0")
    """Token balance recorded at the last scan/sweep; used to detect increases."""
    is_monitored: bool = True
    created_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data = _amount_dict(self)
        data.pop("secret_handle", None)
        return data


@dataclass
class MasterWalletConfig:
    """Singleton hot/master wallet configuration (defaults mirror the persisted defaults)."""

    address: str
    secret_handle: str
    min_reserve: Decimal = Decimal("1.0")
    """Native gas floor the master wallet never spends below (min_bnb_reserve)."""
    gas_distribution_amount: Decimal = Decimal("0.001")
    sweep_threshold_high: Decimal = Decimal("100.00")
    sweep_threshold_medium: Decimal = Decimal("20.00")
    sweep_threshold_low: Decimal = Decimal("5.00")
    auto_sweep_enabled: bool = False
    withdrawal_reserve: Decimal = Decimal("0")
    """Token amount kept in the hot wallet and never paid out to withdrawals."""
    updated_at: int | None = None

    @property
    def thresholds(self) -> SweepThresholds:
        return SweepThresholds(
            high=self.sweep_threshold_high,
            medium=self.sweep_threshold_medium,
            low=self.sweep_threshold_low,
        )

    def to_dict(self) -> dict[str, Any]:
        data = _amount_dict(self)
        data.pop("secret_handle", None)
        return data


@dataclass
class Deposit:
    id: int
    wallet_address: str
    user_id: str
    amount: Decimal
    asset: str
    status: DepositStatus
    gas_tx_hash: str | None = None
    sweep_tx_hash: str | None = None
    error_message: str | None = None
    created_at: int | None = None
    updated_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _amount_dict(self)


@dataclass
class SweepOperation:
    """One consolidation attempt for one wallet; at most one active per wallet."""

    id: int
    wallet_address: str
    amount: Decimal
    status: SweepStatus
    gas_tx_hash: str | None = None
    sweep_tx_hash: str | None = None
    error_message: str | None = None
    deposit_ids: list[int] = field(default_factory=list)
    created_at: int | None = None
    updated_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _amount_dict(self)


@dataclass
class WithdrawalRequest:
    id: str
    user_id: str
    to_address: str
    amount: Decimal
    status: WithdrawalStatus
    tx_hash: str | None = None
    error_message: str | None = None
    created_at: int | None = None
    processed_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _amount_dict(self)


@dataclass
class GasOperation:
    """Audit row for gas distributions, sweeps, and pass-level alerts."""

    id: int
    operation_type: str
    """distribute | sweep | batch"""
    status: str
    """completed | failed"""
    wallet_address: str | None = None
    native_amount: Decimal = Decimal("0")
    gas_used: int = 0
    fee_native: Decimal = Decimal("0")
    tx_hash: str | None = None
    error_message: str | None = None
    created_at: int | None = None


@dataclass
class StatusChange:
    entity_type: str
    entity_id: str
    from_status: str | None
    to_status: str
    note: str | None
    created_at: int


@dataclass
class GasStats:
    """Aggregates for getGasStats(days)."""

    days: int
    total_operations: int = 0
    completed_operations: int = 0
    failed_operations: int = 0
    total_native_distributed: Decimal = Decimal("0")
    total_fee_native: Decimal = Decimal("0")
    total_gas_used: int = 0
    total_swept: Decimal = Decimal("0")
    completed_sweeps: int = 0
    average_fee_per_operation: Decimal = Decimal("0")
    success_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return _amount_dict(self)


@dataclass
class WalletStats:
    total_wallets: int = 0
    total_deposits: int = 0
    total_deposit_amount: Decimal = Decimal("0")
    pending_withdrawals: int = 0
    pending_withdrawal_amount: Decimal = Decimal("0")
    recent_deposits: int = 0
    recent_deposit_amount: Decimal = Decimal("0")
    last_update: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _amount_dict(self)
