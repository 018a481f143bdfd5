"""
Tier-based scheduler for the orchestration pass.

Classifies each wallet from its *current* token balance (never a cached tier):
- balance >= high            → high: scanned/swept every pass
- medium <= balance < high   → medium: at most once per hour
- low <= balance < medium    → low: at most once per day
- balance < low              → none: skipped

Lower bounds are inclusive. A wallet never scanned before is always due.
Wallets targeted explicitly (manual/emergency) bypass this module entirely.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal

from backend_sweeper.database.models import DepositWallet, SweepThresholds, Tier
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

DEFAULT_MEDIUM_INTERVAL_SEC = 3600.0
DEFAULT_LOW_INTERVAL_SEC = 86400.0
DEFAULT_MAX_WALLETS_PER_PASS = 5000


@dataclass
class PrioritySchedulerConfig:
    """Minimum seconds between gated scans per tier."""

    medium_interval_sec: float = DEFAULT_MEDIUM_INTERVAL_SEC
    low_interval_sec: float = DEFAULT_LOW_INTERVAL_SEC
    max_wallets_per_pass: int = DEFAULT_MAX_WALLETS_PER_PASS


@dataclass
class ScheduledWallet:
    wallet: DepositWallet
    balance: Decimal
    tier: Tier


def classify_tier(balance: Decimal, thresholds: SweepThresholds) -> Tier:
    """Pure function of balance and thresholds."""
    if balance >= thresholds.high:
        return Tier.HIGH
    if balance >= thresholds.medium:
        return Tier.MEDIUM
    if balance >= thresholds.low:
        return Tier.LOW
    return Tier.NONE


def is_due(
    tier: Tier,
    last_scanned_at: int | None,
    now_ts: int,
    config: PrioritySchedulerConfig | None = None,
) -> bool:
    cfg = config or PrioritySchedulerConfig()
    if tier == Tier.NONE:
        return False
    if tier == Tier.HIGH or last_scanned_at is None:
        return True
    elapsed = now_ts - last_scanned_at
    if tier == Tier.MEDIUM:
        return elapsed >= cfg.medium_interval_sec
    return elapsed >= cfg.low_interval_sec


def select_wallets_for_pass(
    observations: list[tuple[DepositWallet, Decimal]],
    thresholds: SweepThresholds,
    *,
    now_ts: int | None = None,
    config: PrioritySchedulerConfig | None = None,
) -> list[ScheduledWallet]:
    """
    Return the wallets due this pass, highest tier first then largest balance
    (deterministic: address breaks ties).
    """
    cfg = config or PrioritySchedulerConfig()
    now_ts = now_ts if now_ts is not None else int(time.time())

    selected: list[ScheduledWallet] = []
    skipped = 0
    for wallet, balance in observations:
        tier = classify_tier(balance, thresholds)
        if is_due(tier, wallet.last_scanned_at, now_ts, cfg):
            selected.append(ScheduledWallet(wallet=wallet, balance=balance, tier=tier))
        else:
            skipped += 1

    selected.sort(key=lambda s: (-s.tier.rank, -s.balance, s.wallet.address))
    selected = selected[: cfg.max_wallets_per_pass]

    logger.info(
        "priority_scheduler_pass",
        high_count=sum(1 for s in selected if s.tier == Tier.HIGH),
        medium_count=sum(1 for s in selected if s.tier == Tier.MEDIUM),
        low_count=sum(1 for s in selected if s.tier == Tier.LOW),
        skipped_count=skipped,
        total_selected=len(selected),
    )
    return selected
