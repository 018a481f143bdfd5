"""
Tests for tier classification and per-pass wallet selection.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from backend_sweeper.agent_worker.priority_scheduler import (
    PrioritySchedulerConfig,
    classify_tier,
    is_due,
    select_wallets_for_pass,
)
from backend_sweeper.database.models import DepositWallet, SweepThresholds, Tier

THRESHOLDS = SweepThresholds(high=Decimal("100"), medium=Decimal("20"), low=Decimal("5"))
NOW = 1_700_000_000


def _wallet(suffix: str, last_scanned_at: int | None = None) -> DepositWallet:
    return DepositWallet(
        address="0x" + suffix.rjust(40, "0"),
        user_id="u",
        secret_handle="ks_x",
        last_scanned_at=last_scanned_at,
    )


@pytest.mark.parametrize(
    "balance,tier",
    [
        ("150", Tier.HIGH),
        ("100", Tier.HIGH),
        ("99.99", Tier.MEDIUM),
        ("20", Tier.MEDIUM),
        ("19.999999", Tier.LOW),
        ("5", Tier.LOW),
        ("4.99", Tier.NONE),
        ("0", Tier.NONE),
    ],
)
def test_classify_tier_lower_bounds_inclusive(balance, tier):
    assert classify_tier(Decimal(balance), THRESHOLDS) == tier


def test_is_due_by_tier():
    cfg = PrioritySchedulerConfig()
    assert is_due(Tier.HIGH, NOW - 1, NOW, cfg) is True
    assert is_due(Tier.NONE, None, NOW, cfg) is False
    # never scanned is always due
    assert is_due(Tier.LOW, None, NOW, cfg) is True
    assert is_due(Tier.MEDIUM, NOW - 3599, NOW, cfg) is False
    assert is_due(Tier.MEDIUM, NOW - 3600, NOW, cfg) is True
    assert is_due(Tier.LOW, NOW - 3600, NOW, cfg) is False
    assert is_due(Tier.LOW, NOW - 86400, NOW, cfg) is True


def test_select_orders_by_tier_then_balance():
    observations = [
        (_wallet("a1", NOW - 7200), Decimal("25")),  # medium, due
        (_wallet("a2", NOW - 60), Decimal("150")),  # high, always due
        (_wallet("a3", NOW - 60), Decimal("30")),  # medium, not due yet
        (_wallet("a4"), Decimal("6")),  # low, never scanned
        (_wallet("a5"), Decimal("1")),  # none
        (_wallet("a6", NOW - 60), Decimal("500")),  # high
    ]
    selected = select_wallets_for_pass(observations, THRESHOLDS, now_ts=NOW)
    assert [s.wallet.address[-2:] for s in selected] == ["a6", "a2", "a1", "a4"]
    assert [s.tier for s in selected] == [Tier.HIGH, Tier.HIGH, Tier.MEDIUM, Tier.LOW]


def test_select_respects_max_wallets_per_pass():
    observations = [(_wallet(f"b{i}"), Decimal("200") + i) for i in range(10)]
    cfg = PrioritySchedulerConfig(max_wallets_per_pass=3)
    selected = select_wallets_for_pass(observations, THRESHOLDS, now_ts=NOW, config=cfg)
    assert len(selected) == 3
    assert selected[0].balance == Decimal("209")
