"""
Tests for PersistenceLedger: lifecycle transitions, history, idempotent writes.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from backend_sweeper.core.exceptions import InvalidTransitionError, PersistenceError, WalletLockedError
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.models import DepositStatus, SweepStatus, WithdrawalStatus

WALLET = "0x8ba1f109551bD432803012645Ac136ddd64DBA72"


@pytest.fixture
def ledger(db) -> PersistenceLedger:
    return PersistenceLedger(db)


def test_deposit_lifecycle_is_forward_only(ledger):
    deposit = ledger.record_deposit(WALLET, "user-1", Decimal("10.5"), now=100)
    assert deposit.status == DepositStatus.DETECTED
    assert deposit.asset == "USDT"

    with pytest.raises(InvalidTransitionError):
        ledger.transition_deposits([deposit.id], DepositStatus.SWEPT)

    ledger.transition_deposits([deposit.id], DepositStatus.GAS_FUNDED, gas_tx_hash="0xgas", now=101)
    ledger.transition_deposits([deposit.id], DepositStatus.SWEPT, sweep_tx_hash="0xsweep", now=102)
    with pytest.raises(InvalidTransitionError):
        ledger.transition_deposits([deposit.id], DepositStatus.FAILED)

    swept = ledger.get_deposit(deposit.id)
    assert (swept.gas_tx_hash, swept.sweep_tx_hash) == ("0xgas", "0xsweep")
    history = ledger.status_history("deposit", deposit.id)
    assert [(h.from_status, h.to_status) for h in history] == [
        (None, "detected"),
        ("detected", "gas_funded"),
        ("gas_funded", "swept"),
    ]
    assert ledger.open_deposits(WALLET) == []


def test_record_deposit_rejects_non_positive(ledger):
    with pytest.raises(PersistenceError):
        ledger.record_deposit(WALLET, "user-1", Decimal("0"))


def test_one_active_sweep_per_wallet(ledger):
    d = ledger.record_deposit(WALLET, "user-1", Decimal("5"))
    op = ledger.create_sweep_operation(WALLET, Decimal("5"), [d.id])
    assert ledger.active_sweep_operation(WALLET).id == op.id
    with pytest.raises(WalletLockedError):
        ledger.create_sweep_operation(WALLET, Decimal("5"), [d.id])

    ledger.transition_sweep(op.id, SweepStatus.IN_PROGRESS)
    ledger.transition_sweep(op.id, SweepStatus.FAILED, error_message="boom")
    assert ledger.active_sweep_operation(WALLET) is None
    # a finished operation no longer blocks the wallet
    again = ledger.create_sweep_operation(WALLET, Decimal("5"), [d.id])
    assert again.deposit_ids == [d.id]


def test_total_swept_is_exact(ledger):
    for amount in ("0.1", "0.2", "1000000.000000000000000001"):
        d = ledger.record_deposit(WALLET, "user-1", Decimal(amount))
        op = ledger.create_sweep_operation(WALLET, Decimal(amount), [d.id])
        ledger.transition_sweep(op.id, SweepStatus.IN_PROGRESS)
        ledger.transition_sweep(op.id, SweepStatus.COMPLETED)
    assert ledger.total_swept() == Decimal("1000000.300000000000000001")


def test_create_withdrawal_is_idempotent(ledger):
    first = ledger.create_withdrawal("w-1", "user-1", WALLET, Decimal("7"))
    second = ledger.create_withdrawal("w-1", "user-2", WALLET, Decimal("99"))
    assert second.amount == Decimal("7")
    assert second.user_id == first.user_id
    assert len(ledger.list_withdrawals()) == 1


def test_withdrawal_finish_requires_claim(ledger):
    ledger.create_withdrawal("w-1", "user-1", WALLET, Decimal("7"))
    with pytest.raises(InvalidTransitionError):
        ledger.finish_withdrawal("w-1", WithdrawalStatus.COMPLETED)
    assert ledger.claim_withdrawal("w-1")
    done = ledger.finish_withdrawal("w-1", WithdrawalStatus.COMPLETED, tx_hash="0xabc")
    assert done.status == WithdrawalStatus.COMPLETED
    assert done.processed_at is not None
    assert ledger.in_flight_withdrawal_total() == Decimal("0")


def test_wallet_stats_counts(ledger):
    d = ledger.record_deposit(WALLET, "user-1", Decimal("3"))
    ledger.transition_deposits([d.id], DepositStatus.GAS_FUNDED)
    ledger.transition_deposits([d.id], DepositStatus.SWEPT)
    ledger.create_withdrawal("w-1", "user-1", WALLET, Decimal("2"))
    stats = ledger.wallet_stats()
    assert stats.total_deposits == 1
    assert stats.total_deposit_amount == Decimal("3")
    assert stats.pending_withdrawals == 1
    assert stats.pending_withdrawal_amount == Decimal("2")
