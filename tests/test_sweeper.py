"""
Tests for SweepExecutor: gas before transfer, exact amounts, locking.
"""

from __future__ import annotations

import threading
from decimal import Decimal

import pytest

from backend_sweeper.core.exceptions import NetworkError, WalletLockedError
from backend_sweeper.database.models import DepositStatus, SweepStatus

from tests.conftest import MASTER_ADDRESS, wei


def test_sweep_funds_gas_then_transfers_full_balance(controller, master, deposit_wallet, chain):
    address = deposit_wallet("123.456789012345678901")
    controller.scanner.scan(address)

    op = controller.sweeper.sweep(address)

    assert op.status == SweepStatus.COMPLETED
    assert op.amount == Decimal("123.456789012345678901")
    assert chain.kinds() == ["native", "token"]
    assert chain.submitted[1]["units"] == wei("123.456789012345678901")
    assert chain.token_of(address) == 0
    assert chain.token_of(MASTER_ADDRESS) == wei("123.456789012345678901")
    assert op.gas_tx_hash == chain.submitted[0]["hash"]
    assert op.sweep_tx_hash == chain.submitted[1]["hash"]

    deposits = controller.ledger.list_deposits(wallet_address=address)
    assert [d.status for d in deposits] == [DepositStatus.SWEPT]
    history = [h.to_status for h in controller.ledger.status_history("deposit", deposits[0].id)]
    assert history == ["detected", "gas_funded", "swept"]
    assert controller.registry.get_wallet(address).last_balance == Decimal("0")
    assert controller.ledger.total_swept() == Decimal("123.456789012345678901")


def test_sweep_empty_wallet_is_noop(controller, master, deposit_wallet, chain):
    address = deposit_wallet("0")
    assert controller.sweeper.sweep(address) is None
    assert chain.submitted == []


def test_sweep_records_deposit_when_none_open(controller, master, deposit_wallet):
    address = deposit_wallet("10")
    op = controller.sweeper.sweep(address)
    assert op.status == SweepStatus.COMPLETED
    assert len(op.deposit_ids) == 1


def test_gas_failure_never_signs_transfer(controller, master, deposit_wallet, chain):
    address = deposit_wallet("40")
    controller.scanner.scan(address)
    chain.outcome["native"] = "revert"

    op = controller.sweeper.sweep(address)

    assert op.status == SweepStatus.FAILED
    assert chain.kinds() == ["native"]
    assert op.gas_tx_hash is not None
    deposits = controller.ledger.list_deposits(wallet_address=address)
    assert [d.status for d in deposits] == [DepositStatus.FAILED]


def test_reserve_shortfall_keeps_deposits_detected(controller, master, deposit_wallet, chain):
    address = deposit_wallet("40")
    controller.scanner.scan(address)
    chain.set_native(MASTER_ADDRESS, "0.9")

    op = controller.sweeper.sweep(address)

    assert op.status == SweepStatus.FAILED
    assert chain.submitted == []
    deposit = controller.ledger.list_deposits(wallet_address=address)[0]
    assert deposit.status == DepositStatus.DETECTED
    assert "reserve" in deposit.error_message

    # refilled master: the next attempt sweeps the same deposit
    chain.set_native(MASTER_ADDRESS, "5")
    retry = controller.sweeper.sweep(address)
    assert retry.status == SweepStatus.COMPLETED
    assert retry.deposit_ids == [deposit.id]


def test_transfer_revert_marks_failed_with_hashes(controller, master, deposit_wallet, chain):
    address = deposit_wallet("40")
    chain.outcome["token"] = "revert"
    op = controller.sweeper.sweep(address)
    assert op.status == SweepStatus.FAILED
    assert op.sweep_tx_hash == chain.submitted[-1]["hash"]
    deposit = controller.ledger.list_deposits(wallet_address=address)[0]
    assert deposit.status == DepositStatus.FAILED
    assert deposit.gas_tx_hash == op.gas_tx_hash


def test_unacknowledged_transfer_stays_in_progress(controller, master, deposit_wallet, chain):
    """Broadcast failed after signing and no receipt: not failed, not retried."""
    address = deposit_wallet("40")
    chain.submit_errors["token"] = NetworkError("connection reset")
    op = controller.sweeper.sweep(address)
    assert op.status == SweepStatus.IN_PROGRESS
    # hash was recorded before the broadcast attempt
    assert op.sweep_tx_hash is not None
    assert controller.ledger.active_sweep_operation(address).id == op.id

    chain.submit_errors.clear()
    with pytest.raises(WalletLockedError):
        controller.sweeper.sweep(address)
    assert chain.kinds() == ["native"]
    assert controller.initialize().unresolved == [f"sweep:{op.id}"]


def test_lost_transfer_reply_resolved_from_receipt(controller, master, deposit_wallet, chain):
    address = deposit_wallet("40")
    chain.lost_acks.add("token")
    op = controller.sweeper.sweep(address)
    assert op.status == SweepStatus.COMPLETED
    assert op.sweep_tx_hash == chain.submitted[-1]["hash"]
    assert chain.token_of(address) == 0


def test_concurrent_sweeps_only_one_submits(controller, master, deposit_wallet, chain):
    """A second caller finds the wallet lock held and does not submit a duplicate."""
    address = deposit_wallet("250")
    controller.scanner.scan(address)

    gate = threading.Event()
    release = threading.Event()
    original = chain.get_balance_units

    def slow_balance(addr, *, timeout=None):
        if addr.lower() == address.lower() and not gate.is_set():
            gate.set()
            release.wait(5)
        return original(addr, timeout=timeout)

    chain.get_balance_units = slow_balance
    results = {}

    def first():
        results["first"] = controller.sweeper.sweep(address)

    t = threading.Thread(target=first)
    t.start()
    assert gate.wait(5)
    with pytest.raises(WalletLockedError):
        controller.emergency_sweep(address)
    release.set()
    t.join(10)

    assert results["first"].status == SweepStatus.COMPLETED
    assert chain.kinds().count("token") == 1


def test_active_operation_blocks_new_sweep(controller, master, deposit_wallet):
    address = deposit_wallet("40")
    deposit = controller.ledger.record_deposit(address, "user-1", Decimal("40"))
    controller.ledger.create_sweep_operation(address, Decimal("40"), [deposit.id])
    with pytest.raises(WalletLockedError):
        controller.sweeper.sweep(address)
    with pytest.raises(WalletLockedError):
        controller.ledger.create_sweep_operation(address, Decimal("40"), [deposit.id])
