"""
Tests for AutomationController: initialization, start/stop, passes, triggers.
"""

from __future__ import annotations

import threading
import time
from decimal import Decimal

import pytest

from backend_sweeper.agent_worker.runtime import ControllerState, build_controller
from backend_sweeper.core.exceptions import ConfigurationError, NotInitializedError
from backend_sweeper.database.models import SweepStatus, WithdrawalStatus

from tests.conftest import MASTER_ADDRESS, wait_until

USER_WALLET = "0x8ba1f109551bD432803012645Ac136ddd64DBA72"


def test_operations_require_initialize(controller):
    assert controller.is_initialized() is False
    with pytest.raises(NotInitializedError):
        controller.start()
    with pytest.raises(NotInitializedError):
        controller.trigger_manual_sweep()
    with pytest.raises(NotInitializedError):
        controller.get_gas_stats()
    assert controller.status()["is_initialized"] is False


def test_initialize_bootstraps_master_and_clears_key(controller, settings):
    report = controller.initialize()
    assert report.to_dict() == {"resolved": [], "unresolved": []}
    cfg = controller.registry.get_master_config()
    assert cfg.address == MASTER_ADDRESS
    assert controller.secrets.address_for(cfg.secret_handle) == MASTER_ADDRESS
    assert settings.master_wallet_private_key == ""
    assert controller.state == ControllerState.IDLE


def test_initialize_rejects_mismatched_master_address(settings, chain, db):
    settings.master_wallet_address = USER_WALLET
    ctrl = build_controller(settings, chain=chain, db=db)
    with pytest.raises(ConfigurationError, match="does not match"):
        ctrl.initialize()
    assert ctrl.is_initialized() is False


def test_initialize_without_key_or_config(settings, chain, db):
    settings.master_wallet_private_key = ""
    ctrl = build_controller(settings, chain=chain, db=db)
    with pytest.raises(ConfigurationError, match="not configured"):
        ctrl.initialize()


def test_start_stop_persists_auto_sweep(controller, master):
    assert controller.start() is True
    assert controller.start() is False
    assert controller.is_running()
    assert controller.registry.get_master_config().auto_sweep_enabled is True
    # the first pass runs immediately after start
    assert wait_until(lambda: controller.last_pass is not None)

    assert controller.stop() is True
    assert controller.stop() is False
    assert controller.state == ControllerState.IDLE
    assert controller.registry.get_master_config().auto_sweep_enabled is False


def test_restart_waits_for_unfinished_pass(controller, master, monkeypatch):
    """stop() times out mid-pass: Stopping until the old loop exits, never two loops."""
    loop_threads: set[threading.Thread] = set()
    release = threading.Event()

    def slow_pass():
        loop_threads.add(threading.current_thread())
        release.wait(timeout=5)

    monkeypatch.setattr(controller, "run_pass", slow_pass)
    assert controller.start() is True
    assert wait_until(lambda: len(loop_threads) == 1)

    assert controller.stop(timeout=0.05) is True
    assert controller.state == ControllerState.STOPPING
    assert controller.status()["state"] == "stopping"
    assert controller.is_running() is False
    assert controller.start() is False

    release.set()
    assert wait_until(lambda: controller.state == ControllerState.IDLE)
    assert controller.start() is True
    assert wait_until(lambda: len(loop_threads) == 2)
    assert wait_until(lambda: sum(t.is_alive() for t in loop_threads) == 1)
    time.sleep(0.2)
    assert sum(t.is_alive() for t in loop_threads) == 1
    assert controller.state == ControllerState.RUNNING


def test_initialize_auto_starts_when_enabled(controller, master, settings, chain, db):
    controller.registry.set_auto_sweep(True)
    ctrl = build_controller(settings, chain=chain, db=db)
    try:
        ctrl.initialize()
        assert ctrl.is_running()
    finally:
        ctrl.stop(persist=False)
    assert ctrl.registry.get_master_config().auto_sweep_enabled is True


def test_manual_pass_scans_sweeps_and_drains(controller, master, deposit_wallet, chain):
    high = deposit_wallet("150", user_id="h")
    dust = deposit_wallet("1", user_id="d")
    chain.set_token(MASTER_ADDRESS, "0")
    controller.ledger.create_withdrawal("w-1", "u", USER_WALLET, Decimal("100"))

    summary = controller.trigger_manual_sweep()

    # both balances read, only the high-tier wallet was due
    assert summary.scan.total_scanned == 2
    assert summary.scan.scanned_addresses == [high]
    assert summary.sweeps_completed == 1
    assert summary.withdrawals_processed == 1
    assert summary.master_alert is None
    assert chain.token_of(high) == 0
    assert chain.token_of(dust) > 0
    # swept funds paid the queued withdrawal in the same pass
    assert controller.ledger.get_withdrawal("w-1").status == WithdrawalStatus.COMPLETED
    assert controller.status()["last_pass"]["sweeps_completed"] == 1


def test_pass_reports_low_master_balance(controller, master, chain):
    chain.set_native(MASTER_ADDRESS, "0.5")
    summary = controller.run_pass()
    assert "below reserve" in summary.master_alert
    ops = controller.ledger.list_gas_operations()
    assert [(o.operation_type, o.status) for o in ops] == [("batch", "failed")]


def test_emergency_sweep_bypasses_tiers(controller, master, deposit_wallet, chain):
    address = deposit_wallet("2")
    result = controller.emergency_sweep(address)
    assert result.scan.new_deposits == 1
    assert result.operation.status == SweepStatus.COMPLETED
    assert result.to_dict()["operation"]["status"] == "completed"


def test_gas_stats(controller, master, deposit_wallet, chain):
    controller.emergency_sweep(deposit_wallet("50", user_id="a"))
    chain.outcome["token"] = "revert"
    controller.emergency_sweep(deposit_wallet("60", user_id="b"))

    stats = controller.get_gas_stats(7)

    # two distributions completed, one sweep completed, one sweep failed
    assert stats.total_operations == 4
    assert stats.completed_operations == 3
    assert stats.failed_operations == 1
    assert stats.success_rate == pytest.approx(75.0)
    assert stats.total_native_distributed == Decimal("0.002")
    assert stats.total_swept == Decimal("50")
    assert stats.completed_sweeps == 1
