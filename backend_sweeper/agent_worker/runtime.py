"""
AutomationController: the periodic orchestration loop and its triggers.

One pass = master low-balance check → tier-gated deposit scan → sweep of the
scanned wallets holding open deposits (bounded pool) → FIFO withdrawal drain.
Passes never overlap: the loop, manual triggers and emergency sweeps share one
pass lock, and per-wallet work is further serialized by the wallet locks.

State machine: Idle ⇄ Running. stop() lets the current pass finish; nothing
is interrupted mid-transaction. When the pass outlives the stop timeout the
controller reports Stopping until the loop thread exits, and start() is
refused until then. Each loop thread owns its own stop event.

Usage: python -m backend_sweeper.agent_worker.runtime
"""

from __future__ import annotations

import signal
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from backend_sweeper.agent_worker.gas import GasDistributor
from backend_sweeper.agent_worker.health import check_master_balance, get_hot_wallet_status
from backend_sweeper.agent_worker.reconcile import ReconcileReport, reconcile
from backend_sweeper.agent_worker.scanner import DepositScanner, ScanResult
from backend_sweeper.agent_worker.sweeper import SweepExecutor
from backend_sweeper.agent_worker.withdrawals import WithdrawalProcessor
from backend_sweeper.chain.client import ChainClient, JsonRpcChainClient
from backend_sweeper.chain.submitter import SerialSubmitter
from backend_sweeper.config.settings import Settings, get_settings
from backend_sweeper.core.exceptions import (
    ConfigurationError,
    NetworkError,
    NotInitializedError,
    SweeperError,
    WalletLockedError,
)
from backend_sweeper.core.locks import KeyedLocks
from backend_sweeper.database.database import Database
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.models import GasStats, MasterWalletConfig, SweepOperation, SweepStatus
from backend_sweeper.database.registry import WalletRegistry
from backend_sweeper.keystore.store import SecretStore
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

SHUTDOWN_JOIN_TIMEOUT_SEC = 15.0


class ControllerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class PassSummary:
    """Aggregated outcome of one orchestration pass."""

    started_at: int
    duration_sec: float = 0.0
    scan: ScanResult = field(default_factory=ScanResult)
    sweeps_completed: int = 0
    sweeps_failed: int = 0
    sweeps_skipped: int = 0
    withdrawals_processed: int = 0
    master_alert: str | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "duration_sec": self.duration_sec,
            "scan": self.scan.to_dict(),
            "sweeps_completed": self.sweeps_completed,
            "sweeps_failed": self.sweeps_failed,
            "sweeps_skipped": self.sweeps_skipped,
            "withdrawals_processed": self.withdrawals_processed,
            "master_alert": self.master_alert,
            "errors": list(self.errors),
        }


@dataclass
class EmergencySweepResult:
    scan: ScanResult
    operation: SweepOperation | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "scan": self.scan.to_dict(),
            "operation": self.operation.to_dict() if self.operation else None,
        }


class AutomationController:
    def __init__(
        self,
        settings: Settings,
        registry: WalletRegistry,
        ledger: PersistenceLedger,
        chain: ChainClient,
        secrets: SecretStore,
        scanner: DepositScanner,
        sweeper: SweepExecutor,
        withdrawals: WithdrawalProcessor,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.ledger = ledger
        self.chain = chain
        self.secrets = secrets
        self.scanner = scanner
        self.sweeper = sweeper
        self.withdrawals = withdrawals
        self.interval_sec = settings.sweep_interval_sec
        self.concurrency = settings.sweep_concurrency
        self._state = ControllerState.IDLE
        self._state_lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._initialized = False
        self.last_pass: PassSummary | None = None
        self.last_reconcile: ReconcileReport | None = None

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ControllerState:
        return self._state

    def is_running(self) -> bool:
        return self._state == ControllerState.RUNNING

    def is_initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> ReconcileReport:
        """
        Load (or bootstrap from env) the master config, reconcile interrupted
        sweeps/withdrawals against the chain, then auto-start when enabled.
        Safe to call again after a failure.
        """
        cfg = self._ensure_master_config()
        self.last_reconcile = reconcile(self.ledger, self.chain)
        self._initialized = True
        logger.info(
            "controller_initialized",
            wallet_id=cfg.address[:10],
            auto_sweep_enabled=cfg.auto_sweep_enabled,
            unresolved=len(self.last_reconcile.unresolved),
        )
        if cfg.auto_sweep_enabled:
            self.start()
        return self.last_reconcile

    def _ensure_master_config(self) -> MasterWalletConfig:
        key = self.settings.master_wallet_private_key
        if self.registry.has_master_config():
            cfg = self.registry.get_master_config()
            if key:
                self.secrets.put_key(key)
                self.settings.master_wallet_private_key = ""
            return cfg
        if not key:
            raise ConfigurationError(
                "master wallet is not configured; set MASTER_WALLET_PRIVATE_KEY for first start"
            )
        handle = self.secrets.put_key(key)
        self.settings.master_wallet_private_key = ""
        address = self.secrets.address_for(handle)
        expected = self.settings.master_wallet_address
        if expected and expected.lower() != address.lower():
            raise ConfigurationError(
                f"MASTER_WALLET_ADDRESS {expected} does not match the configured private key"
            )
        cfg = self.registry.set_master_config(MasterWalletConfig(address=address, secret_handle=handle))
        logger.info("master_config_bootstrapped", wallet_id=address[:10])
        return cfg

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("controller is not initialized")

    def start(self) -> bool:
        """
        Idle → Running. Returns False when already running, or while a
        previous loop thread is still finishing its pass (Stopping).
        """
        self._require_initialized()
        with self._state_lock:
            if self._state == ControllerState.RUNNING:
                return False
            if self._thread is not None and self._thread.is_alive():
                logger.warning("automation_start_refused_stopping")
                return False
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(stop_event,),
                name="sweeper-automation",
                daemon=True,
            )
            self._thread.start()
            self._state = ControllerState.RUNNING
        self.registry.set_auto_sweep(True)
        logger.info("automation_started", interval_sec=self.interval_sec)
        return True

    def stop(self, *, persist: bool = True, timeout: float = SHUTDOWN_JOIN_TIMEOUT_SEC) -> bool:
        """
        Running → Idle after the current pass finishes. persist=False keeps
        auto_sweep_enabled (process shutdown rather than an operator stop).
        If the pass outlives timeout the state stays Stopping; the loop
        thread moves it to Idle when it exits.
        """
        with self._state_lock:
            if self._state == ControllerState.IDLE:
                return False
            self._stop_event.set()
            thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)
        with self._state_lock:
            if self._thread is thread:
                if thread is not None and thread.is_alive():
                    self._state = ControllerState.STOPPING
                    logger.warning("automation_stop_join_timeout", timeout_sec=timeout)
                else:
                    self._state = ControllerState.IDLE
                    self._thread = None
        if persist and self._initialized:
            self.registry.set_auto_sweep(False)
        logger.info("automation_stopped", persisted=persist, state=self._state.value)
        return True

    def _run_loop(self, stop_event: threading.Event) -> None:
        tick = 0
        logger.info("automation_loop_started", interval_sec=self.interval_sec, concurrency=self.concurrency)
        while not stop_event.is_set():
            tick += 1
            tick_start = time.monotonic()
            try:
                self.run_pass()
            except Exception as e:
                logger.exception("orchestration_pass_failed", tick=tick, error=str(e))
            # Sleep until next tick; wake periodically to check stop_event
            deadline = tick_start + self.interval_sec
            while not stop_event.is_set() and time.monotonic() < deadline:
                stop_event.wait(timeout=min(1.0, max(0.0, deadline - time.monotonic())))
        with self._state_lock:
            if self._thread is threading.current_thread():
                self._state = ControllerState.IDLE
                self._thread = None
        logger.info("automation_loop_stopped", tick_count=tick)

    # ------------------------------------------------------------------
    # passes and triggers
    # ------------------------------------------------------------------

    def run_pass(self) -> PassSummary:
        """One orchestration pass; blocks while another pass is running."""
        with self._pass_lock:
            return self._run_pass_locked()

    def _run_pass_locked(self) -> PassSummary:
        summary = PassSummary(started_at=int(time.time()))
        start = time.monotonic()

        try:
            summary.master_alert = check_master_balance(self.registry, self.ledger, self.chain)
        except NetworkError as e:
            summary.errors.append(f"master balance check failed: {e}")

        summary.scan = self.scanner.scan(now_ts=summary.started_at)
        summary.errors.extend(summary.scan.errors)

        open_wallets = self.ledger.wallets_with_open_deposits()
        to_sweep = [a for a in summary.scan.scanned_addresses if a in open_wallets]
        if to_sweep:
            with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
                futures = {executor.submit(self.sweeper.sweep, address): address for address in to_sweep}
                for fut in as_completed(futures):
                    address = futures[fut]
                    try:
                        op = fut.result()
                    except WalletLockedError as e:
                        summary.sweeps_skipped += 1
                        logger.info("sweep_skipped_locked", wallet_id=address[:10], error=str(e))
                        continue
                    except Exception as e:
                        summary.sweeps_failed += 1
                        summary.errors.append(f"{address}: {e}")
                        logger.warning("sweep_wallet_failed", wallet_id=address[:10], error=str(e))
                        continue
                    if op is None:
                        summary.sweeps_skipped += 1
                    elif op.status == SweepStatus.COMPLETED:
                        summary.sweeps_completed += 1
                    elif op.status == SweepStatus.IN_PROGRESS:
                        summary.sweeps_failed += 1
                        summary.errors.append(
                            f"{address}: sweep {op.id} outcome unknown ({op.sweep_tx_hash}), left for reconciliation"
                        )
                    else:
                        summary.sweeps_failed += 1
                        summary.errors.append(f"{address}: {op.error_message}")

        try:
            summary.withdrawals_processed = len(self.withdrawals.process_pending())
        except SweeperError as e:
            summary.errors.append(f"withdrawal drain failed: {e}")
            logger.warning("withdrawal_drain_failed", error=str(e))

        summary.duration_sec = round(time.monotonic() - start, 2)
        self.last_pass = summary
        logger.info(
            "orchestration_pass_done",
            total_scanned=summary.scan.total_scanned,
            new_deposits=summary.scan.new_deposits,
            sweeps_completed=summary.sweeps_completed,
            sweeps_failed=summary.sweeps_failed,
            sweeps_skipped=summary.sweeps_skipped,
            withdrawals_processed=summary.withdrawals_processed,
            error_count=len(summary.errors),
            duration_sec=summary.duration_sec,
        )
        return summary

    def trigger_manual_sweep(self) -> PassSummary:
        """Run one pass synchronously, whether or not the loop is running."""
        self._require_initialized()
        logger.info("manual_sweep_triggered")
        return self.run_pass()

    def emergency_sweep(self, wallet_address: str) -> EmergencySweepResult:
        """
        Scan and sweep exactly one wallet, bypassing tier gating. Raises
        WalletLockedError when a sweep for this wallet is already running.
        """
        self._require_initialized()
        logger.info("emergency_sweep_triggered", wallet_id=wallet_address[:10])
        scan = self.scanner.scan(wallet_address)
        operation = self.sweeper.sweep(wallet_address)
        return EmergencySweepResult(scan=scan, operation=operation)

    # ------------------------------------------------------------------
    # read-only queries
    # ------------------------------------------------------------------

    def get_gas_stats(self, days: int = 7) -> GasStats:
        self._require_initialized()
        return self.ledger.gas_stats(days)

    def status(self) -> dict[str, Any]:
        auto_sweep = None
        master = None
        if self.registry.has_master_config():
            cfg = self.registry.get_master_config()
            auto_sweep = cfg.auto_sweep_enabled
            master = cfg.address
        return {
            "state": self._state.value,
            "is_running": self.is_running(),
            "is_initialized": self._initialized,
            "auto_sweep_enabled": auto_sweep,
            "master_wallet": master,
            "interval_sec": self.interval_sec,
            "last_pass": self.last_pass.to_dict() if self.last_pass else None,
            "unresolved": list(self.last_reconcile.unresolved) if self.last_reconcile else [],
        }

    def hot_wallet_status(self):
        return get_hot_wallet_status(self.registry, self.chain)


def build_controller(
    settings: Settings | None = None,
    *,
    chain: ChainClient | None = None,
    db: Database | None = None,
) -> AutomationController:
    """Wire storage, keystore, chain client and workers into one controller."""
    settings = settings or get_settings()
    db = db or Database(settings.database_url)
    db.init_db()
    registry = WalletRegistry(db)
    ledger = PersistenceLedger(db, asset_symbol=settings.asset_symbol)
    secrets = SecretStore(db, settings.private_key_secret)
    chain = chain or JsonRpcChainClient(
        settings.rpc_urls,
        token_address=settings.token_address,
        token_decimals=settings.token_decimals,
        confirmation_depth=settings.confirmation_depth,
        timeout_sec=settings.rpc_timeout_sec,
        max_retries=settings.rpc_max_retries,
        backoff_base_sec=settings.rpc_backoff_base_sec,
    )
    submitter = SerialSubmitter(chain, rpc_timeout_sec=settings.rpc_timeout_sec)
    locks = KeyedLocks()
    gas = GasDistributor(
        registry,
        ledger,
        chain,
        secrets,
        submitter,
        locks,
        chain_id=settings.chain_id,
        token_transfer_gas_limit=settings.token_transfer_gas_limit,
        native_transfer_gas_limit=settings.native_transfer_gas_limit,
        confirmation_timeout_sec=settings.confirmation_timeout_sec,
        rpc_timeout_sec=settings.rpc_timeout_sec,
    )
    scanner = DepositScanner(
        registry,
        ledger,
        chain,
        locks,
        asset_symbol=settings.asset_symbol,
        concurrency=settings.sweep_concurrency,
        lock_wait_sec=settings.wallet_lock_wait_sec,
        rpc_timeout_sec=settings.rpc_timeout_sec,
    )
    sweeper = SweepExecutor(
        registry,
        ledger,
        chain,
        secrets,
        submitter,
        gas,
        locks,
        token_address=settings.token_address,
        chain_id=settings.chain_id,
        token_transfer_gas_limit=settings.token_transfer_gas_limit,
        confirmation_timeout_sec=settings.confirmation_timeout_sec,
        rpc_timeout_sec=settings.rpc_timeout_sec,
    )
    withdrawals = WithdrawalProcessor(
        registry,
        ledger,
        chain,
        secrets,
        submitter,
        locks,
        token_address=settings.token_address,
        chain_id=settings.chain_id,
        token_transfer_gas_limit=settings.token_transfer_gas_limit,
        confirmation_timeout_sec=settings.confirmation_timeout_sec,
        lock_wait_sec=settings.wallet_lock_wait_sec,
        rpc_timeout_sec=settings.rpc_timeout_sec,
    )
    return AutomationController(
        settings, registry, ledger, chain, secrets, scanner, sweeper, withdrawals
    )


def run_headless(controller: AutomationController) -> None:
    """
    Initialize, start the loop and block until SIGTERM/KeyboardInterrupt.
    The current pass is allowed to finish before returning.
    """
    shutdown = threading.Event()

    def request_shutdown(*args: Any, **kwargs: Any) -> None:
        shutdown.set()

    try:
        signal.signal(signal.SIGTERM, request_shutdown)
    except (AttributeError, ValueError):
        # Windows or not on the main thread
        pass

    controller.initialize()
    controller.start()
    try:
        while not shutdown.is_set():
            shutdown.wait(timeout=1.0)
    finally:
        controller.stop(persist=False)


def main() -> int:
    """CLI entrypoint: build from env and run the automation loop."""
    try:
        run_headless(build_controller())
        return 0
    except KeyboardInterrupt:
        logger.info("runtime_shutdown_signal")
        return 0
    except Exception as e:
        logger.exception("runtime_fatal", error=str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
