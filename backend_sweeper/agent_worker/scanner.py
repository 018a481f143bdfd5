"""
DepositScanner: detect token balance increases and record Deposits.

scan(wallet_address) scans exactly that wallet, bypassing tier gating.
scan() observes every monitored wallet's balance (total_scanned counts all of
them, failed reads included), lets the priority scheduler pick the wallets
due this pass, and records deposits for those.
Per-wallet failures are collected in ScanResult.errors and never abort the
rest of the scan.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from backend_sweeper.agent_worker.priority_scheduler import (
    PrioritySchedulerConfig,
    classify_tier,
    select_wallets_for_pass,
)
from backend_sweeper.chain.client import ChainClient
from backend_sweeper.core.exceptions import NotFoundError
from backend_sweeper.core.locks import KeyedLocks
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.models import DepositWallet, SweepThresholds, Tier
from backend_sweeper.database.registry import WalletRegistry
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

DEFAULT_SCAN_CONCURRENCY = 8


@dataclass
class ScanResult:
    new_deposits: int = 0
    total_scanned: int = 0
    errors: list[str] = field(default_factory=list)
    scanned_addresses: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_deposits": self.new_deposits,
            "total_scanned": self.total_scanned,
            "errors": list(self.errors),
        }


class DepositScanner:
    def __init__(
        self,
        registry: WalletRegistry,
        ledger: PersistenceLedger,
        chain: ChainClient,
        locks: KeyedLocks,
        *,
        asset_symbol: str = "USDT",
        concurrency: int = DEFAULT_SCAN_CONCURRENCY,
        lock_wait_sec: float = 30.0,
        rpc_timeout_sec: float | None = None,
        scheduler_config: PrioritySchedulerConfig | None = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.chain = chain
        self.locks = locks
        self.asset_symbol = asset_symbol
        self.concurrency = max(1, concurrency)
        self.lock_wait_sec = lock_wait_sec
        self.rpc_timeout_sec = rpc_timeout_sec
        self.scheduler_config = scheduler_config or PrioritySchedulerConfig()

    def scan(self, wallet_address: str | None = None, *, now_ts: int | None = None) -> ScanResult:
        now_ts = now_ts if now_ts is not None else int(time.time())
        thresholds = self.registry.get_master_config().thresholds
        if wallet_address is not None:
            return self._scan_one(wallet_address, thresholds, now_ts)
        return self._scan_gated(thresholds, now_ts)

    def _scan_one(self, wallet_address: str, thresholds: SweepThresholds, now_ts: int) -> ScanResult:
        result = ScanResult(total_scanned=1)
        try:
            wallet = self.registry.get_wallet(wallet_address)
            created = self._record(wallet, thresholds, now_ts)
            result.new_deposits += created
            result.scanned_addresses.append(wallet.address)
        except NotFoundError as e:
            result.errors.append(str(e))
        except Exception as e:
            result.errors.append(f"{wallet_address}: {e}")
            logger.warning("scan_wallet_failed", wallet_id=wallet_address[:10], error=str(e))
        logger.info("scan_targeted", wallet_id=wallet_address[:10], new_deposits=result.new_deposits)
        return result

    def _scan_gated(self, thresholds: SweepThresholds, now_ts: int) -> ScanResult:
        wallets = self.registry.list_wallets()
        result = ScanResult(total_scanned=len(wallets))
        observations: list[tuple[DepositWallet, Decimal]] = []

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = {
                executor.submit(self.chain.get_balance, w.address, self.asset_symbol, timeout=self.rpc_timeout_sec): w
                for w in wallets
            }
            for fut in as_completed(futures):
                wallet = futures[fut]
                try:
                    observations.append((wallet, fut.result()))
                except Exception as e:
                    # Unclassifiable this pass; still counted in total_scanned.
                    result.errors.append(f"{wallet.address}: {e}")
                    logger.warning("scan_balance_failed", wallet_id=wallet.address[:10], error=str(e))

        due = select_wallets_for_pass(
            observations, thresholds, now_ts=now_ts, config=self.scheduler_config
        )
        due_addresses = {s.wallet.address for s in due}
        for wallet, balance in observations:
            if wallet.address in due_addresses:
                continue
            tier = classify_tier(balance, thresholds)
            if tier != wallet.tier:
                self.registry.update_scan_state(wallet.address, tier=tier)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = {executor.submit(self._record, s.wallet, thresholds, now_ts): s.wallet for s in due}
            for fut in as_completed(futures):
                wallet = futures[fut]
                try:
                    result.new_deposits += fut.result()
                    result.scanned_addresses.append(wallet.address)
                except Exception as e:
                    result.errors.append(f"{wallet.address}: {e}")
                    logger.warning("scan_wallet_failed", wallet_id=wallet.address[:10], error=str(e))

        logger.info(
            "scan_pass_done",
            wallets_total=len(wallets),
            total_scanned=result.total_scanned,
            new_deposits=result.new_deposits,
            error_count=len(result.errors),
        )
        return result

    def _record(self, wallet: DepositWallet, thresholds: SweepThresholds, now_ts: int) -> int:
        """
        Re-read the balance under the wallet lock and record an increase.
        Returns the number of deposits created (0 or 1).
        """
        with self.locks.hold(wallet.address, timeout=self.lock_wait_sec):
            current = self.registry.get_wallet(wallet.address)
            balance = self.chain.get_balance(current.address, self.asset_symbol, timeout=self.rpc_timeout_sec)
            tier: Tier = classify_tier(balance, thresholds)
            created = 0
            if balance > current.last_balance:
                self.ledger.record_deposit(
                    current.address,
                    current.user_id,
                    balance - current.last_balance,
                    self.asset_symbol,
                    now=now_ts,
                )
                created = 1
            self.registry.update_scan_state(current.address, balance=balance, tier=tier, scanned_at=now_ts)
            return created
