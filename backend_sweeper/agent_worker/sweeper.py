"""
SweepExecutor: gas-then-transfer for one wallet, end to end.

Per wallet: try-lock (no queueing) → refuse if a sweep is already active →
read balance → SweepOperation pending → in_progress → ensure_gas → transfer
the full token balance (exact base units) to the hot wallet → wait for
confirmation → completed/failed. A transfer whose broadcast was never
acknowledged and has no receipt yet stays in_progress for reconciliation.
The token transfer is never signed unless ensure_gas reported funded=True,
which only happens after the gas transfer reached Confirmed (or no top-up
was needed). The lock is released on every exit path.
"""

from __future__ import annotations

from decimal import Decimal

from structlog.contextvars import bound_contextvars

from backend_sweeper.chain.client import NATIVE_DECIMALS, ChainClient
from backend_sweeper.chain.models import Confirmed, Reverted, TimedOut
from backend_sweeper.chain.submitter import SerialSubmitter, build_token_transfer
from backend_sweeper.core.exceptions import (
    InsufficientReserveError,
    NetworkError,
    RevertedError,
    SecretStoreError,
    WalletLockedError,
)
from backend_sweeper.core.locks import KeyedLocks
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.models import (
    DepositStatus,
    DepositWallet,
    SweepOperation,
    SweepStatus,
)
from backend_sweeper.database.registry import WalletRegistry
from backend_sweeper.agent_worker.gas import GasDistributor
from backend_sweeper.keystore.store import SecretStore
from backend_sweeper.sweeper_logging import get_logger
from backend_sweeper.utils.wallet_utils import units_to_decimal

logger = get_logger(__name__)


class SweepExecutor:
    def __init__(
        self,
        registry: WalletRegistry,
        ledger: PersistenceLedger,
        chain: ChainClient,
        secrets: SecretStore,
        submitter: SerialSubmitter,
        gas: GasDistributor,
        locks: KeyedLocks,
        *,
        token_address: str,
        chain_id: int,
        token_transfer_gas_limit: int = 65_000,
        confirmation_timeout_sec: float = 180.0,
        rpc_timeout_sec: float | None = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.chain = chain
        self.secrets = secrets
        self.submitter = submitter
        self.gas = gas
        self.locks = locks
        self.token_address = token_address
        self.chain_id = chain_id
        self.token_transfer_gas_limit = token_transfer_gas_limit
        self.confirmation_timeout_sec = confirmation_timeout_sec
        self.rpc_timeout_sec = rpc_timeout_sec

    def sweep(self, wallet_address: str) -> SweepOperation | None:
        """
        Sweep one wallet. Returns the SweepOperation (completed, failed, or
        in_progress when the outcome is unknown), or None when the wallet
        holds no token balance.

        Raises WalletLockedError immediately when another sweep holds this
        wallet (in this process or, via the ledger, any other).
        """
        wallet = self.registry.get_wallet(wallet_address)
        with self.locks.try_hold(wallet.address):
            active = self.ledger.active_sweep_operation(wallet.address)
            if active is not None:
                raise WalletLockedError(
                    f"wallet {wallet.address} already has sweep operation {active.id} {active.status.value}"
                )
            with bound_contextvars(wallet_id=wallet.address):
                return self._sweep_locked(wallet)

    def _sweep_locked(self, wallet: DepositWallet) -> SweepOperation | None:
        cfg = self.registry.get_master_config()
        units = self.chain.get_balance_units(wallet.address, timeout=self.rpc_timeout_sec)
        if units <= 0:
            logger.info("sweep_nothing_to_sweep", wallet_id=wallet.address[:10])
            return None
        amount = units_to_decimal(units, self.chain.token_decimals)

        deposits = self.ledger.open_deposits(wallet.address)
        if not deposits:
            deposits = [self.ledger.record_deposit(wallet.address, wallet.user_id, amount)]
        deposit_ids = [d.id for d in deposits]

        op = self.ledger.create_sweep_operation(wallet.address, amount, deposit_ids)
        op = self.ledger.transition_sweep(op.id, SweepStatus.IN_PROGRESS)
        logger.info("sweep_started", wallet_id=wallet.address[:10], op_id=op.id, amount=amount)

        # 1. gas
        try:
            gas = self.gas.ensure_gas(
                wallet,
                on_signed=lambda s: self.ledger.set_sweep_tx_hashes(op.id, gas_tx_hash=s.tx_hash),
            )
        except InsufficientReserveError as e:
            # Retryable once the master wallet is refilled: deposits stay detected.
            self.ledger.note_deposit_error(deposit_ids, str(e))
            logger.warning("sweep_gas_reserve_shortfall", wallet_id=wallet.address[:10], op_id=op.id)
            return self.ledger.transition_sweep(op.id, SweepStatus.FAILED, error_message=str(e))
        except (NetworkError, RevertedError, SecretStoreError) as e:
            return self._fail(op, deposit_ids, f"gas funding failed: {e}")
        if not gas.funded:
            return self._fail(op, deposit_ids, gas.error or "gas funding failed", gas_tx_hash=gas.tx_hash)
        self.ledger.transition_deposits(deposit_ids, DepositStatus.GAS_FUNDED, gas_tx_hash=gas.tx_hash)

        # 2. transfer
        hot_address = cfg.address

        def build(nonce: int, gas_price: int) -> dict:
            return build_token_transfer(
                self.token_address,
                hot_address,
                units,
                nonce=nonce,
                gas_price=gas_price,
                gas_limit=self.token_transfer_gas_limit,
                chain_id=self.chain_id,
            )

        recorded: list[str] = []

        def record(signed_tx) -> None:
            self.ledger.set_sweep_tx_hashes(op.id, sweep_tx_hash=signed_tx.tx_hash)
            recorded.append(signed_tx.tx_hash)

        acknowledged = True
        try:
            signed = self.secrets.with_signer(
                wallet.secret_handle,
                lambda signer: self.submitter.send(signer, build, on_signed=record),
            )
            tx_hash = signed.tx_hash
        except NetworkError as e:
            if not recorded:
                return self._fail(op, deposit_ids, f"sweep transfer failed: {e}", gas_tx_hash=gas.tx_hash)
            # Signed and possibly broadcast: only the receipt can say.
            tx_hash = recorded[-1]
            acknowledged = False
            logger.warning(
                "sweep_broadcast_unacknowledged",
                wallet_id=wallet.address[:10],
                op_id=op.id,
                tx_hash=tx_hash,
                error=str(e),
            )
        except (RevertedError, SecretStoreError) as e:
            return self._fail(op, deposit_ids, f"sweep transfer failed: {e}", gas_tx_hash=gas.tx_hash)

        # 3. confirmation
        result = self.chain.wait_for_confirmation(tx_hash, self.confirmation_timeout_sec)
        if isinstance(result, Confirmed):
            op = self.ledger.transition_sweep(
                op.id,
                SweepStatus.COMPLETED,
                gas_tx_hash=gas.tx_hash,
                sweep_tx_hash=tx_hash,
            )
            self.ledger.transition_deposits(
                deposit_ids,
                DepositStatus.SWEPT,
                gas_tx_hash=gas.tx_hash,
                sweep_tx_hash=tx_hash,
            )
            self.registry.update_scan_state(wallet.address, balance=Decimal("0"))
            self.ledger.log_gas_operation(
                "sweep",
                "completed",
                wallet_address=wallet.address,
                gas_used=result.gas_used,
                fee_native=units_to_decimal(result.fee_wei, NATIVE_DECIMALS),
                tx_hash=tx_hash,
            )
            logger.info(
                "sweep_completed",
                wallet_id=wallet.address[:10],
                op_id=op.id,
                amount=amount,
                gas_tx=gas.tx_hash,
                sweep_tx=tx_hash,
            )
            return op

        if isinstance(result, TimedOut) and not acknowledged:
            # Not acknowledged and not on chain yet: left in_progress for reconcile().
            logger.warning("sweep_outcome_unknown", wallet_id=wallet.address[:10], op_id=op.id, tx_hash=tx_hash)
            return self.ledger.get_sweep_operation(op.id)

        if isinstance(result, Reverted):
            error = f"sweep transfer reverted: {result.reason}"
        elif isinstance(result, TimedOut):
            error = f"sweep transfer not confirmed within {self.confirmation_timeout_sec:g}s"
        else:
            error = f"unexpected confirmation result {result!r}"
        self.ledger.log_gas_operation(
            "sweep",
            "failed",
            wallet_address=wallet.address,
            tx_hash=tx_hash,
            error_message=error,
        )
        return self._fail(op, deposit_ids, error, gas_tx_hash=gas.tx_hash, sweep_tx_hash=tx_hash)

    def _fail(
        self,
        op: SweepOperation,
        deposit_ids: list[int],
        message: str,
        *,
        gas_tx_hash: str | None = None,
        sweep_tx_hash: str | None = None,
    ) -> SweepOperation:
        logger.warning("sweep_failed", wallet_id=op.wallet_address[:10], op_id=op.id, error=message)
        failed = self.ledger.transition_sweep(
            op.id,
            SweepStatus.FAILED,
            gas_tx_hash=gas_tx_hash,
            sweep_tx_hash=sweep_tx_hash,
            error_message=message,
        )
        self.ledger.transition_deposits(
            deposit_ids,
            DepositStatus.FAILED,
            gas_tx_hash=gas_tx_hash,
            sweep_tx_hash=sweep_tx_hash,
            error_message=message,
        )
        return failed
