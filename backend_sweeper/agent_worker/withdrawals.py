"""
WithdrawalProcessor: settle pending withdrawal requests from the hot wallet.

Requests are taken in creation order. For each one:
- already processing/completed/failed → returned untouched (withdrawal id is
  the idempotency key; nothing is ever resubmitted)
- invalid destination or amount → failed
- amount > hot balance - withdrawal_reserve - in-flight withdrawals →
  InsufficientFundsError, request stays pending
- otherwise claim (pending → processing), sign, record hash, broadcast,
  wait for confirmation → completed or failed
- broadcast never acknowledged (NetworkError after signing) and no receipt
  within the timeout → stays processing for reconciliation; only a node
  rejection or an on-chain revert marks it failed

The balance check, claim and broadcast run under one hot-wallet lock so two
requests can never both pass the check against the same funds.
"""

from __future__ import annotations

from decimal import Decimal

from backend_sweeper.chain.client import ChainClient
from backend_sweeper.chain.models import Confirmed, Reverted, TimedOut
from backend_sweeper.chain.submitter import SerialSubmitter, build_token_transfer
from backend_sweeper.core.exceptions import (
    InsufficientFundsError,
    NetworkError,
    RevertedError,
    SecretStoreError,
    WalletLockedError,
)
from backend_sweeper.core.locks import KeyedLocks
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.models import WithdrawalRequest, WithdrawalStatus
from backend_sweeper.database.registry import WalletRegistry
from backend_sweeper.keystore.store import SecretStore
from backend_sweeper.sweeper_logging import get_logger
from backend_sweeper.utils.wallet_utils import decimal_to_units, is_valid_wallet, normalize_address

logger = get_logger(__name__)


def _request_lock_key(request_id: str) -> str:
    return f"withdrawal:{request_id}"


def _hot_lock_key(hot_address: str) -> str:
    return f"hot-withdrawals:{hot_address}"


class WithdrawalProcessor:
    def __init__(
        self,
        registry: WalletRegistry,
        ledger: PersistenceLedger,
        chain: ChainClient,
        secrets: SecretStore,
        submitter: SerialSubmitter,
        locks: KeyedLocks,
        *,
        token_address: str,
        chain_id: int,
        token_transfer_gas_limit: int = 65_000,
        confirmation_timeout_sec: float = 180.0,
        lock_wait_sec: float = 30.0,
        rpc_timeout_sec: float | None = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.chain = chain
        self.secrets = secrets
        self.submitter = submitter
        self.locks = locks
        self.token_address = token_address
        self.chain_id = chain_id
        self.token_transfer_gas_limit = token_transfer_gas_limit
        self.confirmation_timeout_sec = confirmation_timeout_sec
        self.lock_wait_sec = lock_wait_sec
        self.rpc_timeout_sec = rpc_timeout_sec

    def list_pending(self) -> list[WithdrawalRequest]:
        return self.ledger.pending_withdrawals()

    def spendable_balance(self) -> Decimal:
        """Hot wallet token balance minus reserve and withdrawals still in flight."""
        cfg = self.registry.get_master_config()
        balance = self.chain.get_balance(cfg.address, timeout=self.rpc_timeout_sec)
        return balance - cfg.withdrawal_reserve - self.ledger.in_flight_withdrawal_total()

    def submit_withdrawal(
        self,
        request_id: str,
        to_address: str,
        amount: Decimal,
        user_id: str,
    ) -> WithdrawalRequest:
        """Create the request if new (idempotent on request_id) and process it now."""
        request = self.ledger.create_withdrawal(request_id, user_id, to_address, amount)
        return self.process(request)

    def process_pending(self) -> list[WithdrawalRequest]:
        """
        Drain pending requests FIFO. Stops at the first request the hot
        wallet cannot cover so later, smaller requests do not jump the queue.
        """
        results: list[WithdrawalRequest] = []
        for request in self.ledger.pending_withdrawals():
            try:
                processed = self.process(request)
            except InsufficientFundsError as e:
                logger.warning(
                    "withdrawal_drain_paused",
                    withdrawal_id=request.id,
                    required=e.required,
                    available=e.available,
                )
                results.append(self.ledger.get_withdrawal(request.id))
                break
            except WalletLockedError:
                logger.info("withdrawal_in_progress_elsewhere", withdrawal_id=request.id)
                continue
            except NetworkError as e:
                logger.warning("withdrawal_drain_network_error", withdrawal_id=request.id, error=str(e))
                break
            results.append(processed)
            if processed.status == WithdrawalStatus.PROCESSING:
                logger.warning("withdrawal_drain_paused_unknown_outcome", withdrawal_id=request.id)
                break
        logger.info("withdrawal_drain_done", processed=len(results))
        return results

    def process(self, request: WithdrawalRequest | str) -> WithdrawalRequest:
        request_id = request if isinstance(request, str) else request.id
        current = self.ledger.get_withdrawal(request_id)
        if current.status != WithdrawalStatus.PENDING:
            logger.info("withdrawal_already_handled", withdrawal_id=request_id, status=current.status.value)
            return current

        with self.locks.try_hold(_request_lock_key(request_id)):
            current = self.ledger.get_withdrawal(request_id)
            if current.status != WithdrawalStatus.PENDING:
                return current
            if not is_valid_wallet(current.to_address):
                return self._fail(current, f"invalid destination address {current.to_address!r}")
            if current.amount <= 0:
                return self._fail(current, f"invalid amount {current.amount}")
            return self._settle(current)

    def _settle(self, request: WithdrawalRequest) -> WithdrawalRequest:
        cfg = self.registry.get_master_config()
        to_address = normalize_address(request.to_address)
        units = decimal_to_units(request.amount, self.chain.token_decimals)

        def build(nonce: int, gas_price: int) -> dict:
            return build_token_transfer(
                self.token_address,
                to_address,
                units,
                nonce=nonce,
                gas_price=gas_price,
                gas_limit=self.token_transfer_gas_limit,
                chain_id=self.chain_id,
            )

        with self.locks.hold(_hot_lock_key(cfg.address), timeout=self.lock_wait_sec):
            balance = self.chain.get_balance(cfg.address, timeout=self.rpc_timeout_sec)
            spendable = balance - cfg.withdrawal_reserve - self.ledger.in_flight_withdrawal_total()
            if request.amount > spendable:
                logger.warning(
                    "withdrawal_insufficient_funds",
                    withdrawal_id=request.id,
                    amount=request.amount,
                    spendable=spendable,
                )
                raise InsufficientFundsError(
                    f"withdrawal {request.id} needs {request.amount}, hot wallet spendable is {spendable}",
                    available=spendable,
                    required=request.amount,
                )
            if not self.ledger.claim_withdrawal(request.id):
                return self.ledger.get_withdrawal(request.id)

            recorded: list[str] = []

            def record(signed_tx) -> None:
                self.ledger.set_withdrawal_tx_hash(request.id, signed_tx.tx_hash)
                recorded.append(signed_tx.tx_hash)

            acknowledged = True
            try:
                signed = self.secrets.with_signer(
                    cfg.secret_handle,
                    lambda signer: self.submitter.send(signer, build, on_signed=record),
                )
                tx_hash = signed.tx_hash
            except NetworkError as e:
                if not recorded:
                    return self._fail(request, f"withdrawal submission failed: {e}")
                # Signed and possibly broadcast: only the receipt can say.
                tx_hash = recorded[-1]
                acknowledged = False
                logger.warning(
                    "withdrawal_broadcast_unacknowledged",
                    withdrawal_id=request.id,
                    tx_hash=tx_hash,
                    error=str(e),
                )
            except (RevertedError, SecretStoreError) as e:
                tx_hash = getattr(e, "tx_hash", None)
                return self._fail(request, f"withdrawal submission failed: {e}", tx_hash=tx_hash)

        logger.info("withdrawal_submitted", withdrawal_id=request.id, amount=request.amount, tx_hash=tx_hash)
        result = self.chain.wait_for_confirmation(tx_hash, self.confirmation_timeout_sec)
        if isinstance(result, Confirmed):
            done = self.ledger.finish_withdrawal(request.id, WithdrawalStatus.COMPLETED, tx_hash=tx_hash)
            logger.info("withdrawal_completed", withdrawal_id=request.id, tx_hash=tx_hash)
            return done
        if isinstance(result, TimedOut) and not acknowledged:
            # Not acknowledged and not on chain yet: left processing for reconcile().
            logger.warning("withdrawal_outcome_unknown", withdrawal_id=request.id, tx_hash=tx_hash)
            return self.ledger.get_withdrawal(request.id)
        if isinstance(result, Reverted):
            error = f"withdrawal transfer reverted: {result.reason}"
        elif isinstance(result, TimedOut):
            error = f"withdrawal transfer not confirmed within {self.confirmation_timeout_sec:g}s"
        else:
            error = f"unexpected confirmation result {result!r}"
        return self._fail(request, error, tx_hash=tx_hash)

    def _fail(self, request: WithdrawalRequest, message: str, *, tx_hash: str | None = None) -> WithdrawalRequest:
        logger.warning("withdrawal_failed", withdrawal_id=request.id, tx_hash=tx_hash, error=message)
        return self.ledger.finish_withdrawal(
            request.id, WithdrawalStatus.FAILED, tx_hash=tx_hash, error_message=message
        )
