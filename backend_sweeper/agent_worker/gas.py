"""
GasDistributor: top up a deposit wallet's native balance before a sweep.

The reserve check runs before anything is signed: the master wallet only
funds gas when

    master_native - min_reserve - in_flight >= amount + transfer fee

where in_flight is the sum of this process's distributions that were signed
but are not yet mined. The check, the in-flight bookkeeping and the broadcast
run under one master-keyed lock, so concurrent sweeps in a pass cannot all
spend the same headroom. A shortfall raises InsufficientReserveError and
nothing is submitted.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from backend_sweeper.chain.client import NATIVE_DECIMALS, ChainClient
from backend_sweeper.chain.models import Confirmed, Reverted, SignedTransaction, TimedOut
from backend_sweeper.chain.submitter import SerialSubmitter, build_native_transfer
from backend_sweeper.core.exceptions import InsufficientReserveError, NetworkError, RevertedError
from backend_sweeper.core.locks import KeyedLocks
from backend_sweeper.database.ledger import PersistenceLedger
from backend_sweeper.database.models import DepositWallet
from backend_sweeper.database.registry import WalletRegistry
from backend_sweeper.keystore.store import SecretStore
from backend_sweeper.sweeper_logging import get_logger
from backend_sweeper.utils.wallet_utils import decimal_to_units, units_to_decimal

logger = get_logger(__name__)


def _gas_lock_key(master_address: str) -> str:
    return f"gas-distribution:{master_address}"


@dataclass
class GasResult:
    """funded=True with tx_hash=None means the wallet already had enough gas."""

    funded: bool
    tx_hash: str | None = None
    error: str | None = None
    native_amount: Decimal = Decimal("0")


class GasDistributor:
    def __init__(
        self,
        registry: WalletRegistry,
        ledger: PersistenceLedger,
        chain: ChainClient,
        secrets: SecretStore,
        submitter: SerialSubmitter,
        locks: KeyedLocks,
        *,
        chain_id: int,
        token_transfer_gas_limit: int = 65_000,
        native_transfer_gas_limit: int = 21_000,
        confirmation_timeout_sec: float = 180.0,
        rpc_timeout_sec: float | None = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.chain = chain
        self.secrets = secrets
        self.submitter = submitter
        self.locks = locks
        self.chain_id = chain_id
        self.token_transfer_gas_limit = token_transfer_gas_limit
        self.native_transfer_gas_limit = native_transfer_gas_limit
        self.confirmation_timeout_sec = confirmation_timeout_sec
        self.rpc_timeout_sec = rpc_timeout_sec
        # tx_hash -> wei (value + fee) signed from the master and not yet mined.
        # Guarded by the gas-distribution lock.
        self._in_flight: dict[str, int] = {}

    def required_gas_wei(self, gas_price: int) -> int:
        """Native cost of one token transfer at gas_price."""
        return self.token_transfer_gas_limit * gas_price

    def in_flight_wei(self) -> int:
        return sum(self._in_flight.values())

    def ensure_gas(
        self,
        wallet: DepositWallet,
        *,
        on_signed: Callable[[SignedTransaction], None] | None = None,
    ) -> GasResult:
        """
        Make sure wallet can pay for one sweep transaction.

        Raises InsufficientReserveError (nothing submitted) when the master
        wallet would drop below min_reserve, and NetworkError/RevertedError
        when the funding transfer cannot be submitted. A submitted transfer
        that reverts or does not confirm in time returns funded=False.
        """
        cfg = self.registry.get_master_config()
        timeout = self.rpc_timeout_sec
        native_wei = self.chain.get_native_balance_units(wallet.address, timeout=timeout)
        gas_price = self.chain.get_gas_price(timeout=timeout)
        required_wei = self.required_gas_wei(gas_price)
        if native_wei >= required_wei:
            logger.debug("gas_sufficient", wallet_id=wallet.address[:10], native_wei=native_wei)
            return GasResult(funded=True)

        shortfall = units_to_decimal(required_wei - native_wei, NATIVE_DECIMALS)
        amount = max(cfg.gas_distribution_amount, shortfall)
        if amount > cfg.gas_distribution_amount:
            logger.info(
                "gas_distribution_raised_to_shortfall",
                wallet_id=wallet.address[:10],
                configured=cfg.gas_distribution_amount,
                amount=amount,
                gas_price=gas_price,
            )
        amount_wei = decimal_to_units(amount, NATIVE_DECIMALS)
        cost_wei = amount_wei + self.native_transfer_gas_limit * gas_price

        def build(nonce: int, gas_price: int) -> dict:
            return build_native_transfer(
                wallet.address,
                amount_wei,
                nonce=nonce,
                gas_price=gas_price,
                gas_limit=self.native_transfer_gas_limit,
                chain_id=self.chain_id,
            )

        def record(signed: SignedTransaction) -> None:
            self._in_flight[signed.tx_hash] = cost_wei
            if on_signed is not None:
                on_signed(signed)

        with self.locks.hold(_gas_lock_key(cfg.address)):
            self._release_mined()
            master_wei = self.chain.get_native_balance_units(cfg.address, timeout=timeout)
            in_flight_wei = self.in_flight_wei()
            available_wei = master_wei - decimal_to_units(cfg.min_reserve, NATIVE_DECIMALS) - in_flight_wei
            if available_wei < cost_wei:
                available = units_to_decimal(available_wei, NATIVE_DECIMALS)
                required = units_to_decimal(cost_wei, NATIVE_DECIMALS)
                message = (
                    f"master wallet cannot fund {amount} gas (+ fee) without breaching reserve "
                    f"(balance {units_to_decimal(master_wei, NATIVE_DECIMALS)}, "
                    f"reserve {cfg.min_reserve}, in flight {units_to_decimal(in_flight_wei, NATIVE_DECIMALS)})"
                )
                logger.warning(
                    "gas_insufficient_reserve",
                    wallet_id=wallet.address[:10],
                    available=available,
                    required=required,
                    min_reserve=cfg.min_reserve,
                )
                self.ledger.log_gas_operation(
                    "distribute",
                    "failed",
                    wallet_address=wallet.address,
                    native_amount=amount,
                    error_message=message,
                )
                raise InsufficientReserveError(message, available=available, required=required)

            try:
                signed = self.secrets.with_signer(
                    cfg.secret_handle,
                    lambda signer: self.submitter.send(signer, build, on_signed=record),
                )
            except RevertedError as e:
                # Rejected by the node: it will never be mined.
                if e.tx_hash:
                    self._in_flight.pop(e.tx_hash, None)
                raise
        logger.info("gas_distribution_sent", wallet_id=wallet.address[:10], amount=amount, tx_hash=signed.tx_hash)

        result = self.chain.wait_for_confirmation(signed.tx_hash, self.confirmation_timeout_sec)
        if isinstance(result, (Confirmed, Reverted)):
            with self.locks.hold(_gas_lock_key(cfg.address)):
                self._in_flight.pop(signed.tx_hash, None)
        if isinstance(result, Confirmed):
            self.ledger.log_gas_operation(
                "distribute",
                "completed",
                wallet_address=wallet.address,
                native_amount=amount,
                gas_used=result.gas_used,
                fee_native=units_to_decimal(result.fee_wei, NATIVE_DECIMALS),
                tx_hash=signed.tx_hash,
            )
            logger.info("gas_distribution_confirmed", wallet_id=wallet.address[:10], tx_hash=signed.tx_hash)
            return GasResult(funded=True, tx_hash=signed.tx_hash, native_amount=amount)

        if isinstance(result, Reverted):
            error = f"gas transfer reverted: {result.reason}"
        elif isinstance(result, TimedOut):
            error = f"gas transfer not confirmed within {self.confirmation_timeout_sec:g}s"
        else:
            error = f"unexpected confirmation result {result!r}"
        self.ledger.log_gas_operation(
            "distribute",
            "failed",
            wallet_address=wallet.address,
            native_amount=amount,
            tx_hash=signed.tx_hash,
            error_message=error,
        )
        logger.warning("gas_distribution_failed", wallet_id=wallet.address[:10], tx_hash=signed.tx_hash, error=error)
        return GasResult(funded=False, tx_hash=signed.tx_hash, error=error, native_amount=amount)

    def _release_mined(self) -> None:
        """Drop in-flight entries whose receipt is now final. Caller holds the gas lock."""
        for tx_hash in list(self._in_flight):
            try:
                outcome = self.chain.check_confirmation(tx_hash, timeout=self.rpc_timeout_sec)
            except NetworkError as e:
                logger.debug("gas_in_flight_check_failed", tx_hash=tx_hash, error=str(e))
                continue
            if outcome is not None:
                self._in_flight.pop(tx_hash, None)
                logger.info("gas_in_flight_released", tx_hash=tx_hash)
