"""
Transaction building and the serialized submission path.

Every transaction the engine sends goes through one SerialSubmitter, which
owns "next nonce" state per sending account. For a given account the
nonce read, signing, hash recording and broadcast happen under that
account's lock, so gas funding, sweeps and withdrawals signing from the
shared master/hot wallet can never collide on a nonce. Waiting for
confirmation happens outside the lock.
"""

from __future__ import annotations

from typing import Any, Callable

from eth_abi import encode
from eth_utils import to_checksum_address

from backend_sweeper.chain.client import ChainClient
from backend_sweeper.chain.models import SignedTransaction
from backend_sweeper.core.exceptions import NetworkError, RevertedError
from backend_sweeper.core.locks import KeyedLocks
from backend_sweeper.keystore.store import Signer
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

TRANSFER_SELECTOR = "a9059cbb"


def erc20_transfer_data(to_address: str, units: int) -> str:
    """ABI-encoded transfer(address,uint256) call data."""
    args = encode(["address", "uint256"], [to_checksum_address(to_address), int(units)])
    return "0x" + TRANSFER_SELECTOR + args.hex()


def build_token_transfer(
    token_address: str,
    to_address: str,
    units: int,
    *,
    nonce: int,
    gas_price: int,
    gas_limit: int,
    chain_id: int,
) -> dict[str, Any]:
    return {
        "to": to_checksum_address(token_address),
        "value": 0,
        "data": erc20_transfer_data(to_address, units),
        "gas": gas_limit,
        "gasPrice": gas_price,
        "nonce": nonce,
        "chainId": chain_id,
    }


def build_native_transfer(
    to_address: str,
    wei: int,
    *,
    nonce: int,
    gas_price: int,
    gas_limit: int,
    chain_id: int,
) -> dict[str, Any]:
    return {
        "to": to_checksum_address(to_address),
        "value": int(wei),
        "gas": gas_limit,
        "gasPrice": gas_price,
        "nonce": nonce,
        "chainId": chain_id,
    }


# (nonce, gas_price) -> unsigned transaction dict
TxBuilder = Callable[[int, int], dict[str, Any]]


class SerialSubmitter:
    """Single submission path per sending account."""

    def __init__(self, chain: ChainClient, *, rpc_timeout_sec: float | None = None) -> None:
        self.chain = chain
        self.rpc_timeout_sec = rpc_timeout_sec
        self._locks = KeyedLocks()
        self._next_nonce: dict[str, int] = {}

    def send(
        self,
        signer: Signer,
        build_tx: TxBuilder,
        *,
        on_signed: Callable[[SignedTransaction], None] | None = None,
    ) -> SignedTransaction:
        """
        Sign and broadcast one transaction from signer.address.

        on_signed runs after signing and before broadcast so callers can
        persist the hash first. Raises RevertedError when the node rejects
        the transaction and NetworkError when the outcome is unknown.
        """
        key = signer.address.lower()
        with self._locks.hold(key):
            pending = self.chain.get_nonce(signer.address, timeout=self.rpc_timeout_sec)
            nonce = max(pending, self._next_nonce.get(key, 0))
            gas_price = self.chain.get_gas_price(timeout=self.rpc_timeout_sec)
            signed = signer.sign_transaction(build_tx(nonce, gas_price))
            if on_signed is not None:
                on_signed(signed)
            try:
                self.chain.submit(signed, timeout=self.rpc_timeout_sec)
            except (RevertedError, NetworkError) as e:
                # Nonce not advanced: the next send re-reads the pending count.
                logger.warning(
                    "tx_submit_failed",
                    sender=signer.address[:10],
                    nonce=nonce,
                    tx_hash=signed.tx_hash,
                    error=str(e),
                )
                raise
            self._next_nonce[key] = nonce + 1
            return signed
