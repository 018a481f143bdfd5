"""
ChainClient: balance queries, submission and confirmation polling.

ChainClient is the capability the engine depends on; JsonRpcChainClient
implements it over EVM JSON-RPC (httpx) with fallback endpoints, per-call
timeouts and bounded retry for NetworkError. Every failure surfaces as either
NetworkError (retryable: transport, timeout, RPC-level error on a read) or
RevertedError (non-retryable: the node rejected the transaction).
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable

import httpx
from eth_abi import encode
from eth_utils import to_checksum_address

from backend_sweeper.chain.models import (
    ConfirmationResult,
    Confirmed,
    Reverted,
    SignedTransaction,
    TimedOut,
)
from backend_sweeper.chain.retry import call_with_retry
from backend_sweeper.config.env import mask_url
from backend_sweeper.core.exceptions import NetworkError, RevertedError
from backend_sweeper.sweeper_logging import get_logger
from backend_sweeper.utils.wallet_utils import units_to_decimal

logger = get_logger(__name__)

NATIVE_DECIMALS = 18
BALANCE_OF_SELECTOR = "70a08231"
DEFAULT_POLL_INTERVAL_SEC = 3.0

# Node messages meaning "this exact transaction is already in the pool/chain".
_ALREADY_KNOWN_MARKERS = ("already known", "known transaction", "already imported")


class ChainClient(ABC):
    """
    Chain capability used by the gas distributor, sweeper, withdrawals and scanner.

    Implementations provide the *_units primitives and check_confirmation();
    Decimal balances and wait_for_confirmation() are derived here.
    """

    def __init__(
        self,
        *,
        token_decimals: int = 18,
        confirmation_depth: int = 12,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.token_decimals = token_decimals
        self.confirmation_depth = max(1, int(confirmation_depth))
        self.poll_interval_sec = poll_interval_sec
        self._sleep = sleep

    @abstractmethod
    def get_balance_units(self, address: str, *, timeout: float | None = None) -> int:
        """Token balance in base units."""

    @abstractmethod
    def get_native_balance_units(self, address: str, *, timeout: float | None = None) -> int:
        """Native balance in wei."""

    @abstractmethod
    def get_nonce(self, address: str, *, timeout: float | None = None) -> int:
        """Next nonce including pending transactions."""

    @abstractmethod
    def get_gas_price(self, *, timeout: float | None = None) -> int:
        """Current gas price in wei."""

    @abstractmethod
    def submit(self, signed: SignedTransaction, *, timeout: float | None = None) -> str:
        """Broadcast a signed transaction; returns its hash. Resubmitting the same bytes is safe."""

    @abstractmethod
    def check_confirmation(self, tx_hash: str, *, timeout: float | None = None) -> ConfirmationResult | None:
        """
        Single receipt poll: Confirmed once final at confirmation_depth,
        Reverted when the receipt reports failure, None while unknown or shallow.
        """

    def get_balance(self, address: str, asset: str | None = None, *, timeout: float | None = None) -> Decimal:
        return units_to_decimal(self.get_balance_units(address, timeout=timeout), self.token_decimals)

    def get_native_balance(self, address: str, *, timeout: float | None = None) -> Decimal:
        return units_to_decimal(self.get_native_balance_units(address, timeout=timeout), NATIVE_DECIMALS)

    def wait_for_confirmation(self, tx_hash: str, timeout: float) -> ConfirmationResult:
        """
        Poll until Confirmed or Reverted, or return TimedOut after timeout seconds.
        Transient NetworkErrors while polling do not end the wait early.
        """
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            remaining = deadline - time.monotonic()
            try:
                result = self.check_confirmation(tx_hash, timeout=max(1.0, remaining))
            except NetworkError as e:
                logger.warning("confirmation_poll_failed", tx_hash=tx_hash, error=str(e))
                result = None
            if result is not None:
                return result
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("confirmation_timed_out", tx_hash=tx_hash, timeout_sec=timeout)
                return TimedOut(tx_hash)
            self._sleep(min(self.poll_interval_sec, remaining))

    def is_connected(self) -> bool:
        try:
            self.get_gas_price()
            return True
        except NetworkError:
            return False


class RpcResponseError(NetworkError):
    """JSON-RPC error object in an otherwise valid response."""

    def __init__(self, message: str, *, rpc_code: int | None = None) -> None:
        super().__init__(message)
        self.rpc_code = rpc_code


def _hex_to_int(value: Any) -> int:
    if value is None or value in ("0x", ""):
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


class JsonRpcChainClient(ChainClient):
    """EVM JSON-RPC over httpx with fallback endpoints."""

    def __init__(
        self,
        rpc_urls: list[str],
        *,
        token_address: str,
        token_decimals: int = 18,
        confirmation_depth: int = 12,
        timeout_sec: float = 15.0,
        max_retries: int = 3,
        backoff_base_sec: float = 0.5,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(
            token_decimals=token_decimals,
            confirmation_depth=confirmation_depth,
            poll_interval_sec=poll_interval_sec,
            sleep=sleep,
        )
        if not rpc_urls:
            raise ValueError("at least one RPC URL is required")
        self.rpc_urls = [u.rstrip("/") for u in rpc_urls]
        self.token_address = to_checksum_address(token_address)
        self.timeout_sec = timeout_sec
        self.max_retries = max_retries
        self.backoff_base_sec = backoff_base_sec
        self._client = httpx.Client(timeout=timeout_sec, transport=transport)
        self._request_id = 0

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _post(self, url: str, method: str, params: list[Any], timeout: float | None) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}
        try:
            resp = self._client.post(url, json=body, timeout=timeout or self.timeout_sec)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise NetworkError(f"{method} via {mask_url(url)} failed: {e}") from e
        err = data.get("error") if isinstance(data, dict) else None
        if err:
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            code = err.get("code") if isinstance(err, dict) else None
            raise RpcResponseError(f"{method}: {message}", rpc_code=code)
        return data.get("result") if isinstance(data, dict) else None

    def _call_once(self, method: str, params: list[Any], timeout: float | None) -> Any:
        """One attempt across the primary then each fallback endpoint."""
        last_err: NetworkError | None = None
        for url in self.rpc_urls:
            try:
                return self._post(url, method, params, timeout)
            except RpcResponseError:
                # The node answered; another endpoint would give the same answer.
                raise
            except NetworkError as e:
                last_err = e
                logger.debug("rpc_endpoint_failed", method=method, url=mask_url(url), error=str(e))
        raise last_err or NetworkError(f"{method}: no RPC endpoint available")

    def _rpc(self, method: str, params: list[Any], *, timeout: float | None = None) -> Any:
        return call_with_retry(
            lambda: self._call_once(method, params, timeout),
            op=method,
            max_retries=self.max_retries,
            backoff_base_sec=self.backoff_base_sec,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # ChainClient
    # ------------------------------------------------------------------

    def get_balance_units(self, address: str, *, timeout: float | None = None) -> int:
        data = "0x" + BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(address)]).hex()
        result = self._rpc("eth_call", [{"to": self.token_address, "data": data}, "latest"], timeout=timeout)
        return _hex_to_int(result)

    def get_native_balance_units(self, address: str, *, timeout: float | None = None) -> int:
        result = self._rpc("eth_getBalance", [to_checksum_address(address), "latest"], timeout=timeout)
        return _hex_to_int(result)

    def get_nonce(self, address: str, *, timeout: float | None = None) -> int:
        result = self._rpc(
            "eth_getTransactionCount", [to_checksum_address(address), "pending"], timeout=timeout
        )
        return _hex_to_int(result)

    def get_gas_price(self, *, timeout: float | None = None) -> int:
        return _hex_to_int(self._rpc("eth_gasPrice", [], timeout=timeout))

    def get_block_number(self, *, timeout: float | None = None) -> int:
        return _hex_to_int(self._rpc("eth_blockNumber", [], timeout=timeout))

    def submit(self, signed: SignedTransaction, *, timeout: float | None = None) -> str:
        raw_hex = "0x" + signed.raw.hex()

        def send() -> str:
            try:
                result = self._call_once("eth_sendRawTransaction", [raw_hex], timeout)
            except RpcResponseError as e:
                if any(marker in str(e).lower() for marker in _ALREADY_KNOWN_MARKERS):
                    logger.info("tx_already_known", tx_hash=signed.tx_hash)
                    return signed.tx_hash
                raise RevertedError(str(e), tx_hash=signed.tx_hash) from e
            return result or signed.tx_hash

        tx_hash = call_with_retry(
            send,
            op="eth_sendRawTransaction",
            max_retries=self.max_retries,
            backoff_base_sec=self.backoff_base_sec,
            sleep=self._sleep,
        )
        logger.info("tx_submitted", tx_hash=tx_hash, sender=signed.sender[:10], nonce=signed.nonce)
        return tx_hash

    def check_confirmation(self, tx_hash: str, *, timeout: float | None = None) -> ConfirmationResult | None:
        receipt = self._rpc("eth_getTransactionReceipt", [tx_hash], timeout=timeout)
        if not receipt or receipt.get("blockNumber") is None:
            return None
        if _hex_to_int(receipt.get("status")) == 0:
            return Reverted(tx_hash, "execution reverted (receipt status 0)")
        block_number = _hex_to_int(receipt["blockNumber"])
        head = self.get_block_number(timeout=timeout)
        confirmations = head - block_number + 1
        if confirmations < self.confirmation_depth:
            return None
        return Confirmed(
            tx_hash=tx_hash,
            block_number=block_number,
            confirmations=confirmations,
            gas_used=_hex_to_int(receipt.get("gasUsed")),
            effective_gas_price=_hex_to_int(receipt.get("effectiveGasPrice")),
        )
