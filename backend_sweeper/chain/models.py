"""
Chain-facing value types: signed transactions and the closed set of
confirmation outcomes returned by ChainClient.wait_for_confirmation().

NetworkError is the fourth outcome; it is raised, not returned.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class SignedTransaction:
    """Raw signed bytes plus the hash they will have once broadcast."""

    raw: bytes
    tx_hash: str
    sender: str
    nonce: int


@dataclass(frozen=True)
class Confirmed:
    tx_hash: str
    block_number: int
    confirmations: int
    gas_used: int = 0
    effective_gas_price: int = 0
    """wei per gas; gas_used * effective_gas_price is the fee paid."""

    @property
    def fee_wei(self) -> int:
        return self.gas_used * self.effective_gas_price


@dataclass(frozen=True)
class TimedOut:
    """Not final within the timeout. The transaction may still land later."""

    tx_hash: str


@dataclass(frozen=True)
class Reverted:
    tx_hash: str
    reason: str = "execution reverted"


ConfirmationResult = Union[Confirmed, TimedOut, Reverted]
