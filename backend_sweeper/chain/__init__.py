"""Chain access: ChainClient capability, JSON-RPC implementation, serialized submission."""

from backend_sweeper.chain.client import ChainClient, JsonRpcChainClient
from backend_sweeper.chain.models import (
    ConfirmationResult,
    Confirmed,
    Reverted,
    SignedTransaction,
    TimedOut,
)

__all__ = [
    "ChainClient",
    "ConfirmationResult",
    "Confirmed",
    "JsonRpcChainClient",
    "Reverted",
    "SignedTransaction",
    "TimedOut",
]
