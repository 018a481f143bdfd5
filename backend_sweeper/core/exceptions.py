"""
Application-level exceptions.

Every error the engine raises derives from SweeperError so the API layer and
the worker loop can tell domain failures apart from programming errors.
NetworkError is the only retryable class; everything that touches funds maps
to a well-defined row status (see database.models) instead of retrying.
"""

from __future__ import annotations


class SweeperError(Exception):
    """Base class for all engine errors."""

    code = "sweeper_error"


class ConfigurationError(SweeperError):
    """Invalid address, threshold ordering, or missing master configuration."""

    code = "configuration_error"


class NotInitializedError(SweeperError):
    """Controller operation used before initialize() succeeded."""

    code = "not_initialized"


class NotFoundError(SweeperError):
    """Wallet, withdrawal, or other entity does not exist."""

    code = "not_found"


class InsufficientReserveError(SweeperError):
    """Master wallet cannot fund gas without dropping below min_reserve."""

    code = "insufficient_reserve"

    def __init__(self, message: str, *, available=None, required=None) -> None:
        super().__init__(message)
        self.available = available
        self.required = required


class InsufficientFundsError(SweeperError):
    """Hot wallet spendable balance cannot cover a withdrawal. Retryable later."""

    code = "insufficient_funds"

    def __init__(self, message: str, *, available=None, required=None) -> None:
        super().__init__(message)
        self.available = available
        self.required = required


class NetworkError(SweeperError):
    """RPC transport failure or timeout. Retryable with backoff."""

    code = "network_error"


class RevertedError(SweeperError):
    """Transaction rejected or reverted on-chain. Never retried automatically."""

    code = "reverted"

    def __init__(self, message: str, *, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class PersistenceError(SweeperError):
    """Ledger or registry storage failure."""

    code = "persistence_error"


class InvalidTransitionError(PersistenceError):
    """Status change that would regress or skip the allowed lifecycle."""

    code = "invalid_transition"


class WalletLockedError(SweeperError):
    """Another sweep or withdrawal attempt already holds the lock for this key."""

    code = "wallet_locked"


class SecretStoreError(SweeperError):
    """Unknown handle, undecryptable key, or use of a released signer."""

    code = "secret_store_error"
