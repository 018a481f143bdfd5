"""Encrypted key storage and scoped signing."""

from backend_sweeper.keystore.store import SecretStore, Signer

__all__ = ["SecretStore", "Signer"]
