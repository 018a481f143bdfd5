"""
SecretStore: Fernet-encrypted private keys behind opaque handles.

Plaintext key material exists only inside signer() / with_signer(): the key is
decrypted into a bytearray, handed to a Signer capability, and zeroed when the
scope exits, whether it exits normally or by exception. A Signer used after
its scope raises SecretStoreError. Nothing here returns key bytes to callers.
"""

from __future__ import annotations

import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Iterator, TypeVar

from cryptography.fernet import Fernet, InvalidToken
from eth_account import Account
from eth_utils import to_hex
from sqlalchemy.exc import IntegrityError

from backend_sweeper.chain.models import SignedTransaction
from backend_sweeper.core.exceptions import ConfigurationError, SecretStoreError
from backend_sweeper.database.database import Database
from backend_sweeper.database.tables import WalletSecretRow
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

_KEY_LENGTH = 32


def _key_bytes(private_key: str | bytes) -> bytearray:
    if isinstance(private_key, (bytes, bytearray)):
        raw = bytearray(private_key)
    else:
        text = private_key.strip()
        if text.startswith(("0x", "0X")):
            text = text[2:]
        try:
            raw = bytearray.fromhex(text)
        except ValueError as e:
            raise SecretStoreError("private key is not valid hex") from e
    if len(raw) != _KEY_LENGTH:
        raise SecretStoreError("private key must be 32 bytes")
    return raw


def _zero(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


class Signer:
    """Signing capability for one address, valid only inside its scope."""

    def __init__(self, address: str, key: bytearray) -> None:
        self.address = address
        self._key = key
        self._revoked = False

    @property
    def revoked(self) -> bool:
        return self._revoked

    def sign_transaction(self, tx: dict[str, Any]) -> SignedTransaction:
        if self._revoked:
            raise SecretStoreError("signer used outside its scope")
        signed = Account.sign_transaction(tx, bytes(self._key))
        return SignedTransaction(
            raw=bytes(signed.raw_transaction),
            tx_hash=to_hex(signed.hash),
            sender=self.address,
            nonce=int(tx.get("nonce", 0)),
        )

    def _revoke(self) -> None:
        _zero(self._key)
        self._revoked = True

    def __repr__(self) -> str:
        state = "revoked" if self._revoked else "active"
        return f"Signer(address={self.address!r}, {state})"


class SecretStore:
    """Encrypted key storage; one Fernet key (PRIVATE_KEY_SECRET) per deployment."""

    def __init__(self, db: Database, secret: str) -> None:
        if not secret:
            raise ConfigurationError("PRIVATE_KEY_SECRET is required for the secret store")
        try:
            self._fernet = Fernet(secret.encode() if isinstance(secret, str) else secret)
        except (ValueError, TypeError) as e:
            raise ConfigurationError("PRIVATE_KEY_SECRET is not a valid Fernet key") from e
        self.db = db

    @staticmethod
    def generate_secret() -> str:
        """New Fernet key suitable for PRIVATE_KEY_SECRET."""
        return Fernet.generate_key().decode()

    def put_key(self, private_key: str | bytes) -> str:
        """
        Encrypt and store a key; return its handle.

        Importing the same key twice returns the existing handle.
        """
        raw = _key_bytes(private_key)
        try:
            address = Account.from_key(bytes(raw)).address
            token = self._fernet.encrypt(bytes(raw)).decode()
        finally:
            _zero(raw)
        existing = self._handle_for_address(address)
        if existing:
            return existing
        handle = f"ks_{uuid.uuid4().hex}"
        try:
            with self.db.session_scope() as session:
                session.add(
                    WalletSecretRow(
                        handle=handle,
                        address=address,
                        encrypted_key=token,
                        created_at=int(time.time()),
                    )
                )
        except IntegrityError:
            existing = self._handle_for_address(address)
            if existing:
                return existing
            raise
        logger.info("secret_stored", wallet_id=address[:10], handle=handle)
        return handle

    def generate(self) -> tuple[str, str]:
        """Create a fresh account; return (address, handle)."""
        account = Account.create()
        handle = self.put_key(bytes(account.key))
        return account.address, handle

    def address_for(self, handle: str) -> str:
        with self.db.session_scope() as session:
            row = session.get(WalletSecretRow, handle)
            if row is None:
                raise SecretStoreError(f"unknown secret handle {handle!r}")
            return row.address

    def _handle_for_address(self, address: str) -> str | None:
        with self.db.session_scope() as session:
            row = session.query(WalletSecretRow).filter(WalletSecretRow.address == address).first()
            return row.handle if row else None

    @contextmanager
    def signer(self, handle: str) -> Iterator[Signer]:
        """Scoped signing capability; the key is zeroed on every exit path."""
        with self.db.session_scope() as session:
            row = session.get(WalletSecretRow, handle)
            if row is None:
                raise SecretStoreError(f"unknown secret handle {handle!r}")
            address, token = row.address, row.encrypted_key
        try:
            key = bytearray(self._fernet.decrypt(token.encode()))
        except InvalidToken as e:
            raise SecretStoreError(f"cannot decrypt key for handle {handle!r}") from e
        signer = Signer(address, key)
        try:
            yield signer
        finally:
            signer._revoke()

    def with_signer(self, handle: str, fn: Callable[[Signer], T]) -> T:
        with self.signer(handle) as signer:
            return fn(signer)
