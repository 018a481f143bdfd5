"""
Tests for SecretStore: encrypted keys behind handles and scoped signers.
"""

from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from backend_sweeper.core.exceptions import ConfigurationError, SecretStoreError
from backend_sweeper.database.tables import WalletSecretRow
from backend_sweeper.keystore.store import SecretStore

from tests.conftest import MASTER_ADDRESS, MASTER_KEY, TOKEN_ADDRESS


@pytest.fixture
def store(db, secret) -> SecretStore:
    return SecretStore(db, secret)


def _tx(nonce: int = 0) -> dict:
    return {
        "to": TOKEN_ADDRESS,
        "value": 1,
        "gas": 21_000,
        "gasPrice": 5_000_000_000,
        "nonce": nonce,
        "chainId": 56,
    }


def test_missing_or_invalid_secret(db):
    with pytest.raises(ConfigurationError):
        SecretStore(db, "")
    with pytest.raises(ConfigurationError):
        SecretStore(db, "not-a-fernet-key")


def test_put_key_is_idempotent_and_encrypted(store, db):
    handle = store.put_key(MASTER_KEY)
    assert handle.startswith("ks_")
    assert store.put_key(MASTER_KEY[2:]) == handle
    assert store.address_for(handle) == MASTER_ADDRESS
    with db.session_scope() as session:
        row = session.get(WalletSecretRow, handle)
        assert MASTER_KEY[2:] not in row.encrypted_key


def test_put_key_rejects_bad_material(store):
    with pytest.raises(SecretStoreError):
        store.put_key("0xzz")
    with pytest.raises(SecretStoreError):
        store.put_key("0x" + "11" * 16)


def test_signer_signs_then_revokes(store):
    handle = store.put_key(MASTER_KEY)
    with store.signer(handle) as signer:
        signed = signer.sign_transaction(_tx(nonce=3))
        assert signed.sender == MASTER_ADDRESS
        assert signed.nonce == 3
        assert signed.tx_hash.startswith("0x") and len(signed.tx_hash) == 66
    assert signer.revoked
    with pytest.raises(SecretStoreError, match="outside its scope"):
        signer.sign_transaction(_tx())


def test_signer_revoked_when_scope_raises(store):
    handle = store.put_key(MASTER_KEY)
    captured = []

    def boom(signer):
        captured.append(signer)
        raise RuntimeError("caller failed")

    with pytest.raises(RuntimeError):
        store.with_signer(handle, boom)
    assert captured[0].revoked


def test_unknown_handle_and_wrong_secret(store, db):
    with pytest.raises(SecretStoreError, match="unknown"):
        with store.signer("ks_missing"):
            pass
    handle = store.put_key(MASTER_KEY)
    other = SecretStore(db, Fernet.generate_key().decode())
    with pytest.raises(SecretStoreError, match="cannot decrypt"):
        other.with_signer(handle, lambda s: s.address)


def test_generate_returns_usable_account(store):
    address, handle = store.generate()
    assert store.address_for(handle) == address
    signed = store.with_signer(handle, lambda s: s.sign_transaction(_tx()))
    assert signed.sender == address
