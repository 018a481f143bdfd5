"""
Pytest fixtures for sweeper tests. Temporary SQLite DB per test and an
in-memory FakeChain that decodes the signed transactions it receives.
"""

from __future__ import annotations

import threading
import time
from decimal import Decimal

import pytest
import rlp
from eth_account import Account
from eth_utils import big_endian_to_int, to_checksum_address

from backend_sweeper.chain.client import ChainClient
from backend_sweeper.chain.models import Confirmed, Reverted, SignedTransaction
from backend_sweeper.config.settings import Settings
from backend_sweeper.core.exceptions import NetworkError
from backend_sweeper.database.database import Database
from backend_sweeper.database.models import MasterWalletConfig
from backend_sweeper.keystore.store import SecretStore
from backend_sweeper.utils.wallet_utils import decimal_to_units

TOKEN_ADDRESS = "0x55d398326f99059fF775485246999027B3197955"
MASTER_KEY = "0x" + "11" * 32
MASTER_ADDRESS = Account.from_key(MASTER_KEY).address
GAS_PRICE_WEI = 5_000_000_000
TRANSFER_SELECTOR = bytes.fromhex("a9059cbb")


def wei(amount: str | Decimal) -> int:
    return decimal_to_units(Decimal(str(amount)), 18)


class FakeChain(ChainClient):
    """
    In-memory chain. Balances are keyed by lowercase address. Submitted
    transactions take effect when first confirmed; outcome["native"] and
    outcome["token"] choose confirm | revert | pending per transaction kind.
    submit_errors[kind] fails the broadcast before the node sees it;
    lost_acks holds kinds the node accepts but whose reply is lost.
    """

    def __init__(self, token_address: str = TOKEN_ADDRESS) -> None:
        super().__init__(token_decimals=18, confirmation_depth=1, poll_interval_sec=0.005)
        self.token_address = token_address.lower()
        self.token: dict[str, int] = {}
        self.native: dict[str, int] = {}
        self.nonces: dict[str, int] = {}
        self.gas_price = GAS_PRICE_WEI
        self.outcome = {"native": "confirm", "token": "confirm"}
        self.submit_errors: dict[str, Exception] = {}
        self.lost_acks: set[str] = set()
        self.failing_balance: set[str] = set()
        self.submitted: list[dict] = []
        self.receipts: dict[str, object] = {}
        self._lock = threading.Lock()

    # test helpers

    def set_token(self, address: str, amount: str | Decimal) -> None:
        self.token[address.lower()] = wei(amount)

    def set_native(self, address: str, amount: str | Decimal) -> None:
        self.native[address.lower()] = wei(amount)

    def token_of(self, address: str) -> int:
        return self.token.get(address.lower(), 0)

    def kinds(self) -> list[str]:
        return [tx["kind"] for tx in self.submitted]

    # ChainClient

    def get_balance_units(self, address: str, *, timeout: float | None = None) -> int:
        if address.lower() in self.failing_balance:
            raise NetworkError(f"balanceOf {address}: connection reset")
        return self.token.get(address.lower(), 0)

    def get_native_balance_units(self, address: str, *, timeout: float | None = None) -> int:
        return self.native.get(address.lower(), 0)

    def get_nonce(self, address: str, *, timeout: float | None = None) -> int:
        return self.nonces.get(address.lower(), 0)

    def get_gas_price(self, *, timeout: float | None = None) -> int:
        return self.gas_price

    def submit(self, signed: SignedTransaction, *, timeout: float | None = None) -> str:
        tx = self._decode(signed)
        error = self.submit_errors.get(tx["kind"])
        if error is not None:
            raise error
        with self._lock:
            self.submitted.append(tx)
            self.nonces[tx["sender"]] = signed.nonce + 1
        if tx["kind"] in self.lost_acks:
            raise NetworkError("eth_sendRawTransaction: read timed out")
        return signed.tx_hash

    def check_confirmation(self, tx_hash: str, *, timeout: float | None = None):
        if tx_hash in self.receipts:
            return self.receipts[tx_hash]
        tx = next((t for t in self.submitted if t["hash"] == tx_hash), None)
        if tx is None:
            return None
        outcome = self.outcome[tx["kind"]]
        if outcome == "pending":
            return None
        if outcome == "revert":
            result = Reverted(tx_hash)
        else:
            self._apply(tx)
            result = Confirmed(tx_hash, block_number=1, confirmations=1, gas_used=21_000, effective_gas_price=self.gas_price)
        self.receipts[tx_hash] = result
        return result

    def _decode(self, signed: SignedTransaction) -> dict:
        nonce, gas_price, gas, to, value, data = rlp.decode(signed.raw)[:6]
        tx = {
            "hash": signed.tx_hash,
            "sender": signed.sender.lower(),
            "nonce": big_endian_to_int(nonce),
            "to": to_checksum_address(to).lower(),
            "value": big_endian_to_int(value),
            "kind": "native",
        }
        if tx["to"] == self.token_address and data[:4] == TRANSFER_SELECTOR:
            tx["kind"] = "token"
            tx["recipient"] = to_checksum_address(data[16:36]).lower()
            tx["units"] = big_endian_to_int(data[36:68])
        return tx

    def _apply(self, tx: dict) -> None:
        with self._lock:
            if tx["kind"] == "token":
                self.token[tx["sender"]] = self.token.get(tx["sender"], 0) - tx["units"]
                self.token[tx["recipient"]] = self.token.get(tx["recipient"], 0) + tx["units"]
            else:
                self.native[tx["sender"]] = self.native.get(tx["sender"], 0) - tx["value"]
                self.native[tx["to"]] = self.native.get(tx["to"], 0) + tx["value"]


@pytest.fixture
def secret() -> str:
    return SecretStore.generate_secret()


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'sweeper.db'}")
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def chain() -> FakeChain:
    fake = FakeChain()
    fake.set_native(MASTER_ADDRESS, "10")
    return fake


@pytest.fixture
def settings(tmp_path, secret) -> Settings:
    return Settings(
        rpc_urls=["http://127.0.0.1:8545"],
        chain_id=56,
        token_address=TOKEN_ADDRESS,
        database_url=f"sqlite:///{tmp_path / 'sweeper.db'}",
        private_key_secret=secret,
        master_wallet_private_key=MASTER_KEY,
        confirmation_timeout_sec=0.2,
        sweep_interval_sec=3600,
        sweep_concurrency=4,
        wallet_lock_wait_sec=2.0,
    )


@pytest.fixture
def controller(settings, chain, db):
    """Fully wired controller over the temp DB and FakeChain; not yet initialized."""
    from backend_sweeper.agent_worker.runtime import build_controller

    ctrl = build_controller(settings, chain=chain, db=db)
    yield ctrl
    ctrl.stop(persist=False, timeout=5)


@pytest.fixture
def master(controller) -> MasterWalletConfig:
    """Master config bootstrapped from the settings key (reserve 1.0, gas 0.001)."""
    controller.initialize()
    return controller.registry.get_master_config()


@pytest.fixture
def deposit_wallet(controller, master, chain):
    """Factory: provision a deposit wallet and give it a token balance."""

    def make(balance: str = "0", user_id: str = "user-1") -> str:
        address = controller.registry.provision_wallet(user_id, controller.secrets)
        if Decimal(balance):
            chain.set_token(address, balance)
        return address

    return make


def wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
