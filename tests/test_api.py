"""
Pytest tests for the HTTP API (admin sweep routes and gas manager).

The app is built around the test controller; the lifespan initializes it.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from backend_sweeper.api_server.server import create_app
from backend_sweeper.core.exceptions import NetworkError
from backend_sweeper.database.models import WithdrawalStatus

from tests.conftest import MASTER_ADDRESS

USER_WALLET = "0x8ba1f109551bD432803012645Ac136ddd64DBA72"


@pytest.fixture
def client(controller):
    with TestClient(create_app(controller)) as c:
        yield c


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_generate_wallet_returns_address_only(client, controller):
    r = client.post("/api/admin/sweep/generate-wallet", json={"user_id": "user-9"})
    assert r.status_code == 201
    data = r.json()
    assert set(data) == {"address", "user_id"}
    assert controller.registry.get_wallet(data["address"]).user_id == "user-9"


def test_check_deposits_targeted_and_full(client, controller, chain):
    address = controller.registry.provision_wallet("user-1", controller.secrets)
    chain.set_token(address, "42")

    r = client.post("/api/admin/sweep/check-deposits", json={"wallet_address": address})
    assert r.status_code == 200
    assert r.json() == {"new_deposits": 1, "total_scanned": 1, "errors": []}

    r = client.post("/api/admin/sweep/check-deposits", json={})
    assert r.status_code == 200
    assert r.json()["errors"] == []

    assert client.get("/api/admin/sweep/check-deposits").status_code == 200


def test_hot_wallet_status(client, chain):
    chain.set_token(MASTER_ADDRESS, "77.25")
    r = client.get("/api/admin/sweep/hot-wallet-status")
    assert r.status_code == 200
    data = r.json()
    assert data["address"] == MASTER_ADDRESS
    assert data["asset_balance"] == "77.25"
    assert data["native_balance"] == "10"
    assert data["is_connected"] is True


def test_process_withdrawal_flow(client, controller, chain):
    chain.set_token(MASTER_ADDRESS, "300")

    r = client.post(
        "/api/admin/sweep/process-withdrawal",
        json={"withdrawal_id": "w-1", "to_address": USER_WALLET, "amount": "500", "user_id": "u"},
    )
    assert r.status_code == 409
    assert r.json()["code"] == "insufficient_funds"
    pending = client.get("/api/admin/sweep/process-withdrawal").json()
    assert pending["count"] == 1
    assert pending["withdrawals"][0]["id"] == "w-1"

    r = client.post(
        "/api/admin/sweep/process-withdrawal",
        json={"withdrawal_id": "w-2", "to_address": USER_WALLET, "amount": "25.5", "user_id": "u"},
    )
    assert r.status_code == 200
    assert r.json()["status"] == WithdrawalStatus.COMPLETED.value
    assert r.json()["tx_hash"] == chain.submitted[0]["hash"]

    r = client.post(
        "/api/admin/sweep/process-withdrawal",
        json={"withdrawal_id": "w-3", "to_address": "bogus", "amount": "1", "user_id": "u"},
    )
    assert r.status_code == 422
    assert r.json()["status"] == "failed"

    chain.submit_errors["token"] = NetworkError("read timed out")
    r = client.post(
        "/api/admin/sweep/process-withdrawal",
        json={"withdrawal_id": "w-4", "to_address": USER_WALLET, "amount": "1", "user_id": "u"},
    )
    assert r.status_code == 202
    assert r.json()["status"] == WithdrawalStatus.PROCESSING.value
    assert r.json()["tx_hash"] is not None


def test_process_withdrawal_validates_amount(client):
    r = client.post(
        "/api/admin/sweep/process-withdrawal",
        json={"withdrawal_id": "w-1", "to_address": USER_WALLET, "amount": "0", "user_id": "u"},
    )
    assert r.status_code == 422


def test_wallet_stats(client, controller):
    controller.registry.provision_wallet("user-1", controller.secrets)
    data = client.get("/api/admin/sweep/wallet-stats").json()
    assert data["total_wallets"] == 1
    assert data["pending_withdrawals"] == 0


def test_gas_manager_status_and_stats(client):
    r = client.get("/api/gas-manager", params={"action": "status"})
    assert r.status_code == 200
    assert r.json()["is_initialized"] is True
    assert r.json()["master_wallet"] == MASTER_ADDRESS

    r = client.get("/api/gas-manager", params={"action": "stats", "days": 3})
    assert r.status_code == 200
    assert r.json()["days"] == 3

    assert client.get("/api/gas-manager", params={"action": "nope"}).status_code == 422


def test_gas_manager_actions(client, controller, chain):
    r = client.post("/api/gas-manager", json={"action": "start"})
    assert r.status_code == 200
    assert r.json()["state"] == "running"

    r = client.post("/api/gas-manager", json={"action": "stop"})
    assert r.json() == {"success": True, "changed": True, "state": "idle"}

    r = client.post("/api/gas-manager", json={"action": "manual-sweep"})
    assert r.status_code == 200
    assert "summary" in r.json()

    r = client.post("/api/gas-manager", json={"action": "emergency-sweep"})
    assert r.status_code == 400
    assert "wallet_address" in r.json()["detail"]

    address = controller.registry.provision_wallet("user-1", controller.secrets)
    chain.set_token(address, "3")
    r = client.post("/api/gas-manager", json={"action": "emergency-sweep", "wallet_address": address})
    assert r.status_code == 200
    assert r.json()["result"]["operation"]["status"] == "completed"

    r = client.post("/api/gas-manager", json={"action": "initialize"})
    assert r.status_code == 200

    assert client.post("/api/gas-manager", json={"action": "explode"}).status_code == 422


def test_unknown_wallet_maps_to_404(client):
    r = client.post("/api/gas-manager", json={"action": "emergency-sweep", "wallet_address": USER_WALLET})
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


def test_uninitialized_engine_maps_to_503(settings, chain, db):
    from backend_sweeper.agent_worker.runtime import build_controller

    settings.master_wallet_private_key = ""
    ctrl = build_controller(settings, chain=chain, db=db)
    with TestClient(create_app(ctrl)) as c:
        r = c.post("/api/gas-manager", json={"action": "manual-sweep"})
        assert r.status_code == 503
        assert r.json()["code"] == "not_initialized"
        r = c.post("/api/gas-manager", json={"action": "initialize"})
        assert r.status_code == 400
