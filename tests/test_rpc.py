import pytest
from fastapi.testclient import TestClient

from cardprotocol.blockchain.contracts.abi import encode_call
from cardprotocol.blockchain.rpc import api


@pytest.fixture
def client(monkeypatch, chain, coordinator):
    monkeypatch.setattr(api, "coordinator", coordinator)
    monkeypatch.setattr(api, "chain", chain)
    return TestClient(api.app)


@pytest.fixture
def staged(chain, coordinator, deploy_adopted, owner, proposer):
    deployment = deploy_adopted("MerchantManager")
    implementation = chain.deploy(owner, "MerchantManagerV3")
    coordinator.propose_upgrade_and_call(proposer, "MerchantManager", implementation,
                                         encode_call("removeAdmin", owner))
    return deployment, implementation


def test_endpoints_need_a_coordinator(monkeypatch):
    monkeypatch.setattr(api, "coordinator", None)
    monkeypatch.setattr(api, "chain", None)
    client = TestClient(api.app)

    assert client.get("/status").status_code == 503
    assert client.get("/report").status_code == 503
    assert client.get("/tx/0xabc/receipt").status_code == 503


def test_status(client, coordinator, proposer):
    response = client.get("/status")

    assert response.status_code == 200
    body = response.json()
    assert body["address"] == coordinator.address
    assert body["version"] == "1.0.0"
    assert body["nonce"] == 0
    assert body["chain"]["network"] == "devnet"
    assert body["chain"]["contracts"] == 0
    assert client.get("/proposers").json() == {"proposers": [proposer]}


def test_proxies_and_pending(client, staged):
    deployment, implementation = staged

    proxies = client.get("/proxies").json()["proxies"]
    assert proxies == [{
        "contract_id": "MerchantManager",
        "proxy_address": deployment.proxy,
        "proxy_admin_address": deployment.proxy_admin,
    }]

    detail = client.get("/proxies/MerchantManager").json()
    assert detail["current_implementation"] == deployment.implementation
    assert detail["pending"]["new_implementation"] == implementation

    assert client.get("/proxies/Unknown").status_code == 404

    pending = client.get("/pending").json()
    assert pending["proxies"] == [deployment.proxy]
    assert pending["changes"][0]["contract_id"] == "MerchantManager"


def test_report_simulates_changes(client, staged):
    rows = client.get("/report").json()["rows"]

    assert len(rows) == 1
    assert rows[0]["contract_name"] == "MerchantManager"
    assert rows[0]["proposed_call"].startswith("removeAdmin(")
    assert "caller is not the owner" in rows[0]["failing_call"]


def test_events(client, staged):
    events = client.get("/events", params={"event_type": "change_proposed"}).json()["events"]

    assert [e["contract_id"] for e in events] == ["MerchantManager"]
    assert events[0]["kind"] == "UPGRADE_AND_CALL"


def test_receipts(client, chain, staged):
    receipt = chain.receipts.list()[-1]

    body = client.get(f"/tx/{receipt.tx_hash}/receipt").json()
    assert body["status"] == "confirmed"
    assert client.get("/tx/0xdeadbeef/receipt").status_code == 404


def test_metrics(client, staged):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "cardprotocol_pending_changes 1.0" in response.text
    assert "cardprotocol_adopted_proxies 1.0" in response.text
