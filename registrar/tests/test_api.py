"""
Learn2Earn Registrar — API Tests
FastAPI TestClient against a temporary SQLite store and a fake ledger.

Coverage:
  - POST /api/v1/submissions: 201, missing fields 400, duplicate 400 (any case)
  - GET status / list / approved shapes
  - PUT .../approve: happy path, 401 without key (ledger untouched),
    500 on revert (submission stays PENDING), 404, 409
  - 429 once the submit rate limit is spent
  - 500 store failure after grading, then listed under /api/v1/reconciliation
  - /api/v1/reconciliation and /health
"""

import logging
import time

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_MODERATOR_KEY, TEST_REGISTRAR_ADDRESS, BrokenCommitStore
from api.main import create_app, limiter
from engine.config import Settings
from engine.ledger_gateway import LedgerReceipt

WALLET = "0xABCdef0000000000000000000000000000000001"
BASE = "/api/v1/submissions"
AUTH = {"x-moderator-key": TEST_MODERATOR_KEY}


def _client_for(database_url, store, gateway, ledger_config, **overrides):
    limiter.reset()
    settings = Settings(
        database_url=database_url,
        moderator_key=TEST_MODERATOR_KEY,
        ledger=ledger_config,
        **overrides,
    )
    return TestClient(create_app(settings, store=store, gateway=gateway))


@pytest.fixture
def client(database_url, store, gateway, ledger_config):
    return _client_for(database_url, store, gateway, ledger_config)


def _submit(client, identity=WALLET, name="Ada", proof="https://example.org/cert.png"):
    return client.post(BASE, json={"identity": identity, "displayName": name, "proofReference": proof})


# ── Submission ────────────────────────────────────────────────────────────────

class TestSubmit:

    def test_created(self, client):
        r = _submit(client)
        assert r.status_code == 201
        assert r.json()["identity"] == WALLET.lower()

    def test_missing_fields(self, client):
        r = client.post(BASE, json={"identity": WALLET, "displayName": "Ada"})
        assert r.status_code == 400
        assert "proofReference" in r.json()["detail"]

    def test_blank_field(self, client):
        r = _submit(client, name="   ")
        assert r.status_code == 400

    def test_malformed_body(self, client):
        r = client.post(BASE, content=b"not json", headers={"content-type": "application/json"})
        assert r.status_code == 400

    def test_duplicate_any_case(self, client):
        assert _submit(client, identity=WALLET.lower()).status_code == 201
        r = _submit(client, identity=WALLET.upper().replace("0X", "0x"))
        assert r.status_code == 400
        assert "already submitted" in r.json()["detail"]

    def test_rate_limited(self, database_url, store, gateway, ledger_config):
        client = _client_for(database_url, store, gateway, ledger_config, rate_limit_submit="2/minute")
        assert _submit(client, identity="0x" + "1" * 40).status_code == 201
        assert _submit(client, identity="0x" + "2" * 40).status_code == 201
        r = _submit(client, identity="0x" + "3" * 40)
        assert r.status_code == 429
        assert store.get("0x" + "3" * 40) is None


# ── Status polling ────────────────────────────────────────────────────────────

class TestStatus:

    def test_pending_status(self, client):
        _submit(client)
        r = client.get(f"{BASE}/{WALLET}")
        assert r.status_code == 200
        body = r.json()
        assert body["submitted"] is True
        assert body["approved"] is False
        assert body["claimed"] is False
        assert body["decision"] == "PENDING"
        assert body["transactionHash"] is None
        assert body["displayName"] == "Ada"
        assert body["proofReference"] == "https://example.org/cert.png"
        assert body["submittedAt"].endswith("+00:00")
        assert body["approvedAt"] is None

    def test_unknown(self, client):
        assert client.get(f"{BASE}/0x{'9' * 40}").status_code == 404

    def test_list_newest_first(self, client):
        _submit(client, identity="0x" + "1" * 40, name="first")
        _submit(client, identity="0x" + "2" * 40, name="second")
        r = client.get(BASE)
        assert r.status_code == 200
        items = r.json()
        assert [i["displayName"] for i in items] == ["second", "first"]
        assert items[0]["identity"] == "0x" + "2" * 40
        assert "moderatorNotes" in items[0]

    def test_list_filter_by_decision(self, client):
        _submit(client, identity="0x" + "1" * 40, name="first")
        _submit(client, identity="0x" + "2" * 40, name="second")
        client.put(f"{BASE}/0x{'1' * 40}/approve", json={"approved": True}, headers=AUTH)

        pending = client.get(BASE, params={"decision": "PENDING"}).json()
        assert [i["displayName"] for i in pending] == ["second"]
        assert client.get(BASE, params={"decision": "bogus"}).status_code == 400

    def test_approved_list(self, client):
        _submit(client, identity="0x" + "1" * 40, name="first")
        _submit(client, identity="0x" + "2" * 40, name="second")
        client.put(f"{BASE}/0x{'2' * 40}/approve", json={"approved": True}, headers=AUTH)

        r = client.get(f"{BASE}/approved")
        assert r.status_code == 200
        assert r.json() == [{"identity": "0x" + "2" * 40, "displayName": "second"}]


# ── Moderation ────────────────────────────────────────────────────────────────

class TestModerate:

    def test_approve_scenario(self, client, fake_ledger):
        _submit(client)
        before = client.get(f"{BASE}/{WALLET}").json()
        assert before["submitted"] is True and before["approved"] is False

        r = client.put(
            f"{BASE}/{WALLET}/approve",
            json={"approved": True, "moderatorNotes": "verified certificate"},
            headers=AUTH,
        )
        assert r.status_code == 200
        assert r.json()["approved"] is True
        assert r.json()["txId"] == "0x1"
        assert r.json()["rewardsDistributed"] is True

        after = client.get(f"{BASE}/{WALLET}").json()
        assert after["approved"] is True
        assert after["claimed"] is True
        assert after["transactionHash"] == "0x1"
        assert after["approvedAt"] is not None
        assert after["claimedAt"] is not None
        assert fake_ledger.call_count == 1

    def test_reject(self, client):
        _submit(client)
        r = client.put(f"{BASE}/{WALLET}/approve", json={"approved": False}, headers=AUTH)
        assert r.status_code == 200
        assert r.json()["rewardsDistributed"] is False
        status_body = client.get(f"{BASE}/{WALLET}").json()
        assert status_body["decision"] == "REJECTED"
        assert status_body["claimed"] is False

    def test_missing_key(self, client, fake_ledger):
        _submit(client)
        r = client.put(f"{BASE}/{WALLET}/approve", json={"approved": True})
        assert r.status_code == 401
        assert fake_ledger.call_count == 0
        assert client.get(f"{BASE}/{WALLET}").json()["approved"] is False

    def test_wrong_key(self, client, fake_ledger):
        _submit(client)
        r = client.put(
            f"{BASE}/{WALLET}/approve", json={"approved": True}, headers={"x-moderator-key": "nope"}
        )
        assert r.status_code == 401
        assert fake_ledger.call_count == 0

    def test_ledger_revert(self, client, fake_ledger):
        _submit(client)
        fake_ledger.receipt = LedgerReceipt(tx_id="0xbad", reverted=True, outputs=[b"\xbe\xef"])
        r = client.put(f"{BASE}/{WALLET}/approve", json={"approved": True}, headers=AUTH)
        assert r.status_code == 500
        assert "Transaction was reverted" in r.json()["detail"]
        assert "0xbeef" in r.json()["detail"]

        after = client.get(f"{BASE}/{WALLET}").json()
        assert after["approved"] is False
        assert after["transactionHash"] is None

    def test_unknown_identity(self, client, fake_ledger):
        r = client.put(f"{BASE}/0x{'9' * 40}/approve", json={"approved": True}, headers=AUTH)
        assert r.status_code == 404
        assert fake_ledger.call_count == 0

    def test_already_decided(self, client, fake_ledger):
        _submit(client)
        client.put(f"{BASE}/{WALLET}/approve", json={"approved": True}, headers=AUTH)
        r = client.put(f"{BASE}/{WALLET}/approve", json={"approved": False}, headers=AUTH)
        assert r.status_code == 409
        assert fake_ledger.call_count == 1

    def test_missing_approved_flag(self, client, fake_ledger):
        _submit(client)
        r = client.put(f"{BASE}/{WALLET}/approve", json={"moderatorNotes": "x"}, headers=AUTH)
        assert r.status_code == 400
        assert fake_ledger.call_count == 0


# ── Admin / health ────────────────────────────────────────────────────────────

class TestAdmin:

    def test_reconciliation_requires_key(self, client):
        assert client.get("/api/v1/reconciliation").status_code == 401

    def test_reconciliation_empty(self, client):
        r = client.get("/api/v1/reconciliation", headers=AUTH)
        assert r.status_code == 200
        assert r.json() == {"count": 0, "items": []}

    def test_store_failure_listed_for_reconciliation(self, database_url, gateway, ledger_config, fake_ledger):
        broken = BrokenCommitStore(database_url)
        client = _client_for(database_url, broken, gateway, ledger_config)
        try:
            assert _submit(client).status_code == 201

            r = client.put(f"{BASE}/{WALLET}/approve", json={"approved": True}, headers=AUTH)
            assert r.status_code == 500
            assert "(tx 0x1)" in r.json()["detail"]

            listing = client.get("/api/v1/reconciliation", headers=AUTH).json()
            assert listing["count"] == 1
            [item] = listing["items"]
            assert item["identity"] == WALLET.lower()
            assert item["decision"] == "APPROVED"
            assert item["txId"] == "0x1"

            retry = client.put(f"{BASE}/{WALLET}/approve", json={"approved": True}, headers=AUTH)
            assert retry.status_code == 409
            assert fake_ledger.call_count == 1
        finally:
            broken.engine.dispose()

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "operational"
        assert body["registrar_address"] == TEST_REGISTRAR_ADDRESS
        assert body["store_ok"] is True

    def test_log_timestamps_are_utc(self):
        assert logging.Formatter.converter is time.gmtime
