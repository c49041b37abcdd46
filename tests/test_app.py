import dataclasses
import json

import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import CONTRACT, DONOR_A, DONOR_B, FakeAllowlist, FakeRpc, donated_log, tx

NO_STORE = "no-store, no-cache, must-revalidate, private"


@pytest.fixture
def rpc():
    rpc = FakeRpc(
        head=2000,
        logs=[(10, donated_log(DONOR_A, 7)), (20, donated_log(DONOR_B, 2 ** 70))],
        blocks={1999: [tx(DONOR_A, CONTRACT, 5)]},
    )
    rpc.values = {"minEligibleBalance": 10, "payoutAmount": 100, "cooldown": 3600}
    rpc.balances = {CONTRACT: 12345}
    return rpc


@pytest.fixture
def client(config, rpc):
    allow = FakeAllowlist({DONOR_A: "alice"})
    return TestClient(create_app(config, rpc=rpc, allowlist=allow))


def test_balance(client):
    r = client.get("/api/balance")
    assert r.status_code == 200
    assert r.json() == {"balance": "12345"}
    assert r.headers["cache-control"] == NO_STORE


def test_donors_leaderboard(client):
    r = client.get("/api/donors")
    assert r.status_code == 200
    assert r.headers["cache-control"] == NO_STORE
    assert r.json() == [
        {"identity": DONOR_B, "amount": str(2 ** 70), "address": DONOR_B, "username": "unknown"},
        {"identity": DONOR_A, "amount": "12", "address": DONOR_A, "username": "alice"},
    ]


def test_donors_uses_base_snapshot(config, rpc, tmp_path):
    path = tmp_path / "base.json"
    path.write_text(json.dumps({"lastBlock": 1990, "donors": [{"address": DONOR_B, "amountWei": "1"}]}))
    cfg = dataclasses.replace(config, base_snapshot_path=str(path))
    client = TestClient(create_app(cfg, rpc=rpc, allowlist=FakeAllowlist()))

    r = client.get("/api/donors")

    assert [(d["identity"], d["amount"]) for d in r.json()] == [(DONOR_A, "5"), (DONOR_B, "1")]
    assert rpc.log_calls == []


def test_donors_block_scan_failure_is_502(config, rpc):
    rpc.failing_blocks = {1999}
    client = TestClient(create_app(config, rpc=rpc, allowlist=FakeAllowlist()))
    r = client.get("/api/donors")
    assert r.status_code == 502
    assert "1999" in r.json()["detail"]


def test_donors_snapshot(client):
    r = client.get("/api/donors-snapshot")
    assert r.status_code == 200
    body = r.json()
    assert body["lastBlock"] == "2000"
    assert body["donors"][0] == {"address": DONOR_B, "username": None, "amountWei": str(2 ** 70)}


def test_claim_success_and_alternate_identity_field(client, rpc):
    r = client.post("/api/claim", json={"address": DONOR_A, "discordUsername": "alice"})
    assert r.status_code == 200
    assert r.json() == {"txHash": "0x" + "ab" * 32}
    assert rpc.submitted[0][1] == "claimFor"


def test_claim_rejections_carry_reason(client, rpc):
    r = client.post("/api/claim", json={"address": DONOR_A})
    assert (r.status_code, r.json()["reason"]) == (400, "invalid_request")

    r = client.post("/api/claim", json={"address": DONOR_A, "discordId": "bob"})
    assert (r.status_code, r.json()["reason"]) == (403, "not_allowlisted")

    rpc.last_claims[DONOR_A] = 10 ** 12
    r = client.post("/api/claim", json={"address": DONOR_A, "discordId": "alice"})
    assert r.status_code == 429
    assert r.json()["reason"] == "cooldown_active"
    assert r.json()["secondsLeft"] > 0


def test_debug(client):
    body = client.get("/api/debug").json()
    assert body["contractInUse"].lower() == CONTRACT
    assert (body["deployBlock"], body["currentBlock"]) == ("0", "2000")


def test_debug_reports_head_lookup_failure_inline(config, rpc):
    def broken():
        raise TimeoutError("node timed out")

    rpc.get_current_height = broken
    client = TestClient(create_app(config, rpc=rpc, allowlist=FakeAllowlist()))
    body = client.get("/api/debug").json()
    assert body["currentBlock"] == "error: node timed out"


def test_bad_config_answers_500_on_every_endpoint(config, rpc, tmp_path):
    cfg = dataclasses.replace(config, base_snapshot_path=str(tmp_path / "missing.json"))
    client = TestClient(create_app(cfg, rpc=rpc, allowlist=FakeAllowlist()))
    for path in ("/api/balance", "/api/donors", "/api/debug"):
        r = client.get(path)
        assert r.status_code == 500
        assert "base snapshot" in r.json()["detail"]


def test_malformed_base_snapshot_answers_500(config, rpc, tmp_path):
    path = tmp_path / "base.json"
    path.write_text(json.dumps({"lastBlock": 5, "donors": ["0xabc"]}))
    cfg = dataclasses.replace(config, base_snapshot_path=str(path))
    client = TestClient(create_app(cfg, rpc=rpc, allowlist=FakeAllowlist()))

    r = client.get("/api/donors")

    assert r.status_code == 500
    assert "base snapshot" in r.json()["detail"]
