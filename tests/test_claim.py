import pytest
from web3 import Web3

from claim import ClaimAuthorizer, ClaimRejected
from conftest import CONTRACT, DONOR_A, FakeAllowlist, FakeRpc

NOW = 1_700_000_000
ETHER = 10 ** 18


@pytest.fixture
def rpc():
    rpc = FakeRpc()
    rpc.values = {"minEligibleBalance": 1 * ETHER, "payoutAmount": 2 * ETHER, "cooldown": 86_400}
    rpc.balances = {CONTRACT: 100 * ETHER, DONOR_A: 0}
    return rpc


@pytest.fixture
def authorizer(rpc):
    return ClaimAuthorizer(rpc, CONTRACT, FakeAllowlist({DONOR_A: "alice"}), clock=lambda: NOW)


def reason_of(authorizer, address, identity):
    with pytest.raises(ClaimRejected) as exc:
        authorizer.authorize_and_submit(address, identity)
    return exc.value


def test_successful_claim_submits_claim_for(authorizer, rpc):
    tx_hash = authorizer.authorize_and_submit(DONOR_A, "alice")
    assert tx_hash == "0x" + "ab" * 32
    assert rpc.submitted == [(CONTRACT, "claimFor", [Web3.to_checksum_address(DONOR_A)])]


@pytest.mark.parametrize("address,identity", [(None, "alice"), (DONOR_A, None), ("  ", "alice"), (DONOR_A, "")])
def test_missing_fields(authorizer, address, identity):
    err = reason_of(authorizer, address, identity)
    assert (err.reason, err.status) == ("invalid_request", 400)


def test_invalid_address(authorizer):
    err = reason_of(authorizer, "0x1234", "alice")
    assert (err.reason, err.status) == ("invalid_address", 400)


def test_not_allowlisted(authorizer):
    err = reason_of(authorizer, DONOR_A, "mallory")
    assert (err.reason, err.status) == ("not_allowlisted", 403)


def test_balance_at_ceiling_is_rejected(authorizer, rpc):
    rpc.balances[DONOR_A] = 1 * ETHER
    err = reason_of(authorizer, DONOR_A, "alice")
    assert (err.reason, err.status) == ("balance_above_threshold", 400)


def test_faucet_empty(authorizer, rpc):
    rpc.balances[CONTRACT] = 2 * ETHER - 1
    err = reason_of(authorizer, DONOR_A, "alice")
    assert (err.reason, err.status) == ("faucet_empty", 400)


def test_cooldown_reports_seconds_left(authorizer, rpc):
    rpc.last_claims[DONOR_A] = NOW - 86_000
    err = reason_of(authorizer, DONOR_A, "alice")
    assert (err.reason, err.status, err.seconds_left) == ("cooldown_active", 429, 400)
    assert rpc.submitted == []


def test_cooldown_elapsed_exactly_allows_claim(authorizer, rpc):
    rpc.last_claims[DONOR_A] = NOW - 86_400
    authorizer.authorize_and_submit(DONOR_A, "alice")
    assert len(rpc.submitted) == 1


def test_balance_rejection_is_distinct_from_cooldown(authorizer, rpc):
    rpc.last_claims[DONOR_A] = NOW - 10
    cooling = reason_of(authorizer, DONOR_A, "alice")

    rpc.balances[DONOR_A] = 5 * ETHER
    rich = reason_of(authorizer, DONOR_A, "alice")

    assert cooling.reason == "cooldown_active"
    assert rich.reason == "balance_above_threshold"
    assert cooling.status != rich.status
