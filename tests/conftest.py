import threading
from typing import Dict, List, Optional, Tuple

import pytest
from web3 import Web3

from chain_rpc import DONATED_TOPIC
from faucet_config import FaucetConfig

CONTRACT = "0x" + "fa" * 20
DONOR_A = "0x" + "a1" * 20
DONOR_B = "0x" + "b2" * 20
DONOR_C = "0x" + "c3" * 20
DONOR_D = "0x" + "d4" * 20


def donated_log(donor: str, amount: int) -> dict:
    return {
        "topics": [DONATED_TOPIC, "0x" + "0" * 24 + donor[2:].lower()],
        "data": "0x" + format(amount, "064x"),
    }


def tx(sender: str, to: Optional[str], value: int) -> dict:
    return {"from": sender, "to": to, "value": value}


class FakeRpc:
    """In-memory chain: Donated logs by block, blocks with transactions, balances and view values."""

    def __init__(
        self,
        head: int = 0,
        logs: Optional[List[Tuple[int, dict]]] = None,
        blocks: Optional[Dict[int, List[dict]]] = None,
        max_range: Optional[int] = None,
        broken_blocks: Tuple[int, ...] = (),
        failing_blocks: Tuple[int, ...] = (),
        always_fail_logs: bool = False,
    ):
        self.head = head
        self.logs = logs or []
        self.blocks = blocks or {}
        self.max_range = max_range
        self.broken_blocks = set(broken_blocks)
        self.failing_blocks = set(failing_blocks)
        self.always_fail_logs = always_fail_logs
        self.log_calls: List[Tuple[int, int, bool]] = []
        self.block_calls: List[int] = []
        self.balances: Dict[str, int] = {}
        self.values: Dict[str, int] = {}
        self.last_claims: Dict[str, int] = {}
        self.submitted: List[Tuple[str, str, list]] = []
        self._lock = threading.Lock()

    def get_current_height(self) -> int:
        return self.head

    def get_logs(self, address, topic, from_block, to_block):
        assert topic == DONATED_TOPIC
        ok = not self.always_fail_logs
        if self.max_range is not None and to_block - from_block + 1 > self.max_range:
            ok = False
        if any(from_block <= b <= to_block for b in self.broken_blocks):
            ok = False
        self.log_calls.append((from_block, to_block, ok))
        if not ok:
            raise ValueError("query returned more than 10000 results / block range is too wide")
        return [log for (n, log) in self.logs if from_block <= n <= to_block]

    def get_block_with_transactions(self, block_number):
        with self._lock:
            self.block_calls.append(block_number)
        if block_number in self.failing_blocks:
            raise ConnectionError(f"block {block_number} unavailable")
        return {"number": block_number, "transactions": list(self.blocks.get(block_number, []))}

    def get_balance(self, address):
        return self.balances.get(address.lower(), 0)

    def read_contract_value(self, address, function_name, args=()):
        if function_name == "lastClaim":
            return self.last_claims.get(str(args[0]).lower(), 0)
        return self.values[function_name]

    def submit_transaction(self, address, function_name, args):
        self.submitted.append((address, function_name, list(args)))
        return "0x" + "ab" * 32


class FakeAllowlist:
    def __init__(self, roster: Optional[Dict[str, str]] = None, broken: Tuple[str, ...] = ()):
        self.roster = {k.lower(): v for k, v in (roster or {}).items()}
        self.broken = {b.lower() for b in broken}

    def resolve_identity(self, address):
        if address.lower() in self.broken:
            raise RuntimeError("roster fetch failed")
        return self.roster.get(address.lower())

    def is_authorized_pair(self, address, identity):
        return self.roster.get(address.lower()) == (identity or "").strip()


@pytest.fixture
def config():
    return FaucetConfig(
        rpc_url="http://127.0.0.1:8545",
        contract_address=Web3.to_checksum_address(CONTRACT),
        operator_private_key="0x" + "11" * 32,
        allowlist_csv_url="http://roster.invalid/sheet.csv",
        deploy_block=0,
        tail_window=600,
    )
