# chain_rpc.py
"""
Thin web3 adapter for the faucet contract.

Every method talks to the node directly and may raise (timeouts, provider
range limits, malformed responses). Callers decide whether an error is
retried, abandoned or surfaced.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from web3 import Web3

try:
    from .faucet_config import ConfigError  # type: ignore
except ImportError:
    from faucet_config import ConfigError  # type: ignore


# Gas multiplier for the estimate
GAS_MULT = 1.15

FAUCET_ABI = json.loads("""
[
  {"type": "event", "name": "Donated", "anonymous": false,
   "inputs": [{"name": "from", "type": "address", "indexed": true},
              {"name": "amount", "type": "uint256", "indexed": false}]},
  {"type": "event", "name": "Claimed", "anonymous": false,
   "inputs": [{"name": "to", "type": "address", "indexed": true},
              {"name": "amount", "type": "uint256", "indexed": false}]},
  {"type": "function", "stateMutability": "nonpayable", "name": "claimFor",
   "inputs": [{"name": "recipient", "type": "address"}], "outputs": []},
  {"type": "function", "stateMutability": "view", "name": "lastClaim",
   "inputs": [{"name": "", "type": "address"}], "outputs": [{"name": "", "type": "uint256"}]},
  {"type": "function", "stateMutability": "view", "name": "payoutAmount",
   "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
  {"type": "function", "stateMutability": "view", "name": "minEligibleBalance",
   "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
  {"type": "function", "stateMutability": "view", "name": "cooldown",
   "inputs": [], "outputs": [{"name": "", "type": "uint256"}]}
]
""")

DONATED_SIGNATURE = "Donated(address,uint256)"
DONATED_TOPIC = Web3.to_hex(Web3.keccak(text=DONATED_SIGNATURE))


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)


class ChainRpc:
    def __init__(
        self,
        rpc_url: str,
        chain_id: int,
        operator_private_key: Optional[str] = None,
        timeout: int = 20,
    ):
        self.rpc_url = rpc_url
        self.chain_id = int(chain_id)
        self._operator_key = operator_private_key
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    @classmethod
    def from_config(cls, cfg) -> "ChainRpc":
        return cls(
            cfg.rpc_url,
            cfg.chain_id,
            operator_private_key=cfg.operator_private_key,
            timeout=cfg.rpc_timeout_sec,
        )

    def _contract(self, address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=FAUCET_ABI)

    def get_current_height(self) -> int:
        return int(self.w3.eth.block_number)

    def get_balance(self, address: str) -> int:
        return int(self.w3.eth.get_balance(Web3.to_checksum_address(address)))

    def get_logs(self, address: str, topic: str, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        """eth_getLogs for one topic0, normalised to {"topics": [hex...], "data": hex}."""
        raw = self.w3.eth.get_logs({
            "address": Web3.to_checksum_address(address),
            "topics": [topic],
            "fromBlock": int(from_block),
            "toBlock": int(to_block),
        })
        out: List[Dict[str, Any]] = []
        for log in raw:
            out.append({
                "topics": [_hex(t) for t in log.get("topics", [])],
                "data": _hex(log.get("data", b"")),
            })
        return out

    def get_block_with_transactions(self, block_number: int) -> Dict[str, Any]:
        block = self.w3.eth.get_block(int(block_number), full_transactions=True)
        txs: List[Dict[str, Any]] = []
        for tx in block.get("transactions", []):
            txs.append({
                "from": tx.get("from"),
                "to": tx.get("to"),
                "value": int(tx.get("value") or 0),
            })
        return {"number": int(block.get("number", block_number)), "transactions": txs}

    def read_contract_value(self, address: str, function_name: str, args: Sequence[Any] = ()) -> int:
        fn = getattr(self._contract(address).functions, function_name)
        return int(fn(*args).call())

    def submit_transaction(self, address: str, function_name: str, args: Sequence[Any]) -> str:
        """Sign locally with the operator key and broadcast. Returns the 0x tx hash."""
        if not self._operator_key:
            raise ConfigError("OPERATOR_PRIVATE_KEY missing; claims are disabled")

        acct = self.w3.eth.account.from_key(self._operator_key)
        fn = getattr(self._contract(address).functions, function_name)

        nonce = self.w3.eth.get_transaction_count(acct.address, "pending")
        tx = fn(*args).build_transaction({
            "chainId": self.chain_id,
            "from": acct.address,
            "nonce": nonce,
        })

        est = self.w3.eth.estimate_gas(tx)
        tx["gas"] = max(21000, int(est * GAS_MULT))

        # Try EIP-1559 first; fallback to legacy gasPrice
        latest = self.w3.eth.get_block("latest")
        base_fee = latest.get("baseFeePerGas")
        if base_fee is not None:
            prio = self.w3.to_wei(1, "gwei")
            tx.pop("gasPrice", None)
            tx["maxPriorityFeePerGas"] = prio
            tx["maxFeePerGas"] = int(base_fee * 2 + prio)
        else:
            tx.pop("maxFeePerGas", None)
            tx.pop("maxPriorityFeePerGas", None)
            tx["gasPrice"] = self.w3.eth.gas_price

        signed = acct.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return Web3.to_hex(tx_hash)
