# claim.py
import logging
import time
from typing import Callable, Optional

from web3 import Web3

logger = logging.getLogger("faucet.claim")


class ClaimRejected(Exception):
    """A claim precondition failed. `reason` is a stable code for the client."""

    def __init__(self, reason: str, message: str, status: int = 400, seconds_left: Optional[int] = None):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.status = status
        self.seconds_left = seconds_left


class ClaimAuthorizer:
    """
    Checks, in order, stopping at the first failure:
      request shape -> address format -> allowlist pair -> requester balance
      below the eligibility ceiling -> faucet can cover the payout -> cooldown.
    Only then is claimFor(address) sent.
    """

    def __init__(self, rpc, contract_address: str, allowlist, clock: Callable[[], float] = time.time):
        self.rpc = rpc
        self.contract_address = contract_address
        self.allowlist = allowlist
        self._clock = clock

    def _read(self, fn: str, *args) -> int:
        return self.rpc.read_contract_value(self.contract_address, fn, args)

    def check(self, address: Optional[str], identity: Optional[str]) -> str:
        """Run every precondition; returns the checksummed address on success."""
        address = (address or "").strip()
        identity = (identity or "").strip()
        if not address or not identity:
            raise ClaimRejected("invalid_request", "address and discordId required")
        if not Web3.is_address(address):
            raise ClaimRejected("invalid_address", "invalid address")
        address = Web3.to_checksum_address(address)

        if not self.allowlist.is_authorized_pair(address, identity):
            raise ClaimRejected("not_allowlisted", "not in allowlist", status=403)

        threshold = self._read("minEligibleBalance")
        if self.rpc.get_balance(address) >= threshold:
            raise ClaimRejected("balance_above_threshold", "balance >= threshold")

        payout = self._read("payoutAmount")
        if self.rpc.get_balance(self.contract_address) < payout:
            raise ClaimRejected("faucet_empty", "faucet empty")

        cooldown = self._read("cooldown")
        last_claim = self._read("lastClaim", address)
        elapsed = int(self._clock()) - last_claim
        if elapsed < cooldown:
            raise ClaimRejected("cooldown_active", "cooldown active", status=429,
                                seconds_left=cooldown - elapsed)
        return address

    def authorize_and_submit(self, address: Optional[str], identity: Optional[str]) -> str:
        recipient = self.check(address, identity)
        tx_hash = self.rpc.submit_transaction(self.contract_address, "claimFor", [recipient])
        logger.info("claim sent to=%s tx=%s", recipient, tx_hash)
        return tx_hash
