# faucet_models.py
from pydantic import BaseModel
from typing import List, Optional


# Input models
class ClaimIn(BaseModel):
    address: Optional[str] = None
    # Older clients send discordUsername, newer ones discordId
    discordId: Optional[str] = None
    discordUsername: Optional[str] = None

    @property
    def identity(self) -> Optional[str]:
        return self.discordId or self.discordUsername


# Output models
class BalanceOut(BaseModel):
    balance: str


class ClaimOut(BaseModel):
    txHash: str


class ClaimRejectedOut(BaseModel):
    detail: str
    reason: str
    secondsLeft: Optional[int] = None


class DonorOut(BaseModel):
    identity: str
    amount: str
    address: Optional[str] = None
    username: Optional[str] = None


class SnapshotDonorOut(BaseModel):
    address: str
    username: Optional[str] = None
    amountWei: str


class SnapshotOut(BaseModel):
    lastBlock: str
    donors: List[SnapshotDonorOut]


class DebugOut(BaseModel):
    contractInUse: Optional[str]
    deployBlock: str
    currentBlock: str
