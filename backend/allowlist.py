# allowlist.py
import csv
import io
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import requests

try:
    from .faucet_config import ConfigError  # type: ignore
except ImportError:
    from faucet_config import ConfigError  # type: ignore

logger = logging.getLogger("faucet.allowlist")

# The sheet uses headers like "Discord username" and "wallet address"
WALLET_COLUMNS = ("walletaddress", "address", "wallet")
NAME_COLUMNS = ("discordusername", "discord", "username", "discordname")


def normalize_key(k: str) -> str:
    return "".join(ch for ch in (k or "").lower() if ch not in " \t_")


def normalize_addr(a: str) -> str:
    return (a or "").strip().lower()


def parse_roster(text: str) -> Dict[str, str]:
    """Parse the roster CSV into {lowercase wallet address: username}."""
    roster: Dict[str, str] = {}
    reader = csv.DictReader(io.StringIO(text))
    for row in reader:
        norm: Dict[str, str] = {}
        for k, v in row.items():
            if k is None:
                continue
            norm[normalize_key(k)] = (v or "").strip()

        wallet = next((norm[c] for c in WALLET_COLUMNS if norm.get(c)), "")
        username = next((norm[c] for c in NAME_COLUMNS if norm.get(c)), "")
        if wallet and username:
            roster[normalize_addr(wallet)] = username
    return roster


@dataclass
class _Roster:
    fetched_at: float
    entries: Dict[str, str]


class AllowlistResolver:
    """
    Wallet address <-> registered username lookups, backed by a CSV roster.

    The roster is fetched on first use and refetched once it is older than
    ttl_sec. invalidate() drops it so the next lookup refetches.
    """

    def __init__(
        self,
        csv_url: Optional[str],
        ttl_sec: int = 300,
        http_get: Callable[..., requests.Response] = requests.get,
        clock: Callable[[], float] = time.time,
        timeout: int = 15,
    ):
        self.csv_url = csv_url
        self.ttl_sec = ttl_sec
        self._http_get = http_get
        self._clock = clock
        self._timeout = timeout
        self._lock = threading.Lock()
        self._roster: Optional[_Roster] = None

    @classmethod
    def from_config(cls, cfg) -> "AllowlistResolver":
        return cls(cfg.allowlist_csv_url, ttl_sec=cfg.allowlist_ttl_sec)

    @property
    def fetched_at(self) -> Optional[float]:
        roster = self._roster
        return roster.fetched_at if roster else None

    def invalidate(self) -> None:
        with self._lock:
            self._roster = None

    def _fetch(self) -> Dict[str, str]:
        if not self.csv_url:
            raise ConfigError("ALLOWLIST_CSV_URL missing")
        r = self._http_get(self.csv_url, timeout=self._timeout)
        r.raise_for_status()
        entries = parse_roster(r.text)
        logger.info("roster refreshed: %d entries", len(entries))
        return entries

    def roster(self) -> Dict[str, str]:
        with self._lock:
            now = self._clock()
            cached = self._roster
            if cached and now - cached.fetched_at < self.ttl_sec:
                return cached.entries
            entries = self._fetch()
            self._roster = _Roster(fetched_at=now, entries=entries)
            return entries

    def resolve_identity(self, address: str) -> Optional[str]:
        return self.roster().get(normalize_addr(address)) or None

    def is_authorized_pair(self, address: str, identity: str) -> bool:
        registered = self.roster().get(normalize_addr(address))
        return registered is not None and registered == (identity or "").strip()
