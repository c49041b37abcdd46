# donors.py
"""
Donor leaderboard aggregation.

Two on-chain sources feed the leaderboard:

- Donated(address,uint256) event logs, scanned in adaptive chunks. Providers
  reject wide ranges, rate limit and time out, so the chunk size shrinks on
  failure and grows back on success. A window that still fails at the minimum
  step is abandoned (logged, reported via `skipped`) so the scan always ends.
- Plain value transfers to the faucet, read block by block. Used for the most
  recent tail where log indexing may lag. Errors here are not retried.

Totals are Python ints; amounts are never converted to float.
"""
from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

try:
    from .chain_rpc import DONATED_TOPIC  # type: ignore
except ImportError:
    from chain_rpc import DONATED_TOPIC  # type: ignore

logger = logging.getLogger("faucet.donors")

DEFAULT_INITIAL_STEP = 20_000
DEFAULT_MIN_STEP = 1_000
DEFAULT_BATCH_SIZE = 40
DEFAULT_LIMIT = 50

UNKNOWN_NAME = "unknown"        # address mode: display fallback
UNKNOWN_IDENTITY = "Unknown"    # identity mode: shared bucket for unresolved addresses


# ---------------------------
# Data model
# ---------------------------
@dataclass(frozen=True)
class ContributionRecord:
    identity: str
    amount_wei: int
    username: Optional[str] = None


@dataclass(frozen=True)
class ScanWindow:
    from_block: int
    to_block: int

    @property
    def size(self) -> int:
        return self.to_block - self.from_block + 1


@dataclass
class ScanStepState:
    current: int
    step: int


@dataclass(frozen=True)
class BaseSnapshot:
    last_block: int
    records: Tuple[ContributionRecord, ...] = ()

    def totals(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for rec in self.records:
            key = rec.identity.lower()
            out[key] = out.get(key, 0) + rec.amount_wei
        return out

    def usernames(self) -> Dict[str, str]:
        return {rec.identity.lower(): rec.username for rec in self.records if rec.username}


def normalize_address(addr: Any) -> str:
    return str(addr or "").strip().lower()


def add_amount(totals: Dict[str, int], key: str, amount: int) -> None:
    totals[key] = totals.get(key, 0) + amount


# ---------------------------
# Event decoding
# ---------------------------
def decode_donation(log: Mapping[str, Any]) -> Optional[Tuple[str, int]]:
    """
    Decode one Donated log into (donor address, amount).

    The donor is the low 20 bytes of topics[1]; the amount is the raw
    big-endian uint256 payload. Returns None for entries that do not fit.
    """
    topics = log.get("topics") or []
    if len(topics) < 2:
        return None
    t1 = str(topics[1])
    if t1.startswith("0x"):
        t1 = t1[2:]
    if len(t1) < 40:
        return None
    donor = "0x" + t1[-40:].lower()

    data = log.get("data")
    if isinstance(data, (bytes, bytearray)):
        if not data:
            return None
        amount = int.from_bytes(bytes(data[:32]), "big")
    else:
        data_hex = str(data or "")
        if data_hex.startswith("0x"):
            data_hex = data_hex[2:]
        if not data_hex:
            return None
        try:
            amount = int(data_hex[:64], 16)
        except ValueError:
            return None
    return donor, amount


# ---------------------------
# Source 1: adaptive log scan
# ---------------------------
def scan_logs_for_donations(
    rpc,
    contract_address: str,
    from_block: int,
    to_block: int,
    initial_step: int = DEFAULT_INITIAL_STEP,
    min_step: int = DEFAULT_MIN_STEP,
    skipped: Optional[List[ScanWindow]] = None,
) -> Dict[str, int]:
    """
    Sum Donated amounts per donor address over [from_block, to_block].

    On success the cursor moves past the window and the step doubles (capped
    at initial_step). On failure the step halves (floored at min_step) and the
    same cursor is retried; a window that fails at min_step is abandoned and
    appended to `skipped`.
    """
    if initial_step < 1 or min_step < 1:
        raise ValueError("step sizes must be positive")
    min_step = min(min_step, initial_step)

    totals: Dict[str, int] = {}
    if to_block < from_block:
        return totals

    state = ScanStepState(current=from_block, step=initial_step)
    while state.current <= to_block:
        window = ScanWindow(state.current, min(to_block, state.current + state.step - 1))
        try:
            logs = rpc.get_logs(contract_address, DONATED_TOPIC, window.from_block, window.to_block)
        except Exception as e:
            if state.step > min_step:
                state.step = max(min_step, state.step // 2)
                logger.debug("getLogs %d-%d failed (%s); step -> %d",
                             window.from_block, window.to_block, e, state.step)
                continue
            logger.warning("abandoning blocks %d-%d after failure at min step %d: %s",
                           window.from_block, window.to_block, state.step, e)
            if skipped is not None:
                skipped.append(window)
            state.current = window.to_block + 1
            continue

        for log in logs:
            decoded = decode_donation(log)
            if decoded is None:
                continue
            donor, amount = decoded
            add_amount(totals, donor, amount)

        state.current = window.to_block + 1
        if state.step < initial_step:
            state.step = min(initial_step, state.step * 2)

    return totals


# ---------------------------
# Source 2: direct transfers in recent blocks
# ---------------------------
def _batches(from_block: int, to_block: int, size: int) -> Iterable[ScanWindow]:
    start = from_block
    while start <= to_block:
        end = min(to_block, start + size - 1)
        yield ScanWindow(start, end)
        start = end + 1


def scan_blocks_for_direct_transfers(
    rpc,
    contract_address: str,
    from_block: int,
    to_block: int,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> Dict[str, int]:
    """
    Sum positive-value transactions sent straight to the contract, per sender.

    Batches run one after another; the blocks inside a batch are fetched in
    parallel. Any fetch error propagates and fails the whole scan.
    """
    totals: Dict[str, int] = {}
    if to_block < from_block:
        return totals

    target = normalize_address(contract_address)
    workers = max(1, min(batch_size, to_block - from_block + 1))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        for batch in _batches(from_block, to_block, max(1, batch_size)):
            blocks = list(pool.map(rpc.get_block_with_transactions,
                                   range(batch.from_block, batch.to_block + 1)))
            for block in blocks:
                for tx in block.get("transactions") or []:
                    if normalize_address(tx.get("to")) != target:
                        continue
                    value = int(tx.get("value") or 0)
                    if value <= 0:
                        continue
                    add_amount(totals, normalize_address(tx.get("from")), value)
    return totals


# ---------------------------
# Merge / rank
# ---------------------------
def merge_and_rank(
    baseline: Optional[Mapping[str, int]],
    historical: Mapping[str, int],
    recent: Mapping[str, int],
    limit: int = DEFAULT_LIMIT,
) -> List[ContributionRecord]:
    """Sum per identity, sort by amount descending (stable on insertion order), keep the top `limit`."""
    totals: Dict[str, int] = {}
    for source in (baseline or {}, historical, recent):
        for identity, amount in source.items():
            add_amount(totals, identity, int(amount))

    ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
    return [ContributionRecord(identity=k, amount_wei=v) for k, v in ranked[:limit]]


def tail_range(head: int, tail_window: int, floor: int = 0) -> Optional[ScanWindow]:
    """The most recent `tail_window` blocks up to head, never starting below `floor`."""
    start = max(floor, head - tail_window + 1, 0)
    if tail_window <= 0 or start > head:
        return None
    return ScanWindow(start, head)


# ---------------------------
# Baseline snapshot file
# ---------------------------
def parse_snapshot(data: Mapping[str, Any]) -> BaseSnapshot:
    if not isinstance(data, Mapping):
        raise ValueError("snapshot must be a JSON object")
    donors = data.get("donors") or []
    if not isinstance(donors, list):
        raise ValueError("snapshot donors must be a list")
    records: List[ContributionRecord] = []
    for i, d in enumerate(donors):
        if not isinstance(d, Mapping):
            raise ValueError(f"snapshot donor #{i} must be an object, got {type(d).__name__}")
        addr = normalize_address(d.get("address"))
        if not addr:
            continue
        records.append(ContributionRecord(
            identity=addr,
            amount_wei=int(str(d.get("amountWei") or "0")),
            username=(d.get("username") or None),
        ))
    return BaseSnapshot(last_block=int(data.get("lastBlock") or 0), records=tuple(records))


def load_base_snapshot(path: Optional[str]) -> Optional[BaseSnapshot]:
    if not path:
        return None
    with open(Path(path), "r", encoding="utf-8") as f:
        return parse_snapshot(json.load(f))


def snapshot_payload(snapshot: BaseSnapshot) -> Dict[str, Any]:
    return {
        "lastBlock": str(snapshot.last_block),
        "donors": [
            {
                "address": rec.identity,
                "username": rec.username,
                "amountWei": str(rec.amount_wei),
            }
            for rec in snapshot.records
        ],
    }


# ---------------------------
# Aggregator
# ---------------------------
class DonorAggregator:
    """
    Builds the donor leaderboard for one faucet contract.

    mode="address": rows are keyed by donor address and names are looked up
    afterwards (fallback "unknown").
    mode="identity": addresses are resolved to registered names before
    merging, so several wallets of one person share a row; unresolved
    addresses share the "Unknown" row.
    """

    def __init__(
        self,
        rpc,
        contract_address: str,
        resolve_identity: Optional[Callable[[str], Optional[str]]] = None,
        mode: str = "address",
        deploy_block: int = 0,
        tail_window: int = 600,
        initial_step: int = DEFAULT_INITIAL_STEP,
        min_step: int = DEFAULT_MIN_STEP,
        batch_size: int = DEFAULT_BATCH_SIZE,
        limit: int = DEFAULT_LIMIT,
    ):
        if mode not in ("address", "identity"):
            raise ValueError(f"unknown aggregation mode: {mode}")
        self.rpc = rpc
        self.contract_address = contract_address
        self._resolve = resolve_identity
        self.mode = mode
        self.deploy_block = deploy_block
        self.tail_window = tail_window
        self.initial_step = initial_step
        self.min_step = min_step
        self.batch_size = batch_size
        self.limit = limit

    @classmethod
    def from_config(cls, cfg, rpc, resolve_identity=None) -> "DonorAggregator":
        return cls(
            rpc,
            cfg.contract_address,
            resolve_identity=resolve_identity,
            mode=cfg.key_mode,
            deploy_block=cfg.deploy_block,
            tail_window=cfg.tail_window,
            initial_step=cfg.log_initial_step,
            min_step=cfg.log_min_step,
            batch_size=cfg.block_batch_size,
            limit=cfg.leaderboard_limit,
        )

    def name_lookup(self) -> Callable[[str], Optional[str]]:
        """
        A lookup for one leaderboard or snapshot run.

        After the first resolver error the roster is treated as unavailable
        and every later address in the run is left unresolved, so an outage
        costs one fetch timeout rather than one per donor.
        """
        resolve = self._resolve
        failed = [resolve is None]

        def lookup(address: str) -> Optional[str]:
            if failed[0]:
                return None
            try:
                return resolve(address) or None
            except Exception as e:
                failed[0] = True
                logger.warning("name lookup failed for %s, skipping the rest of this run: %s", address, e)
                return None

        return lookup

    def scan_logs(self, from_block: int, to_block: int,
                  skipped: Optional[List[ScanWindow]] = None) -> Dict[str, int]:
        return scan_logs_for_donations(
            self.rpc, self.contract_address, from_block, to_block,
            initial_step=self.initial_step, min_step=self.min_step, skipped=skipped,
        )

    def scan_blocks(self, from_block: int, to_block: int) -> Dict[str, int]:
        return scan_blocks_for_direct_transfers(
            self.rpc, self.contract_address, from_block, to_block, batch_size=self.batch_size,
        )

    def _by_identity(self, totals: Mapping[str, int], known: Mapping[str, str],
                     lookup: Callable[[str], Optional[str]]) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for addr, amount in totals.items():
            name = known.get(addr) or lookup(addr) or UNKNOWN_IDENTITY
            add_amount(out, name, amount)
        return out

    def leaderboard(self, snapshot: Optional[BaseSnapshot] = None) -> List[ContributionRecord]:
        head = self.rpc.get_current_height()
        skipped: List[ScanWindow] = []

        if snapshot is not None:
            baseline = snapshot.totals()
            known = snapshot.usernames()
            historical: Dict[str, int] = {}
            tail = tail_range(head, self.tail_window, floor=snapshot.last_block + 1)
        else:
            baseline, known = {}, {}
            tail = tail_range(head, self.tail_window, floor=self.deploy_block)
            log_end = tail.from_block - 1 if tail else head
            historical = self.scan_logs(self.deploy_block, log_end, skipped=skipped)

        recent = self.scan_blocks(tail.from_block, tail.to_block) if tail else {}

        if skipped:
            logger.warning("leaderboard built with %d abandoned log windows", len(skipped))

        lookup = self.name_lookup()
        if self.mode == "identity":
            return merge_and_rank(
                self._by_identity(baseline, known, lookup),
                self._by_identity(historical, known, lookup),
                self._by_identity(recent, known, lookup),
                limit=self.limit,
            )

        ranked = merge_and_rank(baseline, historical, recent, limit=self.limit)
        return [
            ContributionRecord(
                identity=rec.identity,
                amount_wei=rec.amount_wei,
                username=known.get(rec.identity) or lookup(rec.identity) or UNKNOWN_NAME,
            )
            for rec in ranked
        ]

    def snapshot(self, from_block: Optional[int] = None,
                 skipped: Optional[List[ScanWindow]] = None) -> BaseSnapshot:
        """
        Full log scan from the deploy block (or from_block) to head, for regenerating the baseline.

        Abandoned log windows are appended to `skipped` when given.
        """
        head = self.rpc.get_current_height()
        start = self.deploy_block if from_block is None else from_block
        if skipped is None:
            skipped = []
        totals = self.scan_logs(start, head, skipped=skipped)
        if skipped:
            logger.warning("snapshot built with %d abandoned log windows", len(skipped))
        lookup = self.name_lookup()
        ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
        records = tuple(
            ContributionRecord(identity=addr, amount_wei=amount, username=lookup(addr))
            for addr, amount in ranked
        )
        return BaseSnapshot(last_block=head, records=records)


def leaderboard_rows(records: Iterable[ContributionRecord], mode: str = "address") -> List[Dict[str, Any]]:
    """JSON rows for the presentation layer; amounts as decimal strings."""
    rows: List[Dict[str, Any]] = []
    for rec in records:
        rows.append({
            "identity": rec.identity,
            "amount": str(rec.amount_wei),
            "address": rec.identity if mode == "address" else None,
            "username": rec.username if mode == "address" else rec.identity,
        })
    return rows
