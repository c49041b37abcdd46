#!/usr/bin/env python3
"""
Regenerate the donor baseline file used by /api/donors.

- Scans Donated logs from DEPLOY_BLOCK_NUMBER (or --from-block) to the head.
- Resolves usernames from the allowlist when ALLOWLIST_CSV_URL is set.
- Writes {"lastBlock": ..., "donors": [...]} atomically to --out.

Point DONOR_BASE_SNAPSHOT at the output and restart the API. Donations made
after lastBlock and before the tail window are only counted once the file is
regenerated.
"""
from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Optional, Sequence

from allowlist import AllowlistResolver
from chain_rpc import ChainRpc
from donors import DonorAggregator, snapshot_payload
from faucet_config import ConfigError, load_config, setup_logging


def write_json_atomic(path: Path, payload: dict) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
        f.write("\n")
    tmp.replace(path)


def main(argv: Optional[Sequence[str]] = None, rpc=None, allowlist=None) -> int:
    ap = argparse.ArgumentParser(description="Build the donor baseline snapshot from Donated logs.")
    ap.add_argument("--out", default="base-donors.json", help="output JSON path")
    ap.add_argument("--from-block", type=int, default=None, help="start block (default: DEPLOY_BLOCK_NUMBER)")
    ap.add_argument("--no-names", action="store_true", help="skip allowlist username lookups")
    args = ap.parse_args(argv)

    try:
        cfg = load_config()
    except ConfigError as e:
        raise SystemExit(f"[fatal] {e}")

    if rpc is None:
        rpc = ChainRpc.from_config(cfg)
    resolve = None
    if not args.no_names and (allowlist is not None or cfg.allowlist_csv_url):
        resolve = (allowlist or AllowlistResolver.from_config(cfg)).resolve_identity

    aggregator = DonorAggregator.from_config(cfg, rpc, resolve_identity=resolve)
    start = cfg.deploy_block if args.from_block is None else args.from_block

    print("[snapshot] scanning Donated logs")
    print(f"  contract={cfg.contract_address}")
    print(f"  from_block={start}")
    print(f"  step={cfg.log_initial_step} min_step={cfg.log_min_step}")

    skipped = []
    snap = aggregator.snapshot(from_block=start, skipped=skipped)
    if skipped:
        lost = sum(w.size for w in skipped)
        print(f"[warn] {len(skipped)} log windows abandoned ({lost} blocks); donations in them are missing")
        for w in skipped:
            print(f"  skipped {w.from_block}..{w.to_block}")
    out = Path(args.out)
    write_json_atomic(out, snapshot_payload(snap))

    total = sum(rec.amount_wei for rec in snap.records)
    print(f"[snapshot] wrote {out} lastBlock={snap.last_block} donors={len(snap.records)} total_wei={total}")
    return 0


if __name__ == "__main__":
    setup_logging()
    logging.getLogger("faucet.donors").setLevel(logging.INFO)
    raise SystemExit(main())
