# faucet_config.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv
from web3 import Web3

BACKEND_DIR = Path(__file__).resolve().parent

# Zenchain testnet
DEFAULT_CHAIN_ID = 8408

KEY_MODES = ("address", "identity")


class ConfigError(RuntimeError):
    """Missing or invalid faucet configuration. Fatal for the request, never retried."""


@dataclass(frozen=True)
class FaucetConfig:
    # Required
    rpc_url: str
    contract_address: str

    # Optional
    chain_id: int = DEFAULT_CHAIN_ID
    operator_private_key: Optional[str] = None
    allowlist_csv_url: Optional[str] = None
    allowlist_ttl_sec: int = 300
    deploy_block: int = 0
    tail_window: int = 600
    base_snapshot_path: Optional[str] = None
    key_mode: str = "address"
    log_initial_step: int = 20_000
    log_min_step: int = 1_000
    block_batch_size: int = 40
    leaderboard_limit: int = 50
    rpc_timeout_sec: int = 20
    cors_origins: List[str] = field(default_factory=list)


def parse_block_number(raw: str) -> int:
    """Accept decimal or 0x-prefixed hex block numbers."""
    raw = (raw or "").strip()
    if not raw:
        return 0
    if raw.lower().startswith("0x"):
        return int(raw, 16)
    return int(raw, 10)


def normalize_private_key(raw: str) -> str:
    raw = (raw or "").strip()
    if not raw:
        return ""
    return raw if raw.startswith("0x") else "0x" + raw


def load_config(env: Optional[Mapping[str, str]] = None) -> FaucetConfig:
    """
    Build a FaucetConfig from the environment.

    With env=None, backend/.env is loaded first (existing variables win) and
    os.environ is read. All problems are collected and raised together.
    """
    if env is None:
        load_dotenv(BACKEND_DIR / ".env")
        env = os.environ

    errors: List[str] = []

    def get(name: str, default: str = "") -> str:
        return (env.get(name) or default).strip()

    def get_int(name: str, default: int, minimum: int = 0) -> int:
        raw = get(name)
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            errors.append(f"{name} must be an integer (got {raw!r})")
            return default
        if value < minimum:
            errors.append(f"{name} must be >= {minimum} (got {value})")
            return default
        return value

    rpc_url = get("RPC_URL")
    if not rpc_url:
        errors.append("RPC_URL missing")

    contract = get("FAUCET_CONTRACT_ADDRESS") or get("NEXT_PUBLIC_FAUCET_CONTRACT_ADDRESS")
    if not contract:
        errors.append("Contract address missing (FAUCET_CONTRACT_ADDRESS)")
    elif not Web3.is_address(contract):
        errors.append(f"FAUCET_CONTRACT_ADDRESS is not a valid address: {contract}")
    else:
        contract = Web3.to_checksum_address(contract)

    try:
        deploy_block = parse_block_number(get("DEPLOY_BLOCK_NUMBER", "0"))
    except ValueError:
        errors.append(f"DEPLOY_BLOCK_NUMBER is not a block number: {get('DEPLOY_BLOCK_NUMBER')!r}")
        deploy_block = 0

    key_mode = get("DONOR_KEY_MODE", "address").lower()
    if key_mode not in KEY_MODES:
        errors.append(f"DONOR_KEY_MODE must be one of {', '.join(KEY_MODES)} (got {key_mode!r})")

    log_initial_step = get_int("DONOR_LOG_STEP", 20_000, minimum=1)
    # Windows that still fail at this size are abandoned. A provider that caps
    # eth_getLogs below it loses those donations; set it to the provider cap or lower.
    log_min_step = get_int("DONOR_LOG_MIN_STEP", 1_000, minimum=1)
    if log_min_step > log_initial_step:
        errors.append("DONOR_LOG_MIN_STEP must not exceed DONOR_LOG_STEP")

    origins = [o.strip() for o in get("CORS_ORIGINS").split(",") if o.strip()]

    cfg_kwargs: Dict[str, object] = dict(
        rpc_url=rpc_url,
        contract_address=contract,
        chain_id=get_int("CHAIN_ID", DEFAULT_CHAIN_ID, minimum=1),
        operator_private_key=normalize_private_key(get("OPERATOR_PRIVATE_KEY")) or None,
        allowlist_csv_url=get("ALLOWLIST_CSV_URL") or None,
        allowlist_ttl_sec=get_int("ALLOWLIST_TTL_SEC", 300),
        deploy_block=deploy_block,
        tail_window=get_int("DONOR_TAIL_WINDOW", 600),
        base_snapshot_path=get("DONOR_BASE_SNAPSHOT") or None,
        key_mode=key_mode,
        log_initial_step=log_initial_step,
        log_min_step=log_min_step,
        block_batch_size=get_int("DONOR_BLOCK_BATCH", 40, minimum=1),
        leaderboard_limit=get_int("DONOR_LIMIT", 50, minimum=1),
        rpc_timeout_sec=get_int("RPC_TIMEOUT_SEC", 20, minimum=1),
        cors_origins=origins,
    )

    if errors:
        raise ConfigError("; ".join(errors))
    return FaucetConfig(**cfg_kwargs)  # type: ignore[arg-type]


def setup_logging(level: Optional[str] = None) -> None:
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
