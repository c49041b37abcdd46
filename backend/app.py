from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Local imports (support running as `app:create_app` and as `backend.app:create_app`)
try:
    from .allowlist import AllowlistResolver  # type: ignore
    from .chain_rpc import ChainRpc  # type: ignore
    from .claim import ClaimAuthorizer, ClaimRejected  # type: ignore
    from .donors import BaseSnapshot, DonorAggregator, load_base_snapshot  # type: ignore
    from .faucet_config import ConfigError, FaucetConfig, load_config, setup_logging  # type: ignore
    from .faucet_routes import create_faucet_router  # type: ignore
except ImportError:
    from allowlist import AllowlistResolver  # type: ignore
    from chain_rpc import ChainRpc  # type: ignore
    from claim import ClaimAuthorizer, ClaimRejected  # type: ignore
    from donors import BaseSnapshot, DonorAggregator, load_base_snapshot  # type: ignore
    from faucet_config import ConfigError, FaucetConfig, load_config, setup_logging  # type: ignore
    from faucet_routes import create_faucet_router  # type: ignore

logger = logging.getLogger("faucet.app")


# ---------------------------
# Services
# ---------------------------
@dataclass
class FaucetServices:
    config: FaucetConfig
    rpc: Any
    allowlist: Any
    aggregator: DonorAggregator
    authorizer: ClaimAuthorizer
    snapshot: Optional[BaseSnapshot] = None


def build_services(cfg: FaucetConfig, rpc=None, allowlist=None) -> FaucetServices:
    """Wire the adapter, resolver, aggregator and claim checks for one config."""
    if rpc is None:
        rpc = ChainRpc.from_config(cfg)
    if allowlist is None:
        allowlist = AllowlistResolver.from_config(cfg)

    try:
        snapshot = load_base_snapshot(cfg.base_snapshot_path)
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot load base snapshot '{cfg.base_snapshot_path}': {e}") from e
    if snapshot is not None:
        logger.info("base snapshot: lastBlock=%d donors=%d", snapshot.last_block, len(snapshot.records))

    return FaucetServices(
        config=cfg,
        rpc=rpc,
        allowlist=allowlist,
        aggregator=DonorAggregator.from_config(cfg, rpc, resolve_identity=allowlist.resolve_identity),
        authorizer=ClaimAuthorizer(rpc, cfg.contract_address, allowlist),
        snapshot=snapshot,
    )


# ---------------------------
# App
# ---------------------------
def create_app(cfg: Optional[FaucetConfig] = None, rpc=None, allowlist=None) -> FastAPI:
    """
    Build the faucet API.

    Configuration is validated here, once. If it is invalid the app still
    starts, and every endpoint answers 500 with the configuration error.
    """
    services: Optional[FaucetServices] = None
    config_error: Optional[str] = None
    try:
        if cfg is None:
            cfg = load_config()
        services = build_services(cfg, rpc=rpc, allowlist=allowlist)
    except ConfigError as e:
        config_error = str(e)
        logger.error("faucet misconfigured: %s", config_error)

    def get_services() -> FaucetServices:
        if services is None:
            raise HTTPException(status_code=500, detail=config_error or "faucet not configured")
        return services

    app = FastAPI(title="Testnet Faucet")
    app.state.services = services

    origins = list(cfg.cors_origins) if cfg else []
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(ClaimRejected)
    def _claim_rejected(req: Request, exc: ClaimRejected):
        body = {"detail": exc.message, "reason": exc.reason}
        if exc.seconds_left is not None:
            body["secondsLeft"] = exc.seconds_left
        return JSONResponse(status_code=exc.status, content=body)

    app.include_router(create_faucet_router(get_services), prefix="/api")
    return app


if __name__ == "__main__":
    import uvicorn

    setup_logging()
    uvicorn.run(
        create_app(),
        host=os.getenv("FAUCET_HOST", "127.0.0.1"),
        port=int(os.getenv("FAUCET_PORT", "8000")),
    )
