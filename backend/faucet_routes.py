# faucet_routes.py
import logging
from typing import Any, Callable, List

from fastapi import APIRouter, HTTPException, Response

# Local imports (support running as `app:create_app` and as `backend.app:create_app`)
try:
    from .claim import ClaimRejected  # type: ignore
    from .donors import leaderboard_rows, snapshot_payload  # type: ignore
    from .faucet_config import ConfigError  # type: ignore
    from .faucet_models import (  # type: ignore
        BalanceOut,
        ClaimIn,
        ClaimOut,
        ClaimRejectedOut,
        DebugOut,
        DonorOut,
        SnapshotOut,
    )
except ImportError:
    from claim import ClaimRejected  # type: ignore
    from donors import leaderboard_rows, snapshot_payload  # type: ignore
    from faucet_config import ConfigError  # type: ignore
    from faucet_models import (  # type: ignore
        BalanceOut,
        ClaimIn,
        ClaimOut,
        ClaimRejectedOut,
        DebugOut,
        DonorOut,
        SnapshotOut,
    )

logger = logging.getLogger("faucet.app")

# Chain state changes every block; nothing here may be cached.
NO_STORE_HEADERS = {"Cache-Control": "no-store, no-cache, must-revalidate, private"}


def upstream_error(what: str, e: Exception) -> HTTPException:
    """Map an RPC/provider failure to a 502, keeping the message short."""
    if isinstance(e, ConfigError):
        return HTTPException(status_code=500, detail=str(e), headers=NO_STORE_HEADERS)
    msg = str(e) or type(e).__name__
    if len(msg) > 300:
        msg = msg[:300] + "..."
    logger.error("%s failed: %s: %s", what, type(e).__name__, msg)
    return HTTPException(status_code=502, detail=msg, headers=NO_STORE_HEADERS)


def create_faucet_router(services_func: Callable[[], Any]) -> APIRouter:
    router = APIRouter()

    @router.get("/balance", response_model=BalanceOut)
    def get_balance(response: Response):
        svc = services_func()
        try:
            bal = svc.rpc.get_balance(svc.config.contract_address)
        except Exception as e:
            raise upstream_error("balance", e)
        response.headers.update(NO_STORE_HEADERS)
        return BalanceOut(balance=str(bal))

    @router.post(
        "/claim",
        response_model=ClaimOut,
        responses={400: {"model": ClaimRejectedOut}, 403: {"model": ClaimRejectedOut}, 429: {"model": ClaimRejectedOut}},
    )
    def post_claim(data: ClaimIn):
        svc = services_func()
        try:
            tx_hash = svc.authorizer.authorize_and_submit(data.address, data.identity)
        except ClaimRejected:
            raise
        except ConfigError as e:
            raise HTTPException(status_code=500, detail=str(e))
        except Exception as e:
            logger.exception("claim failed for %s", data.address)
            raise HTTPException(status_code=500, detail=str(e) or "unknown error")
        return ClaimOut(txHash=tx_hash)

    @router.get("/donors", response_model=List[DonorOut])
    def get_donors(response: Response):
        """Top donors, most significant first. Recomputed on every call."""
        svc = services_func()
        try:
            records = svc.aggregator.leaderboard(svc.snapshot)
        except Exception as e:
            raise upstream_error("donors", e)
        response.headers.update(NO_STORE_HEADERS)
        return [DonorOut(**row) for row in leaderboard_rows(records, svc.aggregator.mode)]

    @router.get("/donors-snapshot", response_model=SnapshotOut)
    def get_donors_snapshot(response: Response):
        """Full log scan from the deploy block; the output can be saved as the baseline file."""
        svc = services_func()
        try:
            snap = svc.aggregator.snapshot()
        except Exception as e:
            raise upstream_error("donors-snapshot", e)
        response.headers.update(NO_STORE_HEADERS)
        return SnapshotOut(**snapshot_payload(snap))

    @router.get("/debug", response_model=DebugOut)
    def get_debug(response: Response):
        svc = services_func()
        try:
            head = str(svc.rpc.get_current_height())
        except Exception as e:
            head = f"error: {e}"
        response.headers.update(NO_STORE_HEADERS)
        return DebugOut(
            contractInUse=svc.config.contract_address,
            deployBlock=str(svc.config.deploy_block),
            currentBlock=head,
        )

    return router
