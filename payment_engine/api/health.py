"""
Health and readiness endpoints.

Readiness asks the ledger node for its health without exposing configuration.
"""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from payment_engine.core.logging import latency_bucket_ms
from payment_engine.features.ledger.rpc import LedgerRpcError, LedgerUnavailableError

logger = logging.getLogger("payment_engine")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz(request: Request):
    """Readiness check: ledger node reachable and healthy."""
    orchestrator = request.app.state.orchestrator
    start = time.perf_counter()
    try:
        node_health = orchestrator.rpc.get_health()
    except (LedgerRpcError, LedgerUnavailableError) as exc:
        logger.warning("readyz.ledger.unavailable", extra={"error_code": type(exc).__name__})
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "ledger": {"ok": False, "error": type(exc).__name__}},
        )
    latency = latency_bucket_ms((time.perf_counter() - start) * 1000)
    return {
        "status": "ok",
        "ledger": {
            "ok": node_health == "ok",
            "cluster": orchestrator.config.cluster,
            "latency_bucket": latency,
        },
    }
