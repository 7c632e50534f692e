import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from payment_engine/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from payment_engine.core.config import LedgerConfig, Settings, settings, validate_config
from payment_engine.core.logging import configure_logging
from payment_engine.core.middleware.request_id import RequestIdMiddleware
from payment_engine.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from payment_engine.api import escrow, health
from payment_engine.features.escrow.service import EscrowOrchestrator
from payment_engine.features.ledger.rpc import LedgerRpcClient
from payment_engine.features.ledger.wallet import KeypairWallet

logger = logging.getLogger("payment_engine")


def build_orchestrator(settings_obj: Optional[Settings] = None) -> EscrowOrchestrator:
    """Wire the ledger client, optional server wallet and orchestrator from settings."""
    cfg = settings_obj or settings
    ledger_config = LedgerConfig.from_settings(cfg)
    rpc = LedgerRpcClient(ledger_config)
    wallet = None
    if cfg.WALLET_KEYPAIR_PATH:
        wallet = KeypairWallet.from_file(cfg.WALLET_KEYPAIR_PATH, rpc)
    return EscrowOrchestrator(
        ledger_config,
        rpc,
        wallet,
        plan_cache_ttl=cfg.PLAN_CACHE_TTL_SECONDS,
    )


def create_app(orchestrator: Optional[EscrowOrchestrator] = None) -> FastAPI:
    orchestrator = orchestrator or build_orchestrator()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting payment engine backend (cluster=%s)...", app.state.orchestrator.config.cluster)
        try:
            yield
        finally:
            app.state.orchestrator.rpc.close()
            logger.info("Stopping payment engine backend...")

    app = FastAPI(title="Payment Engine - Escrow API", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # CORS (adjust origins in production)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.root_router, tags=["health"])
    app.include_router(escrow.router, tags=["escrow"])
    return app


configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("payment_engine.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
