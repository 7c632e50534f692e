"""
Purchase a plan from the command line with a local keypair.

Prints the escrow result as JSON. Exit code 0 on success, 1 on failure,
2 when the outcome is unknown and the escrow must be reconciled first.
"""
from __future__ import annotations

import argparse
import json
import os
from typing import Optional, Sequence

from payment_engine.core.config import LedgerConfig, settings
from payment_engine.core.logging import configure_logging
from payment_engine.core.errors import SubmissionUnknownError
from payment_engine.features.escrow.service import EscrowOrchestrator
from payment_engine.features.ledger.rpc import LedgerRpcClient
from payment_engine.features.ledger.wallet import KeypairWallet
from payment_engine.models.escrow import EscrowRequest, new_escrow_seed


def build_request(
    *,
    plan_id: int,
    funding_account: str,
    service_account: str,
    service_funding_account: str,
    seed: Optional[int] = None,
) -> EscrowRequest:
    return EscrowRequest(
        seed=seed if seed is not None else new_escrow_seed(),
        plan_id=plan_id,
        funding_account=funding_account,
        service_account=service_account,
        service_funding_account=service_funding_account,
    )


def run_purchase(orchestrator: EscrowOrchestrator, request: EscrowRequest) -> int:
    result = orchestrator.make_escrow(request)
    print(json.dumps({"seed": request.seed, **result.to_dict()}, indent=2))
    if result.ok:
        return 0
    if isinstance(result.failure_reason, SubmissionUnknownError):
        return 2
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Purchase a metering plan through the escrow program.")
    parser.add_argument("--plan-id", dest="plan_id", type=int, required=True)
    parser.add_argument("--funding-account", dest="funding_account", required=True, help="Token account debited for the plan.")
    parser.add_argument("--keypair", dest="keypair", default=settings.WALLET_KEYPAIR_PATH, help="JSON keypair file of the owner.")
    parser.add_argument("--service-account", dest="service_account", default=settings.SERVICE_ACCOUNT)
    parser.add_argument("--service-token-account", dest="service_funding_account", default=settings.SERVICE_TOKEN_ACCOUNT)
    parser.add_argument("--seed", dest="seed", type=int, default=None, help="Escrow seed; defaults to the current time in ns.")
    parser.add_argument("--cluster", dest="cluster", default=settings.LEDGER_CLUSTER)
    args = parser.parse_args(argv)

    if not args.keypair:
        parser.error("--keypair (or WALLET_KEYPAIR_PATH) is required")
    if not args.service_account or not args.service_funding_account:
        parser.error("--service-account and --service-token-account are required")
    try:
        request = build_request(
            plan_id=args.plan_id,
            funding_account=args.funding_account,
            service_account=args.service_account,
            service_funding_account=args.service_funding_account,
            seed=args.seed,
        )
        ledger_config = LedgerConfig.from_settings(settings.model_copy(update={"LEDGER_CLUSTER": args.cluster}))
    except ValueError as exc:
        parser.error(str(exc))

    configure_logging(os.getenv("ENV", settings.ENV))
    with LedgerRpcClient(ledger_config) as rpc:
        orchestrator = EscrowOrchestrator(
            ledger_config,
            rpc,
            KeypairWallet.from_file(args.keypair, rpc),
            plan_cache_ttl=settings.PLAN_CACHE_TTL_SECONDS,
        )
        return run_purchase(orchestrator, request)


if __name__ == "__main__":
    raise SystemExit(main())
