"""
Plan purchase and account lookup endpoints.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, field_validator

from payment_engine.core.config import settings
from payment_engine.core.errors import NotFoundError, ValidationError
from payment_engine.core.logging import log_event
from payment_engine.features.escrow.service import EscrowOrchestrator
from payment_engine.models.escrow import (
    U64_MAX,
    EscrowRecord,
    EscrowRequest,
    new_escrow_seed,
    validate_address,
)
from payment_engine.models.plan import Plan
from payment_engine.models.user_account import UserAccount

router = APIRouter(prefix="/v1", tags=["escrow"])


def get_orchestrator(request: Request) -> EscrowOrchestrator:
    return request.app.state.orchestrator


class MakeEscrowIn(BaseModel):
    plan_id: int
    funding_account: str
    seed: Optional[int] = Field(default=None, ge=0, le=U64_MAX)
    service_account: Optional[str] = None
    service_funding_account: Optional[str] = None

    @field_validator("funding_account", "service_account", "service_funding_account")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


def _plan_out(plan: Plan) -> Dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "price": str(plan.price),
        "requests": plan.request_allowance,
        "description": plan.description,
    }


def _escrow_out(record: EscrowRecord) -> Dict:
    return {
        "address": record.address,
        "seed": record.seed,
        "owner": record.owner,
        "fundingMint": record.funding_token_kind,
        "amount": str(record.amount),
        "selectedPlan": _plan_out(record.selected_plan) if record.selected_plan else None,
    }


def _user_account_out(account: UserAccount) -> Dict:
    active = account.active_plan
    return {
        "address": account.address,
        "owner": account.owner,
        "totalRequests": account.total_requests_granted,
        "subscribedPlans": [_plan_out(p) for p in account.subscribed_plans],
        "activePlan": _plan_out(active) if active else None,
    }


def _address(value: str) -> str:
    try:
        return validate_address(value.strip())
    except ValueError as exc:
        raise ValidationError(str(exc))


@router.get("/plans")
def list_plans(orchestrator: EscrowOrchestrator = Depends(get_orchestrator)) -> Dict:
    plans = orchestrator.get_available_plans()
    return {"plans": [_plan_out(p) for p in plans], "count": len(plans)}


@router.post("/escrows")
def create_escrow(body: MakeEscrowIn, orchestrator: EscrowOrchestrator = Depends(get_orchestrator)) -> Dict:
    """Purchase a plan with the server wallet. Failures are rendered as error responses."""
    service_account = body.service_account or settings.SERVICE_ACCOUNT
    service_funding_account = body.service_funding_account or settings.SERVICE_TOKEN_ACCOUNT
    if not service_account or not service_funding_account:
        raise ValidationError("service_account and service_funding_account are required")

    try:
        escrow_request = EscrowRequest(
            seed=body.seed if body.seed is not None else new_escrow_seed(),
            plan_id=body.plan_id,
            funding_account=body.funding_account,
            service_account=service_account,
            service_funding_account=service_funding_account,
        )
    except ValueError as exc:
        raise ValidationError(str(exc))

    result = orchestrator.make_escrow(escrow_request)
    if not result.ok:
        log_event(
            "warning",
            "api.escrow.failed",
            event_type="escrow.purchase",
            error_code=result.failure_reason.code,
            extra={"seed": escrow_request.seed, "plan_id": escrow_request.plan_id},
        )
        raise result.failure_reason
    log_event(
        "info",
        "api.escrow.created",
        escrow_address=result.escrow_address,
        event_type="escrow.purchase",
        extra={"seed": escrow_request.seed, "plan_id": escrow_request.plan_id, "signature": result.transaction_ref},
    )
    return {"seed": escrow_request.seed, **result.to_dict()}


@router.get("/escrows")
def list_escrows(
    owner: str = Query(..., min_length=32),
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> Dict:
    records = orchestrator.list_escrows_by_owner(_address(owner))
    return {"owner": owner, "escrows": [_escrow_out(r) for r in records], "count": len(records)}


@router.get("/escrows/{address}")
def get_escrow(address: str, orchestrator: EscrowOrchestrator = Depends(get_orchestrator)) -> Dict:
    record = orchestrator.get_escrow(_address(address))
    if record is None:
        raise NotFoundError(f"Escrow {address} not found")
    return _escrow_out(record)


@router.get("/users/{owner}/account")
def get_user_account(owner: str, orchestrator: EscrowOrchestrator = Depends(get_orchestrator)) -> Dict:
    account = orchestrator.get_user_account(_address(owner))
    if account is None:
        raise NotFoundError(f"No subscription account for {owner}")
    return _user_account_out(account)


@router.get("/users/{owner}/account-address")
def get_user_account_address(owner: str, orchestrator: EscrowOrchestrator = Depends(get_orchestrator)) -> Dict:
    return {"owner": owner, "address": orchestrator.get_user_account_address(_address(owner))}


@router.get("/users/{owner}/escrow-address")
def get_escrow_address(
    owner: str,
    seed: int = Query(..., ge=0, le=U64_MAX),
    orchestrator: EscrowOrchestrator = Depends(get_orchestrator),
) -> Dict:
    return {
        "owner": owner,
        "seed": seed,
        "address": orchestrator.get_escrow_address(seed, _address(owner)),
    }


@router.get("/transactions/{signature}/events")
def get_transaction_events(signature: str, orchestrator: EscrowOrchestrator = Depends(get_orchestrator)) -> Dict:
    events = orchestrator.get_purchase_events(signature)
    return {
        "signature": signature,
        "events": [
            {"user": e.user, "planId": e.plan_id, "amount": e.amount, "timestamp": e.timestamp}
            for e in events
        ],
    }
