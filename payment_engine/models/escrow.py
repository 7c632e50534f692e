"""
payment_engine/models/escrow.py

Escrow purchase value objects: the request a caller builds, the record the
ledger holds, and the result the orchestrator hands back.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from solders.pubkey import Pubkey

from payment_engine.core.errors import EscrowError
from payment_engine.models.plan import Plan

U64_MAX = 2**64 - 1


def validate_address(value: str) -> str:
    """Return the address unchanged if it parses as a ledger public key."""
    try:
        Pubkey.from_string(value)
    except Exception as exc:
        raise ValueError(f"Invalid ledger address: {value!r}") from exc
    return value


def new_escrow_seed() -> int:
    """Escrow seed from the nanosecond wall clock, unique per owner across restarts."""
    return time.time_ns() & U64_MAX


class EscrowRequest(BaseModel):
    """
    Input for a single plan purchase.

    Constraint: `seed` must never be reused by the same owner, since it fixes
    the escrow address.
    """
    model_config = ConfigDict(frozen=True)

    seed: int = Field(ge=0, le=U64_MAX)
    plan_id: int = Field(ge=0, le=U64_MAX)
    funding_account: str
    service_funding_account: str
    service_account: str

    @field_validator("funding_account", "service_funding_account", "service_account")
    @classmethod
    def _address(cls, value: str) -> str:
        return validate_address(value.strip())


class EscrowRecord(BaseModel):
    """Escrow account as stored by the ledger program (read-only here)."""
    model_config = ConfigDict(frozen=True)

    address: str
    seed: int
    bump: int
    owner: str
    funding_token_kind: str
    amount: Decimal
    selected_plan: Optional[Plan] = None


class EscrowOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class EscrowState(str, Enum):
    """Orchestration states of one make_escrow call."""
    IDLE = "idle"
    VALIDATING = "validating"
    CHECKING_FUNDS = "checking_funds"
    DERIVING = "deriving"
    SUBMITTING = "submitting"
    COMMITTED = "committed"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


class SubmissionStatus(str, Enum):
    COMMITTED = "committed"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SubmissionReceipt:
    """Outcome of handing a signed operation to the ledger."""
    status: SubmissionStatus
    signature: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class EscrowResult:
    """Result of make_escrow. Exactly one of the success pair or failure_reason is set."""
    outcome: EscrowOutcome
    transaction_ref: Optional[str] = None
    escrow_address: Optional[str] = None
    failure_reason: Optional[EscrowError] = None

    def __post_init__(self):
        if self.outcome is EscrowOutcome.SUCCESS:
            if not self.transaction_ref or not self.escrow_address or self.failure_reason is not None:
                raise ValueError("Successful escrow result needs transaction_ref and escrow_address only")
        elif self.failure_reason is None or self.transaction_ref or self.escrow_address:
            raise ValueError("Failed escrow result needs failure_reason only")

    @classmethod
    def success(cls, transaction_ref: str, escrow_address: str) -> "EscrowResult":
        return cls(EscrowOutcome.SUCCESS, transaction_ref=transaction_ref, escrow_address=escrow_address)

    @classmethod
    def failure(cls, reason: EscrowError) -> "EscrowResult":
        return cls(EscrowOutcome.FAILURE, failure_reason=reason)

    @property
    def ok(self) -> bool:
        return self.outcome is EscrowOutcome.SUCCESS

    def to_dict(self) -> dict:
        payload = {
            "outcome": self.outcome.value,
            "transaction_ref": self.transaction_ref,
            "escrow_address": self.escrow_address,
            "error": None,
        }
        if self.failure_reason is not None:
            payload["error"] = {
                "code": self.failure_reason.code,
                "message": self.failure_reason.message,
                **self.failure_reason.details,
            }
        return payload
