"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from payment_engine.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    @property
    def details(self) -> dict:
        """Extra fields rendered alongside code and message."""
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class EscrowError(AppError):
    """Base for every failure an escrow purchase can report."""
    code = "escrow_error"
    status_code = 500


class PlanNotFoundError(EscrowError, NotFoundError):
    code = "plan_not_found"
    status_code = 404

    def __init__(self, plan_id: int):
        super().__init__(f"Plan {plan_id} not found or is not valid")
        self.plan_id = plan_id


class InsufficientFundsError(EscrowError):
    code = "insufficient_funds"
    status_code = 402

    def __init__(self, required, available):
        super().__init__(
            f"Insufficient funding balance. Required: {required}, Available: {available}"
        )
        self.required = required
        self.available = available


class TransientReadError(EscrowError):
    """A ledger read failed for a reason other than the account being absent."""
    code = "ledger_unavailable"
    status_code = 503


class AccountLayoutError(EscrowError, ValidationError):
    """An account exists at the address but does not hold the expected record."""
    code = "validation_error"
    status_code = 400


class SubmissionError(EscrowError):
    """A failure after the escrow operation was handed to the wallet."""

    def __init__(
        self,
        message: str,
        *,
        signature: Optional[str] = None,
        seed: Optional[int] = None,
        escrow_address: Optional[str] = None,
    ):
        super().__init__(message)
        self.signature = signature
        self.seed = seed
        self.escrow_address = escrow_address

    @property
    def details(self) -> dict:
        return {
            "seed": self.seed,
            "escrow_address": self.escrow_address,
            "signature": self.signature,
        }


class SubmissionRejectedError(SubmissionError):
    """The ledger program rejected the escrow operation outright."""
    code = "submission_rejected"
    status_code = 409

    def __init__(self, message: str, *, program_error: Optional[str] = None, **context):
        super().__init__(message, **context)
        self.program_error = program_error

    @property
    def details(self) -> dict:
        return {**super().details, "program_error": self.program_error}


class SubmissionUnknownError(SubmissionError):
    """
    The operation was sent but its outcome could not be confirmed.

    It may or may not have committed. Callers must re-read the escrow
    address before retrying to avoid paying twice.
    """
    code = "submission_unknown"
    status_code = 504


class WalletNotConfiguredError(EscrowError):
    code = "wallet_not_configured"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[dict] = None) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id, **(details or {})},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("payment_engine")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("payment_engine")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("payment_engine")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
