"""
payment_engine/features/escrow/service.py

Escrow purchase orchestration.

Handles:
- Plan validation and the advisory funding check
- Escrow / subscription address derivation
- Building and submitting the make_escrow instruction
- Converting every failure into a typed EscrowResult
- Account reads, purchase events and post-failure reconciliation
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import List, Optional, Sequence

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from payment_engine.core.config import LedgerConfig
from payment_engine.core.errors import (
    EscrowError,
    InsufficientFundsError,
    SubmissionRejectedError,
    SubmissionUnknownError,
    TransientReadError,
    WalletNotConfiguredError,
)
from payment_engine.features.ledger.accounts import AccountReader
from payment_engine.features.ledger.addresses import AddressDeriver, as_pubkey
from payment_engine.features.ledger.balance import BalanceChecker
from payment_engine.features.ledger.codec import (
    PurchaseEvent,
    decode_purchase_events,
    encode_make_escrow,
)
from payment_engine.features.ledger.rpc import (
    LedgerRpcClient,
    LedgerRpcError,
    LedgerUnavailableError,
)
from payment_engine.features.ledger.wallet import WalletSigner
from payment_engine.features.plans.catalog import DEFAULT_CACHE_TTL_SECONDS, PlanCatalog
from payment_engine.models.escrow import (
    EscrowRecord,
    EscrowRequest,
    EscrowResult,
    EscrowState,
    SubmissionStatus,
)
from payment_engine.models.plan import Plan
from payment_engine.models.user_account import UserAccount

logger = logging.getLogger("payment_engine")


class EscrowOrchestrator:
    """
    Client-side orchestration of plan purchases for one ledger environment.

    The plan catalog cache is owned here. The balance check is advisory only:
    the program re-checks balances and plans when the transaction executes.
    """

    def __init__(
        self,
        config: LedgerConfig,
        rpc: LedgerRpcClient,
        wallet: Optional[WalletSigner] = None,
        *,
        catalog: Optional[PlanCatalog] = None,
        plan_cache_ttl: float = DEFAULT_CACHE_TTL_SECONDS,
        deriver: Optional[AddressDeriver] = None,
        balance_checker: Optional[BalanceChecker] = None,
        account_reader: Optional[AccountReader] = None,
    ):
        self.config = config
        self.rpc = rpc
        self.wallet = wallet
        self.catalog = catalog or PlanCatalog(ttl_seconds=plan_cache_ttl)
        self.deriver = deriver or AddressDeriver(config.program_id)
        self.balance_checker = balance_checker or BalanceChecker(rpc, config.token_decimals)
        self.accounts = account_reader or AccountReader(rpc, self.deriver)

    @property
    def program_id(self) -> Pubkey:
        return self.deriver.program_id

    # Plans

    def get_available_plans(self) -> Sequence[Plan]:
        return self.catalog.get_plans()

    def validate_plan(self, plan_id: int) -> Plan:
        return self.catalog.validate_plan(plan_id)

    # Reads

    def get_balance(self, funding_account: str) -> Decimal:
        return self.balance_checker.get_balance(funding_account)

    def get_escrow(self, address: str) -> Optional[EscrowRecord]:
        return self.accounts.get_escrow(address)

    def get_user_account(self, owner: str) -> Optional[UserAccount]:
        return self.accounts.get_user_account(owner)

    def list_escrows_by_owner(self, owner: str) -> List[EscrowRecord]:
        return self.accounts.list_escrows_by_owner(owner)

    def get_user_account_address(self, owner: str) -> str:
        return self.deriver.subscription_address(owner)

    def get_escrow_address(self, seed: int, owner: str) -> str:
        return self.deriver.escrow_address(owner, seed)

    def get_purchase_events(self, signature: str) -> List[PurchaseEvent]:
        """TransactionSuccessful events emitted by a committed purchase."""
        try:
            logs = self.rpc.get_transaction_logs(signature)
        except (LedgerRpcError, LedgerUnavailableError) as exc:
            raise TransientReadError(f"Failed to read transaction {signature}: {exc}") from exc
        return decode_purchase_events(logs or [])

    def reconcile_escrow(self, request: EscrowRequest, owner: Optional[str] = None) -> Optional[EscrowRecord]:
        """
        Re-read the escrow a request would have created.

        Use after a submission_unknown failure: a record means the purchase
        committed; None means it did not and a retry needs a fresh seed anyway.
        """
        owner = owner or str(self._require_wallet().public_key)
        return self.get_escrow(self.get_escrow_address(request.seed, owner))

    # Purchase

    def build_make_escrow_instruction(
        self,
        request: EscrowRequest,
        owner: Pubkey,
        escrow_address: str,
        subscription_address: str,
    ) -> Instruction:
        cfg = self.config
        accounts = [
            AccountMeta(owner, is_signer=True, is_writable=True),
            AccountMeta(as_pubkey(escrow_address), is_signer=False, is_writable=True),
            AccountMeta(as_pubkey(subscription_address), is_signer=False, is_writable=True),
            AccountMeta(as_pubkey(cfg.funding_mint), is_signer=False, is_writable=False),
            AccountMeta(as_pubkey(request.service_account), is_signer=False, is_writable=False),
            AccountMeta(as_pubkey(request.funding_account), is_signer=False, is_writable=True),
            AccountMeta(as_pubkey(request.service_funding_account), is_signer=False, is_writable=True),
            AccountMeta(as_pubkey(cfg.system_program), is_signer=False, is_writable=False),
            AccountMeta(as_pubkey(cfg.token_program), is_signer=False, is_writable=False),
            AccountMeta(as_pubkey(cfg.associated_token_program), is_signer=False, is_writable=False),
        ]
        return Instruction(self.program_id, encode_make_escrow(request.seed, request.plan_id), accounts)

    def make_escrow(self, request: EscrowRequest) -> EscrowResult:
        """
        Purchase a plan by creating an escrow and transferring its price.

        Never raises: every failure is returned as a FAILURE result carrying
        the most specific EscrowError. Not retried here; a retry needs a new
        seed.
        """
        state = EscrowState.IDLE
        log_extra = {"seed": request.seed, "plan_id": request.plan_id}
        try:
            wallet = self._require_wallet()
            owner = wallet.public_key
            log_extra["owner"] = str(owner)

            state = self._enter(EscrowState.VALIDATING, log_extra)
            plan = self.validate_plan(request.plan_id)

            state = self._enter(EscrowState.CHECKING_FUNDS, log_extra)
            balance = self.get_balance(request.funding_account)
            if balance < plan.price:
                raise InsufficientFundsError(plan.price, balance)

            state = self._enter(EscrowState.DERIVING, log_extra)
            escrow_address = self.deriver.escrow_address(owner, request.seed)
            subscription_address = self.deriver.subscription_address(owner)
            log_extra["escrow_address"] = escrow_address
            instruction = self.build_make_escrow_instruction(
                request, owner, escrow_address, subscription_address
            )

            state = self._enter(EscrowState.SUBMITTING, log_extra)
            try:
                receipt = wallet.sign_and_submit([instruction])
            except (LedgerRpcError, LedgerUnavailableError) as exc:
                raise TransientReadError(f"Ledger unavailable before submission: {exc}") from exc
            except Exception as exc:
                raise SubmissionUnknownError(
                    f"Submission outcome unknown: {exc}",
                    seed=request.seed,
                    escrow_address=escrow_address,
                ) from exc

            if receipt.status is SubmissionStatus.COMMITTED:
                self._enter(EscrowState.COMMITTED, {**log_extra, "signature": receipt.signature})
                return EscrowResult.success(receipt.signature, escrow_address)
            if receipt.status is SubmissionStatus.REJECTED:
                self._enter(EscrowState.REJECTED, {**log_extra, "signature": receipt.signature})
                raise SubmissionRejectedError(
                    f"Escrow submission rejected: {receipt.error}",
                    signature=receipt.signature,
                    program_error=receipt.error,
                    seed=request.seed,
                    escrow_address=escrow_address,
                )
            self._enter(EscrowState.UNKNOWN, {**log_extra, "signature": receipt.signature})
            raise SubmissionUnknownError(
                f"Escrow submission could not be confirmed: {receipt.error}",
                signature=receipt.signature,
                seed=request.seed,
                escrow_address=escrow_address,
            )
        except EscrowError as exc:
            logger.warning(
                "escrow.failed",
                extra={**log_extra, "state": state.value, "error_code": exc.code},
            )
            return EscrowResult.failure(exc)
        except Exception as exc:
            logger.error(
                "escrow.failed.unexpected",
                exc_info=True,
                extra={**log_extra, "state": state.value, "error_code": "internal_error"},
            )
            return EscrowResult.failure(EscrowError(f"Unexpected error while {state.value}: {exc}"))

    def _require_wallet(self) -> WalletSigner:
        if self.wallet is None:
            raise WalletNotConfiguredError("No wallet configured to sign escrow purchases")
        return self.wallet

    @staticmethod
    def _enter(state: EscrowState, log_extra: dict) -> EscrowState:
        logger.info("escrow.state", extra={**log_extra, "state": state.value})
        return state
