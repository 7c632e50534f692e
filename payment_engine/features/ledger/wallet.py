"""
Wallet signer protocol and a keypair-backed implementation.

Defines the signing capability the orchestrator needs, so a browser wallet
bridge, a hardware signer or a local keypair can be swapped without changing
purchase logic.
"""
from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence

from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from payment_engine.features.ledger.codec import describe_program_error
from payment_engine.features.ledger.rpc import (
    LedgerRpcClient,
    LedgerRpcError,
    LedgerUnavailableError,
)
from payment_engine.models.escrow import SubmissionReceipt, SubmissionStatus

logger = logging.getLogger("payment_engine")

_COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


class WalletSigner(Protocol):
    """
    Protocol for signers.

    Implementations must:
    - expose the owner public key that signs and pays
    - sign, submit and confirm the instructions as one transaction
    - report COMMITTED, REJECTED or UNKNOWN instead of raising once the
      transaction may have left the process
    """

    @property
    def public_key(self) -> Pubkey:
        ...

    def sign_and_submit(self, instructions: Sequence[Instruction]) -> SubmissionReceipt:
        """
        Sign and submit instructions atomically.

        Raises:
            LedgerUnavailableError: if the ledger could not be reached before
                anything was sent
        """
        ...


def describe_transaction_error(err: Any) -> str:
    """Readable text for a transaction `err` value from the node."""
    if isinstance(err, dict) and "InstructionError" in err:
        index, detail = err["InstructionError"]
        if isinstance(detail, dict) and "Custom" in detail:
            code = int(detail["Custom"])
            if code == 0:
                # System program AccountAlreadyInUse, raised when the escrow seed was used before
                return f"Instruction {index}: AccountAlreadyInUse: escrow address already exists"
            return f"Instruction {index}: {describe_program_error(code)}"
        return f"Instruction {index}: {detail}"
    return str(err)


def load_keypair(path: str) -> Keypair:
    """Load a keypair from a JSON array of 64 secret-key bytes."""
    raw = json.loads(Path(path).expanduser().read_text())
    return Keypair.from_bytes(bytes(raw))


class KeypairWallet:
    """WalletSigner implementation holding a local keypair."""

    def __init__(
        self,
        keypair: Keypair,
        rpc: LedgerRpcClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.keypair = keypair
        self.rpc = rpc
        self._sleep = sleep

    @classmethod
    def from_file(cls, path: str, rpc: LedgerRpcClient) -> "KeypairWallet":
        return cls(load_keypair(path), rpc)

    @property
    def public_key(self) -> Pubkey:
        return self.keypair.pubkey()

    def sign_and_submit(self, instructions: Sequence[Instruction]) -> SubmissionReceipt:
        blockhash = Hash.from_string(self.rpc.get_latest_blockhash())
        message = Message.new_with_blockhash(list(instructions), self.public_key, blockhash)
        transaction = Transaction([self.keypair], message, blockhash)
        signature = str(transaction.signatures[0])

        try:
            self.rpc.send_transaction(bytes(transaction))
        except LedgerRpcError as exc:
            # The node refused the transaction, so it was never forwarded
            return SubmissionReceipt(SubmissionStatus.REJECTED, signature, self._rpc_error_text(exc))
        except LedgerUnavailableError as exc:
            logger.warning("wallet.send.unconfirmed", extra={"signature": signature, "error_code": type(exc).__name__})
            return SubmissionReceipt(SubmissionStatus.UNKNOWN, signature, str(exc))

        return self._confirm(signature)

    def _confirm(self, signature: str) -> SubmissionReceipt:
        config = self.rpc.config
        wanted = _COMMITMENT_RANK.get(config.commitment, 0)
        last_error: Optional[str] = None

        for attempt in range(max(1, config.confirm_attempts)):
            if attempt:
                self._sleep(config.confirm_interval_seconds)
            try:
                status = self.rpc.get_signature_status(signature)
            except (LedgerRpcError, LedgerUnavailableError) as exc:
                last_error = str(exc)
                continue
            if not status:
                continue
            if status.get("err"):
                return SubmissionReceipt(
                    SubmissionStatus.REJECTED,
                    signature,
                    describe_transaction_error(status["err"]),
                )
            reached = _COMMITMENT_RANK.get(status.get("confirmationStatus") or "processed", 0)
            if reached >= wanted:
                return SubmissionReceipt(SubmissionStatus.COMMITTED, signature)

        return SubmissionReceipt(
            SubmissionStatus.UNKNOWN,
            signature,
            last_error or f"Transaction not confirmed after {config.confirm_attempts} status checks",
        )

    @staticmethod
    def _rpc_error_text(exc: LedgerRpcError) -> str:
        data = exc.data if isinstance(exc.data, dict) else {}
        if data.get("err"):
            return describe_transaction_error(data["err"])
        return exc.message
