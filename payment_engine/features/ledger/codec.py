"""
Binary layouts of the escrow program (Anchor discriminator + Borsh body).

Escrow account:
    discriminator(8) seed(u64) bump(u8) owner(32) mint(32) amount(u64) Option<Plan>
Subscription account:
    discriminator(8) owner(32) total_requests(u64) Vec<Plan>
Plan:
    id(u64) name(string) price(u64) requests(u32) description(string)
"""
from __future__ import annotations

import base64
import hashlib
import logging
import struct
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional

from solders.pubkey import Pubkey

from payment_engine.models.escrow import EscrowRecord
from payment_engine.models.plan import Plan
from payment_engine.models.user_account import UserAccount

logger = logging.getLogger("payment_engine")

DISCRIMINATOR_SIZE = 8

# discriminator(8) + seed(8) + bump(1); the escrow owner field starts here
ESCROW_OWNER_OFFSET = DISCRIMINATOR_SIZE + 8 + 1

# Custom program errors start at 6000, in declaration order
PROGRAM_ERRORS = {
    6000: ("InvalidTokenAmount", "Invalid token amount."),
    6001: ("SignatureNotVerified", "User signature not verified."),
    6002: ("PlanNotFound", "Plan not found."),
    6003: ("MathOverflow", "Arithmetic overflow."),
    6004: ("InvalidMint", "Invalid mint."),
}


class DecodeError(ValueError):
    """Account data does not match the expected layout."""


def _sighash(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:DISCRIMINATOR_SIZE]


ESCROW_DISCRIMINATOR = _sighash("account", "SwqueryEscrow")
USER_ACCOUNT_DISCRIMINATOR = _sighash("account", "UserAccount")
MAKE_ESCROW_DISCRIMINATOR = _sighash("global", "make_escrow")
TRANSACTION_SUCCESSFUL_DISCRIMINATOR = _sighash("event", "TransactionSuccessful")


class BorshReader:
    """Sequential reader over a Borsh-encoded buffer."""

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    def _take(self, size: int) -> bytes:
        end = self.offset + size
        if end > len(self.data):
            raise DecodeError(f"Buffer too short: need {end} bytes, have {len(self.data)}")
        chunk = self.data[self.offset:end]
        self.offset = end
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self._take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def i64(self) -> int:
        return struct.unpack("<q", self._take(8))[0]

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self._take(32)))

    def string(self) -> str:
        length = self.u32()
        try:
            return self._take(length).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError("Invalid UTF-8 string") from exc

    def option_flag(self) -> bool:
        flag = self.u8()
        if flag not in (0, 1):
            raise DecodeError(f"Invalid option tag: {flag}")
        return flag == 1


def _expect_discriminator(data: bytes, expected: bytes, name: str) -> BorshReader:
    if data[:DISCRIMINATOR_SIZE] != expected:
        raise DecodeError(f"Account is not a {name}")
    return BorshReader(data, DISCRIMINATOR_SIZE)


def read_plan(reader: BorshReader) -> Plan:
    try:
        return Plan(
            id=reader.u64(),
            name=reader.string(),
            price=Decimal(reader.u64()),
            request_allowance=reader.u32(),
            description=reader.string(),
        )
    except ValueError as exc:
        if isinstance(exc, DecodeError):
            raise
        raise DecodeError(f"Invalid plan: {exc}") from exc


def decode_escrow(address: str, data: bytes) -> EscrowRecord:
    reader = _expect_discriminator(data, ESCROW_DISCRIMINATOR, "escrow account")
    seed = reader.u64()
    bump = reader.u8()
    owner = reader.pubkey()
    mint = reader.pubkey()
    amount = reader.u64()
    plan = read_plan(reader) if reader.option_flag() else None
    return EscrowRecord(
        address=address,
        seed=seed,
        bump=bump,
        owner=owner,
        funding_token_kind=mint,
        amount=Decimal(amount),
        selected_plan=plan,
    )


def decode_user_account(address: str, data: bytes) -> UserAccount:
    reader = _expect_discriminator(data, USER_ACCOUNT_DISCRIMINATOR, "subscription account")
    owner = reader.pubkey()
    total_requests = reader.u64()
    count = reader.u32()
    plans = [read_plan(reader) for _ in range(count)]
    return UserAccount(
        address=address,
        owner=owner,
        total_requests_granted=total_requests,
        subscribed_plans=plans,
    )


def encode_make_escrow(seed: int, plan_id: int) -> bytes:
    return MAKE_ESCROW_DISCRIMINATOR + struct.pack("<QQ", seed, plan_id)


@dataclass(frozen=True)
class PurchaseEvent:
    """TransactionSuccessful event emitted by the program after a purchase."""
    user: str
    plan_id: int
    amount: int
    timestamp: int


def decode_purchase_events(log_messages: Iterable[str]) -> List[PurchaseEvent]:
    """Pull TransactionSuccessful events out of `Program data:` log lines."""
    events = []
    for line in log_messages:
        payload = _program_data(line)
        if payload is None or payload[:DISCRIMINATOR_SIZE] != TRANSACTION_SUCCESSFUL_DISCRIMINATOR:
            continue
        reader = BorshReader(payload, DISCRIMINATOR_SIZE)
        try:
            event = PurchaseEvent(
                user=reader.pubkey(),
                plan_id=reader.u64(),
                amount=reader.u64(),
                timestamp=reader.i64(),
            )
        except DecodeError as exc:
            logger.warning(
                "events.undecodable",
                extra={"event_type": "purchase.event", "error_code": type(exc).__name__},
            )
            continue
        events.append(event)
    return events


def _program_data(line: str) -> Optional[bytes]:
    prefix = "Program data: "
    if not line.startswith(prefix):
        return None
    try:
        return base64.b64decode(line[len(prefix):], validate=True)
    except ValueError:
        return None


def describe_program_error(code: int) -> str:
    name, message = PROGRAM_ERRORS.get(code, (f"Custom{code}", "Unknown program error."))
    return f"{name}: {message}"
