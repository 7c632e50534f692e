"""
Reads of escrow and subscription accounts.

An account the ledger reports as nonexistent comes back as None. An account
holding some other record raises AccountLayoutError; any other read failure
raises TransientReadError with the underlying cause chained.
"""
from __future__ import annotations

import base64
import logging
from typing import List, Optional

from payment_engine.core.errors import AccountLayoutError, TransientReadError
from payment_engine.features.ledger.addresses import AddressDeriver, as_pubkey
from payment_engine.features.ledger.codec import (
    ESCROW_DISCRIMINATOR,
    ESCROW_OWNER_OFFSET,
    DecodeError,
    decode_escrow,
    decode_user_account,
)
from payment_engine.features.ledger.rpc import (
    LedgerRpcClient,
    LedgerRpcError,
    LedgerUnavailableError,
)
from payment_engine.models.escrow import EscrowRecord
from payment_engine.models.user_account import UserAccount

logger = logging.getLogger("payment_engine")

_READ_FAILURES = (LedgerRpcError, LedgerUnavailableError)


class AccountReader:
    def __init__(self, rpc: LedgerRpcClient, deriver: AddressDeriver):
        self.rpc = rpc
        self.deriver = deriver

    def _fetch(self, address: str) -> Optional[bytes]:
        try:
            return self.rpc.get_account_data(address)
        except _READ_FAILURES as exc:
            logger.warning(
                "accounts.read.failed",
                extra={"account_address": address, "error_code": type(exc).__name__},
            )
            raise TransientReadError(f"Failed to read account {address}: {exc}") from exc

    def get_escrow(self, address: str) -> Optional[EscrowRecord]:
        data = self._fetch(address)
        if data is None:
            return None
        try:
            return decode_escrow(address, data)
        except DecodeError as exc:
            raise AccountLayoutError(f"Account {address} is not an escrow record: {exc}") from exc

    def get_user_account(self, owner: str) -> Optional[UserAccount]:
        address = self.deriver.subscription_address(owner)
        data = self._fetch(address)
        if data is None:
            return None
        try:
            return decode_user_account(address, data)
        except DecodeError as exc:
            raise AccountLayoutError(f"Account {address} is not a subscription record: {exc}") from exc

    def list_escrows_by_owner(self, owner: str) -> List[EscrowRecord]:
        """
        Escrow records whose key at the owner offset matches.

        The program writes the service account into that slot, so this lists
        the escrows credited to a service. Order is whatever the node returns.
        """
        owner_key = str(as_pubkey(owner))
        filters = [
            {
                "memcmp": {
                    "offset": 0,
                    "bytes": base64.b64encode(ESCROW_DISCRIMINATOR).decode("ascii"),
                    "encoding": "base64",
                }
            },
            {"memcmp": {"offset": ESCROW_OWNER_OFFSET, "bytes": owner_key}},
        ]
        try:
            accounts = self.rpc.get_program_accounts(str(self.deriver.program_id), filters)
        except _READ_FAILURES as exc:
            logger.warning(
                "accounts.list.failed",
                extra={"owner": owner_key, "error_code": type(exc).__name__},
            )
            raise TransientReadError(f"Failed to list escrows for {owner_key}: {exc}") from exc

        records = []
        for address, data in accounts:
            try:
                records.append(decode_escrow(address, data))
            except DecodeError:
                logger.warning("accounts.list.undecodable", extra={"escrow_address": address})
        return records

