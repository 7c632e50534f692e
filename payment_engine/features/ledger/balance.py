"""
Funding balance checks.

Balances are reported in human token units (raw amount scaled by the mint's
decimals). Read failures resolve to zero so a purchase is treated as
unfunded; the log line tells an unreadable balance apart from a confirmed
zero.
"""
from __future__ import annotations

import logging
from decimal import Decimal

from payment_engine.features.ledger.rpc import LedgerRpcClient

logger = logging.getLogger("payment_engine")


def scale_token_amount(raw_amount: int, decimals: int) -> Decimal:
    """Convert base units to token units (e.g. 1_500_000_000 with 9 decimals -> 1.5)."""
    return Decimal(raw_amount).scaleb(-decimals)


class BalanceChecker:
    def __init__(self, rpc: LedgerRpcClient, decimals: int = 9):
        self.rpc = rpc
        self.decimals = decimals

    def get_balance(self, funding_account: str) -> Decimal:
        try:
            raw_amount = self.rpc.get_token_account_amount(funding_account)
        except Exception as exc:
            logger.warning(
                "balance.unreadable",
                extra={
                    "funding_account": funding_account,
                    "error_code": type(exc).__name__,
                    "event_type": "balance.read",
                },
            )
            return Decimal(0)

        if raw_amount is None:
            logger.info(
                "balance.account_missing",
                extra={"funding_account": funding_account, "event_type": "balance.read"},
            )
            return Decimal(0)
        if raw_amount == 0:
            logger.info(
                "balance.confirmed_zero",
                extra={"funding_account": funding_account, "event_type": "balance.read"},
            )
        return scale_token_amount(raw_amount, self.decimals)
