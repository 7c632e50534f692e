"""
JSON-RPC client for the ledger node.

Every call is bounded by the configured httpx timeout. Transport problems
raise LedgerUnavailableError (LedgerTimeoutError for timeouts); error objects
returned by the node raise LedgerRpcError.
"""
from __future__ import annotations

import base64
import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from payment_engine.core.config import LedgerConfig

logger = logging.getLogger("payment_engine")

# Returned by getTokenAccountBalance and friends for missing accounts
INVALID_PARAMS = -32602


class LedgerRpcError(Exception):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @property
    def account_missing(self) -> bool:
        text = (self.message or "").lower()
        return self.code == INVALID_PARAMS and "could not find account" in text


class LedgerUnavailableError(Exception):
    """The node could not be reached or returned an unusable response."""


class LedgerTimeoutError(LedgerUnavailableError):
    pass


def _malformed(method: str, exc: Exception) -> LedgerUnavailableError:
    return LedgerUnavailableError(f"{method} returned a malformed result: {exc!r}")


class LedgerRpcClient:
    """Thin synchronous JSON-RPC 2.0 client over httpx."""

    def __init__(self, config: LedgerConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self._client = client or httpx.Client(timeout=config.timeout_seconds)
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "LedgerRpcClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _call(self, method: str, params: Optional[list] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            response = self._client.post(self.config.http_url, json=payload)
        except httpx.TimeoutException as exc:
            raise LedgerTimeoutError(f"{method} timed out") from exc
        except httpx.HTTPError as exc:
            raise LedgerUnavailableError(f"{method} failed: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise LedgerUnavailableError(f"{method} failed: HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerUnavailableError(f"{method} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise LedgerUnavailableError(f"{method} returned a non-object response")

        error = body.get("error")
        if error and not isinstance(error, dict):
            raise LedgerUnavailableError(f"{method} returned a malformed error: {error!r}")
        if error:
            raise LedgerRpcError(error.get("code", 0), error.get("message", ""), error.get("data"))
        return body.get("result")

    def get_account_data(self, address: str) -> Optional[bytes]:
        """Raw account data, or None when the account does not exist."""
        result = self._call(
            "getAccountInfo",
            [address, {"encoding": "base64", "commitment": self.config.commitment}],
        )
        try:
            value = (result or {}).get("value")
            if value is None:
                return None
            return base64.b64decode(value["data"][0])
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            raise _malformed("getAccountInfo", exc) from exc

    def get_token_account_amount(self, address: str) -> Optional[int]:
        """Raw token amount (base units), or None when the account does not exist."""
        try:
            result = self._call(
                "getTokenAccountBalance",
                [address, {"commitment": self.config.commitment}],
            )
        except LedgerRpcError as exc:
            if exc.account_missing:
                return None
            raise
        try:
            return int(result["value"]["amount"])
        except (KeyError, TypeError, ValueError) as exc:
            raise _malformed("getTokenAccountBalance", exc) from exc

    def get_program_accounts(self, program_id: str, filters: Optional[List[Dict]] = None) -> List[Tuple[str, bytes]]:
        options: Dict[str, Any] = {"encoding": "base64", "commitment": self.config.commitment}
        if filters:
            options["filters"] = filters
        result = self._call("getProgramAccounts", [program_id, options]) or []
        try:
            return [
                (item["pubkey"], base64.b64decode(item["account"]["data"][0]))
                for item in result
            ]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise _malformed("getProgramAccounts", exc) from exc

    def get_latest_blockhash(self) -> str:
        result = self._call("getLatestBlockhash", [{"commitment": self.config.commitment}])
        try:
            return result["value"]["blockhash"]
        except (KeyError, TypeError) as exc:
            raise _malformed("getLatestBlockhash", exc) from exc

    def send_transaction(self, raw_transaction: bytes) -> str:
        """Submit a signed transaction and return its signature."""
        encoded = base64.b64encode(raw_transaction).decode("ascii")
        return self._call(
            "sendTransaction",
            [
                encoded,
                {
                    "encoding": "base64",
                    "skipPreflight": self.config.skip_preflight,
                    "preflightCommitment": self.config.commitment,
                },
            ],
        )

    def get_signature_status(self, signature: str) -> Optional[Dict[str, Any]]:
        result = self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        statuses = (result or {}).get("value") or [None]
        return statuses[0]

    def get_transaction_logs(self, signature: str) -> Optional[List[str]]:
        result = self._call(
            "getTransaction",
            [
                signature,
                {"encoding": "json", "commitment": "confirmed", "maxSupportedTransactionVersion": 0},
            ],
        )
        if result is None:
            return None
        return list((result.get("meta") or {}).get("logMessages") or [])

    def get_health(self) -> str:
        return self._call("getHealth")
