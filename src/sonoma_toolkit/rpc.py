"""Async JSON-RPC transport for the ledger.

Uses raw httpx; every RPC method is a JSON-RPC 2.0 POST. Network-class
failures (connection errors, timeouts, 429/5xx, node-unhealthy RPC codes)
surface as ``TransportError``. A rejected ``sendTransaction`` (preflight
simulation failure) surfaces as ``RemoteProgramError``.
"""
from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .constants import NetworkDefaults
from .exceptions import RemoteProgramError, TransportError

logger = logging.getLogger(__name__)

# JSON-RPC codes returned by sendTransaction for a rejected transaction
_PREFLIGHT_FAILURE_CODES = frozenset({-32002, -32003})


@dataclass(frozen=True)
class AccountInfo:
    """Raw account as returned by the node."""
    owner: str
    data: bytes
    lamports: int
    slot: int


def _mask_url(url: str) -> str:
    """Mask query parameters (API keys) in an endpoint URL."""
    if "?" in url:
        return f"{url.split('?')[0]}?<params_masked>"
    return url


def _parse_account(value: Optional[dict[str, Any]], slot: int) -> Optional[AccountInfo]:
    if value is None:
        return None
    data_field = value.get("data") or ["", "base64"]
    raw = base64.b64decode(data_field[0]) if data_field[0] else b""
    return AccountInfo(
        owner=value.get("owner", ""),
        data=raw,
        lamports=int(value.get("lamports", 0)),
        slot=slot,
    )


def _result_object(method: str, result: Any) -> dict[str, Any]:
    if not isinstance(result, dict):
        raise TransportError(
            f"{method} returned no result object (got {type(result).__name__})",
            method=method,
        )
    return result


class RPCTransport:
    """Async ledger JSON-RPC client."""

    def __init__(
        self,
        endpoint: str = NetworkDefaults.ENDPOINT,
        commitment: str = NetworkDefaults.COMMITMENT,
        timeout: float = NetworkDefaults.TIMEOUT_SECONDS,
        *,
        client: Optional[httpx.AsyncClient] = None,
        telemetry: bool = False,
    ) -> None:
        self.endpoint = endpoint
        self.commitment = commitment
        self.telemetry = telemetry
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def _rpc(self, method: str, params: list[Any] | None = None) -> Any:
        """Make a JSON-RPC call."""
        if self._closed:
            raise TransportError("RPC transport is closed", method=method)

        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or [],
        }
        started = time.perf_counter()
        try:
            resp = await self._client.post(self.endpoint, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{method} failed with HTTP {e.response.status_code}",
                method=method,
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"{method} failed: {type(e).__name__}: {e}", method=method) from e
        except ValueError as e:
            raise TransportError(f"{method} returned invalid JSON", method=method) from e
        finally:
            if self.telemetry:
                logger.debug(
                    "RPC %s to %s took %.1fms",
                    method,
                    _mask_url(self.endpoint),
                    (time.perf_counter() - started) * 1000,
                )

        if "error" in data:
            error = data["error"] or {}
            code = error.get("code")
            message = error.get("message", "Unknown RPC error")
            if method == "sendTransaction" and code in _PREFLIGHT_FAILURE_CODES:
                raise RemoteProgramError(
                    f"Transaction rejected: {message}",
                    remote_error=error.get("data") or error,
                )
            raise TransportError(
                f"{method} RPC error {code}: {message}",
                method=method,
                details={"code": code},
            )
        return data.get("result")

    async def get_account_info(self, address: str) -> Optional[AccountInfo]:
        """Fetch one account; None when it does not exist."""
        result = _result_object(
            "getAccountInfo",
            await self._rpc(
                "getAccountInfo",
                [address, {"encoding": "base64", "commitment": self.commitment}],
            ),
        )
        return _parse_account(result.get("value"), result.get("context", {}).get("slot", 0))

    async def get_multiple_accounts(self, addresses: list[str]) -> list[Optional[AccountInfo]]:
        """Fetch up to 100 accounts in one call, preserving order."""
        result = _result_object(
            "getMultipleAccounts",
            await self._rpc(
                "getMultipleAccounts",
                [addresses, {"encoding": "base64", "commitment": self.commitment}],
            ),
        )
        slot = result.get("context", {}).get("slot", 0)
        return [_parse_account(value, slot) for value in result.get("value", [])]

    async def get_latest_blockhash(self) -> str:
        """Get latest blockhash for transaction building."""
        result = _result_object(
            "getLatestBlockhash",
            await self._rpc("getLatestBlockhash", [{"commitment": self.commitment}]),
        )
        value = result.get("value")
        if not isinstance(value, dict) or not value.get("blockhash"):
            raise TransportError("getLatestBlockhash returned no blockhash", method="getLatestBlockhash")
        return value["blockhash"]

    async def get_minimum_balance_for_rent_exemption(self, data_size: int) -> int:
        """Get minimum balance for rent exemption."""
        return await self._rpc("getMinimumBalanceForRentExemption", [data_size])

    async def send_transaction(self, signed_tx_base64: str, max_retries: Optional[int] = None) -> str:
        """Send a signed transaction. Returns transaction signature."""
        options: dict[str, Any] = {
            "encoding": "base64",
            "skipPreflight": False,
            "preflightCommitment": self.commitment,
        }
        if max_retries is not None:
            options["maxRetries"] = max_retries
        result = await self._rpc("sendTransaction", [signed_tx_base64, options])
        if not isinstance(result, str):
            raise TransportError("sendTransaction returned no signature", method="sendTransaction")
        logger.info("Transaction sent: %s", result)
        return result

    async def get_signature_status(self, signature: str) -> Optional[dict[str, Any]]:
        """Status of one signature, or None while the node has not seen it."""
        result = _result_object(
            "getSignatureStatuses",
            await self._rpc("getSignatureStatuses", [[signature]]),
        )
        statuses = result.get("value") or []
        return statuses[0] if statuses else None

    async def close(self) -> None:
        """Close the HTTP client. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()


__all__ = ["AccountInfo", "RPCTransport"]
