"""Network gateway: the only component that talks to the ledger.

``LedgerGateway`` composes an ``RPCTransport`` (reads and submission) and
an ``AccountSubscriptionMux`` (push updates). Every network call runs
through ``retry_async`` with an explicit transient-error classification:

- reads, blockhash/rent queries and subscribe retry ``TransportError``
- sending a signed transaction retries ``TransportError`` only; the same
  signed bytes are resent, so a retry never submits a second command
- a send that is rejected after a resend, or never gets a reply, is
  followed by polling the transaction's own signature; an earlier copy
  may have landed
- confirmation is never retried: a timeout is ambiguous and surfaces as
  ``ConfirmationFailed``
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from .cache import SnapshotCache
from .commands import Command, CommandKind
from .config import SonomaSettings, load_settings
from .constants import COMMITMENT_LEVELS, NetworkDefaults
from .exceptions import (
    ConfirmationFailed,
    InvalidParameters,
    NotFound,
    RemoteProgramError,
    RetryExhausted,
    SonomaError,
    TRANSIENT_ERRORS,
    TransportError,
)
from .layout import LayoutError, decode_account
from .models import AgentSnapshot, AgentState
from .retry import RetryPolicy, retry_async
from .rpc import AccountInfo, RPCTransport
from .signer import Signer
from .subscriptions import AccountCallback, AccountSubscriptionMux, SubscriptionHandle
from .transaction import Transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CommitmentReceipt:
    """Proof that a command reached the configured commitment level."""
    signature: str
    slot: int
    commitment: str
    kind: CommandKind


class Gateway(Protocol):
    """Contract the Agent depends on."""

    settings: SonomaSettings
    signer: Signer
    cache: Optional[SnapshotCache]

    @property
    def program_id(self) -> str: ...

    async def fetch_account(self, address: str) -> AgentSnapshot: ...

    async def fetch_accounts(self, addresses: list[str]) -> list[Optional[AgentSnapshot]]: ...

    async def minimum_balance(self, space: int) -> int: ...

    async def submit_and_confirm(self, command: Command) -> CommitmentReceipt: ...

    async def subscribe(self, address: str, callback: AccountCallback) -> SubscriptionHandle: ...

    async def shutdown(self) -> None: ...


def _already_processed(error: SonomaError) -> bool:
    if not isinstance(error, RemoteProgramError):
        return False
    return "AlreadyProcessed" in str(error.remote_error) or "already been processed" in error.message


def _meets_commitment(actual: Optional[str], target: str) -> bool:
    if actual not in COMMITMENT_LEVELS:
        return False
    return COMMITMENT_LEVELS.index(actual) >= COMMITMENT_LEVELS.index(target)


class LedgerGateway:
    """Ledger access for agent handles.

    Args:
        signer: Authority and fee payer for every submitted command
        settings: Toolkit settings (defaults to ``load_settings()``)
        transport: Pre-built RPC transport (built from ``network`` otherwise)
        subscriptions: Pre-built subscription mux
        retry_policy: Overrides the ``agent.retry`` policy
        poll_interval: Seconds between signature status polls
    """

    def __init__(
        self,
        signer: Signer,
        settings: Optional[SonomaSettings] = None,
        *,
        transport: Optional[RPCTransport] = None,
        subscriptions: Optional[AccountSubscriptionMux] = None,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: float = NetworkDefaults.CONFIRMATION_POLL_INTERVAL,
    ) -> None:
        self.settings = settings or load_settings()
        self.signer = signer
        network = self.settings.network
        self.transport = transport or RPCTransport(
            network.endpoint,
            network.commitment,
            network.timeout,
            telemetry=self.settings.settings.telemetry,
        )
        self.subscriptions = subscriptions or AccountSubscriptionMux(
            network.ws_endpoint,
            network.commitment,
            request_timeout=network.timeout,
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings.agent.retry)
        self.poll_interval = poll_interval
        cache_settings = self.settings.settings.cache
        self.cache: Optional[SnapshotCache] = (
            SnapshotCache(ttl=cache_settings.ttl, max_size=cache_settings.max_size)
            if cache_settings.enabled
            else None
        )
        self._closed = False

    @property
    def program_id(self) -> str:
        program_id = self.settings.program.program_id
        if not program_id:
            raise InvalidParameters("program.program_id is not configured", field="program_id")
        return program_id

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self, operation: str) -> None:
        if self._closed:
            raise TransportError("Gateway has been shut down", method=operation)

    async def _retry(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        operation: str,
        on_retry: Optional[Callable[[int, BaseException, float], Any]] = None,
    ) -> T:
        return await retry_async(
            func,
            *args,
            policy=self.retry_policy,
            retry_on=TRANSIENT_ERRORS,
            operation=operation,
            on_retry=on_retry,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    def _decode(self, address: str, info: Optional[AccountInfo]) -> AgentSnapshot:
        if info is None:
            raise NotFound(address)
        if info.owner != self.program_id:
            raise NotFound(address, reason=f"owned by {info.owner}")
        try:
            snapshot = decode_account(address, info.data, slot=info.slot)
        except LayoutError as e:
            raise NotFound(address, reason=f"undecodable account data ({e})") from e
        if snapshot.state is AgentState.UNINITIALIZED:
            raise NotFound(address, reason="account is not initialized")
        return snapshot

    async def _fetch_account_once(self, address: str) -> AgentSnapshot:
        info = await self.transport.get_account_info(address)
        return self._decode(address, info)

    async def fetch_account(self, address: str) -> AgentSnapshot:
        """Fetch and decode the agent account at ``address``.

        Raises:
            NotFound: No account, wrong owner or uninitialized data
            RetryExhausted: Transport kept failing
        """
        self._check_open("getAccountInfo")
        snapshot = await self._retry(
            self._fetch_account_once, address, operation="getAccountInfo"
        )
        if self.cache is not None:
            self.cache.put(snapshot)
        return snapshot

    async def fetch_accounts(self, addresses: list[str]) -> list[Optional[AgentSnapshot]]:
        """Batch fetch in chunks of ``program.batch_size``; None where missing."""
        self._check_open("getMultipleAccounts")
        batch_size = self.settings.program.batch_size
        results: list[Optional[AgentSnapshot]] = []
        for start in range(0, len(addresses), batch_size):
            chunk = addresses[start:start + batch_size]
            infos = await self._retry(
                self.transport.get_multiple_accounts, chunk, operation="getMultipleAccounts"
            )
            for address, info in zip(chunk, infos):
                try:
                    snapshot = self._decode(address, info)
                except NotFound as e:
                    logger.debug("Batch fetch skipped %s: %s", address, e.message)
                    results.append(None)
                    continue
                if self.cache is not None:
                    self.cache.put(snapshot)
                results.append(snapshot)
        return results

    async def minimum_balance(self, space: int) -> int:
        """Rent-exempt balance in lamports for ``space`` bytes."""
        self._check_open("getMinimumBalanceForRentExemption")
        return await self._retry(
            self.transport.get_minimum_balance_for_rent_exemption,
            space,
            operation="getMinimumBalanceForRentExemption",
        )

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit_and_confirm(self, command: Command) -> CommitmentReceipt:
        """Sign ``command`` against a fresh blockhash, send it and wait.

        Submission is shielded: cancelling the caller does not abort a
        command that is already in flight.

        Raises:
            ConfirmationFailed: Not confirmed within ``network.timeout``
            RemoteProgramError: The ledger rejected or failed the transaction
            RetryExhausted: Every send failed and the transaction was never seen
        """
        self._check_open("sendTransaction")
        return await asyncio.shield(self._submit(command))

    async def _submit(self, command: Command) -> CommitmentReceipt:
        commitment = self.settings.network.commitment
        blockhash = await self._retry(
            self.transport.get_latest_blockhash, operation="getLatestBlockhash"
        )
        tx = Transaction.build(self.signer, command.instructions, blockhash, command.signers)
        resent = False

        def note_resend(attempt: int, exc: BaseException, delay: float) -> None:
            nonlocal resent
            resent = True

        send_error: Optional[SonomaError] = None
        try:
            signature = await self._retry(
                self.transport.send_transaction,
                tx.to_base64(),
                self.settings.network.max_retries,
                operation=f"sendTransaction({command.kind.value})",
                on_retry=note_resend,
            )
        except RemoteProgramError as e:
            if not resent:
                raise
            send_error = e
        except RetryExhausted as e:
            send_error = e

        if send_error is None:
            logger.info(
                "Submitted %s for %s: %s", command.kind.value, command.agent_address, signature
            )
            slot = await self._await_confirmation(signature, commitment)
        else:
            signature = tx.signature
            logger.warning(
                "Send of %s for %s ended with %s; polling %s",
                command.kind.value,
                command.agent_address,
                send_error,
                signature,
            )
            slot = await self._confirm_unsent(signature, commitment, send_error)
        logger.info("Confirmed %s at slot %d (%s)", signature, slot, commitment)
        if self.cache is not None:
            self.cache.invalidate(command.agent_address)
        return CommitmentReceipt(
            signature=signature,
            slot=slot,
            commitment=commitment,
            kind=command.kind,
        )

    async def _confirm_unsent(
        self, signature: str, commitment: str, send_error: SonomaError
    ) -> int:
        """Wait for a transaction whose send did not report success.

        A resend may be rejected because an earlier copy already landed, and
        a send may reach the node even though no reply came back. Without a
        confirmation the send failure is raised, unless the node said the
        transaction was already processed.
        """
        try:
            return await self._await_confirmation(signature, commitment)
        except ConfirmationFailed:
            if _already_processed(send_error):
                raise
            raise send_error

    async def _await_confirmation(self, signature: str, commitment: str) -> int:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.network.timeout
        last_error: Optional[TransportError] = None

        while True:
            try:
                status = await self.transport.get_signature_status(signature)
            except TransportError as e:
                # Polling is read-only; keep polling until the deadline.
                last_error = e
                status = None
                logger.debug("Status poll for %s failed: %s", signature, e)

            if status:
                if status.get("err"):
                    raise RemoteProgramError(
                        f"Transaction {signature} failed: {status['err']}",
                        signature=signature,
                        remote_error=status["err"],
                    )
                if _meets_commitment(status.get("confirmationStatus"), commitment):
                    return int(status.get("slot", 0))

            if loop.time() >= deadline:
                error = ConfirmationFailed(
                    f"Transaction {signature} not {commitment} within "
                    f"{self.settings.network.timeout}s",
                    signature=signature,
                    commitment=commitment,
                )
                if last_error is not None:
                    raise error from last_error
                raise error
            await asyncio.sleep(self.poll_interval)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def subscribe(self, address: str, callback: AccountCallback) -> SubscriptionHandle:
        """Deliver raw account bytes and slot to ``callback`` on every change."""
        self._check_open("accountSubscribe")
        return await self._retry(
            self.subscriptions.subscribe, address, callback, operation="accountSubscribe"
        )

    async def shutdown(self) -> None:
        """Release the websocket and the HTTP client. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            await self.subscriptions.close()
        finally:
            await self.transport.close()
        logger.info("Ledger gateway shut down")

    async def __aenter__(self) -> "LedgerGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()


__all__ = ["CommitmentReceipt", "Gateway", "LedgerGateway"]
