"""Agent handle: lifecycle state machine over a remote agent account.

Every mutating operation follows the same pipeline:

1. check the local precondition against the current snapshot (no I/O on
   failure)
2. build the command
3. submit and confirm through the gateway
4. re-fetch the account and install the new snapshot
5. publish notifications

The client never predicts post-command state; the snapshot only changes
when a fresh read is installed. Mutating operations on one handle are
serialized by a per-handle lock. Events raised under the lock are queued
and published in order once it is released, so a handler may await
another operation on the same handle.

Usage:
    gateway = LedgerGateway(Keypair.from_secret_key(secret), settings)
    agent = await Agent.create(gateway, "trader", {"executionLimit": 50})
    await agent.execute(b"tick")
    await agent.pause()
    await agent.resume()
"""
from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from pydantic import ValidationError

from .commands import (
    Command,
    build_execute_command,
    build_initialize_command,
    build_pause_command,
    build_resume_command,
    build_terminate_command,
    build_update_command,
    validate_address,
    validate_config,
    validate_name,
)
from .config import SonomaSettings
from .events import (
    AgentEvent,
    AgentEventNotifier,
    ErrorEvent,
    EventChannel,
    ExecutionEvent,
    StateChangeEvent,
)
from .exceptions import (
    AgentOperationError,
    CreationFailed,
    ExecutionFailed,
    InvalidParameters,
    InvalidStateTransition,
    LoadFailed,
    NotFound,
    RefreshFailed,
    SonomaError,
    StateChangeFailed,
    UpdateFailed,
)
from .gateway import CommitmentReceipt, Gateway
from .layout import LayoutError, decode_account
from .logging_config import LogContext
from .models import (
    AgentConfig,
    AgentConfigUpdate,
    AgentSnapshot,
    AgentState,
    PerformanceMetrics,
)
from .signer import Keypair
from .subscriptions import SubscriptionHandle

logger = logging.getLogger(__name__)

ConfigInput = Union[AgentConfig, AgentConfigUpdate, Mapping[str, Any]]

_ANY_LIVE_STATE = frozenset(AgentState) - {AgentState.TERMINATED}
_EXECUTABLE_STATES = frozenset({AgentState.INITIALIZED, AgentState.RUNNING})


def _default_config(settings: SonomaSettings) -> AgentConfig:
    defaults = settings.agent
    return AgentConfig(
        execution_limit=defaults.execution_limit,
        memory_limit=defaults.memory_limit,
        capabilities=defaults.default_capabilities,
    )


def _resolve_config(base: AgentConfig, config: Optional[ConfigInput]) -> AgentConfig:
    """Merge ``config`` over ``base``; a full AgentConfig replaces it."""
    if config is None:
        return base
    if isinstance(config, AgentConfig):
        return config
    try:
        return base.merged(config)
    except ValidationError as e:
        raise InvalidParameters(f"Invalid agent config: {e}", field="config") from e


class Agent:
    """Handle on one remote agent account."""

    def __init__(
        self,
        gateway: Gateway,
        snapshot: AgentSnapshot,
        *,
        notifier: Optional[AgentEventNotifier] = None,
        settings: Optional[SonomaSettings] = None,
    ) -> None:
        self._gateway = gateway
        self._snapshot = snapshot
        self._notifier = notifier or AgentEventNotifier()
        self._settings = settings or gateway.settings
        self._lock = asyncio.Lock()
        self._outbox: deque[AgentEvent] = deque()
        self._flushing = False
        self._subscription: Optional[SubscriptionHandle] = None

    # =========================================================================
    # Construction
    # =========================================================================

    @classmethod
    async def create(
        cls,
        gateway: Gateway,
        name: str,
        config: Optional[ConfigInput] = None,
        *,
        notifier: Optional[AgentEventNotifier] = None,
        settings: Optional[SonomaSettings] = None,
    ) -> "Agent":
        """Allocate and initialize a new agent account.

        ``config`` is merged over the ``agent`` defaults from settings.

        Raises:
            InvalidParameters: Bad name or config; nothing was submitted
            CreationFailed: Allocation, submission or the first read failed
        """
        settings = settings or gateway.settings
        merged = _resolve_config(_default_config(settings), config)
        validate_name(name)
        validate_config(merged)
        program_id = gateway.program_id

        keypair = Keypair.generate()
        address = keypair.public_key
        space = settings.program.account_space

        with LogContext(agent_address=address):
            try:
                lamports = await gateway.minimum_balance(space)
                command = build_initialize_command(
                    program_id,
                    gateway.signer,
                    keypair,
                    name,
                    merged,
                    lamports=lamports,
                    space=space,
                    compute_budget=settings.program.compute_budget,
                )
                receipt = await gateway.submit_and_confirm(command)
            except SonomaError as e:
                raise CreationFailed(
                    f"Failed to create agent '{name}': {e}", cause=e, address=address
                ) from e

            try:
                snapshot = await gateway.fetch_account(address)
            except SonomaError as e:
                raise CreationFailed(
                    f"Agent '{name}' was created but could not be read back: {e}",
                    cause=e,
                    address=address,
                    details={"committed": True, "signature": receipt.signature},
                ) from e

            logger.info("Created agent '%s' at %s", name, address)
        return cls(gateway, snapshot, notifier=notifier, settings=settings)

    @classmethod
    async def load(
        cls,
        gateway: Gateway,
        address: str,
        *,
        notifier: Optional[AgentEventNotifier] = None,
        settings: Optional[SonomaSettings] = None,
        use_cache: bool = True,
    ) -> "Agent":
        """Wrap an existing agent account.

        Raises:
            NotFound: No agent account at ``address``
            LoadFailed: The read failed for any other reason
        """
        validate_address(address)
        cache = gateway.cache if use_cache else None
        snapshot = cache.get(address) if cache is not None else None
        if snapshot is None:
            try:
                snapshot = await gateway.fetch_account(address)
            except NotFound:
                raise
            except SonomaError as e:
                raise LoadFailed(f"Failed to load agent {address}: {e}", cause=e, address=address) from e
        else:
            logger.debug("Loaded %s from cache (slot %d)", address, snapshot.slot)
        return cls(gateway, snapshot, notifier=notifier, settings=settings)

    @classmethod
    async def load_many(
        cls,
        gateway: Gateway,
        addresses: Iterable[str],
        *,
        notifier: Optional[AgentEventNotifier] = None,
        settings: Optional[SonomaSettings] = None,
    ) -> list["Agent"]:
        """Load several agents, batching reads when ``program.prefetch_accounts`` is on.

        Handles share ``notifier`` when one is given.
        """
        addresses = [validate_address(a) for a in addresses]
        settings = settings or gateway.settings
        if not settings.program.prefetch_accounts:
            return [
                await cls.load(gateway, a, notifier=notifier, settings=settings)
                for a in addresses
            ]

        try:
            snapshots = await gateway.fetch_accounts(addresses)
        except SonomaError as e:
            raise LoadFailed(f"Failed to load {len(addresses)} agents: {e}", cause=e) from e

        agents = []
        for address, snapshot in zip(addresses, snapshots):
            if snapshot is None:
                raise NotFound(address)
            agents.append(cls(gateway, snapshot, notifier=notifier, settings=settings))
        return agents

    # =========================================================================
    # Reads (never I/O, never locked)
    # =========================================================================

    @property
    def snapshot(self) -> AgentSnapshot:
        return self._snapshot

    @property
    def address(self) -> str:
        return self._snapshot.address

    @property
    def name(self) -> str:
        return self._snapshot.name

    @property
    def authority(self) -> str:
        return self._snapshot.authority

    @property
    def notifier(self) -> AgentEventNotifier:
        return self._notifier

    @property
    def gateway(self) -> Gateway:
        return self._gateway

    def get_state(self) -> AgentState:
        return self._snapshot.state

    def get_config(self) -> AgentConfig:
        return self._snapshot.config

    def get_metrics(self) -> PerformanceMetrics:
        return self._snapshot.metadata.performance_metrics

    def meets_performance_targets(self) -> bool:
        """Compare metrics against the ``agent.performance`` thresholds."""
        targets = self._settings.agent.performance
        metrics = self.get_metrics()
        return (
            metrics.success_rate >= targets.success_rate_threshold
            and metrics.average_execution_time <= targets.max_execution_time
            and metrics.average_compute_units <= targets.max_compute_units
        )

    def on(self, channel: EventChannel, handler: Callable) -> Callable[[], None]:
        """Shortcut for ``agent.notifier.subscribe``."""
        return self._notifier.subscribe(channel, handler)

    # =========================================================================
    # Snapshot installation
    # =========================================================================

    def _emit(self, event: AgentEvent) -> None:
        self._outbox.append(event)

    async def _flush(self) -> None:
        """Publish queued events in order. Only one flush runs per handle."""
        if self._flushing:
            return
        self._flushing = True
        try:
            while self._outbox:
                await self._notifier.publish(self._outbox.popleft())
        finally:
            self._flushing = False

    def _install(self, snapshot: AgentSnapshot) -> bool:
        """Swap in ``snapshot`` and queue a state change. Older slots are dropped."""
        current = self._snapshot
        if snapshot.slot < current.slot:
            logger.debug(
                "Dropping stale snapshot of %s (slot %d < %d)",
                self.address,
                snapshot.slot,
                current.slot,
            )
            return False

        self._snapshot = snapshot
        cache = self._gateway.cache
        if cache is not None:
            cache.put(snapshot)

        if snapshot.state != current.state:
            logger.info(
                "Agent %s state %s -> %s",
                self.address,
                current.state.value,
                snapshot.state.value,
            )
            self._emit(
                StateChangeEvent(
                    address=self.address,
                    old_state=current.state,
                    new_state=snapshot.state,
                )
            )
        return True

    async def refresh(self) -> AgentSnapshot:
        """Re-read the account and install it.

        Publishes exactly one state-change event when the lifecycle state
        differs, after the new snapshot is current.

        Raises:
            RefreshFailed: The read failed; the current snapshot is kept
        """
        with LogContext(agent_address=self.address):
            try:
                snapshot = await self._gateway.fetch_account(self.address)
            except SonomaError as e:
                raise RefreshFailed(
                    f"Failed to refresh agent {self.address}: {e}",
                    cause=e,
                    address=self.address,
                ) from e
            self._install(snapshot)
        await self._flush()
        return self._snapshot

    # =========================================================================
    # Mutations
    # =========================================================================

    def _require(self, operation: str, allowed: frozenset[AgentState]) -> None:
        state = self._snapshot.state
        if state not in allowed:
            raise InvalidStateTransition(
                operation,
                state.value,
                sorted(s.value for s in allowed),
            )

    async def _submit(
        self,
        operation: str,
        command: Command,
        wrapper: type[AgentOperationError],
    ) -> CommitmentReceipt:
        try:
            return await self._gateway.submit_and_confirm(command)
        except SonomaError as e:
            logger.error("Agent %s %s failed: %s", self.address, operation, e)
            self._emit(ErrorEvent(address=self.address, operation=operation, error=e))
            raise wrapper(
                f"Failed to {operation} agent {self.address}: {e}",
                cause=e,
                address=self.address,
            ) from e

    async def _refresh_after(
        self,
        operation: str,
        receipt: CommitmentReceipt,
        wrapper: type[AgentOperationError],
    ) -> None:
        try:
            snapshot = await self._gateway.fetch_account(self.address)
        except SonomaError as e:
            raise wrapper(
                f"{operation} of agent {self.address} committed but refresh failed: {e}",
                cause=e,
                address=self.address,
                details={"committed": True, "signature": receipt.signature},
            ) from e
        self._install(snapshot)

    async def _transition(
        self,
        operation: str,
        allowed: frozenset[AgentState],
        build: Callable[..., Command],
    ) -> AgentSnapshot:
        try:
            async with self._lock:
                self._require(operation, allowed)
                with LogContext(agent_address=self.address):
                    command = build(
                        self._gateway.program_id,
                        self._gateway.signer,
                        self.address,
                        compute_budget=self._settings.program.compute_budget,
                    )
                    receipt = await self._submit(operation, command, StateChangeFailed)
                    await self._refresh_after(operation, receipt, StateChangeFailed)
                return self._snapshot
        finally:
            await self._flush()

    async def update_config(
        self,
        changes: Optional[ConfigInput] = None,
        **fields: Any,
    ) -> AgentConfig:
        """Merge ``changes`` (and/or keyword fields) into the current config.

        Only explicitly given fields change; the full merged config is
        submitted.

        Raises:
            InvalidStateTransition: The agent is terminated
            InvalidParameters: The merged config is invalid
            UpdateFailed: Submission or the follow-up read failed
        """
        if isinstance(changes, AgentConfig):
            changes = changes.model_dump()
        elif isinstance(changes, AgentConfigUpdate):
            changes = changes.model_dump(exclude_unset=True)
        update: dict[str, Any] = dict(changes or {})
        update.update(fields)

        try:
            async with self._lock:
                self._require("update", _ANY_LIVE_STATE)
                merged = _resolve_config(self._snapshot.config, update)
                validate_config(merged)
                with LogContext(agent_address=self.address):
                    command = build_update_command(
                        self._gateway.program_id,
                        self._gateway.signer,
                        self.address,
                        merged,
                        compute_budget=self._settings.program.compute_budget,
                    )
                    receipt = await self._submit("update", command, UpdateFailed)
                    await self._refresh_after("update", receipt, UpdateFailed)
                return self._snapshot.config
        finally:
            await self._flush()

    async def execute(self, payload: bytes) -> CommitmentReceipt:
        """Run one action on the agent.

        Publishes an execution event on both success and failure.

        Raises:
            InvalidStateTransition: Not Initialized or Running
            InvalidParameters: ``payload`` is not bytes
            ExecutionFailed: Submission or the follow-up read failed
        """
        try:
            async with self._lock:
                self._require("execute", _EXECUTABLE_STATES)
                with LogContext(agent_address=self.address):
                    command = build_execute_command(
                        self._gateway.program_id,
                        self._gateway.signer,
                        self.address,
                        payload,
                        compute_budget=self._settings.program.compute_budget,
                    )
                    try:
                        receipt = await self._gateway.submit_and_confirm(command)
                    except SonomaError as e:
                        logger.error("Agent %s execute failed: %s", self.address, e)
                        self._emit(
                            ExecutionEvent(address=self.address, success=False, payload=bytes(payload), error=e)
                        )
                        self._emit(ErrorEvent(address=self.address, operation="execute", error=e))
                        raise ExecutionFailed(
                            f"Failed to execute on agent {self.address}: {e}",
                            cause=e,
                            address=self.address,
                        ) from e

                    self._emit(
                        ExecutionEvent(
                            address=self.address,
                            success=True,
                            payload=bytes(payload),
                            signature=receipt.signature,
                        )
                    )
                    await self._refresh_after("execute", receipt, ExecutionFailed)
                return receipt
        finally:
            await self._flush()

    async def pause(self) -> AgentSnapshot:
        """Running -> Paused."""
        return await self._transition(
            "pause", frozenset({AgentState.RUNNING}), build_pause_command
        )

    async def resume(self) -> AgentSnapshot:
        """Paused -> Running."""
        return await self._transition(
            "resume", frozenset({AgentState.PAUSED}), build_resume_command
        )

    async def terminate(self) -> AgentSnapshot:
        """Close the agent. No further mutations are accepted afterwards."""
        snapshot = await self._transition("terminate", _ANY_LIVE_STATE, build_terminate_command)
        await self.unwatch()
        return snapshot

    # =========================================================================
    # Push updates
    # =========================================================================

    async def _on_account_change(self, raw: bytes, slot: int) -> None:
        try:
            snapshot = decode_account(self.address, raw, slot=slot)
        except LayoutError as e:
            logger.warning("Ignoring undecodable update for %s at slot %d: %s", self.address, slot, e)
            return
        self._install(snapshot)
        await self._flush()

    @property
    def watching(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def watch(self) -> SubscriptionHandle:
        """Install every remote change pushed by the ledger. Idempotent."""
        if self.watching:
            return self._subscription
        self._subscription = await self._gateway.subscribe(self.address, self._on_account_change)
        logger.debug("Watching agent %s", self.address)
        return self._subscription

    async def unwatch(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.cancel()

    def __repr__(self) -> str:
        return (
            f"Agent(address={self.address!r}, name={self.name!r}, "
            f"state={self._snapshot.state.value})"
        )


__all__ = ["Agent", "ConfigInput"]
