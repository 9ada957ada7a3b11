"""
Pytest configuration for sonoma-toolkit tests.

Provides an in-memory ledger that implements the gateway contract the
Agent depends on. It applies submitted commands by decoding their
instruction data with the real codec, keeps per-method call counters and
supports one-shot failure injection.
"""
from __future__ import annotations

import inspect
import sys
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Optional

import base58
import pytest

# Add package source to path
package_src = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(package_src))

from sonoma_toolkit.cache import SnapshotCache
from sonoma_toolkit.commands import Command
from sonoma_toolkit.config import SonomaSettings, build_settings
from sonoma_toolkit.constants import COMPUTE_BUDGET_PROGRAM_ID, SYSTEM_PROGRAM_ID
from sonoma_toolkit.exceptions import NotFound, RemoteProgramError, TransportError
from sonoma_toolkit.gateway import CommitmentReceipt
from sonoma_toolkit.layout import (
    InstructionKind,
    decode_account,
    decode_instruction,
    encode_account,
)
from sonoma_toolkit.models import (
    AgentConfig,
    AgentMetadata,
    AgentSnapshot,
    AgentState,
    PerformanceMetrics,
)
from sonoma_toolkit.signer import Keypair

PROGRAM_ID = Keypair.from_seed(b"\x07" * 32).public_key
AUTHORITY_SEED = b"\x01" * 32
ACCOUNT_SPACE = 1024
EXECUTION_TIME_MS = 12
EXECUTION_COMPUTE_UNITS = 5_000


def make_settings(**overrides: Any) -> SonomaSettings:
    """Settings for tests: program id set, zero retry delays."""
    base: dict[str, Any] = {
        "program": {"program_id": PROGRAM_ID},
        "agent": {"retry": {"max_attempts": 3, "base_delay": 0.0, "max_delay": 0.0}},
        "network": {"timeout": 0.2},
    }
    for section, values in overrides.items():
        base[section] = {**base.get(section, {}), **values}
    return build_settings(base)


class FakeSubscription:
    def __init__(self, ledger: "InMemoryLedger", address: str, callback) -> None:
        self.address = address
        self._ledger = ledger
        self._callback = callback
        self.active = True

    async def deliver(self, raw: bytes, slot: int) -> None:
        if not self.active:
            return
        result = self._callback(raw, slot)
        if inspect.isawaitable(result):
            await result

    async def cancel(self) -> None:
        if self.active:
            self.active = False
            self._ledger.subscribers[self.address].remove(self)


class InMemoryLedger:
    """Gateway test double backed by encoded account bytes."""

    def __init__(self, settings: Optional[SonomaSettings] = None, use_cache: bool = False) -> None:
        self.settings = settings or make_settings()
        self.signer = Keypair.from_seed(AUTHORITY_SEED)
        self.cache: Optional[SnapshotCache] = SnapshotCache() if use_cache else None
        self.accounts: dict[str, tuple[str, bytes]] = {}  # address -> (owner, data)
        self.calls: Counter = Counter()
        self.submitted: list[Command] = []
        self.subscribers: dict[str, list[FakeSubscription]] = defaultdict(list)
        self.slot = 100
        self.clock = 1_700_000_000
        self.closed = False
        self._failures: dict[str, list[BaseException]] = defaultdict(list)

    # -- test helpers ---------------------------------------------------------

    @property
    def program_id(self) -> str:
        return self.settings.program.program_id

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def fail_next(self, method: str, error: BaseException, times: int = 1) -> None:
        self._failures[method].extend([error] * times)

    def _record(self, method: str) -> None:
        self.calls[method] += 1
        if self.closed:
            raise TransportError("Gateway has been shut down", method=method)
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def snapshot_of(self, address: str) -> AgentSnapshot:
        owner, data = self.accounts[address]
        return decode_account(address, data, slot=self.slot)

    def store(self, snapshot: AgentSnapshot) -> None:
        self.accounts[snapshot.address] = (self.program_id, encode_account(snapshot, ACCOUNT_SPACE))

    def seed_agent(self, state: AgentState = AgentState.RUNNING, name: str = "seeded", **fields: Any) -> str:
        """Store an agent account directly and return its address."""
        address = Keypair.generate().public_key
        snapshot = AgentSnapshot(
            address=address,
            authority=self.signer.public_key,
            name=name,
            config=fields.pop(
                "config",
                AgentConfig(execution_limit=1000, memory_limit=1024, capabilities={"compute"}),
            ),
            state=state,
            metadata=AgentMetadata(created_at=self.clock, updated_at=self.clock),
            **fields,
        )
        self.store(snapshot)
        return address

    async def push(self, address: str, slot: Optional[int] = None) -> None:
        """Deliver the current account bytes to subscribers."""
        _, data = self.accounts[address]
        for sub in list(self.subscribers[address]):
            await sub.deliver(data, self.slot if slot is None else slot)

    async def mutate_remote(self, address: str, **changes: Any) -> None:
        """Change an account outside the client and notify subscribers."""
        current = self.snapshot_of(address)
        self.slot += 1
        self.store(current.model_copy(update=changes))
        await self.push(address)

    # -- gateway contract -------------------------------------------------------

    async def fetch_account(self, address: str) -> AgentSnapshot:
        self._record("fetch_account")
        if address not in self.accounts:
            raise NotFound(address)
        owner, data = self.accounts[address]
        if owner != self.program_id:
            raise NotFound(address, reason=f"owned by {owner}")
        snapshot = decode_account(address, data, slot=self.slot)
        if snapshot.state is AgentState.UNINITIALIZED:
            raise NotFound(address, reason="account is not initialized")
        if self.cache is not None:
            self.cache.put(snapshot)
        return snapshot

    async def fetch_accounts(self, addresses: list[str]) -> list[Optional[AgentSnapshot]]:
        self._record("fetch_accounts")
        results: list[Optional[AgentSnapshot]] = []
        for address in addresses:
            if address not in self.accounts:
                results.append(None)
                continue
            snapshot = self.snapshot_of(address)
            results.append(None if snapshot.state is AgentState.UNINITIALIZED else snapshot)
        return results

    async def minimum_balance(self, space: int) -> int:
        self._record("minimum_balance")
        return 890_880 + space * 6_960

    async def submit_and_confirm(self, command: Command) -> CommitmentReceipt:
        self._record("submit_and_confirm")
        signer_keys = {s.public_key for s in command.signers}
        for ix in command.instructions:
            for meta in ix.accounts:
                if meta.is_signer and meta.pubkey not in signer_keys:
                    raise RemoteProgramError(f"Missing signature for {meta.pubkey}")

        self.slot += 1
        self.clock += 1
        for ix in command.instructions:
            if ix.program_id == COMPUTE_BUDGET_PROGRAM_ID:
                continue
            if ix.program_id == SYSTEM_PROGRAM_ID:
                new_account = ix.accounts[1].pubkey
                if new_account in self.accounts:
                    raise RemoteProgramError("Account already in use")
                owner = base58.b58encode(ix.data[20:52]).decode()
                space = int.from_bytes(ix.data[12:20], "little")
                self.accounts[new_account] = (owner, bytes(space))
                continue
            self._apply(ix.accounts[0].pubkey, ix.accounts[1].pubkey, ix.data)

        self.submitted.append(command)
        signature = base58.b58encode(len(self.submitted).to_bytes(64, "big")).decode()
        await self.push(command.agent_address)
        return CommitmentReceipt(
            signature=signature,
            slot=self.slot,
            commitment=self.settings.network.commitment,
            kind=command.kind,
        )

    def _apply(self, address: str, authority: str, data: bytes) -> None:
        kind, args = decode_instruction(data)
        owner, raw = self.accounts[address]
        current = decode_account(address, raw)
        if kind is not InstructionKind.INITIALIZE and current.authority != authority:
            raise RemoteProgramError("Invalid authority")

        if kind is InstructionKind.INITIALIZE:
            if current.state is not AgentState.UNINITIALIZED:
                raise RemoteProgramError("Account already initialized")
            updated = AgentSnapshot(
                address=address,
                authority=authority,
                name=args["name"],
                config=args["config"],
                state=AgentState.INITIALIZED,
                metadata=AgentMetadata(created_at=self.clock, updated_at=self.clock),
            )
        elif kind is InstructionKind.UPDATE:
            updated = current.model_copy(update={
                "config": args["config"],
                "metadata": current.metadata.model_copy(update={"updated_at": self.clock}),
            })
        elif kind is InstructionKind.EXECUTE:
            if current.state not in (AgentState.INITIALIZED, AgentState.RUNNING):
                raise RemoteProgramError("Invalid agent state")
            if current.execution_count >= current.config.execution_limit:
                raise RemoteProgramError("Execution limit reached")
            metrics = current.metadata.performance_metrics
            total = metrics.total_executions + 1
            updated = current.model_copy(update={
                "state": AgentState.RUNNING,
                "execution_count": current.execution_count + 1,
                "last_execution": self.clock,
                "metadata": current.metadata.model_copy(update={
                    "updated_at": self.clock,
                    "performance_metrics": PerformanceMetrics(
                        total_executions=total,
                        successful_executions=metrics.successful_executions + 1,
                        failed_executions=metrics.failed_executions,
                        average_execution_time=EXECUTION_TIME_MS,
                        total_compute_units=metrics.total_compute_units + EXECUTION_COMPUTE_UNITS,
                    ),
                }),
            })
        elif kind is InstructionKind.PAUSE:
            if current.state is not AgentState.RUNNING:
                raise RemoteProgramError("Invalid agent state")
            updated = current.model_copy(update={"state": AgentState.PAUSED})
        elif kind is InstructionKind.RESUME:
            if current.state is not AgentState.PAUSED:
                raise RemoteProgramError("Invalid agent state")
            updated = current.model_copy(update={"state": AgentState.RUNNING})
        else:
            updated = current.model_copy(update={"state": AgentState.TERMINATED})

        self.accounts[address] = (owner, encode_account(updated, len(raw)))

    async def subscribe(self, address: str, callback) -> FakeSubscription:
        self._record("subscribe")
        sub = FakeSubscription(self, address, callback)
        self.subscribers[address].append(sub)
        return sub

    async def shutdown(self) -> None:
        self.closed = True
        for subs in self.subscribers.values():
            for sub in list(subs):
                await sub.cancel()


@pytest.fixture
def settings() -> SonomaSettings:
    return make_settings()


@pytest.fixture
def ledger(settings) -> InMemoryLedger:
    return InMemoryLedger(settings)


@pytest.fixture
def cached_ledger(settings) -> InMemoryLedger:
    return InMemoryLedger(settings, use_cache=True)


@pytest.fixture
def program_id() -> str:
    return PROGRAM_ID
