"""Command builders for agent operations.

Each builder validates its input and returns a ``Command``: the
instructions to submit plus the signers that must authorize them. Builders
do no I/O; signing happens at submission against a fresh blockhash.
"""
from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from enum import Enum

import base58

from . import layout
from .constants import COMPUTE_BUDGET_PROGRAM_ID, SYSTEM_PROGRAM_ID, AgentLimits
from .exceptions import InvalidParameters
from .models import AgentConfig, thaw_json
from .signer import Keypair, Signer
from .transaction import AccountMeta, Instruction

U64_MAX = 2**64 - 1

# System program CreateAccount
_SYSTEM_CREATE_ACCOUNT = 0
# ComputeBudget SetComputeUnitLimit
_SET_COMPUTE_UNIT_LIMIT = 2


class CommandKind(str, Enum):
    INITIALIZE = "initialize"
    UPDATE = "update"
    EXECUTE = "execute"
    PAUSE = "pause"
    RESUME = "resume"
    TERMINATE = "terminate"


@dataclass(frozen=True)
class Command:
    """A submittable agent command.

    Attributes:
        kind: Logical operation
        agent_address: Target agent account
        instructions: Instructions in submission order
        signers: Every signer that must authorize the transaction
    """

    kind: CommandKind
    agent_address: str
    instructions: tuple[Instruction, ...]
    signers: tuple[Signer, ...]

    @property
    def program_instruction(self) -> Instruction:
        """The agent program instruction (last in the command)."""
        return self.instructions[-1]


# =============================================================================
# Validation
# =============================================================================

def validate_address(address: str, field: str = "address") -> str:
    try:
        raw = base58.b58decode(address)
    except ValueError as e:
        raise InvalidParameters(f"Invalid address '{address}'", field=field) from e
    if len(raw) != 32:
        raise InvalidParameters(f"Invalid address '{address}'", field=field)
    return address


def validate_name(name: str) -> str:
    if not isinstance(name, str) or not name:
        raise InvalidParameters("Agent name must be a non-empty string", field="name")
    if len(name.encode("utf-8")) > AgentLimits.MAX_NAME_BYTES:
        raise InvalidParameters(
            f"Agent name exceeds {AgentLimits.MAX_NAME_BYTES} bytes",
            field="name",
        )
    return name


def validate_config(config: AgentConfig) -> AgentConfig:
    for field in ("execution_limit", "memory_limit"):
        value = getattr(config, field)
        if value <= 0:
            raise InvalidParameters(f"{field} must be positive, got {value}", field=field)
        if value > U64_MAX:
            raise InvalidParameters(f"{field} exceeds u64 range", field=field)
    if len(config.capabilities) > AgentLimits.MAX_CAPABILITIES:
        raise InvalidParameters(
            f"At most {AgentLimits.MAX_CAPABILITIES} capabilities are allowed",
            field="capabilities",
        )
    if any(not tag for tag in config.capabilities):
        raise InvalidParameters("Capability tags must be non-empty", field="capabilities")
    try:
        json.dumps(thaw_json(config.metadata))
    except (TypeError, ValueError) as e:
        raise InvalidParameters(f"Config metadata is not JSON-serializable: {e}", field="metadata") from e
    return config


# =============================================================================
# Instructions
# =============================================================================

def compute_budget_instruction(units: int) -> Instruction:
    return Instruction(
        program_id=COMPUTE_BUDGET_PROGRAM_ID,
        accounts=(),
        data=struct.pack("<BI", _SET_COMPUTE_UNIT_LIMIT, units),
    )


def create_account_instruction(
    payer: str,
    new_account: str,
    lamports: int,
    space: int,
    owner: str,
) -> Instruction:
    data = struct.pack("<IQQ", _SYSTEM_CREATE_ACCOUNT, lamports, space) + base58.b58decode(owner)
    return Instruction(
        program_id=SYSTEM_PROGRAM_ID,
        accounts=(
            AccountMeta(payer, is_signer=True, is_writable=True),
            AccountMeta(new_account, is_signer=True, is_writable=True),
        ),
        data=data,
    )


def _agent_instruction(program_id: str, agent: str, authority: str, data: bytes) -> Instruction:
    return Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(agent, is_writable=True),
            AccountMeta(authority, is_signer=True),
        ),
        data=data,
    )


def _with_budget(compute_budget: int, *instructions: Instruction) -> tuple[Instruction, ...]:
    if compute_budget:
        return (compute_budget_instruction(compute_budget), *instructions)
    return instructions


# =============================================================================
# Builders
# =============================================================================

def build_initialize_command(
    program_id: str,
    authority: Signer,
    agent_keypair: Keypair,
    name: str,
    config: AgentConfig,
    *,
    lamports: int,
    space: int = AgentLimits.DEFAULT_ACCOUNT_SPACE,
    compute_budget: int = 0,
) -> Command:
    """Allocate the agent account and initialize it in one command."""
    validate_address(program_id, field="program_id")
    validate_name(name)
    validate_config(config)
    if lamports < 0:
        raise InvalidParameters("lamports must not be negative", field="lamports")

    agent = agent_keypair.public_key
    initialize = Instruction(
        program_id=program_id,
        accounts=(
            AccountMeta(agent, is_writable=True),
            AccountMeta(authority.public_key, is_signer=True),
            AccountMeta(SYSTEM_PROGRAM_ID),
        ),
        data=layout.encode_initialize(name, config),
    )
    return Command(
        kind=CommandKind.INITIALIZE,
        agent_address=agent,
        instructions=_with_budget(
            compute_budget,
            create_account_instruction(authority.public_key, agent, lamports, space, program_id),
            initialize,
        ),
        signers=(authority, agent_keypair),
    )


def build_update_command(
    program_id: str,
    authority: Signer,
    agent_address: str,
    config: AgentConfig,
    *,
    compute_budget: int = 0,
) -> Command:
    """Submit the full post-merge config."""
    validate_address(agent_address)
    validate_config(config)
    return Command(
        kind=CommandKind.UPDATE,
        agent_address=agent_address,
        instructions=_with_budget(
            compute_budget,
            _agent_instruction(program_id, agent_address, authority.public_key, layout.encode_update(config)),
        ),
        signers=(authority,),
    )


def build_execute_command(
    program_id: str,
    authority: Signer,
    agent_address: str,
    payload: bytes,
    *,
    compute_budget: int = 0,
) -> Command:
    validate_address(agent_address)
    if not isinstance(payload, (bytes, bytearray)):
        raise InvalidParameters(
            f"Execute payload must be bytes, got {type(payload).__name__}",
            field="payload",
        )
    return Command(
        kind=CommandKind.EXECUTE,
        agent_address=agent_address,
        instructions=_with_budget(
            compute_budget,
            _agent_instruction(program_id, agent_address, authority.public_key, layout.encode_execute(bytes(payload))),
        ),
        signers=(authority,),
    )


def _build_simple(
    kind: CommandKind,
    data: bytes,
    program_id: str,
    authority: Signer,
    agent_address: str,
    compute_budget: int,
) -> Command:
    validate_address(agent_address)
    return Command(
        kind=kind,
        agent_address=agent_address,
        instructions=_with_budget(
            compute_budget,
            _agent_instruction(program_id, agent_address, authority.public_key, data),
        ),
        signers=(authority,),
    )


def build_pause_command(
    program_id: str,
    authority: Signer,
    agent_address: str,
    *,
    compute_budget: int = 0,
) -> Command:
    return _build_simple(CommandKind.PAUSE, layout.encode_pause(), program_id, authority, agent_address, compute_budget)


def build_resume_command(
    program_id: str,
    authority: Signer,
    agent_address: str,
    *,
    compute_budget: int = 0,
) -> Command:
    return _build_simple(CommandKind.RESUME, layout.encode_resume(), program_id, authority, agent_address, compute_budget)


def build_terminate_command(
    program_id: str,
    authority: Signer,
    agent_address: str,
    *,
    compute_budget: int = 0,
) -> Command:
    """Close the agent account; Terminated is final."""
    return _build_simple(CommandKind.TERMINATE, layout.encode_close(), program_id, authority, agent_address, compute_budget)


__all__ = [
    "CommandKind",
    "Command",
    "validate_address",
    "validate_name",
    "validate_config",
    "compute_budget_instruction",
    "create_account_instruction",
    "build_initialize_command",
    "build_update_command",
    "build_execute_command",
    "build_pause_command",
    "build_resume_command",
    "build_terminate_command",
]
