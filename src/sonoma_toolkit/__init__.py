"""Sonoma toolkit: client library for agent accounts on a Solana-style ledger."""
from __future__ import annotations

from .agent import Agent
from .cache import SnapshotCache
from .commands import (
    Command,
    CommandKind,
    build_execute_command,
    build_initialize_command,
    build_pause_command,
    build_resume_command,
    build_terminate_command,
    build_update_command,
)
from .config import SonomaSettings, build_settings, load_settings
from .events import (
    AgentEventNotifier,
    ErrorEvent,
    EventChannel,
    ExecutionEvent,
    StateChangeEvent,
)
from .exceptions import (
    AgentOperationError,
    ConfirmationFailed,
    CreationFailed,
    ExecutionFailed,
    InvalidParameters,
    InvalidStateTransition,
    LoadFailed,
    NotFound,
    RefreshFailed,
    RemoteProgramError,
    RetryExhausted,
    SonomaError,
    StateChangeFailed,
    TransportError,
    UpdateFailed,
)
from .gateway import CommitmentReceipt, Gateway, LedgerGateway
from .logging_config import LogContext, configure_from_settings, setup_logging
from .models import (
    AgentConfig,
    AgentConfigUpdate,
    AgentMetadata,
    AgentSnapshot,
    AgentState,
    PerformanceMetrics,
)
from .retry import RetryPolicy, RetryStats, retry_async
from .rpc import RPCTransport
from .signer import Keypair, Signer
from .subscriptions import AccountSubscriptionMux, SubscriptionHandle

__version__ = "0.1.0"

__all__ = [
    # Agent
    "Agent",
    "AgentConfig",
    "AgentConfigUpdate",
    "AgentMetadata",
    "AgentSnapshot",
    "AgentState",
    "PerformanceMetrics",
    # Events
    "AgentEventNotifier",
    "EventChannel",
    "StateChangeEvent",
    "ExecutionEvent",
    "ErrorEvent",
    # Network
    "Gateway",
    "LedgerGateway",
    "CommitmentReceipt",
    "RPCTransport",
    "AccountSubscriptionMux",
    "SubscriptionHandle",
    "SnapshotCache",
    "Keypair",
    "Signer",
    # Commands
    "Command",
    "CommandKind",
    "build_initialize_command",
    "build_update_command",
    "build_execute_command",
    "build_pause_command",
    "build_resume_command",
    "build_terminate_command",
    # Retry
    "RetryPolicy",
    "RetryStats",
    "retry_async",
    # Config / logging
    "SonomaSettings",
    "build_settings",
    "load_settings",
    "LogContext",
    "setup_logging",
    "configure_from_settings",
    # Errors
    "SonomaError",
    "InvalidParameters",
    "InvalidStateTransition",
    "NotFound",
    "TransportError",
    "ConfirmationFailed",
    "RemoteProgramError",
    "RetryExhausted",
    "AgentOperationError",
    "CreationFailed",
    "LoadFailed",
    "UpdateFailed",
    "ExecutionFailed",
    "StateChangeFailed",
    "RefreshFailed",
]
