"""Unified exception hierarchy for the Sonoma toolkit.

All toolkit exceptions inherit from SonomaError, enabling:
- Consistent error handling across the agent, gateway and retry layers
- Structured error payloads with machine-readable codes
- Preservation of the original cause for diagnostics

Usage:
    from sonoma_toolkit.exceptions import (
        SonomaError,
        InvalidStateTransition,
        UpdateFailed,
    )

    try:
        await agent.pause()
    except InvalidStateTransition as e:
        print(e.details["current_state"])

Operation wrappers (CreationFailed, UpdateFailed, ...) are always raised
``from`` the failure that caused them, so ``err.__cause__`` and
``err.cause`` both point at the underlying error.
"""
from __future__ import annotations

from typing import Any, Optional


class SonomaError(Exception):
    """Base exception for all toolkit errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., "NOT_FOUND")
        details: Optional additional context
    """

    error_code: str = "SONOMA_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a serializable payload."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        cause = self.__cause__
        if cause is not None:
            result["cause"] = cause.to_dict() if isinstance(cause, SonomaError) else repr(cause)
        return result


# =============================================================================
# Local validation errors (never retried, no network call made)
# =============================================================================

class InvalidParameters(SonomaError):
    """Malformed input rejected before a command is built."""

    error_code = "INVALID_PARAMETERS"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)
        self.field = field


class InvalidStateTransition(SonomaError):
    """Operation not permitted from the agent's current lifecycle state."""

    error_code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        operation: str,
        current_state: str,
        allowed_states: Optional[list[str]] = None,
    ) -> None:
        allowed = allowed_states or []
        if allowed:
            message = (
                f"Cannot {operation} agent in state {current_state}; "
                f"requires one of {', '.join(allowed)}"
            )
        else:
            message = f"Cannot {operation} agent in state {current_state}"
        super().__init__(
            message,
            details={
                "operation": operation,
                "current_state": current_state,
                "allowed_states": allowed,
            },
        )
        self.operation = operation
        self.current_state = current_state


# =============================================================================
# Remote / network errors
# =============================================================================

class NotFound(SonomaError):
    """The address has no backing agent account."""

    error_code = "NOT_FOUND"

    def __init__(self, address: str, reason: Optional[str] = None) -> None:
        message = f"Agent account '{address}' not found"
        if reason:
            message = f"{message}: {reason}"
        details: dict[str, Any] = {"address": address}
        if reason:
            details["reason"] = reason
        super().__init__(message, details=details)
        self.address = address


class TransportError(SonomaError):
    """Network-class failure talking to the ledger (transient)."""

    error_code = "TRANSPORT_ERROR"

    def __init__(
        self,
        message: str,
        method: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if method:
            details["method"] = method
        super().__init__(message, details=details)
        self.method = method


class ConfirmationFailed(SonomaError):
    """Command was submitted but not confirmed in time.

    The outcome is ambiguous: the command may still land. Callers must
    re-fetch the account to learn the true state instead of assuming failure.
    """

    error_code = "CONFIRMATION_FAILED"

    def __init__(
        self,
        message: str,
        signature: Optional[str] = None,
        commitment: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if signature:
            details["signature"] = signature
        if commitment:
            details["commitment"] = commitment
        super().__init__(message, details=details)
        self.signature = signature


class RemoteProgramError(SonomaError):
    """The ledger executed the command and reported a failure."""

    error_code = "REMOTE_PROGRAM_ERROR"

    def __init__(
        self,
        message: str,
        signature: Optional[str] = None,
        remote_error: Any = None,
    ) -> None:
        details: dict[str, Any] = {}
        if signature:
            details["signature"] = signature
        if remote_error is not None:
            details["remote_error"] = remote_error
        super().__init__(message, details=details)
        self.signature = signature
        self.remote_error = remote_error


class RetryExhausted(SonomaError):
    """All retry attempts for a transient failure were used up.

    Attributes:
        attempts: Number of attempts performed
        stats: RetryStats for the run
        last_exception: The last failure (also the ``__cause__``)
    """

    error_code = "RETRY_EXHAUSTED"

    def __init__(
        self,
        message: str,
        attempts: int,
        stats: Any = None,
        last_exception: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, details={"attempts": attempts})
        self.attempts = attempts
        self.stats = stats
        self.last_exception = last_exception


# =============================================================================
# Operation wrappers
# =============================================================================

class AgentOperationError(SonomaError):
    """Base class for operation-specific failures carrying their cause."""

    error_code = "AGENT_OPERATION_FAILED"

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        address: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if address:
            details["address"] = address
        if cause is not None:
            details.setdefault("cause_type", type(cause).__name__)
        super().__init__(message, details=details)
        self.cause = cause
        self.address = address


class CreationFailed(AgentOperationError):
    error_code = "CREATION_FAILED"


class LoadFailed(AgentOperationError):
    error_code = "LOAD_FAILED"


class UpdateFailed(AgentOperationError):
    error_code = "UPDATE_FAILED"


class ExecutionFailed(AgentOperationError):
    error_code = "EXECUTION_FAILED"


class StateChangeFailed(AgentOperationError):
    """Pause, resume or terminate failed after passing local checks."""

    error_code = "STATE_CHANGE_FAILED"


class RefreshFailed(AgentOperationError):
    error_code = "REFRESH_FAILED"


# Failure classes the gateway retries by default.
TRANSIENT_ERRORS: tuple[type[SonomaError], ...] = (TransportError,)


__all__ = [
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
    "TRANSIENT_ERRORS",
]
