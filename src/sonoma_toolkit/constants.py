"""Constants shared across the toolkit.

Program ids, wire discriminators and default values live here so the
codec, the command builder and the configuration surface agree on them.
"""
from __future__ import annotations

from typing import Final


# =============================================================================
# Well-known program ids
# =============================================================================

SYSTEM_PROGRAM_ID: Final[str] = "11111111111111111111111111111111"
COMPUTE_BUDGET_PROGRAM_ID: Final[str] = "ComputeBudget111111111111111111111111111111"


# =============================================================================
# Agent account limits
# =============================================================================

class AgentLimits:
    """Sizes enforced by the agent program."""

    MAX_NAME_BYTES: Final[int] = 32
    MAX_CAPABILITIES: Final[int] = 16
    DEFAULT_ACCOUNT_SPACE: Final[int] = 1024


class AgentDefaults:
    """Default agent configuration values."""

    EXECUTION_LIMIT: Final[int] = 1000
    MEMORY_LIMIT: Final[int] = 10 * 1024 * 1024  # 10MB
    CAPABILITIES: Final[tuple[str, ...]] = ("compute", "storage")
    VERSION: Final[str] = "1.0.0"


# =============================================================================
# Retry Configuration
# =============================================================================

class RetryDefaults:
    """Default retry policy for ledger calls."""

    MAX_ATTEMPTS: Final[int] = 3
    BASE_DELAY: Final[float] = 1.0
    MAX_DELAY: Final[float] = 10.0
    BACKOFF_FACTOR: Final[float] = 2.0


# =============================================================================
# Network
# =============================================================================

class NetworkDefaults:
    """Default ledger connection settings."""

    ENDPOINT: Final[str] = "https://api.mainnet-beta.solana.com"
    COMMITMENT: Final[str] = "confirmed"
    TIMEOUT_SECONDS: Final[float] = 30.0
    MAX_RETRIES: Final[int] = 3
    CONFIRMATION_POLL_INTERVAL: Final[float] = 0.5


# Commitment levels in increasing order of durability.
COMMITMENT_LEVELS: Final[tuple[str, ...]] = ("processed", "confirmed", "finalized")
