"""Canonical configuration surface for the Sonoma toolkit.

Settings are grouped in four sections (network, agent, program, settings).
Values come from, in order of precedence: explicit overrides, ``SONOMA_``
environment variables (``SONOMA_NETWORK__ENDPOINT=...``), an optional
``.env`` file, then the defaults below. Partial overrides merge over the
defaults per section, so ``{"network": {"timeout": 5}}`` keeps every other
network field.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import AgentDefaults, AgentLimits, NetworkDefaults, RetryDefaults

Commitment = Literal["processed", "confirmed", "finalized"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


class NetworkSettings(BaseModel):
    """Ledger connection configuration."""
    endpoint: str = NetworkDefaults.ENDPOINT
    ws_endpoint: str = ""
    commitment: Commitment = NetworkDefaults.COMMITMENT
    timeout: float = Field(default=NetworkDefaults.TIMEOUT_SECONDS, gt=0)
    max_retries: int = Field(default=NetworkDefaults.MAX_RETRIES, ge=0)

    @model_validator(mode="after")
    def derive_ws_endpoint(self) -> "NetworkSettings":
        """Derive the websocket endpoint from the HTTP endpoint when unset."""
        if not self.ws_endpoint:
            self.ws_endpoint = self.endpoint.replace("http", "ws", 1)
        return self


class RetrySettings(BaseModel):
    """Retry policy applied to every ledger call."""
    max_attempts: int = Field(default=RetryDefaults.MAX_ATTEMPTS, ge=1)
    base_delay: float = Field(default=RetryDefaults.BASE_DELAY, ge=0)
    max_delay: float = Field(default=RetryDefaults.MAX_DELAY, ge=0)
    backoff_factor: float = Field(default=RetryDefaults.BACKOFF_FACTOR, ge=1)


class PerformanceSettings(BaseModel):
    """Thresholds used by Agent.meets_performance_targets()."""
    max_execution_time: int = 5000  # ms
    max_compute_units: int = 200_000
    success_rate_threshold: float = Field(default=95.0, ge=0, le=100)


class AgentDefaultSettings(BaseModel):
    """Defaults merged under every config passed to Agent.create()."""
    execution_limit: int = Field(default=AgentDefaults.EXECUTION_LIMIT, gt=0)
    memory_limit: int = Field(default=AgentDefaults.MEMORY_LIMIT, gt=0)
    default_capabilities: List[str] = Field(
        default_factory=lambda: list(AgentDefaults.CAPABILITIES)
    )
    retry: RetrySettings = Field(default_factory=RetrySettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)

    @field_validator("default_capabilities", mode="before")
    @classmethod
    def parse_capabilities(cls, v):
        """Parse comma-separated capabilities from env var."""
        if isinstance(v, str):
            return [c.strip() for c in v.split(",") if c.strip()]
        return v


class ProgramSettings(BaseModel):
    """Agent program configuration."""
    program_id: str = ""
    compute_budget: int = Field(default=200_000, ge=0)  # 0 disables the budget instruction
    prefetch_accounts: bool = True
    batch_size: int = Field(default=100, ge=1, le=100)
    account_space: int = Field(default=AgentLimits.DEFAULT_ACCOUNT_SPACE, gt=0)


class CacheSettings(BaseModel):
    """Account snapshot cache used by Agent.load()."""
    enabled: bool = True
    ttl: float = 300.0  # seconds
    max_size: int = Field(default=1000, ge=1)


class GlobalSettings(BaseModel):
    """Process-wide behaviour."""
    log_level: LogLevel = "INFO"
    debug: bool = False
    telemetry: bool = True
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, v):
        if isinstance(v, str):
            v = v.upper()
            if v == "WARN":
                return "WARNING"
        return v

    @property
    def effective_log_level(self) -> str:
        """DEBUG when the debug flag is on, otherwise the configured level."""
        return "DEBUG" if self.debug else self.log_level


class SonomaSettings(BaseSettings):
    """Main toolkit configuration."""

    network: NetworkSettings = Field(default_factory=NetworkSettings)
    agent: AgentDefaultSettings = Field(default_factory=AgentDefaultSettings)
    program: ProgramSettings = Field(default_factory=ProgramSettings)
    settings: GlobalSettings = Field(default_factory=GlobalSettings)

    model_config = SettingsConfigDict(
        env_prefix="SONOMA_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )


def build_settings(
    overrides: Optional[Mapping[str, Any]] = None,
    env_file: str | None = None,
) -> SonomaSettings:
    """Build settings with partial per-section overrides merged over defaults.

    Environment variables and the configured ``.env`` file are read as well;
    ``env_file`` replaces that file.

    Raises:
        pydantic.ValidationError: If an override has the wrong type or range
    """
    kwargs: dict[str, Any] = dict(overrides or {})
    if env_file:
        kwargs["_env_file"] = Path(env_file)
    return SonomaSettings(**kwargs)


@lru_cache
def load_settings(env_file: str | None = None) -> SonomaSettings:
    """Load SonomaSettings once per process to keep handles consistent."""
    return build_settings(env_file=env_file)


__all__ = [
    "Commitment",
    "NetworkSettings",
    "RetrySettings",
    "PerformanceSettings",
    "AgentDefaultSettings",
    "ProgramSettings",
    "CacheSettings",
    "GlobalSettings",
    "SonomaSettings",
    "build_settings",
    "load_settings",
]
