"""Agent account models."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel


class SonomaModel(BaseModel):
    """Base model with common configuration.

    Field names are snake_case; camelCase aliases are accepted on input so
    ``executionLimit`` and ``execution_limit`` are equivalent.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any]):
        """Create model from dictionary."""
        return cls.model_validate(data)


class AgentState(str, Enum):
    """Lifecycle state of an agent account.

    The on-chain discriminator is the ordinal of the member.
    """

    UNINITIALIZED = "Uninitialized"
    INITIALIZED = "Initialized"
    RUNNING = "Running"
    PAUSED = "Paused"
    ERROR = "Error"
    TERMINATED = "Terminated"

    @property
    def ordinal(self) -> int:
        return _STATE_ORDER.index(self)

    @classmethod
    def from_ordinal(cls, value: int) -> "AgentState":
        if not 0 <= value < len(_STATE_ORDER):
            raise ValueError(f"Unknown agent state discriminator {value}")
        return _STATE_ORDER[value]


_STATE_ORDER: tuple[AgentState, ...] = tuple(AgentState)


def freeze_json(value: Any) -> Any:
    """Read-only deep copy of a JSON-like value (mappings become proxies, lists tuples)."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze_json(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_json(v) for v in value)
    return value


def thaw_json(value: Any) -> Any:
    """Plain dict/list copy of a value built by ``freeze_json``."""
    if isinstance(value, Mapping):
        return {k: thaw_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw_json(v) for v in value]
    return value


class AgentConfig(SonomaModel):
    """Agent behaviour configuration.

    Capabilities are an unordered set; duplicates collapse on input.
    ``metadata`` is a read-only deep copy of the input; ``merged()`` and
    ``model_dump()`` hand out plain dicts.
    """

    model_config = ConfigDict(frozen=True)

    autonomous_mode: bool = False
    execution_limit: int
    memory_limit: int
    capabilities: frozenset[str] = Field(default_factory=frozenset)
    metadata: Mapping[str, Any] = Field(default_factory=dict)

    @field_validator("capabilities", mode="before")
    @classmethod
    def collapse_capabilities(cls, v):
        if v is None:
            return frozenset()
        if isinstance(v, str):
            return frozenset(c.strip() for c in v.split(",") if c.strip())
        return frozenset(v)

    @field_validator("metadata", mode="after")
    @classmethod
    def freeze_metadata(cls, v):
        return freeze_json(v)

    @field_serializer("metadata")
    def dump_metadata(self, v):
        return thaw_json(v)

    def merged(self, update: "AgentConfigUpdate | dict[str, Any]") -> "AgentConfig":
        """Return a new config with the update's explicitly set fields applied."""
        if not isinstance(update, AgentConfigUpdate):
            update = AgentConfigUpdate.model_validate(update)
        changes = {name: getattr(update, name) for name in update.model_fields_set}
        if not changes:
            return self
        return AgentConfig.model_validate({**self.model_dump(), **changes})

    def sorted_capabilities(self) -> list[str]:
        """Capabilities in a stable order for encoding."""
        return sorted(self.capabilities)


class AgentConfigUpdate(SonomaModel):
    """Partial config; only fields explicitly set participate in a merge."""

    autonomous_mode: Optional[bool] = None
    execution_limit: Optional[int] = None
    memory_limit: Optional[int] = None
    capabilities: Optional[frozenset[str]] = None
    metadata: Optional[dict[str, Any]] = None

    @field_validator("capabilities", mode="before")
    @classmethod
    def collapse_capabilities(cls, v):
        if v is None:
            return v
        if isinstance(v, str):
            return frozenset(c.strip() for c in v.split(",") if c.strip())
        return frozenset(v)


class PerformanceMetrics(SonomaModel):
    """Execution counters maintained by the program. Read-only on the client."""

    model_config = ConfigDict(frozen=True)

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    average_execution_time: int = 0  # ms
    total_compute_units: int = 0

    @property
    def success_rate(self) -> float:
        """Percentage of successful executions (100.0 before any execution)."""
        if self.total_executions == 0:
            return 100.0
        return self.successful_executions * 100.0 / self.total_executions

    @property
    def average_compute_units(self) -> float:
        """Compute units per execution (0.0 before any execution)."""
        if self.total_executions == 0:
            return 0.0
        return self.total_compute_units / self.total_executions


class AgentMetadata(SonomaModel):
    model_config = ConfigDict(frozen=True)

    created_at: int = 0
    updated_at: int = 0
    version: str = "1.0.0"
    performance_metrics: PerformanceMetrics = Field(default_factory=PerformanceMetrics)


class AgentSnapshot(SonomaModel):
    """Immutable view of an agent account as of one ledger read.

    ``slot`` is the ledger slot the read was served at and orders snapshots
    of the same address.
    """

    model_config = ConfigDict(frozen=True)

    address: str
    authority: str
    name: str
    config: AgentConfig
    state: AgentState
    last_execution: int = 0
    execution_count: int = 0
    metadata: AgentMetadata = Field(default_factory=AgentMetadata)
    slot: int = 0
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def logical_view(self) -> dict[str, Any]:
        """Account fields without read bookkeeping (slot, fetch time)."""
        return self.model_dump(exclude={"slot", "fetched_at"})


__all__ = [
    "SonomaModel",
    "freeze_json",
    "thaw_json",
    "AgentState",
    "AgentConfig",
    "AgentConfigUpdate",
    "PerformanceMetrics",
    "AgentMetadata",
    "AgentSnapshot",
]
