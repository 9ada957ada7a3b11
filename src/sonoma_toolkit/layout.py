"""Borsh codec for agent instructions and account data.

Instruction data is a one-byte discriminator followed by the Borsh payload.
Account data is the Borsh-serialized account followed by zero padding up to
the allocated space; the padding is ignored when decoding.
"""
from __future__ import annotations

import json
import struct
from enum import IntEnum
from typing import Any, Optional

import base58

from .models import (
    AgentConfig,
    AgentMetadata,
    AgentSnapshot,
    AgentState,
    PerformanceMetrics,
    thaw_json,
)


class InstructionKind(IntEnum):
    INITIALIZE = 0
    UPDATE = 1
    EXECUTE = 2
    PAUSE = 3
    RESUME = 4
    CLOSE = 5


class LayoutError(ValueError):
    """Raised when bytes do not match the expected layout."""


class BorshWriter:
    """Append-only Borsh encoder."""

    def __init__(self) -> None:
        self._parts: list[bytes] = []

    def u8(self, value: int) -> "BorshWriter":
        self._parts.append(struct.pack("<B", value))
        return self

    def bool(self, value: bool) -> "BorshWriter":
        return self.u8(1 if value else 0)

    def u32(self, value: int) -> "BorshWriter":
        self._parts.append(struct.pack("<I", value))
        return self

    def u64(self, value: int) -> "BorshWriter":
        self._parts.append(struct.pack("<Q", value))
        return self

    def i64(self, value: int) -> "BorshWriter":
        self._parts.append(struct.pack("<q", value))
        return self

    def fixed(self, value: bytes) -> "BorshWriter":
        self._parts.append(bytes(value))
        return self

    def bytes(self, value: bytes) -> "BorshWriter":
        self.u32(len(value))
        self._parts.append(bytes(value))
        return self

    def string(self, value: str) -> "BorshWriter":
        return self.bytes(value.encode("utf-8"))

    def string_vec(self, values: list[str]) -> "BorshWriter":
        self.u32(len(values))
        for value in values:
            self.string(value)
        return self

    def getvalue(self) -> bytes:
        return b"".join(self._parts)


class BorshReader:
    """Sequential Borsh decoder over a byte buffer."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._offset = 0

    def _take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise LayoutError(
                f"Unexpected end of data: need {size} bytes at offset {self._offset}"
            )
        chunk = self._data[self._offset:end].tobytes()
        self._offset = end
        return chunk

    def _unpack(self, fmt: str) -> Any:
        return struct.unpack(fmt, self._take(struct.calcsize(fmt)))[0]

    def u8(self) -> int:
        return self._unpack("<B")

    def bool(self) -> bool:
        value = self.u8()
        if value > 1:
            raise LayoutError(f"Invalid bool byte {value}")
        return value == 1

    def u32(self) -> int:
        return self._unpack("<I")

    def u64(self) -> int:
        return self._unpack("<Q")

    def i64(self) -> int:
        return self._unpack("<q")

    def fixed(self, size: int) -> bytes:
        return self._take(size)

    def bytes(self) -> bytes:
        return self._take(self.u32())

    def string(self) -> str:
        raw = self.bytes()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise LayoutError(f"Invalid UTF-8 string: {e}") from e

    def string_vec(self) -> list[str]:
        return [self.string() for _ in range(self.u32())]

    @property
    def remaining(self) -> bytes:
        return self._data[self._offset:].tobytes()


# =============================================================================
# Config
# =============================================================================

def _write_config(writer: BorshWriter, config: AgentConfig) -> None:
    writer.bool(config.autonomous_mode)
    writer.u64(config.execution_limit)
    writer.u64(config.memory_limit)
    writer.string_vec(config.sorted_capabilities())
    writer.string(json.dumps(thaw_json(config.metadata), sort_keys=True, separators=(",", ":")))


def _read_config(reader: BorshReader) -> AgentConfig:
    autonomous_mode = reader.bool()
    execution_limit = reader.u64()
    memory_limit = reader.u64()
    capabilities = reader.string_vec()
    raw_metadata = reader.string()
    try:
        metadata = json.loads(raw_metadata) if raw_metadata else {}
    except json.JSONDecodeError as e:
        raise LayoutError(f"Config metadata is not valid JSON: {e}") from e
    if not isinstance(metadata, dict):
        raise LayoutError("Config metadata must be a JSON object")
    return AgentConfig(
        autonomous_mode=autonomous_mode,
        execution_limit=execution_limit,
        memory_limit=memory_limit,
        capabilities=capabilities,
        metadata=metadata,
    )


# =============================================================================
# Instructions
# =============================================================================

def encode_initialize(name: str, config: AgentConfig) -> bytes:
    writer = BorshWriter().u8(InstructionKind.INITIALIZE).string(name)
    _write_config(writer, config)
    return writer.getvalue()


def encode_update(config: AgentConfig) -> bytes:
    writer = BorshWriter().u8(InstructionKind.UPDATE)
    _write_config(writer, config)
    return writer.getvalue()


def encode_execute(payload: bytes) -> bytes:
    return BorshWriter().u8(InstructionKind.EXECUTE).bytes(payload).getvalue()


def encode_pause() -> bytes:
    return bytes([InstructionKind.PAUSE])


def encode_resume() -> bytes:
    return bytes([InstructionKind.RESUME])


def encode_close() -> bytes:
    return bytes([InstructionKind.CLOSE])


def decode_instruction(data: bytes) -> tuple[InstructionKind, dict[str, Any]]:
    """Decode agent instruction data into its kind and arguments."""
    if not data:
        raise LayoutError("Empty instruction data")
    try:
        kind = InstructionKind(data[0])
    except ValueError:
        raise LayoutError(f"Unknown instruction discriminator {data[0]}") from None

    reader = BorshReader(data[1:])
    args: dict[str, Any] = {}
    if kind is InstructionKind.INITIALIZE:
        args["name"] = reader.string()
        args["config"] = _read_config(reader)
    elif kind is InstructionKind.UPDATE:
        args["config"] = _read_config(reader)
    elif kind is InstructionKind.EXECUTE:
        args["payload"] = reader.bytes()
    return kind, args


# =============================================================================
# Account
# =============================================================================

def encode_account(
    snapshot: AgentSnapshot,
    space: Optional[int] = None,
) -> bytes:
    """Serialize an account the way the program stores it.

    When ``space`` is given the result is zero-padded to that length.
    """
    metrics = snapshot.metadata.performance_metrics
    writer = BorshWriter()
    writer.fixed(base58.b58decode(snapshot.authority))
    writer.string(snapshot.name)
    _write_config(writer, snapshot.config)
    writer.u8(snapshot.state.ordinal)
    writer.i64(snapshot.last_execution)
    writer.u64(snapshot.execution_count)
    writer.i64(snapshot.metadata.created_at)
    writer.i64(snapshot.metadata.updated_at)
    writer.string(snapshot.metadata.version)
    writer.u64(metrics.total_executions)
    writer.u64(metrics.successful_executions)
    writer.u64(metrics.failed_executions)
    writer.u64(metrics.average_execution_time)
    writer.u64(metrics.total_compute_units)
    data = writer.getvalue()

    if space is not None:
        if len(data) > space:
            raise LayoutError(f"Account data ({len(data)} bytes) exceeds space {space}")
        data = data.ljust(space, b"\x00")
    return data


def decode_account(address: str, data: bytes, slot: int = 0) -> AgentSnapshot:
    """Decode raw account bytes into a snapshot of ``address``."""
    reader = BorshReader(data)
    authority = base58.b58encode(reader.fixed(32)).decode()
    name = reader.string()
    config = _read_config(reader)
    try:
        state = AgentState.from_ordinal(reader.u8())
    except ValueError as e:
        raise LayoutError(str(e)) from e
    last_execution = reader.i64()
    execution_count = reader.u64()
    created_at = reader.i64()
    updated_at = reader.i64()
    version = reader.string()
    metrics = PerformanceMetrics(
        total_executions=reader.u64(),
        successful_executions=reader.u64(),
        failed_executions=reader.u64(),
        average_execution_time=reader.u64(),
        total_compute_units=reader.u64(),
    )
    return AgentSnapshot(
        address=address,
        authority=authority,
        name=name,
        config=config,
        state=state,
        last_execution=last_execution,
        execution_count=execution_count,
        metadata=AgentMetadata(
            created_at=created_at,
            updated_at=updated_at,
            version=version,
            performance_metrics=metrics,
        ),
        slot=slot,
    )


__all__ = [
    "InstructionKind",
    "LayoutError",
    "BorshWriter",
    "BorshReader",
    "encode_initialize",
    "encode_update",
    "encode_execute",
    "encode_pause",
    "encode_resume",
    "encode_close",
    "decode_instruction",
    "encode_account",
    "decode_account",
]
