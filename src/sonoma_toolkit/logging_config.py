"""Structured logging configuration with agent context.

This module provides:
- JSON structured logging for toolkit operations
- Context variables tagging every record with the agent address and a
  correlation id for the operation in flight
- A helper that maps the ``settings`` configuration section onto the root
  logger
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .config import SonomaSettings

# Context variables for correlation tracking
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
agent_address_var: ContextVar[Optional[str]] = ContextVar("agent_address", default=None)

_RESERVED_ATTRS = frozenset({
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "correlation_id",
    "agent_address",
})


class AgentContextFilter(logging.Filter):
    """Logging filter that adds correlation id and agent address to records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        record.agent_address = agent_address_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if getattr(record, "correlation_id", None):
            log_data["correlation_id"] = record.correlation_id
        if getattr(record, "agent_address", None):
            log_data["agent_address"] = record.agent_address

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via logger.x(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON structured logging (True) or simple format (False)
        log_file: Optional file path for logging output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - "
            "[%(agent_address)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(AgentContextFilter())
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(AgentContextFilter())
        root_logger.addHandler(file_handler)


def configure_from_settings(settings: "SonomaSettings", json_format: bool = True) -> None:
    """Apply the ``settings.log_level`` / ``settings.debug`` options."""
    setup_logging(level=settings.settings.effective_log_level, json_format=json_format)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"cor_{uuid.uuid4().hex[:16]}"


class LogContext:
    """Context manager for temporary logging context.

    Example:
        with LogContext(agent_address=agent.address):
            await gateway.submit_and_confirm(command)
    """

    def __init__(
        self,
        agent_address: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ):
        self.agent_address = agent_address
        self.correlation_id = correlation_id or generate_correlation_id()
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        self._tokens.append((correlation_id_var, correlation_id_var.set(self.correlation_id)))
        if self.agent_address:
            self._tokens.append((agent_address_var, agent_address_var.set(self.agent_address)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


__all__ = [
    "AgentContextFilter",
    "StructuredFormatter",
    "LogContext",
    "setup_logging",
    "configure_from_settings",
    "generate_correlation_id",
    "correlation_id_var",
    "agent_address_var",
]
