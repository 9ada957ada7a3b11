"""In-process notifications for agent handles.

Decouples agent handles (producers) from application code reacting to
lifecycle changes, executions and failures (consumers).

Example:
    notifier = AgentEventNotifier()

    async def on_state(event: StateChangeEvent):
        print(f"{event.address}: {event.old_state} -> {event.new_state}")

    unsubscribe = notifier.subscribe(EventChannel.STATE_CHANGE, on_state)
    agent = await Agent.load(gateway, address, notifier=notifier)
    await agent.refresh()
    unsubscribe()
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from .models import AgentState

logger = logging.getLogger(__name__)


class EventChannel(str, Enum):
    STATE_CHANGE = "stateChange"
    EXECUTION = "execution"
    ERROR = "error"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StateChangeEvent:
    address: str
    old_state: AgentState
    new_state: AgentState
    timestamp: datetime = field(default_factory=_now)

    channel = EventChannel.STATE_CHANGE


@dataclass(frozen=True)
class ExecutionEvent:
    """Outcome of one ``execute`` call."""
    address: str
    success: bool
    payload: bytes = b""
    signature: Optional[str] = None
    error: Optional[BaseException] = None
    timestamp: datetime = field(default_factory=_now)

    channel = EventChannel.EXECUTION


@dataclass(frozen=True)
class ErrorEvent:
    """A submitted command failed."""
    address: str
    operation: str
    error: BaseException
    timestamp: datetime = field(default_factory=_now)

    channel = EventChannel.ERROR


AgentEvent = Union[StateChangeEvent, ExecutionEvent, ErrorEvent]
Handler = Callable[[Any], Union[None, Awaitable[None]]]


class AgentEventNotifier:
    """Publish/subscribe over the closed set of agent event channels.

    Handlers run in registration order and may be sync or async. A failing
    handler is logged and skipped; it never affects other handlers or the
    publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[EventChannel, list[Handler]] = {
            channel: [] for channel in EventChannel
        }

    def subscribe(self, channel: EventChannel, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` on ``channel``; returns an unsubscribe callable."""
        channel = EventChannel(channel)
        self._subscribers[channel].append(handler)
        logger.debug("Subscribed %s to %s", getattr(handler, "__name__", handler), channel.value)

        def unsubscribe() -> None:
            try:
                self._subscribers[channel].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    def handler_count(self, channel: EventChannel) -> int:
        return len(self._subscribers[EventChannel(channel)])

    async def publish(self, event: AgentEvent) -> None:
        """Deliver ``event`` to every handler of its channel."""
        # Copy so handlers may unsubscribe while being notified
        handlers = list(self._subscribers[event.channel])
        await self._execute_handlers(event, handlers)

    async def _execute_handlers(self, event: AgentEvent, handlers: list[Handler]) -> None:
        for handler in handlers:
            try:
                # Support both sync and async handlers
                result = handler(event)
                if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                    await result
            except Exception as e:
                logger.error(
                    "Handler %s failed for %s on %s: %s",
                    getattr(handler, "__name__", repr(handler)),
                    event.channel.value,
                    event.address,
                    e,
                    exc_info=True,
                )

    def clear(self) -> None:
        for handlers in self._subscribers.values():
            handlers.clear()


__all__ = [
    "EventChannel",
    "StateChangeEvent",
    "ExecutionEvent",
    "ErrorEvent",
    "AgentEvent",
    "AgentEventNotifier",
]
