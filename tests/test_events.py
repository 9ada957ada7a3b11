"""Tests for the agent event notifier."""
import asyncio
import logging

import pytest

from sonoma_toolkit.events import (
    AgentEventNotifier,
    ErrorEvent,
    EventChannel,
    ExecutionEvent,
    StateChangeEvent,
)
from sonoma_toolkit.exceptions import TransportError
from sonoma_toolkit.models import AgentState


def _state_event() -> StateChangeEvent:
    return StateChangeEvent(address="addr", old_state=AgentState.RUNNING, new_state=AgentState.PAUSED)


@pytest.mark.asyncio
async def test_publish_reaches_channel_handlers_only():
    """Handlers only receive events of their channel."""
    notifier = AgentEventNotifier()
    state_events, executions = [], []
    notifier.subscribe(EventChannel.STATE_CHANGE, state_events.append)
    notifier.subscribe(EventChannel.EXECUTION, executions.append)

    event = _state_event()
    await notifier.publish(event)

    assert state_events == [event]
    assert executions == []


@pytest.mark.asyncio
async def test_handlers_run_in_registration_order():
    """Sync and async handlers are awaited in order."""
    notifier = AgentEventNotifier()
    order = []

    async def first(event):
        await asyncio.sleep(0)
        order.append("first")

    def second(event):
        order.append("second")

    async def third(event):
        order.append("third")

    for handler in (first, second, third):
        notifier.subscribe(EventChannel.EXECUTION, handler)

    await notifier.publish(ExecutionEvent(address="addr", success=True, payload=b"x"))

    assert order == ["first", "second", "third"]


@pytest.mark.asyncio
async def test_failing_handler_is_isolated(caplog):
    """A failing handler is logged and the others still run."""
    notifier = AgentEventNotifier()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    notifier.subscribe(EventChannel.ERROR, broken)
    notifier.subscribe(EventChannel.ERROR, received.append)

    event = ErrorEvent(address="addr", operation="pause", error=TransportError("down"))
    with caplog.at_level(logging.ERROR, logger="sonoma_toolkit.events"):
        await notifier.publish(event)

    assert received == [event]
    assert "broken" in caplog.text
    assert notifier.handler_count(EventChannel.ERROR) == 2


@pytest.mark.asyncio
async def test_unsubscribe():
    """The callable returned by subscribe removes the handler."""
    notifier = AgentEventNotifier()
    received = []
    unsubscribe = notifier.subscribe(EventChannel.STATE_CHANGE, received.append)

    unsubscribe()
    unsubscribe()  # idempotent
    await notifier.publish(_state_event())

    assert received == []
    assert notifier.handler_count(EventChannel.STATE_CHANGE) == 0


@pytest.mark.asyncio
async def test_handler_may_unsubscribe_during_publish():
    """Unsubscribing while being notified does not skip other handlers."""
    notifier = AgentEventNotifier()
    received = []
    unsubscribe = None

    def once(event):
        received.append("once")
        unsubscribe()

    unsubscribe = notifier.subscribe(EventChannel.STATE_CHANGE, once)
    notifier.subscribe(EventChannel.STATE_CHANGE, lambda e: received.append("always"))

    await notifier.publish(_state_event())
    await notifier.publish(_state_event())

    assert received == ["once", "always", "always"]


def test_subscribe_accepts_channel_value():
    """Channel names map onto the closed enum."""
    notifier = AgentEventNotifier()
    notifier.subscribe("stateChange", lambda e: None)
    assert notifier.handler_count(EventChannel.STATE_CHANGE) == 1

    with pytest.raises(ValueError):
        notifier.subscribe("bogus", lambda e: None)
