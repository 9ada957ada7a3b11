"""Tests for the websocket subscription multiplexer."""
import asyncio
import base64
import json

import pytest

from sonoma_toolkit.exceptions import TransportError
from sonoma_toolkit.subscriptions import AccountSubscriptionMux


class FakeWebSocket:
    """Scripted websocket: answers subscribe/unsubscribe requests."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()
        self._next_subscription = 100

    async def send(self, raw: str) -> None:
        message = json.loads(raw)
        self.sent.append(message)
        if message["method"] == "accountSubscribe":
            result = self._next_subscription
            self._next_subscription += 1
        else:
            result = True
        self._incoming.put_nowait(json.dumps({"jsonrpc": "2.0", "id": message["id"], "result": result}))

    def notify(self, subscription: int, data: bytes, slot: int) -> None:
        self._incoming.put_nowait(json.dumps({
            "jsonrpc": "2.0",
            "method": "accountNotification",
            "params": {
                "subscription": subscription,
                "result": {
                    "context": {"slot": slot},
                    "value": {"data": [base64.b64encode(data).decode(), "base64"]},
                },
            },
        }))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


@pytest.fixture
def socket():
    return FakeWebSocket()


@pytest.fixture
def mux(socket):
    connects = []

    async def connect(url):
        connects.append(url)
        return socket

    mux = AccountSubscriptionMux("wss://rpc.test", connect=connect, request_timeout=1.0)
    mux.connects = connects
    return mux


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_subscribe_and_deliver(mux, socket):
    received = []
    handle = await mux.subscribe("Addr", lambda raw, slot: received.append((raw, slot)))

    socket.notify(handle.subscription_id, b"\x01\x02", slot=7)
    await settle()

    assert received == [(b"\x01\x02", 7)]
    assert socket.sent[0]["method"] == "accountSubscribe"
    assert socket.sent[0]["params"][0] == "Addr"
    assert socket.sent[0]["params"][1]["encoding"] == "base64"
    await mux.close()


@pytest.mark.asyncio
async def test_notification_racing_subscribe_reply_is_delivered(mux, socket):
    """A notification queued right behind the subscribe reply is not lost."""
    send = socket.send

    async def send_then_notify(raw):
        await send(raw)
        if json.loads(raw)["method"] == "accountSubscribe":
            socket.notify(socket._next_subscription - 1, b"\x09", slot=3)

    socket.send = send_then_notify
    received = []

    handle = await mux.subscribe("Addr", lambda raw, slot: received.append((raw, slot)))
    socket.notify(handle.subscription_id, b"\x0a", slot=4)
    await settle()

    assert received == [(b"\x09", 3), (b"\x0a", 4)]
    assert mux._early == {}
    await mux.close()


@pytest.mark.asyncio
async def test_notifications_for_unknown_subscriptions_are_dropped(mux, socket):
    received = []
    handle = await mux.subscribe("Addr", lambda raw, slot: received.append(slot))

    socket.notify(999, b"\x01", slot=1)
    socket.notify(handle.subscription_id, b"\x02", slot=2)
    await settle()

    assert received == [2]
    assert 999 not in mux._early
    await mux.close()


@pytest.mark.asyncio
async def test_one_connection_for_many_subscriptions(mux, socket):
    a = await mux.subscribe("A", lambda raw, slot: None)
    b = await mux.subscribe("B", lambda raw, slot: None)

    assert len(mux.connects) == 1
    assert a.subscription_id != b.subscription_id
    assert len(mux.subscriptions) == 2
    await mux.close()


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited(mux, socket):
    received = []

    async def callback(raw, slot):
        await asyncio.sleep(0)
        received.append(slot)

    handle = await mux.subscribe("Addr", callback)
    socket.notify(handle.subscription_id, b"", slot=1)
    socket.notify(handle.subscription_id, b"", slot=2)
    await settle()
    await settle()

    assert received == [1, 2]
    await mux.close()


@pytest.mark.asyncio
async def test_no_callbacks_after_cancel(mux, socket):
    received = []
    handle = await mux.subscribe("Addr", lambda raw, slot: received.append(slot))

    socket.notify(handle.subscription_id, b"", slot=1)
    await settle()
    await handle.cancel()
    socket.notify(handle.subscription_id, b"", slot=2)
    await settle()

    assert received == [1]
    assert not handle.active
    assert socket.sent[-1]["method"] == "accountUnsubscribe"
    assert socket.sent[-1]["params"] == [handle.subscription_id]
    assert mux.subscriptions == []

    await handle.cancel()  # idempotent
    await mux.close()


@pytest.mark.asyncio
async def test_cancel_waits_for_in_flight_callback(mux, socket):
    started = asyncio.Event()
    release = asyncio.Event()
    finished = []

    async def slow(raw, slot):
        started.set()
        await release.wait()
        finished.append(slot)

    handle = await mux.subscribe("Addr", slow)
    socket.notify(handle.subscription_id, b"", slot=1)
    await started.wait()

    cancel = asyncio.create_task(handle.cancel())
    await settle()
    assert not cancel.done()

    release.set()
    await cancel
    assert finished == [1]
    await mux.close()


@pytest.mark.asyncio
async def test_failing_callback_keeps_subscription_alive(mux, socket):
    received = []

    def callback(raw, slot):
        if slot == 1:
            raise RuntimeError("boom")
        received.append(slot)

    handle = await mux.subscribe("Addr", callback)
    socket.notify(handle.subscription_id, b"", slot=1)
    socket.notify(handle.subscription_id, b"", slot=2)
    await settle()

    assert received == [2]
    await mux.close()


@pytest.mark.asyncio
async def test_close_releases_everything(mux, socket):
    received = []
    handles = [
        await mux.subscribe(address, lambda raw, slot: received.append(slot))
        for address in ("A", "B", "C")
    ]

    await mux.close()
    await mux.close()  # idempotent

    assert socket.closed
    assert all(not h.active for h in handles)
    assert mux.subscriptions == []
    assert not mux.connected
    assert all(h._worker.done() for h in handles)

    socket.notify(handles[0].subscription_id, b"", slot=5)
    await settle()
    assert received == []

    with pytest.raises(TransportError):
        await mux.subscribe("D", lambda raw, slot: None)


@pytest.mark.asyncio
async def test_connect_failure_is_transport_error():
    async def connect(url):
        raise OSError("unreachable")

    mux = AccountSubscriptionMux("wss://rpc.test", connect=connect)
    with pytest.raises(TransportError):
        await mux.subscribe("A", lambda raw, slot: None)
    await mux.close()


@pytest.mark.asyncio
async def test_subscribe_error_response(socket):
    async def send(raw):
        message = json.loads(raw)
        socket._incoming.put_nowait(json.dumps({
            "jsonrpc": "2.0",
            "id": message["id"],
            "error": {"code": -32602, "message": "Invalid param"},
        }))

    socket.send = send

    async def connect(url):
        return socket

    mux = AccountSubscriptionMux("wss://rpc.test", connect=connect, request_timeout=1.0)
    with pytest.raises(TransportError):
        await mux.subscribe("bad", lambda raw, slot: None)
    await mux.close()
