"""Account-change subscriptions over the ledger websocket.

One websocket connection is shared by every subscription. A reader task
routes ``accountNotification`` messages to per-subscription delivery
queues; each ``SubscriptionHandle`` drains its queue in its own task so a
slow callback never blocks the reader or other subscriptions.
Notifications that arrive between the subscribe reply and handle
registration are held and delivered first.

Usage:
    mux = AccountSubscriptionMux("wss://api.mainnet-beta.solana.com")
    handle = await mux.subscribe(address, on_change)
    ...
    await handle.cancel()
    await mux.close()
"""
from __future__ import annotations

import asyncio
import base64
import inspect
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .constants import NetworkDefaults
from .exceptions import TransportError

logger = logging.getLogger(__name__)

AccountCallback = Callable[[bytes, int], Union[None, Awaitable[None]]]
Connector = Callable[[str], Awaitable[Any]]

_STOP = object()


class SubscriptionHandle:
    """A live account subscription.

    After ``cancel()`` returns no further callbacks fire; a callback already
    running when ``cancel()`` is called completes first.
    """

    def __init__(
        self,
        mux: "AccountSubscriptionMux",
        address: str,
        subscription_id: int,
        callback: AccountCallback,
    ) -> None:
        self.address = address
        self.subscription_id = subscription_id
        self._mux = mux
        self._callback = callback
        self._queue: asyncio.Queue = asyncio.Queue()
        self._active = True
        self._worker = asyncio.create_task(
            self._run(), name=f"sonoma-subscription-{subscription_id}"
        )

    @property
    def active(self) -> bool:
        return self._active

    def _enqueue(self, raw: bytes, slot: int) -> None:
        if self._active:
            self._queue.put_nowait((raw, slot))

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _STOP:
                return
            if not self._active:
                continue
            raw, slot = item
            try:
                result = self._callback(raw, slot)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Subscription callback failed for %s (slot %d)", self.address, slot
                )

    def _abandon(self) -> None:
        self._active = False
        self._queue.put_nowait(_STOP)

    async def _stop_delivery(self) -> None:
        self._abandon()
        if asyncio.current_task() is not self._worker:
            await asyncio.gather(self._worker, return_exceptions=True)

    async def cancel(self) -> None:
        """Stop delivery and unsubscribe remotely. Idempotent."""
        if not self._active:
            return
        await self._stop_delivery()
        await self._mux._release(self)

    def __repr__(self) -> str:
        return (
            f"SubscriptionHandle(address={self.address!r}, "
            f"id={self.subscription_id}, active={self._active})"
        )


class AccountSubscriptionMux:
    """Multiplexes account subscriptions over one websocket."""

    def __init__(
        self,
        ws_endpoint: str,
        commitment: str = NetworkDefaults.COMMITMENT,
        *,
        request_timeout: float = NetworkDefaults.TIMEOUT_SECONDS,
        connect: Optional[Connector] = None,
    ) -> None:
        self.ws_endpoint = ws_endpoint
        self.commitment = commitment
        self.request_timeout = request_timeout
        self._connect = connect or websockets.connect
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future] = {}
        self._handles: dict[int, SubscriptionHandle] = {}
        self._subscribe_requests: set[int] = set()
        self._early: dict[int, list[tuple[bytes, int]]] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def subscriptions(self) -> list[SubscriptionHandle]:
        return list(self._handles.values())

    async def _ensure_connected(self) -> None:
        async with self._connect_lock:
            if self._closed:
                raise TransportError("Subscription client is closed", method="accountSubscribe")
            if self._ws is not None:
                return
            try:
                self._ws = await self._connect(self.ws_endpoint)
            except (OSError, WebSocketException, asyncio.TimeoutError) as e:
                raise TransportError(
                    f"Websocket connect failed: {type(e).__name__}: {e}",
                    method="connect",
                ) from e
            self._reader = asyncio.create_task(self._read_loop(), name="sonoma-ws-reader")
            logger.debug("Websocket connected to %s", self.ws_endpoint)

    async def _request(
        self, method: str, params: list[Any], *, track_subscription: bool = False
    ) -> Any:
        request_id = next(self._ids)
        if track_subscription:
            self._subscribe_requests.add(request_id)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            await self._ws.send(json.dumps(message))
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"{method} timed out", method=method) from e
        except (ConnectionClosed, OSError) as e:
            raise TransportError(f"{method} failed: {e}", method=method) from e
        finally:
            self._pending.pop(request_id, None)
            self._subscribe_requests.discard(request_id)

    async def subscribe(self, address: str, callback: AccountCallback) -> SubscriptionHandle:
        """Subscribe to changes of ``address``.

        Raises:
            TransportError: If the connection or the subscribe request fails
        """
        await self._ensure_connected()
        subscription_id = await self._request(
            "accountSubscribe",
            [address, {"encoding": "base64", "commitment": self.commitment}],
            track_subscription=True,
        )
        early = self._early.pop(subscription_id, [])
        if self._closed:
            raise TransportError("Subscription client is closed", method="accountSubscribe")
        handle = SubscriptionHandle(self, address, subscription_id, callback)
        self._handles[subscription_id] = handle
        for raw, slot in early:
            handle._enqueue(raw, slot)
        logger.debug("Subscribed to %s (id %s)", address, subscription_id)
        return handle

    async def _release(self, handle: SubscriptionHandle) -> None:
        self._handles.pop(handle.subscription_id, None)
        if self._closed or self._ws is None:
            return
        try:
            await self._request("accountUnsubscribe", [handle.subscription_id])
        except TransportError as e:
            # Delivery already stopped locally; the server drops the
            # subscription with the connection.
            logger.warning("Unsubscribe for %s failed: %s", handle.address, e)

    def _dispatch(self, message: dict[str, Any]) -> None:
        request_id = message.get("id")
        if request_id is not None:
            future = self._pending.get(request_id)
            if future is None or future.done():
                return
            if "error" in message:
                error = message["error"] or {}
                future.set_exception(
                    TransportError(
                        f"RPC error {error.get('code')}: {error.get('message', 'unknown')}",
                        details={"code": error.get("code")},
                    )
                )
            else:
                result = message.get("result")
                if request_id in self._subscribe_requests and isinstance(result, int):
                    self._early.setdefault(result, [])
                future.set_result(result)
            return

        if message.get("method") != "accountNotification":
            return
        params = message.get("params", {})
        subscription_id = params.get("subscription")
        result = params.get("result", {})
        slot = result.get("context", {}).get("slot", 0)
        value = result.get("value") or {}
        data_field = value.get("data") or [""]
        raw = base64.b64decode(data_field[0]) if data_field[0] else b""

        handle = self._handles.get(subscription_id)
        if handle is not None:
            handle._enqueue(raw, slot)
        elif subscription_id in self._early:
            self._early[subscription_id].append((raw, slot))

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Discarding non-JSON websocket frame")
                    continue
                self._dispatch(message)
        except (ConnectionClosed, WebSocketException, OSError) as e:
            if not self._closed:
                logger.warning("Websocket connection closed: %s", e)
        finally:
            self._on_disconnect()

    def _on_disconnect(self) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(TransportError("Websocket connection lost"))
        self._pending.clear()
        self._early.clear()
        if not self._closed and self._handles:
            logger.error(
                "Websocket lost with %d active subscriptions; they no longer deliver",
                len(self._handles),
            )
            for handle in self._handles.values():
                handle._abandon()
            self._handles.clear()
        self._ws = None

    async def close(self) -> None:
        """Cancel every subscription, stop the reader and close the socket.

        Idempotent.
        """
        if self._closed:
            return
        self._closed = True

        handles = list(self._handles.values())
        self._handles.clear()
        self._early.clear()
        for handle in handles:
            await handle._stop_delivery()

        ws, reader = self._ws, self._reader
        self._reader = None
        if ws is not None:
            try:
                await ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.debug("Ignoring error while closing websocket: %s", e)
        if reader is not None:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        self._ws = None
        logger.debug("Subscription client closed (%d subscriptions cancelled)", len(handles))


__all__ = ["AccountCallback", "SubscriptionHandle", "AccountSubscriptionMux"]
