"""Request/response multiplexer over a single store socket.

One Multiplexer owns at most one open transport. Outgoing requests get a
correlation id from a per-instance counter and wait in the pending call
table until the first of:

1. a response carrying the same ``messageId`` arrives,
2. the request timer fires (RequestTimeout),
3. the socket closes (ConnectionClosed),
4. the write itself fails (ConnectionClosed),
5. the awaiting caller is cancelled.

Whichever happens first removes the entry; the others find it gone.

Incoming frames are read by a single task and handled in arrival order.
Pushes go to the NotificationRouter synchronously from that task, so
handlers observe them in wire order. Nothing is retried and nothing
reconnects: every failure is surfaced to the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from enum import Enum
from typing import Any, Callable

from kvchat.config import DEFAULT_REQUEST_TIMEOUT, TransportConfig
from kvchat.error import (
    ConnectError,
    ConnectionClosed,
    NotConnected,
    ParseError,
    RemoteError,
    RequestTimeout,
)
from kvchat.router import NotificationRouter, Unsubscribe
from kvchat.transport import Connector, KvTransport, websocket_connector
from kvchat.wire import (
    Operation,
    WireNotification,
    WireRequest,
    WireResponse,
    parse_inbound,
)

logger = logging.getLogger(__name__)


class TransportState(str, Enum):
    """Socket lifecycle states."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class PendingCall:
    """Entry in the pending call table."""

    __slots__ = ("message_id", "op", "key", "future", "timer")

    def __init__(
        self,
        message_id: int,
        op: Operation,
        key: str,
        future: asyncio.Future[WireResponse],
    ) -> None:
        self.message_id = message_id
        self.op = op
        self.key = key
        self.future = future
        self.timer: asyncio.TimerHandle | None = None

    def settle(self, response: WireResponse) -> None:
        """Resolve or reject from a matching response."""
        self.cancel_timer()
        if self.future.done():
            return
        if response.error:
            self.future.set_exception(RemoteError(response.error, key=self.key))
        else:
            self.future.set_result(response)

    def fail(self, error: Exception) -> None:
        self.cancel_timer()
        if not self.future.done():
            self.future.set_exception(error)

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def discard(self) -> None:
        """Release the entry once its caller has stopped waiting."""
        self.cancel_timer()
        if not self.future.done():
            self.future.cancel()
        elif not self.future.cancelled():
            # Mark a failure nobody awaited as retrieved.
            self.future.exception()


class Multiplexer:
    """Correlates requests and responses over one persistent socket.

    Example:
        ```python
        mux = Multiplexer.from_config(TransportConfig(url="wss://kv.example/ws"))
        await mux.open(token)
        unsubscribe = mux.on_push(lambda n: print(n.key, n.value))
        await mux.insert("greeting", "hello")
        response = await mux.get("greeting")
        await mux.close()
        ```
    """

    def __init__(
        self,
        connector: Connector,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        router: NotificationRouter[WireNotification] | None = None,
    ) -> None:
        """Initialize the multiplexer.

        Args:
            connector: Async callable turning a capability token into an
                open transport
            request_timeout: Seconds before an unanswered request fails
            router: Push fan-out; a fresh router is created when omitted
        """
        self._connector = connector
        self._request_timeout = request_timeout
        self._router: NotificationRouter[WireNotification] = router or NotificationRouter("push")
        self._state = TransportState.CLOSED
        self._transport: KvTransport | None = None
        self._open_task: asyncio.Task[None] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._pending: dict[int, PendingCall] = {}
        self._message_id = 0
        # Bumped by every open/close so a stale handshake or reader can
        # tell it no longer owns the socket.
        self._generation = 0

    @classmethod
    def from_config(cls, config: TransportConfig) -> Multiplexer:
        return cls(websocket_connector(config), request_timeout=config.request_timeout)

    # -------------------------------------------------------------------------
    # State queries
    # -------------------------------------------------------------------------

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_open(self) -> bool:
        return self._state is TransportState.OPEN

    def is_opening(self) -> bool:
        return self._state is TransportState.CONNECTING

    def is_closed(self) -> bool:
        return self._state is TransportState.CLOSED

    def is_closing(self) -> bool:
        return self._state is TransportState.CLOSING

    def get_stats(self) -> dict[str, Any]:
        """Get multiplexer statistics."""
        return {
            "state": self._state.value,
            "pending": len(self._pending),
            "push_handlers": len(self._router),
            "last_message_id": self._message_id,
        }

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self, token: str) -> None:
        """Open the socket with a capability token.

        Returns immediately when already open. While a handshake is in
        flight, waits on that handshake instead of starting a second one.
        Otherwise any previous socket is closed first.

        Raises:
            ConnectError: The handshake failed.
            ConnectionClosed: ``close()`` was called during the handshake.
        """
        if self._state is TransportState.OPEN:
            return
        if self._state is TransportState.CONNECTING and self._open_task is not None:
            await asyncio.shield(self._open_task)
            return
        if self._transport is not None or self._state is not TransportState.CLOSED:
            await self.close()

        self._generation += 1
        self._state = TransportState.CONNECTING
        task = asyncio.ensure_future(self._connect(token, self._generation))
        task.add_done_callback(_consume_exception)
        self._open_task = task
        await asyncio.shield(task)

    async def _connect(self, token: str, generation: int) -> None:
        try:
            transport = await self._connector(token)
        except Exception as e:
            if self._generation == generation:
                self._state = TransportState.CLOSED
                self._open_task = None
            logger.error("WebSocket connection error: %s", e)
            raise ConnectError(f"WebSocket connection error: {e}") from e

        if self._generation != generation:
            await transport.close()
            raise ConnectionClosed("WebSocket closed during handshake")

        self._transport = transport
        self._state = TransportState.OPEN
        self._open_task = None
        self._reader_task = asyncio.create_task(self._read_loop(transport, generation))
        logger.info("WebSocket connection established")

    async def close(self) -> None:
        """Tear down the socket and fail every pending call.

        Safe to call in any state; a no-op when already closed.
        """
        if self._state is TransportState.CLOSED and self._transport is None:
            return

        self._generation += 1
        generation = self._generation
        self._state = TransportState.CLOSING
        transport, self._transport = self._transport, None
        reader, self._reader_task = self._reader_task, None
        self._open_task = None

        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        self._fail_pending(ConnectionClosed("WebSocket connection closed"))

        if reader is not None and reader is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await reader
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug("Error closing transport: %s", e)

        # A reopen while this close was suspended owns the state now.
        if self._generation == generation:
            self._state = TransportState.CLOSED
            logger.info("WebSocket connection closed")

    def _fail_pending(self, error: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.fail(error)

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    def _next_message_id(self) -> int:
        self._message_id += 1
        return self._message_id

    async def request(
        self,
        op: Operation,
        key: str,
        value: str | None = None,
    ) -> WireResponse:
        """Send a request and wait for its correlated response.

        Args:
            op: Store operation
            key: Target key
            value: Serialized value for CREATE/APPEND

        Returns:
            The response envelope; ``value`` is exactly what the store sent.

        Raises:
            NotConnected: No open socket.
            RequestTimeout: No response within the request timeout.
            RemoteError: The response carried an error field.
            ConnectionClosed: The socket closed or the write failed.
        """
        transport = self._transport
        if self._state is not TransportState.OPEN or transport is None:
            raise NotConnected("WebSocket is not connected. Call open() first.")

        message_id = self._next_message_id()
        loop = asyncio.get_running_loop()
        entry = PendingCall(message_id, op, key, loop.create_future())
        self._pending[message_id] = entry
        entry.timer = loop.call_later(self._request_timeout, self._expire, message_id)

        try:
            try:
                await transport.send(WireRequest(op, key, message_id, value).serialize())
            except Exception as e:
                raise ConnectionClosed(f"Failed to send messageId {message_id}: {e}") from e
            return await entry.future
        finally:
            if self._pending.get(message_id) is entry:
                del self._pending[message_id]
            entry.discard()

    def _expire(self, message_id: int) -> None:
        entry = self._pending.pop(message_id, None)
        if entry is not None:
            entry.fail(
                RequestTimeout(f"Request timed out for messageId: {message_id}", message_id)
            )

    async def get(self, key: str) -> WireResponse:
        """Fetch the value stored under ``key``."""
        return await self.request(Operation.GET, key)

    async def insert(self, key: str, value: Any) -> WireResponse:
        """Create or overwrite ``key``. Non-string values are JSON encoded."""
        if not isinstance(value, str):
            value = json.dumps(value)
        return await self.request(Operation.CREATE, key, value)

    async def append(self, key: str, value: str | None) -> WireResponse:
        """Append to an existing record.

        When both the stored and the new value are JSON objects the store
        merges them; otherwise the new value is appended to the old one.
        """
        return await self.request(Operation.APPEND, key, value)

    # -------------------------------------------------------------------------
    # Pushes
    # -------------------------------------------------------------------------

    def on_push(self, handler: Callable[[WireNotification], Any]) -> Unsubscribe:
        """Register a push handler; returns a function removing it."""
        return self._router.subscribe(handler)

    # -------------------------------------------------------------------------
    # Read loop
    # -------------------------------------------------------------------------

    async def _read_loop(self, transport: KvTransport, generation: int) -> None:
        """Read frames until the socket goes away.

        A socket error after open is reported as closure: pending calls
        fail with ConnectionClosed and the state drops to CLOSED.
        """
        try:
            while True:
                data = await transport.receive()
                self._handle_frame(data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = e

        if self._generation != generation:
            return
        logger.info("WebSocket connection lost: %s", reason)
        self._generation += 1
        self._state = TransportState.CLOSED
        self._transport = None
        self._reader_task = None
        self._fail_pending(ConnectionClosed(f"WebSocket connection closed: {reason}"))
        with suppress(Exception):
            await transport.close()

    def _handle_frame(self, data: str) -> None:
        try:
            frame = parse_inbound(data)
        except ParseError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return

        if isinstance(frame, WireNotification):
            self._router.dispatch(frame)
            return

        entry = self._pending.pop(frame.message_id, None)
        if entry is None:
            logger.debug("Dropping response for unknown messageId %d", frame.message_id)
            return
        entry.settle(frame)


def _consume_exception(task: asyncio.Task[Any]) -> None:
    if not task.cancelled():
        task.exception()
