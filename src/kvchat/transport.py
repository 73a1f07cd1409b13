"""Socket transports for the multiplexer.

A transport is a connected, message-oriented duplex channel. The
multiplexer never creates one directly: it asks a *connector* (an async
callable taking the capability token) for an already-open transport. The
default connector opens an aiohttp WebSocket to ``{url}?token={token}``;
tests and local development plug in the in-memory store's loopback
connector instead.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Protocol

import aiohttp

from kvchat.config import TransportConfig


class KvTransport(Protocol):
    """Interface for a connected message transport."""

    async def send(self, message: str) -> None:
        """Send a message to the peer. Raises ConnectionError when closed."""
        ...

    async def receive(self) -> str:
        """Receive a message from the peer. Raises ConnectionError on disconnect."""
        ...

    async def close(self) -> None:
        """Close the channel."""
        ...


Connector = Callable[[str], Awaitable[KvTransport]]


class WebSocketClientTransport:
    """aiohttp WebSocket transport to the store.

    Text and binary frames are both delivered as text. Any close or error
    frame marks the transport closed; every later call raises
    ConnectionError.
    """

    __slots__ = ("url", "_session", "_ws", "_closed")

    _CLOSING = frozenset(
        {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED}
    )

    def __init__(self, url: str) -> None:
        self.url = url
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._ws is None

    async def connect(self, token: str, timeout: float | None = None) -> None:
        """Run the WebSocket handshake, presenting the capability token.

        Args:
            token: Capability token, sent as the ``token`` query parameter
            timeout: Seconds allowed for the handshake; ``None`` waits forever

        Raises:
            TimeoutError: The handshake took longer than ``timeout``.
            aiohttp.ClientError: The handshake was refused or failed.
        """
        session = aiohttp.ClientSession()
        try:
            async with asyncio.timeout(timeout):
                self._ws = await session.ws_connect(self.url, params={"token": token})
        except BaseException:
            await session.close()
            raise
        self._session = session

    def _lost(self, reason: str) -> ConnectionError:
        self._closed = True
        return ConnectionError(reason)

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("WebSocket is closed")
        await self._ws.send_str(message)

    async def receive(self) -> str:
        """Wait for the next frame from the store.

        Raises:
            ConnectionError: The socket closed or failed.
        """
        if self.closed:
            raise ConnectionError("WebSocket is closed")

        msg = await self._ws.receive()
        if msg.type == aiohttp.WSMsgType.TEXT:
            return msg.data
        if msg.type == aiohttp.WSMsgType.BINARY:
            return msg.data.decode("utf-8")
        if msg.type in self._CLOSING:
            raise self._lost(f"WebSocket closed by peer (code {self._ws.close_code})")
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise self._lost(f"WebSocket error: {self._ws.exception()}")
        raise ValueError(f"Unexpected message type: {msg.type}")

    async def close(self) -> None:
        self._closed = True
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        if ws is not None:
            await ws.close()
        if session is not None:
            await session.close()


def websocket_connector(config: TransportConfig) -> Connector:
    """Return a connector opening aiohttp WebSockets against ``config.url``."""

    async def connect(token: str) -> KvTransport:
        transport = WebSocketClientTransport(config.url)
        await transport.connect(token, timeout=config.connect_timeout)
        return transport

    return connect
