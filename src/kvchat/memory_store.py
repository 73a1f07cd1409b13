"""In-memory key-value store speaking the store's WebSocket protocol.

This is a simulation for tests and local development, not a production
store. It implements what the chat core consumes:

- GET / CREATE / APPEND over correlated request frames,
- capability tokens carrying subscribe keys and an access pattern,
- push notifications to every connection subscribed to a changed key,
  whoever the writer was.

Connections are reachable in-process through ``connector()`` (no sockets)
or over real WebSockets through ``KvStoreServer``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Iterable

from aiohttp import web

from kvchat.config import StoreServerConfig
from kvchat.error import ParseError
from kvchat.models import now_ms
from kvchat.transport import Connector, KvTransport
from kvchat.wire import Operation, WireNotification, WireRequest, WireResponse

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TokenGrant:
    """What a token lets a connection touch."""

    subscribe_keys: frozenset[str]
    access_pattern: re.Pattern[str] | None = None

    def allows(self, key: str) -> bool:
        return self.access_pattern is None or self.access_pattern.search(key) is not None


@dataclass(eq=False)
class StoreConnection:
    """Server-side state of one client connection."""

    grant: TokenGrant
    outbox: asyncio.Queue[str | None] = field(default_factory=asyncio.Queue)
    closed: bool = False

    def deliver(self, frame: dict[str, Any]) -> None:
        if not self.closed:
            self.outbox.put_nowait(json.dumps(frame))

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.outbox.put_nowait(None)


def merge_values(existing: str | None, value: str) -> str:
    """Combine a stored value with an appended one.

    Two JSON objects are merged key by key; where both sides hold a list
    the lists are concatenated, otherwise the new side wins. Anything else
    is plain string concatenation.
    """
    if existing is None:
        return value
    try:
        old = json.loads(existing)
        new = json.loads(value)
    except json.JSONDecodeError:
        return existing + value
    if not isinstance(old, dict) or not isinstance(new, dict):
        return existing + value
    merged = dict(old)
    for k, v in new.items():
        if isinstance(merged.get(k), list) and isinstance(v, list):
            merged[k] = merged[k] + v
        else:
            merged[k] = v
    return json.dumps(merged)


class InMemoryKvStore:
    """Key-value records plus token grants and push fan-out."""

    def __init__(self, records: dict[str, str] | None = None) -> None:
        self._records: dict[str, str] = dict(records or {})
        self._grants: dict[str, TokenGrant] = {}
        self._connections: set[StoreConnection] = set()

    @property
    def records(self) -> dict[str, str]:
        return dict(self._records)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # -------------------------------------------------------------------------
    # Direct access (what a REST API would offer)
    # -------------------------------------------------------------------------

    def get(self, key: str) -> str | None:
        return self._records.get(key)

    def insert(self, key: str, value: str) -> None:
        self._records[key] = value
        self._notify(key, value)

    def append(self, key: str, value: str) -> str:
        merged = merge_values(self._records.get(key), value)
        self._records[key] = merged
        self._notify(key, merged)
        return merged

    def generate_token(
        self,
        subscribe_keys: Iterable[str],
        access_pattern: str | None = None,
    ) -> str:
        """Mint a token for ``subscribe_keys``, restricted by ``access_pattern``."""
        token = secrets.token_urlsafe(24)
        pattern = re.compile(access_pattern) if access_pattern is not None else None
        self._grants[token] = TokenGrant(frozenset(subscribe_keys), pattern)
        return token

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def open_connection(self, token: str) -> StoreConnection:
        grant = self._grants.get(token)
        if grant is None:
            raise PermissionError("Invalid or expired token")
        connection = StoreConnection(grant)
        self._connections.add(connection)
        return connection

    def close_connection(self, connection: StoreConnection) -> None:
        self._connections.discard(connection)
        connection.close()

    def drop_all(self) -> None:
        """Close every connection from the store side."""
        for connection in list(self._connections):
            self.close_connection(connection)

    def handle(self, connection: StoreConnection, raw: str) -> None:
        """Process one request frame from ``connection``.

        The response is delivered before any push the request triggers.
        """
        try:
            request = WireRequest.from_json(json.loads(raw))
        except (json.JSONDecodeError, ParseError) as e:
            logger.warning("Rejecting malformed request: %s", e)
            message_id = _salvage_message_id(raw)
            if message_id is not None:
                connection.deliver(
                    WireResponse(None, None, message_id, status=400, error=str(e)).to_json()
                )
            return

        if not connection.grant.allows(request.key):
            connection.deliver(
                WireResponse(
                    request.key,
                    None,
                    request.message_id,
                    status=403,
                    error=f"Access denied for key: {request.key}",
                ).to_json()
            )
            return

        if request.op is Operation.GET:
            value = self._records.get(request.key)
            status = 200 if value is not None else 404
            connection.deliver(
                WireResponse(request.key, value, request.message_id, status=status).to_json()
            )
            return

        if request.value is None:
            connection.deliver(
                WireResponse(
                    request.key, None, request.message_id, status=400, error="Value is required"
                ).to_json()
            )
            return

        if request.op is Operation.CREATE:
            self._records[request.key] = request.value
            stored = request.value
        else:
            stored = merge_values(self._records.get(request.key), request.value)
            self._records[request.key] = stored

        connection.deliver(
            WireResponse(request.key, None, request.message_id, status=200).to_json()
        )
        self._notify(request.key, stored)

    def _notify(self, key: str, value: str | None) -> None:
        frame = WireNotification(key, value, now_ms()).to_json()
        for connection in list(self._connections):
            if key in connection.grant.subscribe_keys:
                connection.deliver(frame)

    def connector(self) -> Connector:
        """Return a connector producing in-process transports."""

        async def connect(token: str) -> KvTransport:
            try:
                connection = self.open_connection(token)
            except PermissionError as e:
                raise ConnectionRefusedError(str(e)) from e
            return LoopbackTransport(self, connection)

        return connect


def _salvage_message_id(raw: str) -> int | None:
    try:
        obj = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if isinstance(obj, dict) and isinstance(obj.get("messageId"), int):
        return obj["messageId"]
    return None


class LoopbackTransport:
    """In-process transport bound to a StoreConnection."""

    __slots__ = ("_store", "_connection")

    def __init__(self, store: InMemoryKvStore, connection: StoreConnection) -> None:
        self._store = store
        self._connection = connection

    async def send(self, message: str) -> None:
        if self._connection.closed:
            raise ConnectionError("Connection closed")
        self._store.handle(self._connection, message)

    async def receive(self) -> str:
        frame = await self._connection.outbox.get()
        if frame is None:
            raise ConnectionError("Connection closed")
        return frame

    async def close(self) -> None:
        self._store.close_connection(self._connection)


class KvStoreServer:
    """aiohttp WebSocket server exposing an InMemoryKvStore.

    Example:
        ```python
        server = KvStoreServer(InMemoryKvStore(), StoreServerConfig(port=0))
        await server.start()
        print(server.url)  # ws://127.0.0.1:<port>/ws
        await server.stop()
        ```
    """

    def __init__(self, store: InMemoryKvStore, config: StoreServerConfig | None = None) -> None:
        self.store = store
        self.config = config or StoreServerConfig()
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self._port: int | None = None

    @property
    def port(self) -> int:
        if self._port is None:
            raise RuntimeError("Server not started")
        return self._port

    @property
    def url(self) -> str:
        return f"ws://{self.config.host}:{self.port}{self.config.path}"

    def add_routes(self, app: web.Application) -> None:
        app.router.add_get(self.config.path, self._handle_ws)

    async def start(self) -> None:
        """Start the server."""
        app = web.Application()
        self.add_routes(app)
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await self._site.start()
        self._port = self._runner.addresses[0][1]
        logger.info("KV store server started on %s", self.url)

    async def stop(self) -> None:
        """Stop the server."""
        self.store.drop_all()
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        self._port = None

    async def _handle_ws(self, request: web.Request) -> web.StreamResponse:
        """Handle an incoming WebSocket connection."""
        try:
            connection = self.store.open_connection(request.query.get("token", ""))
        except PermissionError as e:
            raise web.HTTPUnauthorized(text=str(e)) from e

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        writer = asyncio.create_task(self._pump(connection, ws))
        logger.info("New store connection")

        try:
            async for msg in ws:
                if msg.type == web.WSMsgType.TEXT:
                    self.store.handle(connection, msg.data)
                elif msg.type == web.WSMsgType.BINARY:
                    self.store.handle(connection, msg.data.decode("utf-8"))
                elif msg.type == web.WSMsgType.ERROR:
                    logger.error("Store connection error: %s", ws.exception())
                    break
        finally:
            self.store.close_connection(connection)
            await writer
            await ws.close()
            logger.info("Store connection closed")

        return ws

    async def _pump(self, connection: StoreConnection, ws: web.WebSocketResponse) -> None:
        try:
            while True:
                frame = await connection.outbox.get()
                if frame is None or ws.closed:
                    break
                await ws.send_str(frame)
        except ConnectionResetError as e:
            logger.debug("Store connection reset: %s", e)
        await ws.close()
