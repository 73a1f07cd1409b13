"""Connection lifecycle for chat sessions.

Two session kinds exist and only one is alive at a time:

- registry session: DISCONNECTED -> INITIALIZING -> READY, token scoped to
  the room registry only;
- room session: DISCONNECTED -> JOINING_ROOM -> IN_ROOM, token scoped to
  the room document and the registry.

Entering either kind first tears down whatever session exists. Every
teardown bumps a generation counter; an attempt that finds the counter
moved while it was waiting on the network gives up with ConnectionClosed
instead of installing a stale session.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Hashable, Self, TypeVar

from kvchat.config import ChatClientConfig
from kvchat.documents import DocumentSyncClient, MessagesHandler, RoomsHandler
from kvchat.error import ConnectionClosed, NoRoomJoined
from kvchat.models import Message, Room
from kvchat.multiplexer import Multiplexer
from kvchat.router import Unsubscribe
from kvchat.tokens import HttpTokenProvider, TokenProvider
from kvchat.transport import Connector, websocket_connector

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    INITIALIZING = "initializing"
    READY = "ready"
    JOINING_ROOM = "joining_room"
    IN_ROOM = "in_room"


class SingleFlight(Generic[T]):
    """Cell holding nothing or one in-progress task.

    Callers asking for the same key while the task runs wait on that task
    instead of starting another. The cell empties itself when the task
    finishes, successfully or not.
    """

    __slots__ = ("_task", "key")

    def __init__(self) -> None:
        self._task: asyncio.Task[T] | None = None
        self.key: Hashable | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    async def wait(self) -> T:
        if self._task is None:
            raise RuntimeError("Nothing in flight")
        return await asyncio.shield(self._task)

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        if self.in_flight and self.key == key:
            return await self.wait()
        task: asyncio.Task[T] = asyncio.ensure_future(factory())
        task.add_done_callback(self._on_done)
        self._task, self.key = task, key
        return await asyncio.shield(task)

    def clear(self) -> None:
        self._task, self.key = None, None

    def _on_done(self, task: asyncio.Task[T]) -> None:
        if not task.cancelled():
            task.exception()
        if self._task is task:
            self.clear()


class ChatSession:
    """Chat client: session lifecycle plus room and message operations.

    Owns the Multiplexer; the DocumentSyncClient borrows it for the
    duration of each session.

    Example:
        ```python
        config = ChatClientConfig(
            ws_url="wss://kv.example/ws",
            api_url="https://chat.example",
            identity="alice",
        )
        async with ChatSession(config) as chat:
            rooms = await chat.list_rooms()
            await chat.join("general")
            chat.on_messages(lambda messages: print(messages[-1].text))
            await chat.send_message("hello")
        ```
    """

    def __init__(
        self,
        config: ChatClientConfig,
        tokens: TokenProvider | None = None,
        connector: Connector | None = None,
    ) -> None:
        """Initialize the session.

        Args:
            config: Client configuration
            tokens: Token source; defaults to the HTTP endpoints at
                ``config.api_url``
            connector: Transport factory; defaults to aiohttp WebSockets
                against ``config.ws_url``
        """
        self.config = config
        self._tokens: TokenProvider = tokens or HttpTokenProvider(config.api_url)
        self._owns_tokens = tokens is None
        self._mux = Multiplexer(
            connector or websocket_connector(config.transport_config()),
            request_timeout=config.request_timeout,
        )
        self._docs = DocumentSyncClient(
            self._mux,
            identity=config.identity,
            registry_key=config.registry_key,
            room_key_prefix=config.room_key_prefix,
            write_strategy=config.write_strategy,
        )
        self._state = SessionState.DISCONNECTED
        self._generation = 0
        self._push_unsubscribe: Unsubscribe | None = None
        self._init_flight: SingleFlight[None] = SingleFlight()
        self._join_flight: SingleFlight[None] = SingleFlight()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def room_id(self) -> str | None:
        return self._docs.room_id

    @property
    def multiplexer(self) -> Multiplexer:
        return self._mux

    @property
    def documents(self) -> DocumentSyncClient:
        return self._docs

    def is_connected(self) -> bool:
        return self._mux.is_open()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open a registry-only session.

        No-op when already READY; concurrent calls share one attempt.
        """
        if self._state is SessionState.READY and self._mux.is_open():
            return
        await self._init_flight.run("registry", self._initialize)

    async def _initialize(self) -> None:
        logger.info("Initializing chat client...")
        await self._teardown()
        generation = self._generation
        self._state = SessionState.INITIALIZING
        try:
            token = await self._tokens.registry_token()
            self._check_current(generation)
            await self._mux.open(token)
            self._check_current(generation)
        except Exception as e:
            logger.error("Failed to initialize chat client: %s", e)
            if self._generation == generation:
                self._state = SessionState.DISCONNECTED
            raise

        self._subscribe()
        self._state = SessionState.READY

    async def join(self, room_id: str) -> None:
        """Open a room session, tearing down any existing session first.

        Concurrent calls for the same room share one attempt. A call for a
        different room waits for the running attempt to settle and then
        replaces it.
        """
        if not room_id:
            raise ValueError("room_id cannot be empty")
        while self._join_flight.in_flight and self._join_flight.key != room_id:
            with suppress(Exception):
                await self._join_flight.wait()
        await self._join_flight.run(room_id, lambda: self._join(room_id))

    async def _join(self, room_id: str) -> None:
        await self._teardown()
        generation = self._generation
        self._state = SessionState.JOINING_ROOM
        try:
            token = await self._tokens.room_token(room_id)
            self._check_current(generation)
            await self._mux.open(token)
            self._check_current(generation)
        except Exception as e:
            logger.error("Failed to join room %s: %s", room_id, e)
            if self._generation == generation:
                self._state = SessionState.DISCONNECTED
            raise

        self._docs.attach(room_id)
        self._subscribe()
        self._state = SessionState.IN_ROOM
        logger.info("Joined room %s", room_id)

    async def leave(self) -> None:
        """Leave the current room and close the socket. Idempotent."""
        previous = self._docs.room_id
        await self.disconnect()
        if previous is not None:
            logger.info("Left room %s", previous)

    async def disconnect(self) -> None:
        """Unsubscribe from pushes and close the socket. Idempotent."""
        self._init_flight.clear()
        self._join_flight.clear()
        await self._teardown()

    async def close(self) -> None:
        """Disconnect and release owned resources."""
        await self.disconnect()
        if self._owns_tokens and isinstance(self._tokens, HttpTokenProvider):
            await self._tokens.close()

    async def _teardown(self) -> None:
        self._generation += 1
        generation = self._generation
        # Forget the room before anything else so pushes still in flight
        # are no longer delivered to message listeners.
        self._docs.detach()
        if self._push_unsubscribe is not None:
            self._push_unsubscribe()
            self._push_unsubscribe = None
        await self._mux.close()
        if self._generation == generation:
            self._state = SessionState.DISCONNECTED

    def _subscribe(self) -> None:
        if self._push_unsubscribe is not None:
            self._push_unsubscribe()
        self._push_unsubscribe = self._mux.on_push(self._docs.handle_notification)

    def _check_current(self, generation: int) -> None:
        if self._generation != generation:
            raise ConnectionClosed("Session was superseded before it was established")

    async def _ensure_connected(self) -> None:
        if self._join_flight.in_flight:
            await self._join_flight.wait()
        elif self._init_flight.in_flight:
            await self._init_flight.wait()
        if not self._mux.is_open():
            await self.initialize()

    # -------------------------------------------------------------------------
    # Rooms and messages
    # -------------------------------------------------------------------------

    async def list_rooms(self) -> list[Room]:
        """Return registered rooms, opening a registry session if needed."""
        await self._ensure_connected()
        return await self._docs.list_rooms()

    async def create_room(self, room_id: str, display_name: str | None = None) -> Room:
        await self._ensure_connected()
        return await self._docs.create_room(room_id, display_name)

    async def get_messages(self, room_id: str | None = None) -> list[Message]:
        """Return messages of ``room_id`` (default: the joined room)."""
        room_id = room_id or self._docs.room_id
        if room_id is None:
            raise NoRoomJoined("Not joined to any room")
        return await self._docs.get_messages(room_id)

    async def send_message(self, text: str) -> Message:
        """Send ``text`` to the joined room as ``config.identity``."""
        room_id = self._docs.room_id
        if room_id is None:
            raise NoRoomJoined("No room joined")
        return await self._docs.send_message(room_id, text)

    def on_messages(self, handler: MessagesHandler) -> Unsubscribe:
        return self._docs.on_messages(handler)

    def on_rooms_changed(self, handler: RoomsHandler) -> Unsubscribe:
        return self._docs.on_rooms_changed(handler)

    def get_stats(self) -> dict[str, Any]:
        stats = self._mux.get_stats()
        stats["session"] = self._state.value
        stats["room_id"] = self._docs.room_id
        return stats
