"""Room registry and room document replication over the multiplexer.

Writes are fetch-merge-write cycles with no transaction around them:

- ``create_room`` reads the registry, writes the empty room document,
  then overwrites the registry. Two creators racing on different ids can
  each drop the other's entry.
- ``send_message`` in OVERWRITE mode reads the room document, appends
  locally and overwrites the key. Two senders racing on one room can lose
  one message. APPEND mode hands the message to the store's append
  primitive instead.

Pushes carry the whole document. Listeners always receive the full
current list, never a delta.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from kvchat.config import DEFAULT_REGISTRY_KEY, DEFAULT_ROOM_KEY_PREFIX, WriteStrategy
from kvchat.error import AlreadyExists, KvChatError, NoRoomJoined, ParseError, RemoteError
from kvchat.models import Message, Room, RoomDocument, RoomRegistry, now_ms
from kvchat.multiplexer import Multiplexer
from kvchat.router import NotificationRouter, Unsubscribe
from kvchat.wire import WireNotification

logger = logging.getLogger(__name__)

MessagesHandler = Callable[[list[Message]], Any]
RoomsHandler = Callable[[list[Room]], Any]


class DocumentSyncClient:
    """Room and message semantics on top of a borrowed Multiplexer.

    The client never opens or closes the multiplexer; the session that
    owns it does. ``attach``/``detach`` record which room the session has
    joined, and push delivery checks that record at delivery time.
    """

    def __init__(
        self,
        mux: Multiplexer,
        identity: str = "Anonymous",
        registry_key: str = DEFAULT_REGISTRY_KEY,
        room_key_prefix: str = DEFAULT_ROOM_KEY_PREFIX,
        write_strategy: WriteStrategy = WriteStrategy.OVERWRITE,
    ) -> None:
        self._mux = mux
        self.identity = identity
        self.registry_key = registry_key
        self.room_key_prefix = room_key_prefix
        self.write_strategy = write_strategy
        self.room_id: str | None = None
        self._message_listeners: NotificationRouter[list[Message]] = NotificationRouter("message")
        self._room_listeners: NotificationRouter[list[Room]] = NotificationRouter("chatrooms")

    def room_key(self, room_id: str) -> str:
        return f"{self.room_key_prefix}{room_id}"

    # -------------------------------------------------------------------------
    # Room membership
    # -------------------------------------------------------------------------

    def attach(self, room_id: str) -> None:
        self.room_id = room_id

    def detach(self) -> str | None:
        """Forget the joined room; returns the room that was joined."""
        previous, self.room_id = self.room_id, None
        return previous

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on_messages(self, handler: MessagesHandler) -> Unsubscribe:
        """Subscribe to the joined room's message list."""
        return self._message_listeners.subscribe(handler)

    def on_rooms_changed(self, handler: RoomsHandler) -> Unsubscribe:
        """Subscribe to room registry updates."""
        return self._room_listeners.subscribe(handler)

    def handle_notification(self, notification: WireNotification) -> None:
        """Translate a push into listener calls.

        Only the joined room's document and the registry are of interest;
        any other key, a null value or an unparsable value is dropped.
        """
        if notification.value is None:
            return

        if self.room_id is not None and notification.key == self.room_key(self.room_id):
            try:
                document = RoomDocument.parse(notification.value)
            except ParseError as e:
                logger.error("Error parsing chat notification: %s", e)
                return
            self._message_listeners.dispatch(list(document.messages))

        elif notification.key == self.registry_key:
            try:
                registry = RoomRegistry.parse(notification.value)
            except ParseError as e:
                logger.error("Error parsing chatrooms notification: %s", e)
                return
            self._room_listeners.dispatch(list(registry.chatrooms))

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    async def list_rooms(self) -> list[Room]:
        """Return every registered room.

        An absent or unparsable registry reads as empty; entries of the
        wrong shape are skipped. Transport and remote errors propagate.
        """
        response = await self._mux.get(self.registry_key)
        if response.value is None:
            return []
        try:
            return list(RoomRegistry.parse(response.value).chatrooms)
        except ParseError as e:
            logger.error("Error parsing chatrooms data: %s", e)
            return []

    async def _fetch_registry_entries(self) -> list[Any]:
        """Stored registry entries, unvalidated, for writing back.

        Raises:
            ParseError: The registry's room list is not a list.
        """
        response = await self._mux.get(self.registry_key)
        if response.value is None:
            return []
        try:
            obj = RoomRegistry.loads(response.value)
        except ParseError as e:
            logger.error("Error parsing chatrooms data: %s", e)
            return []
        return RoomRegistry.raw_entries(obj)

    async def create_room(self, room_id: str, display_name: str | None = None) -> Room:
        """Register a new room.

        Registry entries this client cannot read are written back
        unchanged.

        Raises:
            AlreadyExists: ``room_id`` is already in the registry.
            ParseError: The registry holds a room list that is not a list;
                nothing is written.
            RemoteError: The registry write was refused.
        """
        if not room_id:
            raise ValueError("room_id cannot be empty")

        entries = await self._fetch_registry_entries()
        if any(isinstance(entry, dict) and entry.get("id") == room_id for entry in entries):
            raise AlreadyExists(f"Chat room with this ID already exists: {room_id}", room_id)

        await self._ensure_room_document(room_id)

        room = Room(id=room_id, display_name=display_name or room_id, created_at=now_ms())
        await self._mux.insert(self.registry_key, {"chatrooms": [*entries, room.to_json()]})
        logger.info("Created chat room %s", room_id)
        return room

    async def _ensure_room_document(self, room_id: str) -> None:
        # The join endpoint creates the document server-side too, so a
        # token that cannot reach this key is not fatal here.
        key = self.room_key(room_id)
        try:
            response = await self._mux.get(key)
            if response.value is None:
                await self._mux.insert(key, RoomDocument().serialize())
        except RemoteError as e:
            logger.warning("Could not initialize room document %s: %s", key, e)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def get_messages(self, room_id: str) -> list[Message]:
        """Return a room's messages, or an empty list on any failure."""
        try:
            response = await self._mux.get(self.room_key(room_id))
        except KvChatError as e:
            logger.error("Error fetching room messages: %s", e)
            return []
        if response.value is None:
            return []
        try:
            return list(RoomDocument.parse(response.value).messages)
        except ParseError as e:
            logger.error("Error parsing messages data: %s", e)
            return []

    async def send_message(self, room_id: str, text: str) -> Message:
        """Append a message to the joined room's document.

        Raises:
            NoRoomJoined: Not joined to ``room_id``.
            ParseError: OVERWRITE mode found a message list that is not
                a list; nothing is written.
            RemoteError: The store refused the write.
        """
        if self.room_id is None:
            raise NoRoomJoined("No room joined")
        if self.room_id != room_id:
            raise NoRoomJoined(f"Not joined to room {room_id}")

        message = Message.create(self.identity, text)
        key = self.room_key(room_id)

        if self.write_strategy is WriteStrategy.APPEND:
            await self._mux.append(key, RoomDocument(messages=[message]).serialize())
            return message

        existing = await self._fetch_existing(key)
        await self._mux.insert(key, {"messages": [*existing, message.to_json()]})
        return message

    async def _fetch_existing(self, key: str) -> list[Any]:
        """Stored message entries, unvalidated, for writing back.

        A refused read or an unparsable document starts a fresh list.

        Raises:
            ParseError: The document's message list is not a list.
        """
        try:
            response = await self._mux.get(key)
        except RemoteError as e:
            logger.error("Error fetching existing messages: %s", e)
            return []
        if response.value is None:
            return []
        try:
            obj = RoomDocument.loads(response.value)
        except ParseError as e:
            logger.error("Error parsing existing messages: %s", e)
            return []
        return RoomDocument.raw_entries(obj)
