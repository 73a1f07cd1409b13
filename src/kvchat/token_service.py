"""HTTP endpoints that mint capability tokens for chat sessions.

- ``POST /api/initialize``: ensures the room registry exists and returns a
  token scoped to it.
- ``POST /api/join-chatroom`` with ``{"roomId"}``: ensures the room
  document exists and returns a token scoped to that document and the
  registry.

The endpoints work against any StoreBackend: the store's REST API in
production, the in-memory store in development and tests.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Protocol

from aiohttp import web

from kvchat.config import TokenServiceConfig
from kvchat.memory_store import InMemoryKvStore
from kvchat.models import RoomDocument, RoomRegistry
from kvchat.rest_client import HpkvRestClient

logger = logging.getLogger(__name__)


class StoreBackend(Protocol):
    """Administrative store access needed to mint tokens."""

    async def get(self, key: str) -> str | None:
        ...

    async def insert(self, key: str, value: Any) -> Any:
        ...

    async def generate_websocket_token(
        self,
        subscribe_keys: Iterable[str],
        access_pattern: str | None = None,
    ) -> str:
        ...


class InMemoryStoreBackend:
    """StoreBackend over an InMemoryKvStore."""

    def __init__(self, store: InMemoryKvStore) -> None:
        self.store = store

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def insert(self, key: str, value: Any) -> None:
        self.store.insert(key, value if isinstance(value, str) else json.dumps(value))

    async def generate_websocket_token(
        self,
        subscribe_keys: Iterable[str],
        access_pattern: str | None = None,
    ) -> str:
        return self.store.generate_token(subscribe_keys, access_pattern)


def create_backend(
    config: TokenServiceConfig,
    store: InMemoryKvStore | None = None,
) -> StoreBackend:
    """Use the REST API when ``store_base_url`` is set, else the in-memory store."""
    if config.store_base_url:
        if not config.store_api_key:
            raise ValueError("store_api_key is required with store_base_url")
        return HpkvRestClient(config.store_base_url, config.store_api_key)
    return InMemoryStoreBackend(store or InMemoryKvStore())


def exact_key_pattern(*keys: str) -> str:
    """Access pattern matching exactly the given keys."""
    escaped = [re.escape(key) for key in keys]
    if len(escaped) == 1:
        return f"^{escaped[0]}$"
    return f"^({'|'.join(escaped)})$"


class TokenService:
    """Token endpoints bound to a store backend."""

    def __init__(self, backend: StoreBackend, config: TokenServiceConfig | None = None) -> None:
        self.backend = backend
        self.config = config or TokenServiceConfig()

    def add_routes(self, app: web.Application) -> None:
        app.router.add_post("/api/initialize", self.handle_initialize)
        app.router.add_post("/api/join-chatroom", self.handle_join_chatroom)

    def create_app(self) -> web.Application:
        app = web.Application()
        self.add_routes(app)
        return app

    async def handle_initialize(self, request: web.Request) -> web.Response:
        registry_key = self.config.registry_key
        try:
            if await self.backend.get(registry_key) is None:
                await self.backend.insert(registry_key, RoomRegistry().serialize())
            token = await self.backend.generate_websocket_token(
                [registry_key], exact_key_pattern(registry_key)
            )
        except Exception as e:
            logger.exception("Error initializing client")
            return web.json_response(
                {"message": "Failed to initialize client", "error": str(e)}, status=500
            )
        return web.json_response({"token": token})

    async def handle_join_chatroom(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            body = None
        room_id = body.get("roomId") if isinstance(body, dict) else None
        if not isinstance(room_id, str) or not room_id:
            return web.json_response({"message": "Room ID is required"}, status=400)

        room_key = f"{self.config.room_key_prefix}{room_id}"
        registry_key = self.config.registry_key
        try:
            if not await self.backend.get(room_key):
                await self.backend.insert(room_key, RoomDocument().serialize())
            token = await self.backend.generate_websocket_token(
                [room_key, registry_key], exact_key_pattern(room_key, registry_key)
            )
        except Exception as e:
            logger.exception("Error getting WebSocket token")
            return web.json_response(
                {"message": "Failed to get WebSocket token", "error": str(e)}, status=500
            )
        return web.json_response({"token": token})
