"""Pytest configuration for all tests."""

import asyncio

import pytest
from aiohttp import web

from kvchat.config import ChatClientConfig, WriteStrategy
from kvchat.memory_store import InMemoryKvStore
from kvchat.models import RoomDocument
from kvchat.token_service import exact_key_pattern

REGISTRY_KEY = "chatrooms"


class SilentTransport:
    """Transport that accepts every frame and never answers."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("Transport closed")
        self.sent.append(message)

    async def receive(self) -> str:
        frame = await self.inbox.get()
        if frame is None:
            raise ConnectionError("Transport closed")
        return frame

    async def close(self) -> None:
        self.closed = True
        self.inbox.put_nowait(None)

    def feed(self, frame: str) -> None:
        """Inject a frame as if the store had sent it."""
        self.inbox.put_nowait(frame)

    def drop(self) -> None:
        """Simulate the store closing the socket."""
        self.inbox.put_nowait(None)


class StoreTokenProvider:
    """TokenProvider minting tokens straight from an InMemoryKvStore.

    Scopes tokens the way the token endpoints do. ``gate`` lets a test hold
    token requests until it is set.
    """

    def __init__(self, store: InMemoryKvStore, room_key_prefix: str = "chat:") -> None:
        self.store = store
        self.room_key_prefix = room_key_prefix
        self.registry_calls = 0
        self.room_calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def _wait_gate(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)

    async def registry_token(self) -> str:
        self.registry_calls += 1
        await self._wait_gate()
        return self.store.generate_token([REGISTRY_KEY], exact_key_pattern(REGISTRY_KEY))

    async def room_token(self, room_id: str) -> str:
        self.room_calls.append(room_id)
        await self._wait_gate()
        room_key = f"{self.room_key_prefix}{room_id}"
        if self.store.get(room_key) is None:
            self.store.insert(room_key, RoomDocument().serialize())
        return self.store.generate_token(
            [room_key, REGISTRY_KEY], exact_key_pattern(room_key, REGISTRY_KEY)
        )


def make_config(**overrides) -> ChatClientConfig:
    values = {
        "ws_url": "ws://store.test/ws",
        "api_url": "http://chat.test",
        "identity": "alice",
        "write_strategy": WriteStrategy.OVERWRITE,
    }
    values.update(overrides)
    return ChatClientConfig(**values)


def open_token(store: InMemoryKvStore, *keys: str) -> str:
    """Token subscribed to ``keys`` with unrestricted access."""
    return store.generate_token(keys)


async def start_app(app: web.Application) -> tuple[web.AppRunner, str]:
    """Serve ``app`` on an ephemeral port; returns the runner and base URL."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", 0)
    await site.start()
    port = runner.addresses[0][1]
    return runner, f"http://127.0.0.1:{port}"


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def store() -> InMemoryKvStore:
    return InMemoryKvStore()


@pytest.fixture
def tokens(store: InMemoryKvStore) -> StoreTokenProvider:
    return StoreTokenProvider(store)
