"""Tests for chat session lifecycle."""

import asyncio

import pytest

from conftest import StoreTokenProvider, make_config, wait_until
from kvchat.error import ConnectionClosed, NoRoomJoined, TokenError
from kvchat.memory_store import InMemoryKvStore
from kvchat.models import Message, Room
from kvchat.session import ChatSession, SessionState, SingleFlight
from kvchat.transport import Connector, KvTransport


def make_session(
    store: InMemoryKvStore,
    tokens: StoreTokenProvider,
    identity: str = "alice",
) -> ChatSession:
    return ChatSession(make_config(identity=identity), tokens=tokens, connector=store.connector())


class SlowClosing:
    """Wraps a transport so that closing it takes a while."""

    def __init__(self, inner: KvTransport) -> None:
        self.inner = inner

    async def send(self, message: str) -> None:
        await self.inner.send(message)

    async def receive(self) -> str:
        return await self.inner.receive()

    async def close(self) -> None:
        await asyncio.sleep(0.05)
        await self.inner.close()


def slow_close_connector(store: InMemoryKvStore) -> Connector:
    connect = store.connector()

    async def wrapped(token: str) -> KvTransport:
        return SlowClosing(await connect(token))

    return wrapped


class FailingTokens:
    async def registry_token(self) -> str:
        raise TokenError("Failed to get token: Internal Server Error")

    async def room_token(self, room_id: str) -> str:
        raise TokenError("Failed to get token: Internal Server Error")


@pytest.mark.asyncio
class TestSingleFlight:
    """One in-progress task per cell."""

    async def test_same_key_shares_task(self) -> None:
        flight: SingleFlight[int] = SingleFlight()
        calls = 0

        async def work() -> int:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return calls

        results = await asyncio.gather(flight.run("a", work), flight.run("a", work))

        assert results == [1, 1]
        assert calls == 1
        assert not flight.in_flight

    async def test_failure_empties_cell(self) -> None:
        flight: SingleFlight[None] = SingleFlight()

        async def boom() -> None:
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await flight.run("a", boom)
        await asyncio.sleep(0)
        assert not flight.in_flight
        assert flight.key is None


@pytest.mark.asyncio
class TestInitialize:
    """Registry sessions."""

    async def test_initialize(self, store: InMemoryKvStore, tokens: StoreTokenProvider) -> None:
        async with make_session(store, tokens) as session:
            await session.initialize()
            assert session.state is SessionState.READY
            assert session.is_connected()
            assert session.room_id is None

    async def test_initialize_when_ready_is_noop(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        async with make_session(store, tokens) as session:
            await session.initialize()
            await session.initialize()
            assert tokens.registry_calls == 1

    async def test_concurrent_initialize_shares_attempt(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        tokens.gate = asyncio.Event()
        async with make_session(store, tokens) as session:
            first = asyncio.create_task(session.initialize())
            second = asyncio.create_task(session.initialize())
            await wait_until(lambda: tokens.registry_calls == 1)
            assert session.state is SessionState.INITIALIZING

            tokens.gate.set()
            await asyncio.gather(first, second)

            assert tokens.registry_calls == 1
            assert store.connection_count == 1
            assert session.state is SessionState.READY

    async def test_token_failure(self, store: InMemoryKvStore) -> None:
        session = ChatSession(make_config(), tokens=FailingTokens(), connector=store.connector())

        with pytest.raises(TokenError, match="Failed to get token"):
            await session.initialize()

        assert session.state is SessionState.DISCONNECTED
        assert not session.is_connected()

    async def test_disconnect_supersedes_pending_initialize(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        tokens.gate = asyncio.Event()
        session = make_session(store, tokens)
        attempt = asyncio.create_task(session.initialize())
        await wait_until(lambda: tokens.registry_calls == 1)

        await session.disconnect()
        tokens.gate.set()

        with pytest.raises(ConnectionClosed):
            await attempt
        assert session.state is SessionState.DISCONNECTED
        assert store.connection_count == 0

    async def test_list_rooms_initializes_on_demand(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        async with make_session(store, tokens) as session:
            assert await session.list_rooms() == []
            assert session.state is SessionState.READY


@pytest.mark.asyncio
class TestJoin:
    """Room sessions."""

    async def test_join_replaces_registry_session(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        async with make_session(store, tokens) as session:
            await session.initialize()
            await session.join("general")

            assert session.state is SessionState.IN_ROOM
            assert session.room_id == "general"
            assert store.connection_count == 1
            assert store.get("chat:general") is not None

    async def test_concurrent_join_same_room(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        async with make_session(store, tokens) as session:
            await asyncio.gather(session.join("general"), session.join("general"))
            assert tokens.room_calls == ["general"]
            assert store.connection_count == 1

    async def test_join_other_room_while_joining(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        async with make_session(store, tokens) as session:
            await asyncio.gather(session.join("general"), session.join("random"))

            assert session.room_id == "random"
            assert session.state is SessionState.IN_ROOM
            assert tokens.room_calls == ["general", "random"]
            assert store.connection_count == 1

    async def test_leave_is_idempotent(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        session = make_session(store, tokens)
        await session.join("general")

        await session.leave()
        await session.leave()

        assert session.state is SessionState.DISCONNECTED
        assert session.room_id is None
        assert store.connection_count == 0

    async def test_join_while_leave_is_closing(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        session = ChatSession(
            make_config(), tokens=tokens, connector=slow_close_connector(store)
        )
        await session.join("general")

        await asyncio.gather(session.leave(), session.join("random"))

        assert session.state is SessionState.IN_ROOM
        assert session.room_id == "random"
        assert session.is_connected()
        assert store.connection_count == 1
        await session.send_message("still here")
        assert [m.text for m in await session.get_messages()] == ["still here"]
        await session.close()
        assert store.connection_count == 0

    async def test_operations_without_room(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        async with make_session(store, tokens) as session:
            with pytest.raises(NoRoomJoined):
                await session.send_message("hello")
            with pytest.raises(NoRoomJoined):
                await session.get_messages()

    async def test_no_pushes_after_leave(
        self, store: InMemoryKvStore, tokens: StoreTokenProvider
    ) -> None:
        session = make_session(store, tokens)
        seen: list[list[Message]] = []
        session.on_messages(seen.append)
        await session.join("general")
        await session.leave()

        store.insert("chat:general", '{"messages": []}')
        await asyncio.sleep(0.01)

        assert seen == []

    async def test_stats(self, store: InMemoryKvStore, tokens: StoreTokenProvider) -> None:
        async with make_session(store, tokens) as session:
            await session.join("general")
            stats = session.get_stats()
            assert stats["session"] == "in_room"
            assert stats["room_id"] == "general"
            assert stats["state"] == "open"


@pytest.mark.asyncio
class TestTwoClients:
    """Two sessions sharing one store."""

    async def test_room_creation_and_chat(self, store: InMemoryKvStore) -> None:
        alice = make_session(store, StoreTokenProvider(store), identity="alice")
        bob = make_session(store, StoreTokenProvider(store), identity="bob")
        bob_rooms: list[list[Room]] = []
        bob_messages: list[list[Message]] = []
        bob.on_rooms_changed(bob_rooms.append)
        bob.on_messages(bob_messages.append)

        await alice.initialize()
        await bob.initialize()

        await alice.create_room("general", "General")
        await wait_until(lambda: len(bob_rooms) == 1)
        assert [r.id for r in bob_rooms[0]] == ["general"]
        assert [r.id for r in await bob.list_rooms()] == ["general"]

        await alice.join("general")
        await alice.send_message("hello bob")

        await bob.join("general")
        history = await bob.get_messages()
        assert [(m.sender, m.text) for m in history] == [("alice", "hello bob")]

        await alice.send_message("still there?")
        await wait_until(lambda: len(bob_messages) == 1)
        assert [m.text for m in bob_messages[0]] == ["hello bob", "still there?"]

        await bob.send_message("yes")
        assert [m.text for m in await alice.get_messages()] == [
            "hello bob",
            "still there?",
            "yes",
        ]

        await alice.close()
        await bob.close()
        assert store.connection_count == 0
