"""Tests for the aiohttp WebSocket transport against the store server."""

import asyncio

import aiohttp
import pytest

from kvchat.config import StoreServerConfig
from kvchat.memory_store import InMemoryKvStore, KvStoreServer
from kvchat.transport import WebSocketClientTransport
from kvchat.wire import Operation, WireRequest, WireResponse, parse_inbound


@pytest.mark.asyncio
class TestWebSocketClientTransport:
    """Handshake, frames and closure."""

    async def test_request_round_trip(self, store: InMemoryKvStore) -> None:
        store.insert("greeting", "hello")
        server = KvStoreServer(store, StoreServerConfig(port=0))
        await server.start()
        transport = WebSocketClientTransport(server.url)
        try:
            await transport.connect(store.generate_token([]), timeout=2.0)
            assert not transport.closed

            await transport.send(WireRequest(Operation.GET, "greeting", 1).serialize())
            frame = parse_inbound(await transport.receive())

            assert isinstance(frame, WireResponse)
            assert frame.message_id == 1
            assert frame.value == "hello"
        finally:
            await transport.close()
            await server.stop()

    async def test_bad_token_fails_handshake(self, store: InMemoryKvStore) -> None:
        server = KvStoreServer(store, StoreServerConfig(port=0))
        await server.start()
        transport = WebSocketClientTransport(server.url)
        try:
            with pytest.raises(aiohttp.ClientError):
                await transport.connect("bogus", timeout=2.0)
            assert transport.closed
        finally:
            await server.stop()

    async def test_handshake_timeout(self) -> None:
        async def never_answer(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await reader.read()
            writer.close()

        server = await asyncio.start_server(never_answer, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        transport = WebSocketClientTransport(f"ws://127.0.0.1:{port}/ws")
        try:
            with pytest.raises(TimeoutError):
                await transport.connect("t", timeout=0.1)
            assert transport.closed
        finally:
            server.close()
            await server.wait_closed()

    async def test_peer_close_marks_transport_closed(self, store: InMemoryKvStore) -> None:
        server = KvStoreServer(store, StoreServerConfig(port=0))
        await server.start()
        transport = WebSocketClientTransport(server.url)
        await transport.connect(store.generate_token([]), timeout=2.0)

        await server.stop()

        with pytest.raises(ConnectionError):
            await transport.receive()
        assert transport.closed
        with pytest.raises(ConnectionError):
            await transport.send("{}")
        await transport.close()

    async def test_close_is_idempotent(self, store: InMemoryKvStore) -> None:
        server = KvStoreServer(store, StoreServerConfig(port=0))
        await server.start()
        transport = WebSocketClientTransport(server.url)
        try:
            await transport.connect(store.generate_token([]), timeout=2.0)
            await transport.close()
            await transport.close()

            assert transport.closed
            with pytest.raises(ConnectionError, match="WebSocket is closed"):
                await transport.receive()
        finally:
            await server.stop()
