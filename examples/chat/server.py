"""Development backend for the chat example.

Runs two things in one process:
- an in-memory key-value store speaking the store WebSocket protocol
- the token endpoints (/api/initialize, /api/join-chatroom)

Set HPKV_BASE_URL and HPKV_API_KEY to mint tokens against a real store
instead; the in-memory store is then not used by the token endpoints.

Run:
    uv run python examples/chat/server.py
"""

from __future__ import annotations

import asyncio
import logging

from aiohttp import web

from kvchat import (
    InMemoryKvStore,
    KvStoreServer,
    StoreServerConfig,
    TokenService,
    TokenServiceConfig,
    create_backend,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def main() -> None:
    """Run the store and the token endpoints."""
    store = InMemoryKvStore()
    store_server = KvStoreServer(store, StoreServerConfig(port=8080))
    await store_server.start()

    config = TokenServiceConfig.from_env()
    backend = create_backend(config, store)
    service = TokenService(backend, config)

    runner = web.AppRunner(service.create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info("Store WebSocket endpoint: %s", store_server.url)
    logger.info("Token endpoints: http://%s:%d/api", config.host, config.port)
    logger.info("")
    logger.info("Run clients with: uv run python examples/chat/client.py")
    logger.info("Press Ctrl+C to stop")

    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await store_server.stop()
        close = getattr(backend, "close", None)
        if close is not None:
            await close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Shutting down chat server...")
