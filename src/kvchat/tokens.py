"""Client for the token-issuing collaborator endpoints.

``POST /api/initialize`` returns a token scoped to the room registry.
``POST /api/join-chatroom`` with ``{"roomId"}`` returns a token scoped to
that room's document and the registry.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import aiohttp

from kvchat.error import TokenError

logger = logging.getLogger(__name__)

INITIALIZE_PATH = "/api/initialize"
JOIN_CHATROOM_PATH = "/api/join-chatroom"


class TokenProvider(Protocol):
    """Source of capability tokens for the two session kinds."""

    async def registry_token(self) -> str:
        ...

    async def room_token(self, room_id: str) -> str:
        ...


class HttpTokenProvider:
    """TokenProvider backed by the HTTP collaborator endpoints."""

    def __init__(self, api_url: str, session: aiohttp.ClientSession | None = None) -> None:
        """Initialize the provider.

        Args:
            api_url: Base URL of the endpoints (e.g., "https://chat.example")
            session: Optional shared aiohttp session; one is created lazily
                and owned by this provider otherwise
        """
        self.api_url = api_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def registry_token(self) -> str:
        return await self._post(INITIALIZE_PATH, None)

    async def room_token(self, room_id: str) -> str:
        return await self._post(JOIN_CHATROOM_PATH, {"roomId": room_id})

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _post(self, path: str, body: dict[str, Any] | None) -> str:
        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            async with self._session.post(f"{self.api_url}{path}", json=body) as response:
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None
                if response.status >= 400:
                    detail = None
                    if isinstance(data, dict):
                        detail = data.get("error") or data.get("message")
                    raise TokenError(f"Failed to get token: {detail or response.reason}")
        except aiohttp.ClientError as e:
            raise TokenError(f"Failed to get token: {e}") from e

        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise TokenError("Failed to get token: response carried no token")
        logger.debug("Obtained token from %s", path)
        return token
