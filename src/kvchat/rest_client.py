"""Client for the store's REST API.

Used server-side by the token service: it can read and seed records and
mint WebSocket tokens. Every request carries the API key in ``x-api-key``.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable

import aiohttp

from kvchat.error import RemoteError

logger = logging.getLogger(__name__)


class HpkvRestClient:
    """Async REST client for records and WebSocket tokens."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def insert(self, key: str, value: Any, partial_update: bool = False) -> dict[str, Any]:
        """Insert, update or partially update a record.

        Non-string values are JSON encoded before sending.
        """
        body = {
            "key": key,
            "value": value if isinstance(value, str) else json.dumps(value),
            "partialUpdate": partial_update,
        }
        async with self._get_session().post(
            f"{self.base_url}/record",
            json=body,
            headers={"x-api-key": self._api_key},
        ) as response:
            if response.status >= 400:
                text = await response.text()
                raise RemoteError(f"Failed to insert record: {response.status} {text}", key=key)
            return await response.json(content_type=None)

    async def get(self, key: str) -> str | None:
        """Return the stored value of ``key``, or None when it does not exist."""
        async with self._get_session().get(
            f"{self.base_url}/record/{key}",
            headers={"x-api-key": self._api_key},
        ) as response:
            if response.status == 404:
                return None
            if response.status >= 400:
                text = await response.text()
                raise RemoteError(f"Failed to get record: {response.status} {text}", key=key)
            data = await response.json(content_type=None)

        value = data.get("value") if isinstance(data, dict) else None
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    async def generate_websocket_token(
        self,
        subscribe_keys: Iterable[str],
        access_pattern: str | None = None,
    ) -> str:
        """Mint a WebSocket token.

        Args:
            subscribe_keys: Keys whose changes are pushed to the holder
            access_pattern: Regex restricting which keys the holder may touch
        """
        body: dict[str, Any] = {"subscribeKeys": list(subscribe_keys)}
        if access_pattern is not None:
            body["accessPattern"] = access_pattern

        async with self._get_session().post(
            f"{self.base_url}/token/websocket",
            json=body,
            headers={"x-api-key": self._api_key},
        ) as response:
            if response.status >= 400:
                text = await response.text()
                raise RemoteError(f"Failed to generate token: {response.status} {text}")
            data = await response.json(content_type=None)

        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str):
            raise RemoteError("Failed to generate token: response carried no token")
        return token
