"""Pydantic configuration models for kvchat.

These models are only used at startup/initialization. Wire envelopes stay
as frozen dataclasses in ``kvchat.wire``.
"""

from __future__ import annotations

import os
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_REGISTRY_KEY = "chatrooms"
DEFAULT_ROOM_KEY_PREFIX = "chat:"


def _validate_scheme(v: str, valid_schemes: tuple[str, ...], label: str) -> str:
    if not v:
        raise ValueError(f"{label} cannot be empty")
    if not v.startswith(valid_schemes):
        raise ValueError(f"{label} must start with one of: {', '.join(valid_schemes)}")
    return v


class WriteStrategy(str, Enum):
    """How ``send_message`` writes to a room document.

    OVERWRITE: fetch the list, append locally, overwrite the key. Two
        concurrent senders can lose one message.
    APPEND: hand the new message to the store's append primitive.
    """

    OVERWRITE = "overwrite"
    APPEND = "append"


class TransportConfig(BaseModel):
    """Configuration for the request multiplexer.

    Attributes:
        url: WebSocket base URL of the store (ws:// or wss://)
        request_timeout: Seconds before an unanswered request fails
        connect_timeout: Seconds allowed for the WebSocket handshake
    """

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Store WebSocket URL")
    request_timeout: float = Field(
        default=DEFAULT_REQUEST_TIMEOUT,
        gt=0,
        description="Request timeout in seconds",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Handshake timeout in seconds",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        return _validate_scheme(v, ("ws://", "wss://"), "URL")


class ChatClientConfig(BaseModel):
    """Configuration for a chat session.

    Attributes:
        ws_url: WebSocket base URL of the store
        api_url: Base URL of the token-issuing endpoints
        identity: Sender name stamped on outgoing messages
        registry_key: Key holding the room registry
        room_key_prefix: Prefix of per-room document keys
        request_timeout: Seconds before an unanswered request fails
        write_strategy: How messages are written to room documents
    """

    model_config = ConfigDict(frozen=True)

    ws_url: str = Field(..., description="Store WebSocket URL")
    api_url: str = Field(..., description="Token endpoint base URL")
    identity: str = Field(default="Anonymous", description="Sender identity")
    registry_key: str = Field(default=DEFAULT_REGISTRY_KEY, min_length=1)
    room_key_prefix: str = Field(default=DEFAULT_ROOM_KEY_PREFIX, min_length=1)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    write_strategy: WriteStrategy = WriteStrategy.OVERWRITE

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        return _validate_scheme(v, ("ws://", "wss://"), "WebSocket URL")

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        return _validate_scheme(v, ("http://", "https://"), "API URL").rstrip("/")

    @field_validator("identity")
    @classmethod
    def validate_identity(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Identity cannot be empty")
        return v

    def room_key(self, room_id: str) -> str:
        """Return the document key for a room."""
        return f"{self.room_key_prefix}{room_id}"

    def transport_config(self) -> TransportConfig:
        return TransportConfig(url=self.ws_url, request_timeout=self.request_timeout)

    @classmethod
    def from_env(cls, **overrides: object) -> ChatClientConfig:
        """Build from KVCHAT_WS_URL, KVCHAT_API_URL and KVCHAT_IDENTITY."""
        values: dict[str, object] = {}
        if "KVCHAT_WS_URL" in os.environ:
            values["ws_url"] = os.environ["KVCHAT_WS_URL"]
        if "KVCHAT_API_URL" in os.environ:
            values["api_url"] = os.environ["KVCHAT_API_URL"]
        if "KVCHAT_IDENTITY" in os.environ:
            values["identity"] = os.environ["KVCHAT_IDENTITY"]
        values.update(overrides)
        return cls(**values)


class TokenServiceConfig(BaseModel):
    """Configuration for the token-issuing HTTP service.

    Attributes:
        host: Host to bind to
        port: Port to bind to
        store_base_url: REST base URL of the store (None for the in-memory store)
        store_api_key: API key sent as ``x-api-key``
    """

    model_config = ConfigDict(frozen=True)

    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=3000, ge=0, le=65535, description="Port to bind to")
    store_base_url: str | None = None
    store_api_key: str | None = None
    registry_key: str = DEFAULT_REGISTRY_KEY
    room_key_prefix: str = DEFAULT_ROOM_KEY_PREFIX

    @field_validator("store_base_url")
    @classmethod
    def validate_store_url(cls, v: str | None) -> str | None:
        if v is None:
            return v
        return _validate_scheme(v, ("http://", "https://"), "Store URL").rstrip("/")

    @classmethod
    def from_env(cls, **overrides: object) -> TokenServiceConfig:
        """Build from HPKV_BASE_URL and HPKV_API_KEY."""
        values: dict[str, object] = {
            "store_base_url": os.environ.get("HPKV_BASE_URL"),
            "store_api_key": os.environ.get("HPKV_API_KEY"),
        }
        values.update(overrides)
        return cls(**values)


class StoreServerConfig(BaseModel):
    """Configuration for the in-memory store WebSocket server."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=8080, ge=0, le=65535, description="Port to bind to (0 picks one)")
    path: str = Field(default="/ws", description="WebSocket endpoint path")
