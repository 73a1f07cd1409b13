"""kvchat - chat rooms replicated over a key-value store with push notifications.

This package provides the client synchronization core: a request/response
multiplexer over one WebSocket, a notification router, a document sync
client for rooms and messages, and the session lifecycle tying them to
capability tokens.
"""

from kvchat.config import (
    ChatClientConfig,
    StoreServerConfig,
    TokenServiceConfig,
    TransportConfig,
    WriteStrategy,
)
from kvchat.error import (
    AlreadyExists,
    ConnectError,
    ConnectionClosed,
    ErrorCode,
    KvChatError,
    NoRoomJoined,
    NotConnected,
    ParseError,
    RemoteError,
    RequestTimeout,
    TokenError,
)
from kvchat.wire import Operation, WireNotification, WireRequest, WireResponse
from kvchat.router import NotificationRouter
from kvchat.transport import KvTransport, WebSocketClientTransport, websocket_connector
from kvchat.multiplexer import Multiplexer, TransportState
from kvchat.models import Message, Room, RoomDocument, RoomRegistry
from kvchat.documents import DocumentSyncClient
from kvchat.tokens import HttpTokenProvider, TokenProvider
from kvchat.session import ChatSession, SessionState
from kvchat.memory_store import InMemoryKvStore, KvStoreServer
from kvchat.rest_client import HpkvRestClient
from kvchat.token_service import InMemoryStoreBackend, TokenService, create_backend

__version__ = "0.1.0"

__all__ = [
    # Configuration (Pydantic models)
    "ChatClientConfig",
    "StoreServerConfig",
    "TokenServiceConfig",
    "TransportConfig",
    "WriteStrategy",
    # Errors
    "KvChatError",
    "ErrorCode",
    "AlreadyExists",
    "ConnectError",
    "ConnectionClosed",
    "NoRoomJoined",
    "NotConnected",
    "ParseError",
    "RemoteError",
    "RequestTimeout",
    "TokenError",
    # Wire format
    "Operation",
    "WireNotification",
    "WireRequest",
    "WireResponse",
    # Synchronization core
    "NotificationRouter",
    "KvTransport",
    "WebSocketClientTransport",
    "websocket_connector",
    "Multiplexer",
    "TransportState",
    "Message",
    "Room",
    "RoomDocument",
    "RoomRegistry",
    "DocumentSyncClient",
    # Sessions
    "TokenProvider",
    "HttpTokenProvider",
    "ChatSession",
    "SessionState",
    # Development store and token endpoints
    "InMemoryKvStore",
    "KvStoreServer",
    "InMemoryStoreBackend",
    "TokenService",
    "HpkvRestClient",
    "create_backend",
]
