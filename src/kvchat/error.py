"""Error taxonomy for kvchat.

Every error raised by the synchronization core derives from KvChatError and
carries an ErrorCode, so callers can either catch the concrete subclass or
switch on ``error.code``.

Propagation rules:
- Transport and remote-store errors propagate to the immediate caller.
- ParseError is recovered locally on pushes and best-effort reads.
- Nothing is retried inside the core.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable error codes."""

    CONNECT = "connect"
    TOKEN = "token"
    TIMEOUT = "timeout"
    REMOTE = "remote"
    CONNECTION_CLOSED = "connection_closed"
    NOT_CONNECTED = "not_connected"
    PARSE = "parse"
    ALREADY_EXISTS = "already_exists"
    NO_ROOM_JOINED = "no_room_joined"


class KvChatError(Exception):
    """Base class for all kvchat errors."""

    code: ErrorCode = ErrorCode.REMOTE

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value!r}, {self.message!r})"


class ConnectError(KvChatError):
    """The socket could not be opened (handshake failure)."""

    code = ErrorCode.CONNECT


class TokenError(ConnectError):
    """The token collaborator refused or failed to mint a token."""

    code = ErrorCode.TOKEN


class RequestTimeout(KvChatError, TimeoutError):
    """No response arrived within the request budget."""

    code = ErrorCode.TIMEOUT

    def __init__(self, message: str, message_id: int | None = None) -> None:
        super().__init__(message)
        self.message_id = message_id


class RemoteError(KvChatError):
    """The store answered with an explicit error field."""

    code = ErrorCode.REMOTE

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.key = key


class ConnectionClosed(KvChatError):
    """The socket went away while a call was outstanding."""

    code = ErrorCode.CONNECTION_CLOSED


class NotConnected(KvChatError):
    """A request was attempted without an open socket."""

    code = ErrorCode.NOT_CONNECTED


class ParseError(KvChatError, ValueError):
    """A frame or stored document had an unexpected shape."""

    code = ErrorCode.PARSE


class AlreadyExists(KvChatError):
    """A room with the requested id is already registered."""

    code = ErrorCode.ALREADY_EXISTS

    def __init__(self, message: str, room_id: str | None = None) -> None:
        super().__init__(message)
        self.room_id = room_id


class NoRoomJoined(KvChatError):
    """The operation requires an active room session."""

    code = ErrorCode.NO_ROOM_JOINED
