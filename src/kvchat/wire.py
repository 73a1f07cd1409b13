"""Wire envelopes for the key-value store WebSocket protocol.

Three frame shapes travel over the socket:

- request  (client -> store): {"op", "key", "value", "messageId"}
- response (store -> client): {"key", "value", "messageId", "status"?, "error"?}
- push     (store -> client): {"type": "notification", "key", "value", "timestamp"}

A push is told apart from a response solely by its "type" field. Values are
opaque serialized strings at this layer; interpreting them is the job of
the document client.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Final

from kvchat.error import ParseError

NOTIFICATION_TYPE: Final[str] = "notification"


def is_int_not_bool(x: object) -> bool:
    """Check if x is an int but not a bool.

    bool is a subclass of int, so a stray ``true`` must not pass for id 1.
    """
    return isinstance(x, int) and not isinstance(x, bool)


class Operation(IntEnum):
    """Store operation codes."""

    GET = 1
    CREATE = 2
    APPEND = 3


@dataclass(frozen=True, slots=True)
class WireRequest:
    """Correlated request sent to the store."""

    op: Operation
    key: str
    message_id: int
    value: str | None = None

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        result: dict[str, Any] = {"op": int(self.op), "key": self.key}
        if self.op is not Operation.GET:
            result["value"] = self.value
        result["messageId"] = self.message_id
        return result

    def serialize(self) -> str:
        return json.dumps(self.to_json())

    @staticmethod
    def from_json(obj: Any) -> WireRequest:
        """Parse from JSON object (used by the in-memory store)."""
        if not isinstance(obj, dict):
            raise ParseError(f"Request must be an object, got {type(obj).__name__}")
        try:
            op = Operation(obj.get("op"))
        except ValueError as e:
            raise ParseError(f"Unknown operation: {obj.get('op')!r}") from e
        key = obj.get("key")
        if not isinstance(key, str):
            raise ParseError("Request key must be a string")
        message_id = obj.get("messageId")
        if not is_int_not_bool(message_id):
            raise ParseError("Request messageId must be an int")
        value = obj.get("value")
        if value is not None and not isinstance(value, str):
            raise ParseError("Request value must be a string or null")
        return WireRequest(op, key, message_id, value)


@dataclass(frozen=True, slots=True)
class WireResponse:
    """Response correlated to a request by message id."""

    key: str | None
    value: str | None
    message_id: int
    status: str | int | None = None
    error: str | None = None

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        result: dict[str, Any] = {
            "key": self.key,
            "value": self.value,
            "messageId": self.message_id,
        }
        if self.status is not None:
            result["status"] = self.status
        if self.error is not None:
            result["error"] = self.error
        return result

    @staticmethod
    def from_json(obj: dict[str, Any]) -> WireResponse:
        """Parse from JSON object."""
        message_id = obj.get("messageId")
        if not is_int_not_bool(message_id):
            raise ParseError(f"Response messageId must be an int, got {message_id!r}")
        value = obj.get("value")
        if value is not None and not isinstance(value, str):
            # Some stores hand back decoded JSON; keep the value serialized.
            value = json.dumps(value)
        error = obj.get("error")
        return WireResponse(
            key=obj.get("key"),
            value=value,
            message_id=message_id,
            status=obj.get("status"),
            error=str(error) if error else None,
        )


@dataclass(frozen=True, slots=True)
class WireNotification:
    """Unsolicited push announcing that a subscribed key changed."""

    key: str
    value: str | None
    timestamp: int = 0

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON object."""
        return {
            "type": NOTIFICATION_TYPE,
            "key": self.key,
            "value": self.value,
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_json(obj: dict[str, Any]) -> WireNotification:
        """Parse from JSON object."""
        key = obj.get("key")
        if not isinstance(key, str):
            raise ParseError("Notification key must be a string")
        value = obj.get("value")
        if value is not None and not isinstance(value, str):
            value = json.dumps(value)
        timestamp = obj.get("timestamp", 0)
        if not is_int_not_bool(timestamp):
            timestamp = 0
        return WireNotification(key, value, timestamp)


InboundFrame = WireResponse | WireNotification


def parse_inbound(data: str | bytes) -> InboundFrame:
    """Parse a frame received from the store.

    Raises:
        ParseError: If the frame is not JSON or has neither shape.
    """
    try:
        obj = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(f"Invalid JSON frame: {e}") from e
    if not isinstance(obj, dict):
        raise ParseError(f"Frame must be an object, got {type(obj).__name__}")
    if obj.get("type") == NOTIFICATION_TYPE:
        return WireNotification.from_json(obj)
    return WireResponse.from_json(obj)
