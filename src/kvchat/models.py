"""Room and message models and the JSON documents that hold them.

Field names on the wire follow the stored documents: a message's text is
stored as ``message`` and a room's display name as ``name``/``createdAt``.
Python code uses ``text``, ``display_name`` and ``created_at``.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any, ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kvchat.error import ParseError

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def new_message_id(timestamp: int) -> str:
    return f"msg_{timestamp}_{uuid.uuid4().hex[:9]}"


class Message(BaseModel):
    """A chat message. Immutable once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    sender: str
    text: str = Field(alias="message")
    timestamp: int
    id: str | None = None

    @classmethod
    def create(cls, sender: str, text: str) -> Message:
        """Build a new message stamped with the current time and a fresh id."""
        timestamp = now_ms()
        return cls(sender=sender, text=text, timestamp=timestamp, id=new_message_id(timestamp))

    def to_json(self) -> dict[str, object]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Room(BaseModel):
    """An entry in the room registry. Identity is ``id``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    display_name: str = Field(alias="name")
    created_at: int = Field(alias="createdAt")

    def to_json(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


class _Document(BaseModel):
    """A stored JSON object holding one list of entries.

    Reading is per entry: an entry of the wrong shape is skipped, the rest
    of the list survives. ``loads``/``raw_entries`` give write paths the
    stored entries untouched so they can be written back as they were.
    """

    model_config = ConfigDict(extra="ignore")

    entries_field: ClassVar[str]
    entry_model: ClassVar[type[BaseModel]]

    @classmethod
    def loads(cls, value: str | None) -> dict[str, Any]:
        """Decode a stored value into its JSON object.

        Raises:
            ParseError: The value is missing, not JSON, or not an object.
        """
        if value is None:
            raise ParseError(f"{cls.__name__} value is missing")
        try:
            obj = json.loads(value)
        except json.JSONDecodeError as e:
            raise ParseError(f"Malformed {cls.__name__}: {e}") from e
        if not isinstance(obj, dict):
            raise ParseError(f"{cls.__name__} must be an object, got {type(obj).__name__}")
        return obj

    @classmethod
    def raw_entries(cls, obj: dict[str, Any]) -> list[Any]:
        """Return the entry list of a decoded document without validating it.

        Raises:
            ParseError: The entry field is present but not a list.
        """
        entries = obj.get(cls.entries_field, [])
        if not isinstance(entries, list):
            raise ParseError(f"{cls.__name__}.{cls.entries_field} must be a list")
        return entries

    @classmethod
    def parse(cls, value: str | None) -> Self:
        """Parse a stored value, skipping entries of the wrong shape.

        Raises:
            ParseError: The document itself is unusable (see ``loads`` and
                ``raw_entries``).
        """
        valid = []
        for entry in cls.raw_entries(cls.loads(value)):
            try:
                valid.append(cls.entry_model.model_validate(entry))
            except ValidationError as e:
                logger.warning(
                    "Skipping malformed %s entry: %d error(s)", cls.entries_field, e.error_count()
                )
        return cls(**{cls.entries_field: valid})

    def serialize(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class RoomRegistry(_Document):
    """The single document listing every known room."""

    entries_field: ClassVar[str] = "chatrooms"
    entry_model: ClassVar[type[BaseModel]] = Room

    chatrooms: list[Room] = Field(default_factory=list)


class RoomDocument(_Document):
    """One room's ordered message list."""

    entries_field: ClassVar[str] = "messages"
    entry_model: ClassVar[type[BaseModel]] = Message

    messages: list[Message] = Field(default_factory=list)
