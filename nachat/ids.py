"""Typed identifiers used throughout the chat protocol."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

_MASK64 = (1 << 64) - 1
_FACTOR = 0x9DDFEA08EB382D69


class Direction(enum.Enum):
    """Direction in which a timeline is traversed."""

    FORWARD = "f"
    BACKWARD = "b"


def hash_combine(seed: int, value: Any) -> int:
    """Mix ``value`` into ``seed``, producing an unsigned 64-bit hash."""
    v = value if isinstance(value, int) else hash(value)
    seed &= _MASK64
    a = (((v & _MASK64) ^ seed) * _FACTOR) & _MASK64
    a ^= a >> 47
    b = ((seed ^ a) * _FACTOR) & _MASK64
    b ^= b >> 47
    return (b * _FACTOR) & _MASK64


@dataclass(frozen=True, order=True)
class ID:
    """A string identifier; identifiers of different kinds never compare equal."""

    value: str

    def __str__(self) -> str:
        return self.value


class TransactionID(ID):
    """Client-chosen identifier of an outgoing event."""


class TimelineCursor(ID):
    """Pagination token within a room timeline."""


class SyncCursor(ID):
    """Token marking a position in the sync stream."""


class EventID(ID):
    """Server-assigned identifier of an event."""


class RoomID(ID):
    """Identifier of a room."""


class EventType(ID):
    """The ``type`` of an event, such as ``m.room.message``."""


class MessageType(ID):
    """The ``msgtype`` of a message, such as ``m.text``."""


class StateKey(ID):
    """The ``state_key`` of a state event."""


class UserID(ID):
    """Identifier of a user."""


@dataclass(frozen=True)
class StateID:
    """Identifies a piece of room state by event type and state key."""

    type: EventType
    key: StateKey

    def __hash__(self) -> int:
        return hash_combine(hash(self.type), self.key)