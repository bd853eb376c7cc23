"""Parsing of the sync response into typed records."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from nachat.events import Event, RoomEvent, State
from nachat.ids import RoomID, SyncCursor, TimelineCursor

_T = TypeVar("_T")


def _obj(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _arr(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _count(value: Any) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value)
    return 0


def _parse_array(value: Any, parse: Callable[[dict[str, Any]], _T]) -> list[_T]:
    return [parse(_obj(item)) for item in _arr(value)]


@dataclass
class Timeline:
    """A slice of a room's timeline delivered by a sync."""

    prev_batch: TimelineCursor
    limited: bool = False
    events: list[RoomEvent] = field(default_factory=list)


@dataclass
class UnreadNotifications:
    """Counts of unread notifications in a room."""

    highlight_count: int = 0
    notification_count: int = 0


@dataclass
class JoinedRoom:
    """Updates to a room the user has joined."""

    id: RoomID
    timeline: Timeline
    unread_notifications: UnreadNotifications = field(default_factory=UnreadNotifications)
    state: list[State] = field(default_factory=list)
    account_data: list[Event] = field(default_factory=list)
    ephemeral: list[Event] = field(default_factory=list)


@dataclass
class LeftRoom:
    """Updates to a room the user has left."""

    id: RoomID
    timeline: Timeline
    state: list[State] = field(default_factory=list)


@dataclass
class Rooms:
    """Per-room updates, grouped by the user's membership."""

    join: list[JoinedRoom] = field(default_factory=list)
    leave: list[LeftRoom] = field(default_factory=list)
    invite: list[list[Event]] = field(default_factory=list)


@dataclass
class Sync:
    """A whole sync response."""

    next_batch: SyncCursor
    presence: list[Event] = field(default_factory=list)
    rooms: Rooms = field(default_factory=Rooms)


def parse_timeline(value: Any) -> Timeline:
    """Parse a timeline object; missing parts take empty defaults."""
    o = _obj(value)
    limited = o.get("limited")
    return Timeline(
        prev_batch=TimelineCursor(_str(o.get("prev_batch"))),
        limited=limited if isinstance(limited, bool) else False,
        events=_parse_array(o.get("events"), RoomEvent),
    )


def parse_joined_room(room_id: str, value: Any) -> JoinedRoom:
    """Parse the update for one joined room."""
    o = _obj(value)
    room = JoinedRoom(RoomID(room_id), parse_timeline(o.get("timeline")))

    unread = _obj(o.get("unread_notifications"))
    room.unread_notifications = UnreadNotifications(
        highlight_count=_count(unread.get("highlight_count")),
        notification_count=_count(unread.get("notification_count")),
    )
    room.state = _parse_array(_obj(o.get("state")).get("events"), State)
    room.account_data = _parse_array(_obj(o.get("account_data")).get("events"), Event)
    room.ephemeral = _parse_array(_obj(o.get("ephemeral")).get("events"), Event)

    # Some servers repeat the last state event as the first timeline event.
    state_ids = {s.id() for s in room.state}
    if room.timeline.events and room.timeline.events[0].id() in state_ids:
        room.timeline.events = room.timeline.events[1:]

    return room


def parse_sync(value: Any) -> Sync:
    """Parse a complete sync response."""
    o = _obj(value)
    sync = Sync(SyncCursor(_str(o.get("next_batch"))))

    rooms = _obj(o.get("rooms"))
    sync.rooms.join = [
        parse_joined_room(room_id, room) for room_id, room in _obj(rooms.get("join")).items()
    ]
    sync.rooms.leave = [
        LeftRoom(RoomID(room_id), parse_timeline(_obj(room).get("timeline")))
        for room_id, room in _obj(rooms.get("leave")).items()
    ]

    sync.presence = _parse_array(_obj(o.get("presence")).get("events"), Event)
    return sync