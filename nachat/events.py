"""Validated views of protocol events and their contents."""

from __future__ import annotations

import enum
from collections.abc import Iterable, Mapping
from typing import Any, ClassVar

from nachat.ids import EventID, EventType, MessageType, TransactionID, UserID


class JsonType(enum.Enum):
    """The kind of a JSON value."""

    NULL = 0
    BOOL = 1
    DOUBLE = 2
    STRING = 3
    ARRAY = 4
    OBJECT = 5
    UNDEFINED = 0x80

    @classmethod
    def of(cls, value: Any) -> JsonType:
        """Classify a decoded JSON value."""
        if value is None:
            return cls.NULL
        if isinstance(value, bool):
            return cls.BOOL
        if isinstance(value, (int, float)):
            return cls.DOUBLE
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, (list, tuple)):
            return cls.ARRAY
        if isinstance(value, Mapping):
            return cls.OBJECT
        return cls.UNDEFINED


class MalformedEvent(ValueError):
    """An event's JSON does not have the required shape."""


class TypeMismatch(ValueError):
    """An event was refined into a class whose type tag it does not carry."""

    def __init__(self) -> None:
        super().__init__('event has incorrect "type" field')


class MissingField(MalformedEvent):
    """A required field is absent."""

    def __init__(self, field: str) -> None:
        super().__init__("event missing required field")
        self.field = field


class IllTypedField(MalformedEvent):
    """A field holds a value of the wrong JSON type."""

    def __init__(self, field: str, expected: JsonType, actual: JsonType) -> None:
        super().__init__("event field had wrong type")
        self.field = field
        self.expected = expected
        self.actual = actual


class Membership(enum.Enum):
    """A user's membership state in a room."""

    INVITE = "invite"
    JOIN = "join"
    LEAVE = "leave"
    BAN = "ban"

    def __str__(self) -> str:
        return self.value


def membership_displayable(membership: Membership) -> bool:
    """Whether a membership takes part in room naming."""
    return membership in (Membership.JOIN, Membership.INVITE)


def parse_membership(value: str) -> Membership:
    """Parse a membership string, raising MalformedEvent if unknown."""
    try:
        return Membership(value)
    except ValueError:
        raise MalformedEvent("unrecognized membership value") from None


# (key in the object, name reported in errors, expected type, required)
_Field = tuple[str, str, JsonType, bool]


def _check(obj: Mapping[str, Any], fields: Iterable[_Field]) -> None:
    for real_name, name, expected, required in fields:
        if real_name in obj:
            value = obj[real_name]
            actual = JsonType.of(value)
            if (required or value is not None) and actual is not expected:
                raise IllTypedField(name, expected, actual)
        elif required:
            raise MissingField(name)


def _f(name: str, expected: JsonType, required: bool = True, *, report: str | None = None) -> _Field:
    return (name, report or name, expected, required)


def _to_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _to_object(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _to_array(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _to_double(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _nonempty_str(obj: Mapping[str, Any], key: str) -> str | None:
    value = obj.get(key)
    if value is None or _to_str(value) == "":
        return None
    return _to_str(value)


class EventContent:
    """The ``content`` object of an event."""

    def __init__(self, source: Mapping[str, Any] | EventContent) -> None:
        self._json: dict[str, Any] = dict(source.json if isinstance(source, EventContent) else source)

    @property
    def json(self) -> dict[str, Any]:
        return self._json

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EventContent):
            return NotImplemented
        return self._json == other._json

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._json!r})"


class UnsignedData:
    """The server-supplied ``unsigned`` section of an event."""

    def __init__(self, obj: Mapping[str, Any]) -> None:
        self._json: dict[str, Any] = dict(obj)
        _check(self._json, [
            _f("age", JsonType.DOUBLE, False, report="unsigned.age"),
            _f("redacted_because", JsonType.OBJECT, False, report="unsigned.redacted_because"),
        ])
        self._redacted_because: Redaction | None = None
        if "redacted_because" in self._json:
            self._redacted_because = Redaction(_to_object(self._json["redacted_because"]))

    @property
    def json(self) -> dict[str, Any]:
        return self._json

    def age(self) -> int | None:
        if "age" in self._json:
            return int(_to_double(self._json["age"]))
        return None

    def transaction_id(self) -> TransactionID | None:
        if "transaction_id" in self._json:
            return TransactionID(_to_str(self._json["transaction_id"]))
        return None

    def redacted_because(self) -> Redaction | None:
        return self._redacted_because

    def redacted(self) -> bool:
        return self._redacted_because is not None


_PRESERVED_KEYS = frozenset(
    {"event_id", "type", "room_id", "sender", "state_key", "prev_content", "content"}
)


class Event:
    """A generic event; subclasses add validation and typed accessors."""

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        self._json: dict[str, Any] = dict(source.json if isinstance(source, Event) else source)
        _check(self._json, [
            _f("content", JsonType.OBJECT),
            _f("type", JsonType.STRING),
            _f("unsigned", JsonType.OBJECT, False),
        ])
        self._unsigned: UnsignedData | None = None
        if "unsigned" in self._json:
            self._unsigned = UnsignedData(_to_object(self._json["unsigned"]))

    @property
    def json(self) -> dict[str, Any]:
        return self._json

    def content(self) -> EventContent:
        return EventContent(_to_object(self._json.get("content")))

    def type(self) -> EventType:
        return EventType(_to_str(self._json.get("type")))

    def unsigned_data(self) -> UnsignedData | None:
        return self._unsigned

    def redacted(self) -> bool:
        return self._unsigned is not None and self._unsigned.redacted()

    def redact(self, because: Redaction) -> None:
        """Strip the event down to what survives a redaction."""
        event_type = Event.type(self)
        self._json = {k: v for k, v in self._json.items() if k in _PRESERVED_KEYS}
        keys = _CONTENT_RULES.get(event_type)
        if keys is not None:
            content = _to_object(self._json.pop("content", None))
            self._json["content"] = {k: v for k, v in content.items() if k in keys}
        self._json["unsigned"] = {"redacted_because": because.json}
        self._unsigned = UnsignedData(self._json["unsigned"])

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._json!r})"


class Receipt(Event):
    """A read-receipt ephemeral event."""

    TAG: ClassVar[EventType] = EventType("m.receipt")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        if Event.type(self) != self.TAG:
            raise TypeMismatch()


class Typing(Event):
    """A typing-notification ephemeral event."""

    TAG: ClassVar[EventType] = EventType("m.typing")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        if Event.type(self) != self.TAG:
            raise TypeMismatch()
        _check(Event.content(self).json, [_f("user_ids", JsonType.ARRAY, report="content.user_ids")])

    def user_ids(self) -> list[UserID]:
        return [UserID(_to_str(x)) for x in _to_array(Event.content(self).json.get("user_ids"))]


class Identifiable(Event):
    """An event carrying an ``event_id``."""

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        _check(self._json, [_f("event_id", JsonType.STRING)])

    def id(self) -> EventID:
        return EventID(_to_str(self._json.get("event_id")))


class RoomEvent(Identifiable):
    """An event that belongs to a room timeline."""

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        _check(self._json, [_f("sender", JsonType.STRING)])
        if self.redacted():
            return
        _check(self._json, [
            _f("origin_server_ts", JsonType.DOUBLE),
            _f("unsigned", JsonType.OBJECT, False),
        ])

    def sender(self) -> UserID:
        return UserID(_to_str(self._json.get("sender")))

    def origin_server_ts(self) -> int:
        return int(_to_double(self._json.get("origin_server_ts")))

    def to_state(self) -> State | None:
        """This event as a state event, or None if it has no state key."""
        if "state_key" in self._json:
            return State(self)
        return None


class MessageContent(EventContent):
    """Content of an ``m.room.message`` event."""

    def __init__(self, source: Mapping[str, Any] | EventContent) -> None:
        super().__init__(source)
        _check(self._json, [
            _f("msgtype", JsonType.STRING, report="content.msgtype"),
            _f("body", JsonType.STRING, report="content.body"),
        ])

    @classmethod
    def _empty(cls) -> MessageContent:
        obj = cls.__new__(cls)
        obj._json = {}
        return obj

    def body(self) -> str:
        return _to_str(self._json.get("body"))

    def msgtype(self) -> MessageType:
        return MessageType(_to_str(self._json.get("msgtype")))


class Message(RoomEvent):
    """An ``m.room.message`` event."""

    TAG: ClassVar[EventType] = EventType("m.room.message")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        if Event.type(self) != self.TAG:
            raise TypeMismatch()
        if self.redacted():
            self._content = MessageContent._empty()
        else:
            self._content = MessageContent(Event.content(self))

    def content(self) -> MessageContent:
        return self._content


class _TaggedMessage(MessageContent):
    TAG: ClassVar[MessageType]

    def __init__(self, source: Mapping[str, Any] | EventContent) -> None:
        super().__init__(source)
        if self.msgtype() != self.TAG:
            raise TypeMismatch()


class Text(_TaggedMessage):
    """Plain text message content."""

    TAG: ClassVar[MessageType] = MessageType("m.text")


class Emote(_TaggedMessage):
    """Emote message content."""

    TAG: ClassVar[MessageType] = MessageType("m.emote")


class Notice(_TaggedMessage):
    """Notice message content."""

    TAG: ClassVar[MessageType] = MessageType("m.notice")


class FileLike(MessageContent):
    """Message content referring to uploaded media."""

    def __init__(self, source: Mapping[str, Any] | EventContent) -> None:
        super().__init__(source)
        _check(self._json, [_f("url", JsonType.STRING)])
        raw = self._json.get("info")
        if raw is None:
            return
        info = _to_object(raw)
        for key, expected in (("mimetype", JsonType.STRING), ("size", JsonType.DOUBLE)):
            if key in info:
                actual = JsonType.of(info[key])
                if actual not in (expected, JsonType.NULL):
                    raise IllTypedField(f"info.{key}", expected, actual)

    def info(self) -> dict[str, Any]:
        return _to_object(self._json.get("info"))

    def mimetype(self) -> str | None:
        value = self.info().get("mimetype")
        return None if value is None else _to_str(value)

    def size(self) -> int | None:
        value = self.info().get("size")
        return None if value is None else int(_to_double(value))

    def url(self) -> str:
        return _to_str(self._json.get("url"))


class File(FileLike):
    """Generic file message content."""

    TAG: ClassVar[MessageType] = MessageType("m.file")

    def __init__(self, source: Mapping[str, Any] | EventContent) -> None:
        super().__init__(source)
        if self.msgtype() != self.TAG:
            raise TypeMismatch()
        _check(self._json, [_f("filename", JsonType.STRING)])

    def filename(self) -> str:
        return _to_str(self._json.get("filename"))


class _TaggedFile(FileLike):
    TAG: ClassVar[MessageType]

    def __init__(self, source: Mapping[str, Any] | EventContent) -> None:
        super().__init__(source)
        if self.msgtype() != self.TAG:
            raise TypeMismatch()


class Image(_TaggedFile):
    """Image message content."""

    TAG: ClassVar[MessageType] = MessageType("m.image")


class Video(_TaggedFile):
    """Video message content."""

    TAG: ClassVar[MessageType] = MessageType("m.video")


class Audio(_TaggedFile):
    """Audio message content."""

    TAG: ClassVar[MessageType] = MessageType("m.audio")


class State(RoomEvent):
    """A room state event."""

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        _check(self._json, [_f("state_key", JsonType.STRING)])

    def state_key(self) -> str:
        return _to_str(self._json.get("state_key"))

    def prev_content(self) -> EventContent | None:
        unsigned = self.unsigned_data()
        if unsigned is None:
            return None
        value = unsigned.json.get("prev_content")
        if value is None:
            return None
        return EventContent(_to_object(value))


class MemberContent(EventContent):
    """Content of an ``m.room.member`` event."""

    LEAVE: ClassVar[MemberContent]

    def __init__(self, source: Mapping[str, Any] | EventContent) -> None:
        super().__init__(source)
        _check(self._json, [
            _f("membership", JsonType.STRING, report="content.membership"),
            _f("avatar_url", JsonType.STRING, False, report="content.avatar_url"),
            _f("displayname", JsonType.STRING, False, report="content.displayname"),
        ])
        self._membership = parse_membership(_to_str(self._json["membership"]))
        self._avatar_url = _nonempty_str(self._json, "avatar_url")
        self._displayname = _nonempty_str(self._json, "displayname")

    @classmethod
    def create(
        cls, membership: Membership, displayname: str | None, avatar_url: str | None
    ) -> MemberContent:
        """Build member content from its parts."""
        obj = cls.__new__(cls)
        obj._json = {
            "membership": membership.value,
            "displayname": displayname,
            "avatar_url": avatar_url,
        }
        obj._membership = membership
        obj._displayname = displayname
        obj._avatar_url = avatar_url
        return obj

    def membership(self) -> Membership:
        return self._membership

    def avatar_url(self) -> str | None:
        return self._avatar_url

    def displayname(self) -> str | None:
        return self._displayname


MemberContent.LEAVE = MemberContent({"membership": "leave"})


class Member(State):
    """An ``m.room.member`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.member")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        self._content = MemberContent(Event.content(self))
        if Event.type(self) != self.TAG:
            raise TypeMismatch()
        prev = State.prev_content(self)
        self._prev_content = MemberContent(prev) if prev is not None else None

    def user(self) -> UserID:
        return UserID(self.state_key())

    def content(self) -> MemberContent:
        return self._content

    def prev_content(self) -> MemberContent | None:
        return self._prev_content

    def redact(self, because: Redaction) -> None:
        super().redact(because)
        self._content = MemberContent(Event.content(self))


class NameContent(EventContent):
    """Content of an ``m.room.name`` event."""

    def name(self) -> str | None:
        return _nonempty_str(self._json, "name")


class Name(State):
    """An ``m.room.name`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.name")

    def content(self) -> NameContent:
        return NameContent(Event.content(self))

    def prev_content(self) -> NameContent | None:
        prev = State.prev_content(self)
        return NameContent(prev) if prev is not None else None


class Aliases(State):
    """An ``m.room.aliases`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.aliases")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        _check(Event.content(self).json, [_f("aliases", JsonType.ARRAY, report="content.aliases")])

    def aliases(self) -> list[Any]:
        return _to_array(Event.content(self).json.get("aliases"))

    def prev_aliases(self) -> list[Any] | None:
        prev = self.prev_content()
        return _to_array(prev.json.get("aliases")) if prev is not None else None


class CanonicalAlias(State):
    """An ``m.room.canonical_alias`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.canonical_alias")

    def alias(self) -> str | None:
        return _nonempty_str(Event.content(self).json, "alias")

    def prev_alias(self) -> str | None:
        prev = self.prev_content()
        return _nonempty_str(prev.json, "alias") if prev is not None else None


class Topic(State):
    """An ``m.room.topic`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.topic")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        if self.redacted():
            return
        _check(Event.content(self).json, [_f("topic", JsonType.STRING, report="content.topic")])

    def topic(self) -> str:
        return _to_str(Event.content(self).json.get("topic"))

    def prev_topic(self) -> str | None:
        prev = self.prev_content()
        return _to_str(prev.json.get("topic")) if prev is not None else None


class Avatar(State):
    """An ``m.room.avatar`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.avatar")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        if self.redacted():
            return
        _check(Event.content(self).json, [_f("url", JsonType.STRING, report="content.url")])

    def avatar(self) -> str:
        return _to_str(Event.content(self).json.get("url"))

    def prev_avatar(self) -> str | None:
        prev = self.prev_content()
        return _to_str(prev.json.get("url")) if prev is not None else None


class Create(State):
    """An ``m.room.create`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.create")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        _check(Event.content(self).json, [_f("creator", JsonType.STRING, report="content.create")])

    def creator(self) -> UserID:
        return UserID(_to_str(Event.content(self).json.get("creator")))

    def prev_creator(self) -> UserID | None:
        prev = self.prev_content()
        return UserID(_to_str(prev.json.get("creator"))) if prev is not None else None


class JoinRules(State):
    """An ``m.room.join_rules`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.join_rules")


class PowerLevels(State):
    """An ``m.room.power_levels`` state event."""

    TAG: ClassVar[EventType] = EventType("m.room.power_levels")


class RedactionContent(EventContent):
    """Content of an ``m.room.redaction`` event."""

    def reason(self) -> str | None:
        return _nonempty_str(self._json, "reason")


class Redaction(RoomEvent):
    """An ``m.room.redaction`` event."""

    TAG: ClassVar[EventType] = EventType("m.room.redaction")

    def __init__(self, source: Mapping[str, Any] | Event) -> None:
        super().__init__(source)
        if self.redacted():
            return
        _check(self._json, [_f("redacts", JsonType.STRING)])
        _check(Event.content(self).json, [_f("reason", JsonType.STRING, False, report="content.reason")])

    def redacts(self) -> EventID:
        return EventID(_to_str(self._json.get("redacts")))

    def content(self) -> RedactionContent:
        return RedactionContent(Event.content(self))


# Content keys that survive redaction, by event type.
_CONTENT_RULES: dict[EventType, frozenset[str]] = {
    Member.TAG: frozenset({"membership"}),
    Create.TAG: frozenset({"creator"}),
    JoinRules.TAG: frozenset({"join_rule"}),
    PowerLevels.TAG: frozenset({
        "ban", "events", "events_default", "kick", "redact",
        "state_default", "users", "users_default",
    }),
    Aliases.TAG: frozenset({"aliases"}),
}