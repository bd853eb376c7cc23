"""A joined room: timeline buffer, receipts, typing and reliable message sending."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from nachat.events import (
    Create,
    EventContent,
    MalformedEvent,
    Member,
    MemberContent,
    Message,
    Receipt as ReceiptEvent,
    Redaction,
    RoomEvent,
    Typing,
)
from nachat.http import Reply, Signal, decode
from nachat.ids import Direction, EventID, EventType, RoomID, TimelineCursor, TransactionID, UserID
from nachat.proto import JoinedRoom
from nachat.room_state import RoomState

log = logging.getLogger(__name__)

MINIMUM_BACKOFF = 5.0
"""Seconds to wait before the first retry of a failed send."""

MAXIMUM_BACKOFF = 30.0
"""Upper bound, in seconds, of the delay between send retries."""

Scheduler = Callable[[float, Callable[[], None]], Any]


def _default_scheduler(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


def _enc(component: str) -> str:
    return quote(component, safe="")


def _obj(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _num(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _reply_error(reply: Reply) -> str | None:
    """The transport or HTTP error of a reply, without looking at its body."""
    if reply.status_code == 0:
        return reply.error_string or "network error"
    if reply.status_code >= 400:
        return reply.error_string or f"HTTP {reply.status_code} {reply.reason}"
    return None


class _LatchedSignal(Signal):
    """A signal that remembers its emission and replays it to late listeners."""

    def __init__(self) -> None:
        super().__init__()
        self._fired: tuple[Any, ...] | None = None

    def connect(self, slot: Callable[..., Any]) -> None:
        super().connect(slot)
        if self._fired is not None:
            slot(*self._fired)

    def emit(self, *args: Any) -> None:
        self._fired = args
        super().emit(*args)


class MessageFetch:
    """Outcome of a timeline page request.

    ``finished`` is emitted with ``(start, end, events)``; ``error`` with a message.
    Listeners connected after completion are called immediately.
    """

    def __init__(self) -> None:
        self.finished = _LatchedSignal()
        self.error = _LatchedSignal()


class EventSend:
    """Outcome of a request that returns nothing of interest."""

    def __init__(self) -> None:
        self.finished = _LatchedSignal()
        self.error = _LatchedSignal()


@dataclass
class Batch:
    """A run of timeline events beginning at a pagination cursor."""

    begin: TimelineCursor
    events: list[RoomEvent] = field(default_factory=list)

    @classmethod
    def from_json(cls, obj: Mapping[str, Any]) -> Batch:
        begin = obj.get("begin")
        events = obj.get("events")
        return cls(
            TimelineCursor(begin if isinstance(begin, str) else ""),
            [RoomEvent(_obj(e)) for e in (events if isinstance(events, list) else [])],
        )

    def to_json(self) -> dict[str, Any]:
        return {"begin": self.begin.value, "events": [e.json for e in self.events]}


@dataclass(frozen=True, eq=False)
class Receipt:
    """A read receipt: the event read up to and when."""

    event: EventID
    ts: int


@dataclass
class PendingEvent:
    """An event queued for transmission."""

    transaction_id: TransactionID
    type: EventType
    content: EventContent


class Room:
    """A room the user has joined.

    The session must provide ``user_id``, ``buffer_size``, ``get(path, query)``,
    ``post(path, body, query)``, ``put(path, body)`` returning replies, and
    ``get_transaction_id()``.
    """

    def __init__(self, session: Any, room_id: RoomID) -> None:
        self._session = session
        self._id = room_id
        self._state = RoomState()
        self._buffer: deque[Batch] = deque()
        self._highlight_count = 0
        self._notification_count = 0
        self._receipts_by_event: dict[EventID, list[Receipt]] = {}
        self._receipts_by_user: dict[UserID, Receipt] = {}
        self._typing: list[UserID] = []
        self._pending_events: deque[PendingEvent] = deque()
        self._transmitting = False
        self._retry_backoff = MINIMUM_BACKOFF
        self.scheduler: Scheduler = _default_scheduler

        self.member_changed = Signal()
        self.member_disambiguation_changed = Signal()
        self.state_changed = Signal()
        self.highlight_count_changed = Signal()
        self.notification_count_changed = Signal()
        self.name_changed = Signal()
        self.canonical_alias_changed = Signal()
        self.aliases_changed = Signal()
        self.topic_changed = Signal()
        self.avatar_changed = Signal()
        self.typing_changed = Signal()
        self.receipts_changed = Signal()
        self.sync_start = Signal()
        self.sync_complete = Signal()
        self.prev_batch = Signal()
        self.message = Signal()
        self.redaction = Signal()
        self.error = Signal()
        self.left = Signal()

    @classmethod
    def from_json(
        cls,
        session: Any,
        room_id: RoomID,
        initial: Mapping[str, Any],
        members: Iterable[tuple[UserID, MemberContent]],
    ) -> Room:
        """Restore a room saved with ``to_json`` and its stored members."""
        room = cls(session, room_id)
        room._state = RoomState.from_json(_obj(initial.get("state")), members)
        buffer = initial.get("buffer")
        for item in buffer if isinstance(buffer, list) else []:
            batch = Batch.from_json(_obj(item))
            assert batch.events
            room._buffer.append(batch)
        room._highlight_count = int(_num(initial.get("highlight_count")))
        room._notification_count = int(_num(initial.get("notification_count")))
        for user, value in _obj(initial.get("receipts")).items():
            receipt = _obj(value)
            event_id = receipt.get("event_id")
            room._update_receipt(
                UserID(user),
                EventID(event_id if isinstance(event_id, str) else ""),
                int(_num(receipt.get("ts"))),
            )
        return room

    @classmethod
    def from_joined(cls, session: Any, joined_room: JoinedRoom) -> Room:
        """Create a room from its first appearance in a sync."""
        room = cls(session, joined_room.id)
        room.dispatch(joined_room)
        return room

    @property
    def session(self) -> Any:
        return self._session

    @property
    def id(self) -> RoomID:
        return self._id

    @property
    def state(self) -> RoomState:
        return self._state

    @property
    def highlight_count(self) -> int:
        return self._highlight_count

    @property
    def notification_count(self) -> int:
        return self._notification_count

    @property
    def buffer(self) -> deque[Batch]:
        return self._buffer

    @property
    def typing(self) -> tuple[UserID, ...]:
        return tuple(self._typing)

    @property
    def pending_events(self) -> tuple[PendingEvent, ...]:
        """Events not yet successfully transmitted."""
        return tuple(self._pending_events)

    def pretty_name(self) -> str:
        return self._state.pretty_name(self._session.user_id)

    def pretty_name_highlights(self) -> str:
        name = self.pretty_name()
        if self._highlight_count != 0:
            name += f" ({self._highlight_count})"
        return name

    def dispatch(self, joined: JoinedRoom) -> bool:
        """Apply a sync update; return whether room state changed."""
        state_touched = False
        timeline = joined.timeline

        self.sync_start.emit(timeline)

        for state in joined.state:
            try:
                state_touched |= self._state.dispatch(state, self)
            except MalformedEvent as exc:
                log.warning("%s ignoring malformed state: %s %s", self._id.value, exc, state.json)

        counts = joined.unread_notifications
        if counts.highlight_count != self._highlight_count:
            old, self._highlight_count = self._highlight_count, counts.highlight_count
            self.highlight_count_changed.emit(old)
        if counts.notification_count != self._notification_count:
            old, self._notification_count = self._notification_count, counts.notification_count
            self.notification_count_changed.emit(old)

        self.prev_batch.emit(timeline.prev_batch)

        for evt in timeline.events:
            self.message.emit(evt)

            if evt.type() == Redaction.TAG:
                try:
                    redaction = Redaction(evt)
                except MalformedEvent as exc:
                    log.warning("%s ignoring malformed redaction: %s %s", self.pretty_name(), exc, evt.json)
                else:
                    self.redaction.emit(redaction)

            if (
                self._state.member_from_id(evt.sender()) is None
                and evt.type() not in (Create.TAG, Member.TAG)
            ):
                log.warning("%s received event from non-member: %s", self.pretty_name(), evt.json)

            try:
                state = evt.to_state()
                if state is not None:
                    state_touched |= self._state.dispatch(state, self)
            except MalformedEvent as exc:
                log.warning("%s ignoring malformed state: %s %s", self._id.value, exc, evt.json)

        for evt in joined.ephemeral:
            if evt.type() == ReceiptEvent.TAG:
                for event_id, value in evt.content().json.items():
                    read = _obj(_obj(value).get("m.read"))
                    for user, info in read.items():
                        self._update_receipt(UserID(user), EventID(event_id), int(_num(_obj(info).get("ts"))))
                self.receipts_changed.emit()
            elif evt.type() == Typing.TAG:
                self._typing = Typing(evt).user_ids()
                self.typing_changed.emit()
            else:
                log.debug("Unrecognized ephemeral event type: %s", evt.type().value)

        if timeline.events:
            self._buffer.append(Batch(timeline.prev_batch, list(timeline.events)))
            total = sum(len(b.events) for b in self._buffer)
            while len(self._buffer) > 1 and total > self._session.buffer_size:
                total -= len(self._buffer.popleft().events)

        self.sync_complete.emit(timeline)

        if state_touched:
            self.state_changed.emit()
        return state_touched

    def to_json(self) -> dict[str, Any]:
        """Serialisable form of the room, excluding its member list."""
        return {
            "state": self._state.to_json(),
            "highlight_count": self._highlight_count,
            "notification_count": self._notification_count,
            "receipts": {
                user.value: {"event_id": r.event.value, "ts": r.ts}
                for user, r in self._receipts_by_user.items()
            },
            "buffer": [b.to_json() for b in self._buffer],
        }

    def _path(self, *parts: str) -> str:
        return "/".join(["client/r0/rooms", _enc(self._id.value), *parts])

    def get_messages(
        self,
        direction: Direction,
        start: TimelineCursor,
        limit: int = 0,
        end: TimelineCursor | None = None,
    ) -> MessageFetch:
        """Fetch a page of timeline events starting at ``start``."""
        query: list[tuple[str, str]] = [("from", start.value), ("dir", direction.value)]
        if limit != 0:
            query.append(("limit", str(limit)))
        if end is not None:
            query.append(("to", end.value))
        reply = self._session.get(self._path("messages"), query)

        fetch = MessageFetch()
        r = decode(reply)
        if r.error is not None:
            fetch.error.emit(r.error)
            return fetch

        cursors = []
        for key in ("start", "end"):
            value = r.object.get(key)
            if not isinstance(value, str):
                fetch.error.emit(f'invalid or missing "{key}" attribute in server\'s response')
                return fetch
            cursors.append(TimelineCursor(value))

        chunk = r.object.get("chunk")
        if not isinstance(chunk, list):
            fetch.error.emit('invalid or missing "chunk" attribute in server\'s response')
            return fetch
        try:
            events = [RoomEvent(_obj(v)) for v in chunk]
        except MalformedEvent as exc:
            fetch.error.emit(f"malformed event: {exc}")
            return fetch
        fetch.finished.emit(cursors[0], cursors[1], events)
        return fetch

    def leave(self) -> EventSend:
        """Leave the room."""
        reply = self._session.post(self._path("leave"), {}, None)
        result = EventSend()
        r = decode(reply)
        if r.error is not None:
            result.error.emit(r.error)
        else:
            result.finished.emit()
        return result

    def send(self, event_type: EventType, content: EventContent) -> TransactionID:
        """Queue an event for in-order, retried delivery."""
        pending = PendingEvent(self._session.get_transaction_id(), event_type, content)
        self._pending_events.append(pending)
        self._transmit_event()
        return pending.transaction_id

    def redact(self, event_id: EventID, reason: str = "") -> TransactionID:
        """Redact an event, optionally giving a reason."""
        txn = self._session.get_transaction_id()
        reply = self._session.put(
            self._path("redact", _enc(event_id.value), _enc(txn.value)),
            {"reason": reason} if reason else {},
        )
        failure = _reply_error(reply)
        if failure is not None:
            self.error.emit(failure)
        return txn

    def send_file(self, uri: str, name: str, media_type: str, size: int) -> TransactionID:
        return self.send(Message.TAG, EventContent({
            "msgtype": "m.file",
            "url": uri,
            "filename": name,
            "body": name,
            "info": {"mimetype": media_type, "size": size},
        }))

    def send_message(self, body: str) -> TransactionID:
        return self.send(Message.TAG, EventContent({"msgtype": "m.text", "body": body}))

    def send_emote(self, body: str) -> TransactionID:
        return self.send(Message.TAG, EventContent({"msgtype": "m.emote", "body": body}))

    def send_read_receipt(self, event_id: EventID) -> EventSend:
        """Mark everything up to ``event_id`` as read."""
        reply = self._session.post(self._path("receipt", "m.read", _enc(event_id.value)), {}, None)
        result = EventSend()
        result.error.connect(self.error.emit)
        failure = _reply_error(reply)
        if failure is not None:
            result.error.emit(failure)
        else:
            result.finished.emit()
        return result

    def receipts_for(self, event_id: EventID) -> tuple[Receipt, ...]:
        return tuple(self._receipts_by_event.get(event_id, ()))

    def receipt_from(self, user_id: UserID) -> Receipt | None:
        return self._receipts_by_user.get(user_id)

    def has_unread(self) -> bool:
        """Whether a message from someone else follows the user's read receipt."""
        own = self._session.user_id
        receipt = self.receipt_from(own)
        if receipt is None:
            return True
        for batch in reversed(self._buffer):
            for event in reversed(batch.events):
                if receipt.event == event.id():
                    return False
                if event.type() == Message.TAG and event.sender() != own:
                    return True
        return True

    def _update_receipt(self, user: UserID, event: EventID, ts: int) -> None:
        new = Receipt(event, ts)
        old = self._receipts_by_user.get(user)
        if old is not None:
            holders: Sequence[Receipt] | None = self._receipts_by_event.get(old.event)
            if holders is not None:
                remaining = [r for r in holders if r is not old]
                if remaining:
                    self._receipts_by_event[old.event] = remaining
                else:
                    del self._receipts_by_event[old.event]
        self._receipts_by_user[user] = new
        self._receipts_by_event.setdefault(event, []).append(new)

    def _transmit_event(self) -> None:
        if self._transmitting:
            return
        while self._pending_events:
            event = self._pending_events[0]
            self._transmitting = True
            try:
                reply = self._session.put(
                    self._path("send", _enc(event.type.value), _enc(event.transaction_id.value)),
                    event.content.json,
                )
            finally:
                self._transmitting = False
            r = decode(reply)
            if 400 <= r.code < 500 and r.code != 429:
                # Client errors other than rate limiting will never succeed.
                self._pending_events.popleft()
                self._retry_backoff = MINIMUM_BACKOFF
                self.error.emit(r.error)
            elif r.error is None:
                self._pending_events.popleft()
                self._retry_backoff = MINIMUM_BACKOFF
            else:
                log.debug("retrying send in %s seconds due to error: %s", self._retry_backoff, r.error)
                self.scheduler(self._retry_backoff, self._transmit_event)
                self._retry_backoff = min(MAXIMUM_BACKOFF, self._retry_backoff * 1.25)
                return