"""A sliding window over a room's timeline, with the room state at both edges."""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from typing import Any

from nachat.events import Create, RoomEvent
from nachat.http import Signal
from nachat.ids import Direction, TimelineCursor
from nachat.proto import Timeline
from nachat.room import Batch
from nachat.room_state import RoomState

log = logging.getLogger(__name__)

BATCH_SIZE = 50
"""Number of events requested per page."""

RETRY_INTERVAL = 1.0
"""Seconds to wait before retrying a failed page request."""

Scheduler = Callable[[float, Callable[[], None]], Any]


def _default_scheduler(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


def _copy_batch(batch: Batch) -> Batch:
    return Batch(batch.begin, list(batch.events))


def _revert_batch(state: RoomState, batch: Batch) -> None:
    for event in reversed(batch.events):
        s = event.to_state()
        if s is not None:
            state.revert(s)


def _apply_batch(state: RoomState, batch: Batch) -> None:
    for event in batch.events:
        s = event.to_state()
        if s is not None:
            state.apply(s)


class TimelineWindow:
    """A contiguous run of batches together with the room state before and after it.

    Methods taking a ``manager`` accept an object with a ``grow(direction)``
    method and the signals ``grew`` and ``discontinuity``.
    """

    def __init__(self, batches: Iterable[Batch], final_state: RoomState) -> None:
        self._batches: deque[Batch] = deque(_copy_batch(b) for b in batches)
        if not self._batches:
            raise ValueError("timeline window must be construct from at least one batch")
        self._initial_state = final_state.copy()
        self._final_state = final_state.copy()
        self._batches_end: TimelineCursor | None = None
        self._sync_batch = _copy_batch(self._batches[-1])
        for batch in reversed(self._batches):
            _revert_batch(self._initial_state, batch)

    @property
    def initial_state(self) -> RoomState:
        return self._initial_state

    @property
    def final_state(self) -> RoomState:
        return self._final_state

    @property
    def batches(self) -> tuple[Batch, ...]:
        return tuple(self._batches)

    def discard(self, cursor: TimelineCursor, direction: Direction) -> None:
        """Drop every batch beyond the one beginning at ``cursor`` in ``direction``."""
        if direction is Direction.FORWARD:
            for position, batch in reversed(list(enumerate(self._batches))):
                if batch.begin == cursor:
                    if position + 1 < len(self._batches):
                        self._batches_end = self._batches[position + 1].begin
                    while len(self._batches) > position + 1:
                        self._batches.pop()
                    return
                _revert_batch(self._final_state, batch)
        else:
            for position, batch in enumerate(list(self._batches)):
                if batch.begin == cursor:
                    for _ in range(position):
                        self._batches.popleft()
                    return
                _apply_batch(self._initial_state, batch)
        log.critical("timeline window tried to discard unknown batch %s", cursor.value)

    def at_start(self) -> bool:
        """Whether the window reaches the creation of the room."""
        return self._batches[0].events[0].type() == Create.TAG

    def at_end(self) -> bool:
        """Whether the window reaches the latest sync."""
        return not self._batches or self._sync_batch.begin == self._batches[-1].begin

    def begin(self) -> TimelineCursor:
        return self._batches[0].begin

    def end(self) -> TimelineCursor | None:
        """Cursor past the last batch, or None if the window includes the present."""
        return self._batches_end

    def sync_begin(self) -> TimelineCursor:
        return self._sync_batch.begin

    def prepend_batch(
        self,
        start: TimelineCursor,
        end: TimelineCursor,
        reversed_events: Sequence[RoomEvent],
        manager: Any,
    ) -> None:
        """Add a page fetched backwards, whose events arrive newest first."""
        # Start and end are swapped for backwards fetches, so begin matches start.
        if start != self.begin():
            manager.grow(Direction.BACKWARD)
            return
        if not reversed_events:
            return

        batch = Batch(end, list(reversed(reversed_events)))
        self._batches.appendleft(batch)
        for event in reversed(batch.events):
            s = event.to_state()
            if s is not None:
                self._initial_state.revert(s)
            manager.grew.emit(Direction.BACKWARD, start, self._initial_state, event)

    def append_batch(
        self,
        start: TimelineCursor,
        end: TimelineCursor,
        events: Sequence[RoomEvent],
        manager: Any,
    ) -> None:
        """Add a page fetched forwards."""
        current_end = self.end()
        if current_end is None or start != current_end:
            if current_end is not None:
                manager.grow(Direction.FORWARD)
            return

        new_batches = 0
        if events:
            self._batches.append(Batch(start, list(events)))
            self._batches_end = end
            new_batches += 1

        if len(events) < BATCH_SIZE:
            self._batches.append(_copy_batch(self._sync_batch))
            self._batches_end = None
            new_batches += 1

        added = list(self._batches)[len(self._batches) - new_batches:]
        for batch in added:
            for event in batch.events:
                manager.grew.emit(Direction.FORWARD, self._batches[-1].begin, self._final_state, event)
                s = event.to_state()
                if s is not None:
                    self._final_state.apply(s)

    def append_sync(self, timeline: Timeline, manager: Any) -> None:
        """Take in the timeline of a new sync."""
        if not timeline.events:
            return

        if self.at_end():
            if timeline.limited:
                self._batches.clear()
            self._batches.append(Batch(timeline.prev_batch, list(timeline.events)))

        self._sync_batch = Batch(timeline.prev_batch, list(timeline.events))

        if self.at_end():
            if timeline.limited:
                manager.discontinuity.emit()
            for event in self._sync_batch.events:
                manager.grew.emit(Direction.FORWARD, self._sync_batch.begin, self._final_state, event)
                s = event.to_state()
                if s is not None:
                    self._final_state.apply(s)

    def reset(self, current_state: RoomState) -> None:
        """Discard all but the latest sync batch."""
        self._batches.clear()
        self._batches.append(_copy_batch(self._sync_batch))
        self._batches_end = None
        self._final_state = current_state.copy()
        self._initial_state = current_state.copy()
        _revert_batch(self._initial_state, self._sync_batch)


class TimelineManager:
    """Keeps a timeline window of a room filled by paging and syncing.

    ``grew`` is emitted with ``(direction, begin, state, event)`` for every
    event entering the window; ``discontinuity`` when a sync skipped events.
    """

    def __init__(self, room: Any, scheduler: Scheduler | None = None) -> None:
        self._room = room
        self._window = TimelineWindow(room.buffer, room.state)
        self._forward_req: Any = None
        self._backward_req: Any = None
        self._retry_pending = False
        self._retry_dir = Direction.FORWARD
        self.scheduler: Scheduler = scheduler or _default_scheduler

        self.grew = Signal()
        self.discontinuity = Signal()

        room.sync_complete.connect(self._batch)

    @property
    def window(self) -> TimelineWindow:
        return self._window

    def grow(self, direction: Direction) -> None:
        """Request another page in ``direction`` unless one is already pending."""
        end: TimelineCursor | None = None
        if direction is Direction.FORWARD:
            if self._forward_req is not None or self._window.at_end():
                return
            start = self._window.end()
            end = self._window.sync_begin()
        else:
            if self._backward_req is not None or self._window.at_start():
                return
            start = self._window.begin()

        if start is None:
            raise RuntimeError("tried to grow from an undefined cursor")

        reply = self._room.get_messages(direction, start, BATCH_SIZE, end)
        if direction is Direction.FORWARD:
            self._forward_req = reply
            reply.finished.connect(self._got_forward)
            reply.error.connect(self._forward_fetch_error)
        else:
            self._backward_req = reply
            reply.finished.connect(self._got_backward)
            reply.error.connect(self._backward_fetch_error)

    def replay(self) -> None:
        """Emit ``grew`` for every event in the window, oldest first."""
        state = self._window.initial_state.copy()
        for batch in self._window.batches:
            for event in batch.events:
                self.grew.emit(Direction.FORWARD, batch.begin, state, event)
                s = event.to_state()
                if s is not None:
                    state.apply(s)

    def _retry(self) -> None:
        self._retry_pending = False
        self.grow(self._retry_dir)

    def _error(self, direction: Direction, message: str) -> None:
        log.warning("%s retrying timeline fetch due to error: %s", self._room.pretty_name(), message)
        self._retry_dir = direction
        if not self._retry_pending:
            self._retry_pending = True
            self.scheduler(RETRY_INTERVAL, self._retry)

    def _forward_fetch_error(self, message: str) -> None:
        self._forward_req = None
        self._error(Direction.BACKWARD, message)

    def _backward_fetch_error(self, message: str) -> None:
        self._backward_req = None
        self._error(Direction.FORWARD, message)

    def _got_backward(
        self, start: TimelineCursor, end: TimelineCursor, reversed_events: Sequence[RoomEvent]
    ) -> None:
        self._backward_req = None
        self._window.prepend_batch(start, end, reversed_events, self)

    def _got_forward(
        self, start: TimelineCursor, end: TimelineCursor, events: Sequence[RoomEvent]
    ) -> None:
        self._forward_req = None
        self._window.append_batch(start, end, events, self)

    def _batch(self, timeline: Timeline) -> None:
        self._window.append_sync(timeline, self)