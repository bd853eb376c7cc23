# nachat

A client library for the Matrix chat protocol. It covers:

- **Identifiers**: typed wrappers such as `UserID`, `RoomID`, `EventID` and
  `TimelineCursor`, the `Direction` enum and `hash_combine` (`nachat.ids`).
- **Media content**: `mxc://` URLs and their download and thumbnail addresses
  on a homeserver (`nachat.content`).
- **HTTP helpers**: `encode` for compact JSON bodies, `decode` to turn a
  `Reply` into a `Response` with an error message if any, and `Signal`, a
  simple list of callbacks (`nachat.http`).
- **Events**: validation of, and typed access to, room events such as
  messages, membership, names, topics, avatars and redactions
  (`nachat.events`).
- **Sync parsing**: `parse_sync` turns `/sync` responses into `Sync`,
  `JoinedRoom` and `Timeline` objects (`nachat.proto`).
- **Room state**: members, display-name disambiguation and room naming
  (`nachat.room_state`).
- **Rooms**: the event buffer, read receipts, typing, and in-order sending
  that retries with backoff (`nachat.room`).
- **Timelines**: `TimelineWindow` and `TimelineManager`, which page a room's
  history forwards and backwards (`nachat.timeline`).
- **Sessions**: logging in, the sync loop, media upload and download, and a
  local cache kept in LMDB (`nachat.session`).
- **Small helpers**: `room_sort_key` (`nachat.sort`) and `version_string`
  (`nachat.version`).

## Installing

```
pip install .
pip install ".[test]"   # with pytest and responses for the tests
```

## Logging in and syncing

```python
from nachat.session import LoginError, Session, login

password = "password"
try:
    user_id, access_token = login("https://example.com", "alice", password)
except LoginError as exc:
    print("login failed:", exc)
else:
    with Session("https://example.com", user_id, access_token) as session:
        session.error.connect(print)
        if session.sync():
            for room in session.rooms():
                print(room.pretty_name_highlights())
```

`login` raises `LoginError` with the server's message, or with
"Login failed. Check username/password." when the server answers 403.

`Session` keeps its cache under `$XDG_CACHE_HOME/nachat` (or `~/.cache/nachat`)
unless `cache_dir` is given; a cache written in an older layout is discarded.
Each call to `Session.sync()` performs one sync request and returns whether it
succeeded; after failures in quick succession the next call first waits out
the rest of a ten-second interval. The session emits its signals
(`joined`, `error`, `synced_changed`, `sync_complete` and others) along the way.

`Session.join`, `Session.upload` and `Session.log_out` act on the server
straight away. `join` and `upload` raise `ConnectionError` on failure;
`get_content` and `get_thumbnail` return a `ContentFetch` whose `error` field
is set on failure.

## Sending messages

```python
room = session.room_from_id(room_id)
room.send_message("hello")
room.send_emote("waves")
```

Events are queued and sent in order. A client error (4xx other than 429)
drops the event and emits `room.error`; other failures are retried after a
delay that starts at 5 seconds and grows to at most 30. The delay is run by
`room.scheduler`, a callable `(delay, callback)`, which defaults to a
background timer.

## Working with media URLs

```python
from nachat.content import Content, Thumbnail, ThumbnailMethod

content = Content.from_url("mxc://example.com/abc")
print(content.url_on("https://example.com"))
print(Thumbnail(content, (64, 64), ThumbnailMethod.SCALE).url_on("https://example.com"))
```

`Content.from_url` raises `IllegalContentScheme` for any URL whose scheme is
not `mxc`.

## Validating events

```python
from nachat.events import Event, Identifiable, Message, RoomEvent

raw = {
    "type": "m.room.message",
    "event_id": "3",
    "sender": "@somebody:example.com",
    "origin_server_ts": 42000001,
    "content": {"msgtype": "m.text", "body": "hello world"},
}
message = Message(RoomEvent(Identifiable(Event(raw))))
print(message.content().body())
```

An event that lacks a required field raises `MissingField`; a field of the
wrong JSON type raises `IllTypedField`. Both are subclasses of
`MalformedEvent`. Refining an event into a class of the wrong kind raises
`TypeMismatch`.

## Sorting rooms

```python
from nachat.sort import room_sort_key

sorted(["#Zebra", "@alice", "beta"], key=room_sort_key)
```

`room_sort_key` ignores leading `#` and `@` characters and compares names
case-insensitively.

## What this package does not do

It is a library only: there is no command-line program and no graphical
interface. It does not decode or display images or avatars, and it keeps no
member-list view model; `ContentFetch` hands back raw bytes with their
content type. Syncing is driven by the caller, one `Session.sync()` call at a
time, rather than by a background loop.