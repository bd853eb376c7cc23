"""A logged-in session with a homeserver: syncing, requests and the local cache."""

from __future__ import annotations

import json
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any
from urllib.parse import quote, urlsplit, urlunsplit

import lmdb
import requests

from nachat.content import Content, Thumbnail
from nachat.events import MemberContent, Membership, parse_membership
from nachat.http import Reply, Signal, decode, encode
from nachat.ids import RoomID, SyncCursor, TransactionID, UserID
from nachat.proto import Sync, parse_sync
from nachat.room import Room

log = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = 6
"""Bumped whenever the cache layout changes incompatibly."""

POLL_TIMEOUT_MS = "600000"
RETRY_INTERVAL = 10.0
"""Minimum seconds between consecutive failing syncs."""

_MAP_SIZE = 128 * 1024 * 1024
_MAX_DBS = 1024

_NEXT_BATCH_KEY = b"next_batch"
_TRANSACTION_ID_KEY = b"transaction_id"
_CACHE_FORMAT_VERSION_KEY = b"cache_format_version"

_MEMBERSHIP_NAMES = {
    Membership.INVITE: "invite",
    Membership.JOIN: "join",
    Membership.LEAVE: "leave",
    Membership.BAN: "ban",
}

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class LoginError(Exception):
    """Raised when logging in fails."""


@dataclass
class ContentFetch:
    """The outcome of downloading a piece of media."""

    content_type: str = ""
    disposition: str = ""
    data: bytes = b""
    error: str | None = None


def _enc(component: str) -> str:
    return quote(component, safe="")


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_DIGITS[rem])
    return "".join(reversed(digits))


def _default_cache_dir() -> Path:
    base = os.environ.get("XDG_CACHE_HOME") or os.path.join(os.path.expanduser("~"), ".cache")
    return Path(base) / "nachat"


def _to_reply(response: requests.Response) -> Reply:
    return Reply(
        status_code=response.status_code,
        data=response.content,
        reason=response.reason or "",
        headers=response.headers,
    )


def _send(http: Any, method: str, url: str, **kwargs: Any) -> Reply:
    try:
        response = http.request(method, url, **kwargs)
    except requests.RequestException as exc:
        return Reply(status_code=0, error_string=str(exc))
    return _to_reply(response)


def _reply_failure(reply: Reply) -> str | None:
    if reply.status_code == 0:
        return reply.error_string or "network error"
    if reply.status_code >= 400:
        return reply.error_string or f"HTTP {reply.status_code} {reply.reason}"
    return None


def _member_json(content: MemberContent) -> dict[str, Any]:
    obj: dict[str, Any] = {"membership": _MEMBERSHIP_NAMES[content.membership()]}
    if content.displayname() is not None:
        obj["displayname"] = content.displayname()
    if content.avatar_url() is not None:
        obj["avatar_url"] = content.avatar_url()
    return obj


def _member_from_json(obj: dict[str, Any]) -> MemberContent:
    displayname = obj.get("displayname")
    avatar_url = obj.get("avatar_url")
    return MemberContent.create(
        parse_membership(obj.get("membership", "")),
        displayname if isinstance(displayname, str) and displayname else None,
        avatar_url if isinstance(avatar_url, str) and avatar_url else None,
    )


def _room_dbname(room_id: RoomID) -> bytes:
    return ("r." + room_id.value).encode("utf-8")


def login(homeserver: str, username: str, password: str) -> tuple[UserID, str]:
    """Log in with a password; return the user id and access token."""
    parts = urlsplit(homeserver)
    url = urlunsplit((parts.scheme, parts.netloc, "/_matrix/client/r0/login", "", ""))
    body = {"type": "m.login.password", "user": username, "password": password}
    reply = _send(
        requests, "POST", url, data=encode(body), headers={"Content-Type": "application/json"}
    )
    r = decode(reply)
    if r.code == 403:
        raise LoginError("Login failed. Check username/password.")
    if r.error is not None:
        raise LoginError(r.error)
    token = r.object.get("access_token")
    user_id = r.object.get("user_id")
    if not isinstance(token, str) or not isinstance(user_id, str):
        raise LoginError("Malformed response from server")
    return UserID(user_id), token


@dataclass
class _RoomInfo:
    room: Room
    members_db: Any = None
    member_changes: list[tuple[UserID, MemberContent]] = field(default_factory=list)


class Session:
    """A session of one user on one homeserver, with a persistent local cache.

    Signals: ``logged_out``, ``error(message)``, ``synced_changed``,
    ``joined(room)``, ``sync_progress(received, total)`` and ``sync_complete``.
    """

    def __init__(
        self,
        homeserver: str,
        user_id: UserID,
        access_token: str,
        cache_dir: str | os.PathLike[str] | None = None,
        http: requests.Session | None = None,
    ) -> None:
        self._homeserver = homeserver
        self._user_id = user_id
        self._access_token = access_token
        self._http = http if http is not None else requests.Session()
        self.buffer_size = 50
        self.sleep = time.sleep

        self._rooms: dict[RoomID, _RoomInfo] = {}
        self._synced = False
        self._next_batch: SyncCursor | None = None
        self._last_sync_error: float | None = None
        self._retry_at: float | None = None
        self._filter: str | None = encode(
            {"room": {"timeline": {"limit": self.buffer_size}}}
        ).decode("utf-8")

        self.logged_out = Signal()
        self.error = Signal()
        self.synced_changed = Signal()
        self.joined = Signal()
        self.sync_progress = Signal()
        self.sync_complete = Signal()

        base = Path(cache_dir) if cache_dir is not None else _default_cache_dir()
        self._env, self._state_db, self._room_db = self._open_cache(
            base / user_id.value.encode("utf-8").hex() / "state"
        )
        self._load_rooms()

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def homeserver(self) -> str:
        return self._homeserver

    @property
    def user_id(self) -> UserID:
        return self._user_id

    @property
    def access_token(self) -> str:
        return self._access_token

    @property
    def synced(self) -> bool:
        return self._synced

    def close(self) -> None:
        """Release the local cache."""
        self._env.close()

    @staticmethod
    def _open_cache(path: Path) -> tuple[Any, Any, Any]:
        fresh = not path.exists()
        path.mkdir(parents=True, exist_ok=True)
        try:
            env = lmdb.open(str(path), map_size=_MAP_SIZE, max_dbs=_MAX_DBS)
        except (lmdb.VersionMismatchError, lmdb.InvalidError) as exc:
            log.debug("resetting cache due to LMDB version mismatch: %s", exc)
            for entry in path.iterdir():
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
            env = lmdb.open(str(path), map_size=_MAP_SIZE, max_dbs=_MAX_DBS)

        with env.begin(write=True) as txn:
            state_db = env.open_db(b"state", txn=txn, create=True)
            room_db = env.open_db(b"rooms", txn=txn, create=True)
            if not fresh:
                stored = txn.get(_CACHE_FORMAT_VERSION_KEY, db=state_db)
                compatible = (
                    stored is not None
                    and int.from_bytes(bytes(stored), "little") == CACHE_FORMAT_VERSION
                )
                if not compatible:
                    log.debug("resetting cache due to breaking changes or fixes")
                    txn.drop(state_db, delete=False)
                    txn.drop(room_db, delete=False)
                    fresh = True
            if fresh:
                txn.put(
                    _CACHE_FORMAT_VERSION_KEY,
                    CACHE_FORMAT_VERSION.to_bytes(8, "little"),
                    db=state_db,
                )
        return env, state_db, room_db

    def _load_rooms(self) -> None:
        with self._env.begin(write=True) as txn:
            stored = txn.get(_NEXT_BATCH_KEY, db=self._state_db)
            if stored is None:
                log.debug("starting from scratch")
                return
            self._next_batch = SyncCursor(bytes(stored).decode("utf-8"))
            log.debug("resuming from %s", self._next_batch.value)

            saved = [(bytes(k), bytes(v)) for k, v in txn.cursor(db=self._room_db)]
            for key, value in saved:
                room_id = RoomID(key.decode("utf-8"))
                members_db = self._env.open_db(_room_dbname(room_id), txn=txn, create=True)
                members = [
                    (UserID(bytes(mk).decode("utf-8")), _member_from_json(json.loads(bytes(mv))))
                    for mk, mv in txn.cursor(db=members_db)
                ]
                room = Room.from_json(self, room_id, json.loads(value), members)
                info = self._add_room(room)
                info.members_db = members_db

    def _add_room(self, room: Room) -> _RoomInfo:
        info = _RoomInfo(room)
        self._rooms[room.id] = info

        def record(user_id: UserID, old: MemberContent, current: MemberContent) -> None:
            info.member_changes.append((user_id, current))

        room.member_changed.connect(record)
        return info

    def rooms(self) -> list[Room]:
        """Every room the user has joined."""
        return [info.room for info in self._rooms.values()]

    def room_from_id(self, room_id: RoomID) -> Room | None:
        info = self._rooms.get(room_id)
        return info.room if info is not None else None

    def sync(self) -> bool:
        """Run one round of the sync loop; return whether it succeeded.

        After two failures in quick succession the next call first waits out
        the rest of the retry interval.
        """
        if self._retry_at is not None:
            delay = self._retry_at - time.monotonic()
            self._retry_at = None
            if delay > 0:
                self.sleep(delay)

        query: list[tuple[str, str]] = []
        if self._filter is not None:
            query.append(("filter", self._filter))
            self._filter = None
        if self._next_batch is None:
            query.append(("full_state", "true"))
        else:
            query.append(("since", self._next_batch.value))
            query.append(("timeout", POLL_TIMEOUT_MS))

        reply = self.get("client/r0/sync", query)
        self.sync_progress.emit(len(reply.data), len(reply.data))
        if len(reply.data) > (1 << 12):
            log.debug("sync is %d bytes", len(reply.data))

        r = decode(reply)
        was_synced = self._synced
        if r.error is not None:
            self._synced = False
            self.error.emit(r.error)
        else:
            self._dispatch(parse_sync(r.object))
        if was_synced != self._synced:
            self.synced_changed.emit()

        now = time.monotonic()
        if not self._synced:
            if self._last_sync_error is not None:
                since_last_error = now - self._last_sync_error
                if since_last_error < RETRY_INTERVAL:
                    self._retry_at = now + RETRY_INTERVAL - since_last_error
            self._last_sync_error = now
        return self._synced

    def _dispatch(self, sync: Sync) -> None:
        for joined_room in sync.rooms.join:
            info = self._rooms.get(joined_room.id)
            if info is None:
                room = Room.from_joined(self, joined_room)
                info = self._add_room(room)
                info.member_changes.extend(room.state.members())
                self.joined.emit(room)
            else:
                info.room.dispatch(joined_room)

        self._next_batch = sync.next_batch
        self._update_cache(sync)
        self._synced = True
        self.sync_complete.emit()

    def _update_cache(self, sync: Sync) -> None:
        new_member_dbs: list[tuple[RoomID, Any]] = []
        try:
            with self._env.begin(write=True) as txn:
                txn.put(_NEXT_BATCH_KEY, sync.next_batch.value.encode("utf-8"), db=self._state_db)
                for joined_room in sync.rooms.join:
                    info = self._rooms[joined_room.id]
                    members_db = info.members_db
                    if members_db is None:
                        # Kept aside until commit: the handle dies with a failed transaction.
                        members_db = self._env.open_db(
                            _room_dbname(joined_room.id), txn=txn, create=True
                        )
                        new_member_dbs.append((joined_room.id, members_db))

                    txn.put(
                        joined_room.id.value.encode("utf-8"),
                        encode(info.room.to_json()),
                        db=self._room_db,
                    )

                    for user_id, content in info.member_changes:
                        key = user_id.value.encode("utf-8")
                        if content.membership() in (Membership.INVITE, Membership.JOIN):
                            txn.put(key, encode(_member_json(content)), db=members_db)
                        else:
                            txn.delete(key, db=members_db)
        except lmdb.Error as exc:
            self.error.emit(str(exc))
            return

        for room_id, members_db in new_member_dbs:
            self._rooms[room_id].members_db = members_db
        for joined_room in sync.rooms.join:
            self._rooms[joined_room.id].member_changes.clear()

    def log_out(self) -> bool:
        """Invalidate the access token; return whether that succeeded."""
        r = decode(self.post("client/r0/logout", {}, None))
        if r.error is None or r.code == 404:  # 404: already logged out
            self.logged_out.emit()
            return True
        self.error.emit(r.error)
        return False

    def _url(self, path: str) -> str:
        parts = urlsplit(self._homeserver)
        return urlunsplit((parts.scheme, parts.netloc, "/_matrix/" + path, "", ""))

    def _request(
        self,
        method: str,
        path: str,
        query: list[tuple[str, str]] | None = None,
        data: Any = None,
        content_type: str = "application/json",
    ) -> Reply:
        params = list(query or []) + [("access_token", self._access_token)]
        return _send(
            self._http,
            method,
            self._url(path),
            params=params,
            data=data,
            headers={"Content-Type": content_type},
        )

    def get(self, path: str, query: list[tuple[str, str]] | None = None) -> Reply:
        """GET ``/_matrix/<path>`` with the access token."""
        return self._request("GET", path, query)

    def post(
        self,
        path: str,
        body: dict[str, Any] | None = None,
        query: list[tuple[str, str]] | None = None,
    ) -> Reply:
        """POST a JSON body to ``/_matrix/<path>``."""
        return self._request("POST", path, query, encode(body or {}))

    def put(self, path: str, body: dict[str, Any]) -> Reply:
        """PUT a JSON body to ``/_matrix/<path>``."""
        return self._request("PUT", path, None, encode(body))

    @staticmethod
    def _fetch_result(reply: Reply) -> ContentFetch:
        failure = _reply_failure(reply)
        if failure is not None:
            return ContentFetch(error=failure)
        return ContentFetch(
            content_type=reply.headers.get("Content-Type", ""),
            disposition=reply.headers.get("Content-Disposition", ""),
            data=reply.data,
        )

    def get_content(self, content: Content) -> ContentFetch:
        """Download a piece of media."""
        path = f"media/r0/download/{_enc(content.host)}/{_enc(content.id)}"
        return self._fetch_result(self.get(path))

    def get_thumbnail(self, thumbnail: Thumbnail) -> ContentFetch:
        """Download a thumbnail of a piece of media."""
        width, height = thumbnail.size
        query = [
            ("width", str(width)),
            ("height", str(height)),
            ("method", thumbnail.method.value),
        ]
        content = thumbnail.content
        path = f"media/r0/thumbnail/{_enc(content.host)}/{_enc(content.id)}"
        return self._fetch_result(self.get(path, query))

    def upload(self, data: bytes | IO[bytes], content_type: str, filename: str) -> str:
        """Upload media; return its content URI or raise ConnectionError."""
        reply = self._request(
            "POST", "media/r0/upload", [("filename", filename)], data, content_type
        )
        r = decode(reply)
        if r.error is not None:
            raise ConnectionError(r.error)
        uri = r.object.get("content_uri")
        return uri if isinstance(uri, str) else ""

    def get_transaction_id(self) -> TransactionID:
        """A fresh transaction id, unique for this user across restarts."""
        with self._env.begin(write=True) as txn:
            stored = txn.get(_TRANSACTION_ID_KEY, db=self._state_db)
            value = int.from_bytes(bytes(stored), "little") if stored is not None else 0
            txn.put(_TRANSACTION_ID_KEY, (value + 1).to_bytes(8, "little"), db=self._state_db)
        return TransactionID(_base36(value))

    def join(self, id_or_alias: str) -> RoomID:
        """Join a room by id or alias; raise ConnectionError on failure."""
        r = decode(self.post("client/r0/join/" + _enc(id_or_alias), {}, None))
        if r.error is not None:
            raise ConnectionError(r.error)
        room_id = r.object.get("room_id")
        return RoomID(room_id if isinstance(room_id, str) else "")

    def ensure_http(self, url: str) -> str:
        """Turn an ``mxc`` URL into a download URL here; pass others through."""
        if urlsplit(url).scheme == "mxc":
            return Content.from_url(url).url_on(self._homeserver)
        return url