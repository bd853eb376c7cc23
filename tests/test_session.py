import json
import re
from urllib.parse import parse_qs, urlsplit

import lmdb
import pytest
import responses

from nachat.content import Content, Thumbnail, ThumbnailMethod
from nachat.ids import RoomID, UserID
from nachat.session import ContentFetch, LoginError, Session, login

HS = "https://example.com"
ALICE = "@alice:example.com"
ROOM = "!room:example.com"
SYNC_URL = HS + "/_matrix/client/r0/sync"


def _member_event():
    return {
        "type": "m.room.member",
        "event_id": "2",
        "sender": ALICE,
        "origin_server_ts": 42000000,
        "state_key": ALICE,
        "content": {"membership": "join", "displayname": "Alice"},
    }


def _name_event():
    return {
        "type": "m.room.name",
        "event_id": "3",
        "sender": ALICE,
        "origin_server_ts": 42000001,
        "state_key": "",
        "content": {"name": "Lobby"},
    }


def _sync_body(next_batch="s1"):
    return {
        "next_batch": next_batch,
        "rooms": {
            "join": {
                ROOM: {
                    "timeline": {
                        "prev_batch": "p1",
                        "limited": False,
                        "events": [_member_event(), _name_event()],
                    },
                    "state": {"events": []},
                    "unread_notifications": {"highlight_count": 0, "notification_count": 0},
                }
            }
        },
    }


def _query(call):
    return parse_qs(urlsplit(call.request.url).query)


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


@pytest.fixture
def session(tmp_path):
    s = Session(HS, UserID(ALICE), "token", cache_dir=tmp_path)
    yield s
    s.close()


def test_login_success(rsps):
    rsps.add(
        responses.POST,
        HS + "/_matrix/client/r0/login",
        json={"access_token": "token", "user_id": ALICE},
    )
    password = "password"
    user_id, access_token = login(HS, "alice", password)
    assert user_id == UserID(ALICE)
    assert access_token == "token"
    body = json.loads(rsps.calls[0].request.body)
    assert body["type"] == "m.login.password"
    assert body["user"] == "alice"


def test_login_forbidden(rsps):
    rsps.add(
        responses.POST,
        HS + "/_matrix/client/r0/login",
        json={"error": "Invalid password"},
        status=403,
    )
    password = "password"
    with pytest.raises(LoginError, match="Login failed. Check username/password."):
        login(HS, "alice", password)


def test_login_malformed(rsps):
    rsps.add(responses.POST, HS + "/_matrix/client/r0/login", json={"user_id": ALICE})
    password = "password"
    with pytest.raises(LoginError, match="Malformed response from server"):
        login(HS, "alice", password)


def test_transaction_ids_increase_and_persist(tmp_path):
    with Session(HS, UserID(ALICE), "token", cache_dir=tmp_path) as s:
        assert s.get_transaction_id().value == "0"
        assert s.get_transaction_id().value == "1"
    with Session(HS, UserID(ALICE), "token", cache_dir=tmp_path) as s:
        assert s.get_transaction_id().value == "2"


def test_first_sync_creates_room(rsps, session):
    rsps.add(responses.GET, SYNC_URL, json=_sync_body())
    joined = []
    session.joined.connect(joined.append)
    assert session.sync() is True
    assert session.synced
    query = _query(rsps.calls[0])
    assert query["full_state"] == ["true"]
    assert query["access_token"] == ["token"]
    assert json.loads(query["filter"][0]) == {"room": {"timeline": {"limit": 50}}}
    room = session.room_from_id(RoomID(ROOM))
    assert joined == [room]
    assert room.state.name == "Lobby"
    assert session.rooms() == [room]


def test_sync_resumes_from_cache(rsps, tmp_path):
    rsps.add(responses.GET, SYNC_URL, json=_sync_body("s1"))
    with Session(HS, UserID(ALICE), "token", cache_dir=tmp_path) as s:
        s.sync()
    with Session(HS, UserID(ALICE), "token", cache_dir=tmp_path) as s:
        room = s.room_from_id(RoomID(ROOM))
        assert room.state.name == "Lobby"
        assert room.state.member_from_id(UserID(ALICE)).displayname() == "Alice"
        s.sync()
    query = _query(rsps.calls[1])
    assert query["since"] == ["s1"]
    assert query["timeout"] == ["600000"]
    assert "full_state" not in query


def test_second_sync_omits_filter(rsps, session):
    rsps.add(responses.GET, SYNC_URL, json=_sync_body("s1"))
    session.sync()
    session.sync()
    assert "filter" not in _query(rsps.calls[1])
    assert len(session.rooms()) == 1


def test_incompatible_cache_is_reset(rsps, tmp_path):
    rsps.add(responses.GET, SYNC_URL, json=_sync_body("s1"))
    with Session(HS, UserID(ALICE), "token", cache_dir=tmp_path) as s:
        s.sync()
    path = tmp_path / ALICE.encode("utf-8").hex() / "state"
    env = lmdb.open(str(path), max_dbs=4)
    state_db = env.open_db(b"state")
    with env.begin(write=True) as txn:
        txn.put(b"cache_format_version", (0).to_bytes(8, "little"), db=state_db)
    env.close()
    with Session(HS, UserID(ALICE), "token", cache_dir=tmp_path) as s:
        assert s.rooms() == []
        s.sync()
    assert _query(rsps.calls[1])["full_state"] == ["true"]


def test_sync_error_reports_and_backs_off(rsps, session):
    rsps.add(responses.GET, SYNC_URL, json={"error": "server down"}, status=500)
    errors = []
    delays = []
    session.error.connect(errors.append)
    session.sleep = delays.append
    assert session.sync() is False
    assert session.sync() is False
    assert errors == ["server down", "server down"]
    assert delays == []
    session.sync()
    assert len(delays) == 1
    assert 0 < delays[0] <= 10.0


def test_synced_changed_emitted_once(rsps, session):
    rsps.add(responses.GET, SYNC_URL, json=_sync_body())
    changes = []
    session.synced_changed.connect(lambda: changes.append(session.synced))
    session.sync()
    session.sync()
    assert changes == [True]


def test_room_send_goes_through_session(rsps, session):
    rsps.add(responses.GET, SYNC_URL, json=_sync_body())
    rsps.add(
        responses.PUT,
        re.compile(r"https://example\.com/_matrix/client/r0/rooms/.*"),
        json={"event_id": "$sent"},
    )
    session.sync()
    room = session.room_from_id(RoomID(ROOM))
    txn = room.send_message("hello")
    put = rsps.calls[-1].request
    assert urlsplit(put.url).path.endswith(f"/send/m.room.message/{txn.value}")
    assert json.loads(put.body) == {"msgtype": "m.text", "body": "hello"}
    assert room.pending_events == ()


def test_log_out_treats_404_as_success(rsps, session):
    rsps.add(responses.POST, HS + "/_matrix/client/r0/logout", json={}, status=404)
    events = []
    session.logged_out.connect(lambda: events.append("out"))
    assert session.log_out() is True
    assert events == ["out"]


def test_log_out_failure_emits_error(rsps, session):
    rsps.add(responses.POST, HS + "/_matrix/client/r0/logout", json={"error": "nope"}, status=500)
    errors = []
    session.error.connect(errors.append)
    assert session.log_out() is False
    assert errors == ["nope"]


def test_join_returns_room_id(rsps, session):
    rsps.add(
        responses.POST,
        HS + "/_matrix/client/r0/join/%23lobby%3Aexample.com",
        json={"room_id": ROOM},
    )
    assert session.join("#lobby:example.com") == RoomID(ROOM)


def test_join_failure_raises(rsps, session):
    rsps.add(
        responses.POST,
        HS + "/_matrix/client/r0/join/%23lobby%3Aexample.com",
        json={"error": "no such room"},
        status=404,
    )
    with pytest.raises(ConnectionError, match="no such room"):
        session.join("#lobby:example.com")


def test_get_content(rsps, session):
    rsps.add(
        responses.GET,
        HS + "/_matrix/media/r0/download/example.org/abc",
        body=b"\x89PNG",
        content_type="image/png",
    )
    result = session.get_content(Content("example.org", "abc"))
    assert result.data == b"\x89PNG"
    assert result.content_type == "image/png"
    assert result.error is None


def test_get_content_error(rsps, session):
    rsps.add(responses.GET, HS + "/_matrix/media/r0/download/example.org/abc", status=404)
    result = session.get_content(Content("example.org", "abc"))
    assert result.error is not None
    assert result.data == b""
    assert isinstance(result, ContentFetch)


def test_get_thumbnail_query(rsps, session):
    rsps.add(responses.GET, HS + "/_matrix/media/r0/thumbnail/example.org/abc", body=b"img")
    thumb = Thumbnail(Content("example.org", "abc"), (32, 48), ThumbnailMethod.SCALE)
    result = session.get_thumbnail(thumb)
    assert result.data == b"img"
    query = _query(rsps.calls[0])
    assert query["width"] == ["32"]
    assert query["height"] == ["48"]
    assert query["method"] == ["scale"]


def test_upload_returns_content_uri(rsps, session):
    rsps.add(
        responses.POST,
        HS + "/_matrix/media/r0/upload",
        json={"content_uri": "mxc://example.com/xyz"},
    )
    uri = session.upload(b"data", "text/plain", "notes.txt")
    assert uri == "mxc://example.com/xyz"
    request = rsps.calls[0].request
    assert request.headers["Content-Type"] == "text/plain"
    assert _query(rsps.calls[0])["filename"] == ["notes.txt"]


def test_ensure_http(session):
    assert (
        session.ensure_http("mxc://example.org/abc")
        == "https://example.com/_matrix/media/r0/download/example.org/abc"
    )
    assert session.ensure_http("https://example.org/pic.png") == "https://example.org/pic.png"