import pytest

from nachat.events import MalformedEvent, MemberContent, Membership, State
from nachat.http import Signal
from nachat.ids import RoomID, UserID
from nachat.room_state import RoomState, pretty_name

SOMEBODY = "@somebody:example.com"
SOMEBODY_ELSE = "@somebody_else:example.com"


def state_evt(obj):
    return State(obj)


def member_evt(user, membership, displayname=None, event_id="2", prev=None):
    content = {"membership": membership}
    if displayname is not None:
        content["displayname"] = displayname
    obj = {
        "type": "m.room.member",
        "event_id": event_id,
        "sender": user,
        "origin_server_ts": 42000000,
        "state_key": user,
        "content": content,
    }
    if prev is not None:
        obj["unsigned"] = {"prev_content": prev}
    return State(obj)


def simple_state(event_type, content, prev=None):
    obj = {
        "type": event_type,
        "event_id": "9",
        "sender": SOMEBODY,
        "origin_server_ts": 42000000,
        "state_key": "",
        "content": content,
    }
    if prev is not None:
        obj["unsigned"] = {"prev_content": prev}
    return State(obj)


class FakeRoom:
    def __init__(self):
        self.id = RoomID("!room:example.com")
        self.log = []
        for name in ("member_changed", "member_disambiguation_changed", "left", "aliases_changed",
                     "canonical_alias_changed", "name_changed", "topic_changed", "avatar_changed"):
            signal = Signal()
            signal.connect(lambda *args, _n=name: self.log.append((_n, args)))
            setattr(self, name, signal)

    def of(self, name):
        return [args for n, args in self.log if n == name]


def join_evt():
    return state_evt({
        "type": "m.room.member",
        "event_id": "2",
        "sender": SOMEBODY,
        "origin_server_ts": 42000000,
        "state_key": SOMEBODY,
        "content": {
            "membership": "join",
            "displayname": "SOMEBODY",
            "avatar_url": "mxc://example.com/foo.png",
        },
    })


def leave_evt():
    return state_evt({
        "type": "m.room.member",
        "event_id": "4",
        "sender": SOMEBODY,
        "origin_server_ts": 52000002,
        "state_key": SOMEBODY,
        "content": {"membership": "leave"},
    })


def test_join_then_leave_from_source_case():
    rs = RoomState()
    rs.apply(join_evt())
    member = rs.member_from_id(UserID(SOMEBODY))
    assert member.displayname() == "SOMEBODY"
    assert member.avatar_url() == "mxc://example.com/foo.png"
    assert rs.member_name(UserID(SOMEBODY)) == "SOMEBODY"
    assert rs.pretty_name(UserID(SOMEBODY_ELSE)) == "SOMEBODY"

    rs.apply(leave_evt())
    assert rs.member_from_id(UserID(SOMEBODY)) is None
    assert rs.members() == []
    assert rs.pretty_name(UserID(SOMEBODY_ELSE)) == "Empty room"


def test_pretty_name_excludes_own_id():
    rs = RoomState()
    rs.apply(join_evt())
    assert rs.pretty_name(UserID(SOMEBODY)) == "Empty room"


def test_pretty_name_two_and_many_members():
    rs = RoomState()
    rs.apply(member_evt("@b:example.com", "join", "Bob"))
    rs.apply(member_evt("@a:example.com", "join", "Alice"))
    assert rs.pretty_name(UserID("@me:example.com")) == "Alice and Bob"
    rs.apply(member_evt("@c:example.com", "invite"))
    assert rs.pretty_name(UserID("@me:example.com")) == "Alice and 2 others"


def test_pretty_name_precedence():
    rs = RoomState()
    rs.apply(join_evt())
    rs.apply(simple_state("m.room.aliases", {"aliases": ["#x:example.com"]}))
    assert rs.pretty_name(UserID(SOMEBODY_ELSE)) == "#x:example.com"
    rs.apply(simple_state("m.room.canonical_alias", {"alias": "#canon:example.com"}))
    assert rs.pretty_name(UserID(SOMEBODY_ELSE)) == "#canon:example.com"
    rs.apply(simple_state("m.room.name", {"name": "Lounge"}))
    assert rs.pretty_name(UserID(SOMEBODY_ELSE)) == "Lounge"


def test_same_displayname_disambiguates_and_signals():
    room = FakeRoom()
    rs = RoomState()
    a, b = UserID("@a1:example.com"), UserID("@a2:example.com")
    rs.dispatch(member_evt(a.value, "join", "Alice"), room)
    assert rs.member_disambiguation(a) is None
    rs.dispatch(member_evt(b.value, "join", "Alice"), room)
    assert rs.member_disambiguation(a) == a.value
    assert rs.member_name(b) == "Alice (@a2:example.com)"
    assert room.of("member_disambiguation_changed") == [(a, None, a.value)]

    rs.dispatch(member_evt(b.value, "leave"), room)
    assert rs.member_disambiguation(a) is None
    assert room.of("member_disambiguation_changed")[-1] == (a, a.value, None)


def test_displayname_equal_to_user_id_disambiguates():
    rs = RoomState()
    rs.apply(member_evt("@a:example.com", "join"))
    rs.apply(member_evt("@b:example.com", "join", "@a:example.com"))
    assert rs.member_disambiguation(UserID("@b:example.com")) == "@b:example.com"


def test_member_changed_reports_leave_for_new_member():
    room = FakeRoom()
    rs = RoomState()
    assert rs.dispatch(join_evt(), room) is True
    (user, current, nxt), = room.of("member_changed")
    assert user == UserID(SOMEBODY)
    assert current is MemberContent.LEAVE
    assert nxt.membership() is Membership.JOIN


def test_nonmember_disambiguation():
    rs = RoomState()
    rs.apply(join_evt())
    other = UserID(SOMEBODY_ELSE)
    assert rs.nonmember_disambiguation(other, "SOMEBODY") == SOMEBODY_ELSE
    assert rs.nonmember_disambiguation(other, SOMEBODY) == SOMEBODY_ELSE
    assert rs.nonmember_disambiguation(other, "Unique") is None
    assert rs.nonmember_disambiguation(other, None) is None


def test_revert_member_restores_previous():
    rs = RoomState()
    rs.apply(member_evt(SOMEBODY, "join", "Old"))
    change = member_evt(SOMEBODY, "join", "New", prev={"membership": "join", "displayname": "Old"})
    rs.apply(change)
    assert rs.member_name(UserID(SOMEBODY)) == "New"
    rs.revert(change)
    assert rs.member_name(UserID(SOMEBODY)) == "Old"


def test_revert_member_without_prev_removes():
    rs = RoomState()
    evt = join_evt()
    rs.apply(evt)
    rs.revert(evt)
    assert rs.member_from_id(UserID(SOMEBODY)) is None


def test_name_topic_avatar_signals_and_revert():
    room = FakeRoom()
    rs = RoomState()
    rs.dispatch(simple_state("m.room.name", {"name": "Lounge"}), room)
    rs.dispatch(simple_state("m.room.name", {"name": "Lounge"}), room)
    assert len(room.of("name_changed")) == 1

    topic = simple_state("m.room.topic", {"topic": "new"}, prev={"topic": "old"})
    rs.dispatch(topic, room)
    assert rs.topic == "new"
    assert room.of("topic_changed") == [(None,)]
    rs.revert(topic)
    assert rs.topic == "old"

    avatar = simple_state("m.room.avatar", {"url": "mxc://example.com/a"})
    rs.dispatch(avatar, room)
    assert rs.avatar == "mxc://example.com/a"
    assert len(room.of("avatar_changed")) == 1
    rs.revert(avatar)
    assert rs.avatar == ""


def test_aliases_merge_without_duplicates():
    room = FakeRoom()
    rs = RoomState()
    rs.dispatch(simple_state("m.room.aliases", {"aliases": ["#a:example.com", "#b:example.com"]}), room)
    rs.dispatch(simple_state("m.room.aliases", {"aliases": ["#b:example.com", "#c:example.com"]}), room)
    assert sorted(rs.aliases) == ["#a:example.com", "#b:example.com", "#c:example.com"]
    assert len(room.of("aliases_changed")) == 2


def test_create_and_unknown_do_not_touch():
    rs = RoomState()
    assert rs.dispatch(simple_state("m.room.create", {"creator": SOMEBODY}), None) is False
    assert rs.dispatch(simple_state("m.room.join_rules", {"join_rule": "public"}), None) is False
    assert rs.to_json() == {"aliases": []}


def test_malformed_state_leaves_state_unchanged():
    rs = RoomState()
    rs.apply(simple_state("m.room.topic", {"topic": "kept"}))
    with pytest.raises(MalformedEvent):
        rs.apply(simple_state("m.room.topic", {}))
    assert rs.topic == "kept"


def test_json_round_trip():
    rs = RoomState()
    rs.apply(join_evt())
    rs.apply(simple_state("m.room.name", {"name": "Lounge"}))
    rs.apply(simple_state("m.room.topic", {"topic": "chat"}))
    rs.apply(simple_state("m.room.avatar", {"url": "mxc://example.com/a"}))
    rs.apply(simple_state("m.room.aliases", {"aliases": ["#a:example.com"]}))
    saved = rs.to_json()
    restored = RoomState.from_json(saved, rs.members())
    assert restored.to_json() == saved
    assert restored.member_name(UserID(SOMEBODY)) == "SOMEBODY"
    assert restored.pretty_name(UserID(SOMEBODY)) == "Lounge"


def test_copy_is_independent():
    rs = RoomState()
    rs.apply(join_evt())
    clone = rs.copy()
    clone.apply(leave_evt())
    assert rs.member_from_id(UserID(SOMEBODY)) is not None
    assert clone.member_from_id(UserID(SOMEBODY)) is None


def test_pretty_name_helper():
    content = MemberContent({"membership": "join", "displayname": "SOMEBODY"})
    assert pretty_name(UserID(SOMEBODY), content) == "SOMEBODY"
    assert pretty_name(UserID(SOMEBODY), MemberContent.LEAVE) == SOMEBODY