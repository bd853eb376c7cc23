"""The derived state of a room: name, aliases, topic, avatar and members."""

from __future__ import annotations

import logging
import unicodedata
from collections.abc import Iterable
from typing import Any

from nachat.events import (
    Aliases,
    Avatar,
    CanonicalAlias,
    Create,
    Member,
    MemberContent,
    Membership,
    Name,
    State,
    Topic,
)
from nachat.ids import UserID

log = logging.getLogger(__name__)


def _nfc(text: str) -> str:
    return unicodedata.normalize("NFC", text)


def pretty_name(user: UserID, profile: MemberContent) -> str:
    """A member's display name, or their user id if they have none."""
    displayname = profile.displayname()
    return displayname if displayname is not None else user.value


class RoomState:
    """Room state built up from state events.

    Methods taking a ``room`` accept an object with ``id`` and the signals
    ``member_changed``, ``member_disambiguation_changed``, ``left``,
    ``aliases_changed``, ``canonical_alias_changed``, ``name_changed``,
    ``topic_changed`` and ``avatar_changed``; pass None to emit nothing.
    """

    def __init__(self) -> None:
        self._name: str | None = None
        self._canonical_alias: str | None = None
        self._topic: str | None = None
        self._aliases: list[str] = []
        self._avatar = ""
        self._members_by_id: dict[UserID, MemberContent] = {}
        self._members_by_displayname: dict[str, list[UserID]] = {}

    @classmethod
    def from_json(
        cls, state: dict[str, Any], members: Iterable[tuple[UserID, MemberContent]]
    ) -> RoomState:
        """Rebuild state saved by ``to_json`` plus the stored member list."""
        result = cls()
        for key in ("name", "canonical_alias", "topic"):
            value = state.get(key)
            if isinstance(value, str):
                setattr(result, f"_{key}", value)
        avatar = state.get("avatar")
        if isinstance(avatar, str):
            result._avatar = avatar
        aliases = state.get("aliases")
        if isinstance(aliases, list):
            result._aliases = [a if isinstance(a, str) else "" for a in aliases]
        for user_id, content in members:
            result._members_by_id[user_id] = content
            displayname = content.displayname()
            if displayname is not None:
                result._record_displayname(user_id, displayname, None)
        return result

    def copy(self) -> RoomState:
        """An independent copy of this state."""
        other = RoomState()
        other._name = self._name
        other._canonical_alias = self._canonical_alias
        other._topic = self._topic
        other._aliases = list(self._aliases)
        other._avatar = self._avatar
        other._members_by_id = dict(self._members_by_id)
        other._members_by_displayname = {k: list(v) for k, v in self._members_by_displayname.items()}
        return other

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def canonical_alias(self) -> str | None:
        return self._canonical_alias

    @property
    def aliases(self) -> tuple[str, ...]:
        return tuple(self._aliases)

    @property
    def topic(self) -> str | None:
        return self._topic

    @property
    def avatar(self) -> str:
        return self._avatar

    def apply(self, event: State) -> None:
        """Apply a state event without notifying anyone."""
        self.dispatch(event, None)

    def dispatch(self, event: State, room: Any) -> bool:
        """Apply a state event; return whether the state was touched.

        Nothing changes if the event fails validation.
        """
        event_type = event.type()
        if event_type == Aliases.TAG:
            data = Aliases(event).aliases()
            merged = dict.fromkeys(self._aliases)
            merged.update(dict.fromkeys(a if isinstance(a, str) else "" for a in data))
            self._aliases = list(merged)
            if room is not None:
                room.aliases_changed.emit()
            return True
        if event_type == CanonicalAlias.TAG:
            alias = CanonicalAlias(event).alias()
            old, self._canonical_alias = self._canonical_alias, alias
            if room is not None and alias != old:
                room.canonical_alias_changed.emit()
            return True
        if event_type == Name.TAG:
            name = Name(event).content().name()
            old, self._name = self._name, name
            if room is not None and name != old:
                room.name_changed.emit()
            return True
        if event_type == Topic.TAG:
            topic = Topic(event).topic()
            old, self._topic = self._topic, topic
            if room is not None and topic != old:
                room.topic_changed.emit(old)
            return True
        if event_type == Avatar.TAG:
            avatar = Avatar(event).avatar()
            old, self._avatar = self._avatar, avatar
            if room is not None and avatar != old:
                room.avatar_changed.emit()
            return True
        if event_type == Create.TAG:
            return False
        if event_type == Member.TAG:
            member = Member(event)
            return self._update_membership(member.user(), member.content(), room)

        log.debug("Unrecognized message type: %s", event_type.value)
        return False

    def revert(self, event: State) -> None:
        """Undo a state event using its ``prev_content``."""
        event_type = event.type()
        if event_type == CanonicalAlias.TAG:
            self._canonical_alias = CanonicalAlias(event).prev_alias()
        elif event_type == Name.TAG:
            prev = Name(event).prev_content()
            self._name = prev.name() if prev is not None else None
        elif event_type == Topic.TAG:
            self._topic = Topic(event).prev_topic()
        elif event_type == Avatar.TAG:
            prev_avatar = Avatar(event).prev_avatar()
            self._avatar = prev_avatar if prev_avatar is not None else ""
        elif event_type == Member.TAG:
            member = Member(event)
            prev = member.prev_content()
            self._update_membership(
                member.user(), prev if prev is not None else MemberContent.LEAVE, None
            )

    def members(self) -> list[tuple[UserID, MemberContent]]:
        """Every current member with their member content."""
        return list(self._members_by_id.items())

    def member_from_id(self, user_id: UserID) -> MemberContent | None:
        return self._members_by_id.get(user_id)

    def pretty_name(self, own_id: UserID) -> str:
        """A human-readable name for the room as seen by ``own_id``."""
        if self._name:
            return self._name
        if self._canonical_alias is not None:
            return self._canonical_alias
        if self._aliases:
            return self._aliases[0]
        others = sorted(
            (m for m in self._members_by_id.items() if m[0] != own_id),
            key=lambda m: m[0].value,
        )
        if not others:
            return "Empty room"
        if len(others) == 1:
            return pretty_name(*others[0])
        first = self.member_name(others[0][0])
        if len(others) == 2:
            return f"{first} and {self.member_name(others[1][0])}"
        return f"{first} and {len(others) - 1} others"

    def member_disambiguation(self, member_id: UserID) -> str | None:
        """The suffix needed to tell a member apart from others, if any."""
        member = self._members_by_id[member_id]
        displayname = member.displayname()
        if displayname is None:
            return None
        if (
            len(self._members_named(displayname)) > 1
            or self.member_from_id(UserID(_nfc(displayname))) is not None
        ):
            return member_id.value
        return None

    def nonmember_disambiguation(self, user_id: UserID, displayname: str | None) -> str | None:
        """The disambiguation a non-member would need under ``displayname``."""
        if displayname is None:
            return None
        if UserID(displayname) in self._members_by_id or displayname in self._members_by_displayname:
            return user_id.value
        return None

    def member_name(self, member_id: UserID) -> str:
        """A member's display name, disambiguated where needed."""
        result = pretty_name(member_id, self._members_by_id[member_id])
        disambiguation = self.member_disambiguation(member_id)
        if disambiguation is None:
            return result
        return f"{result} ({disambiguation})"

    def to_json(self) -> dict[str, Any]:
        """Serialisable form of everything but the member list."""
        o: dict[str, Any] = {}
        if self._name is not None:
            o["name"] = self._name
        if self._canonical_alias is not None:
            o["canonical_alias"] = self._canonical_alias
        if self._topic is not None:
            o["topic"] = self._topic
        if self._avatar:
            o["avatar"] = self._avatar
        o["aliases"] = list(self._aliases)
        return o

    def _members_named(self, displayname: str) -> list[UserID]:
        return self._members_by_displayname[_nfc(displayname)]

    def _forget_displayname(self, user_id: UserID, old_name: str, room: Any) -> None:
        old_name = _nfc(old_name)
        holders = self._members_by_displayname[old_name]
        existing_displayname = len(holders) == 2
        existing_mxid = self.member_from_id(UserID(old_name)) is not None
        other: UserID | None = None
        if room is not None and (not existing_displayname or not existing_mxid):
            if existing_displayname:
                other = holders[1] if holders[0] == user_id else holders[0]
            if existing_mxid:
                other = UserID(old_name)
        if other is not None:
            room.member_disambiguation_changed.emit(other, other.value, None)
        before = len(holders)
        holders[:] = [h for h in holders if h != user_id]
        assert before - len(holders) == 1
        if not holders:
            del self._members_by_displayname[old_name]

    def _record_displayname(self, user_id: UserID, name: str, room: Any) -> None:
        holders = self._members_by_displayname.setdefault(_nfc(name), [])
        assert user_id not in holders
        if room is not None and len(holders) == 1:
            room.member_disambiguation_changed.emit(holders[0], None, holders[0].value)
        holders.append(user_id)

    def _update_membership(self, user_id: UserID, content: MemberContent, room: Any) -> bool:
        existing = self._members_by_id.get(user_id)
        if room is not None:
            room.member_changed.emit(
                user_id, existing if existing is not None else MemberContent.LEAVE, content
            )

        membership = content.membership()
        if membership in (Membership.INVITE, Membership.JOIN):
            current = existing if existing is not None else MemberContent.LEAVE
            if content.displayname() != current.displayname():
                if current.displayname() is not None:
                    self._forget_displayname(user_id, current.displayname(), room)
                if content.displayname() is not None:
                    self._record_displayname(user_id, content.displayname(), room)
            self._members_by_id[user_id] = content
        else:
            if room is not None and user_id.value == room.id.value:
                room.left.emit(membership)
            if existing is not None:
                if existing.displayname() is not None:
                    self._forget_displayname(user_id, existing.displayname(), room)
                del self._members_by_id[user_id]
        return True