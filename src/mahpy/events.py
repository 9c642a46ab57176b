"""Typed event model and the decoder for raw server payloads.

Every payload the server emits (by poll or by webhook) is a JSON object with a
`type` tag and an `event_id` assigned by the delivery source. `decode` maps the
tag onto one of the frozen dataclasses below; tags it does not know decode to
`Unknown` so newer servers never break the pipeline.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, ClassVar, Dict, Mapping, Optional, Union

from .core.exceptions import DecodeError

EVENT_ID_KEY = "event_id"
INVALID_FIELD = "invalid_field"
_DECIMAL_RE = re.compile(r"^[+-]?[0-9]+$")


class EventKind(str, Enum):
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_RECALLED = "message_recalled"
    NUDGE = "nudge"
    FRIEND_REQUEST = "friend_request"
    FRIEND_ADDED = "friend_added"
    FRIEND_DELETED = "friend_deleted"
    GROUP_INVITE = "group_invite"
    MEMBER_JOIN_REQUEST = "member_join_request"
    MEMBER_JOIN = "member_join"
    MEMBER_LEAVE = "member_leave"
    MEMBER_MUTED = "member_muted"
    MEMBER_UNMUTED = "member_unmuted"
    BOT_ONLINE = "bot_online"
    BOT_OFFLINE = "bot_offline"
    BOT_MUTED = "bot_muted"
    BOT_UNMUTED = "bot_unmuted"
    BOT_JOINED_GROUP = "bot_joined_group"
    BOT_LEFT_GROUP = "bot_left_group"
    COMMAND_EXECUTED = "command_executed"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class GroupRef:
    id: int
    name: str = ""
    permission: Optional[str] = None


@dataclass(frozen=True)
class UserRef:
    """A friend, stranger or group member as seen in an event payload."""

    id: int
    name: str = ""
    remark: Optional[str] = None
    permission: Optional[str] = None
    group: Optional[GroupRef] = None


@dataclass(frozen=True)
class MessageReceived:
    """An incoming (or synced) message.

    `chain` holds read-only segment mappings. Instances compare by value but
    are not hashable.
    """

    kind: ClassVar[EventKind] = EventKind.MESSAGE_RECEIVED
    __hash__ = None  # type: ignore[assignment]

    event_id: int
    message_type: str
    sender: UserRef
    chain: tuple[Mapping[str, Any], ...] = field(default_factory=tuple)
    message_id: Optional[int] = None
    time: Optional[int] = None

    @property
    def is_group(self) -> bool:
        return self.message_type in ("GroupMessage", "GroupSyncMessage")

    @property
    def is_sync(self) -> bool:
        return self.message_type.endswith("SyncMessage")

    @property
    def group(self) -> Optional[GroupRef]:
        return self.sender.group

    @property
    def text(self) -> str:
        parts = [
            str(segment.get("text", ""))
            for segment in self.chain
            if segment.get("type") == "Plain"
        ]
        return "\n".join(parts).strip()


@dataclass(frozen=True)
class MessageRecalled:
    kind: ClassVar[EventKind] = EventKind.MESSAGE_RECALLED

    event_id: int
    author_id: int
    message_id: int
    time: Optional[int] = None
    group: Optional[GroupRef] = None
    operator_id: Optional[int] = None


@dataclass(frozen=True)
class Nudge:
    kind: ClassVar[EventKind] = EventKind.NUDGE

    event_id: int
    from_id: int
    target_id: int
    subject_kind: str
    subject_id: int
    action: str = ""
    suffix: str = ""


@dataclass(frozen=True)
class FriendRequest:
    kind: ClassVar[EventKind] = EventKind.FRIEND_REQUEST

    event_id: int
    request_id: int
    from_id: int
    group_id: int = 0
    nick: str = ""
    message: str = ""


@dataclass(frozen=True)
class FriendAdded:
    kind: ClassVar[EventKind] = EventKind.FRIEND_ADDED

    event_id: int
    friend: UserRef
    from_stranger: bool = False


@dataclass(frozen=True)
class FriendDeleted:
    kind: ClassVar[EventKind] = EventKind.FRIEND_DELETED

    event_id: int
    friend: UserRef


@dataclass(frozen=True)
class GroupInvite:
    kind: ClassVar[EventKind] = EventKind.GROUP_INVITE

    event_id: int
    request_id: int
    from_id: int
    group_id: int
    group_name: str = ""
    nick: str = ""
    message: str = ""


@dataclass(frozen=True)
class MemberJoinRequest:
    kind: ClassVar[EventKind] = EventKind.MEMBER_JOIN_REQUEST

    event_id: int
    request_id: int
    from_id: int
    group_id: int
    group_name: str = ""
    nick: str = ""
    message: str = ""
    inviter_id: Optional[int] = None


@dataclass(frozen=True)
class MemberJoin:
    kind: ClassVar[EventKind] = EventKind.MEMBER_JOIN

    event_id: int
    member: UserRef
    inviter_id: Optional[int] = None


@dataclass(frozen=True)
class MemberLeave:
    kind: ClassVar[EventKind] = EventKind.MEMBER_LEAVE

    event_id: int
    member: UserRef
    kicked: bool = False
    operator_id: Optional[int] = None


@dataclass(frozen=True)
class MemberMuted:
    kind: ClassVar[EventKind] = EventKind.MEMBER_MUTED

    event_id: int
    member: UserRef
    duration_seconds: int = 0
    operator_id: Optional[int] = None


@dataclass(frozen=True)
class MemberUnmuted:
    kind: ClassVar[EventKind] = EventKind.MEMBER_UNMUTED

    event_id: int
    member: UserRef
    operator_id: Optional[int] = None


@dataclass(frozen=True)
class BotOnline:
    kind: ClassVar[EventKind] = EventKind.BOT_ONLINE

    event_id: int
    account_id: int
    relogin: bool = False


@dataclass(frozen=True)
class BotOffline:
    kind: ClassVar[EventKind] = EventKind.BOT_OFFLINE

    event_id: int
    account_id: int
    reason: str
    title: str = ""
    message: str = ""


@dataclass(frozen=True)
class BotMuted:
    kind: ClassVar[EventKind] = EventKind.BOT_MUTED

    event_id: int
    operator: UserRef
    duration_seconds: int = 0


@dataclass(frozen=True)
class BotUnmuted:
    kind: ClassVar[EventKind] = EventKind.BOT_UNMUTED

    event_id: int
    operator: UserRef


@dataclass(frozen=True)
class BotJoinedGroup:
    kind: ClassVar[EventKind] = EventKind.BOT_JOINED_GROUP

    event_id: int
    group: GroupRef
    inviter_id: Optional[int] = None


@dataclass(frozen=True)
class BotLeftGroup:
    kind: ClassVar[EventKind] = EventKind.BOT_LEFT_GROUP

    event_id: int
    group: GroupRef
    reason: str
    operator_id: Optional[int] = None


@dataclass(frozen=True)
class CommandExecuted:
    kind: ClassVar[EventKind] = EventKind.COMMAND_EXECUTED
    __hash__ = None  # type: ignore[assignment]

    event_id: int
    name: str
    sender: Optional[UserRef] = None
    args: tuple[Mapping[str, Any], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Unknown:
    """Catch-all for tags this SDK version does not model.

    `raw` is a read-only view of the payload; like messages, instances are
    not hashable.
    """

    kind: ClassVar[EventKind] = EventKind.UNKNOWN
    __hash__ = None  # type: ignore[assignment]

    event_id: int
    type: Optional[str]
    raw: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


Event = Union[
    MessageReceived,
    MessageRecalled,
    Nudge,
    FriendRequest,
    FriendAdded,
    FriendDeleted,
    GroupInvite,
    MemberJoinRequest,
    MemberJoin,
    MemberLeave,
    MemberMuted,
    MemberUnmuted,
    BotOnline,
    BotOffline,
    BotMuted,
    BotUnmuted,
    BotJoinedGroup,
    BotLeftGroup,
    CommandExecuted,
    Unknown,
]


# -- field helpers -----------------------------------------------------------


def whole_number(value: Any) -> Optional[int]:
    """Return `value` as an int when it is a whole number, else None.

    Accepts ints, integral finite floats (`3.0`) and decimal digit strings.
    Booleans, fractional or non-finite floats and anything else are refused,
    so a malformed id can never be truncated onto a real one.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        # is_integer() is False for inf and nan.
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        if not _DECIMAL_RE.match(text):
            return None
        try:
            return int(text)
        except ValueError:
            # Longer than the interpreter's int string limit.
            return None
    return None


def _int(raw: Mapping[str, Any], key: str, default: Optional[int] = None) -> int:
    value = raw.get(key)
    if value is None:
        if default is None:
            raise DecodeError(f"payload missing field {key!r}", reason=INVALID_FIELD)
        return default
    parsed = whole_number(value)
    if parsed is None:
        raise DecodeError(f"field {key!r} must be an integer", reason=INVALID_FIELD)
    return parsed


def _optional_int(raw: Mapping[str, Any], key: str) -> Optional[int]:
    if raw.get(key) is None:
        return None
    return _int(raw, key)


def _str(raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    return "" if value is None else str(value)


def _mapping(raw: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise DecodeError(f"field {key!r} must be an object", reason=INVALID_FIELD)
    return value


def _segments(raw: Mapping[str, Any], key: str) -> tuple[Mapping[str, Any], ...]:
    value = raw.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        raise DecodeError(f"field {key!r} must be a list", reason=INVALID_FIELD)
    return tuple(
        MappingProxyType(dict(item)) for item in value if isinstance(item, Mapping)
    )


def _group(raw: Optional[Mapping[str, Any]]) -> Optional[GroupRef]:
    if raw is None:
        return None
    return GroupRef(
        id=_int(raw, "id"),
        name=_str(raw, "name"),
        permission=raw.get("permission"),
    )


def _user(raw: Optional[Mapping[str, Any]]) -> Optional[UserRef]:
    if raw is None:
        return None
    name = raw.get("memberName")
    if name is None:
        name = raw.get("nickname")
    return UserRef(
        id=_int(raw, "id"),
        name="" if name is None else str(name),
        remark=raw.get("remark"),
        permission=raw.get("permission"),
        group=_group(_mapping(raw, "group")),
    )


def _required_user(raw: Mapping[str, Any], key: str) -> UserRef:
    user = _user(_mapping(raw, key))
    if user is None:
        raise DecodeError(f"payload missing field {key!r}", reason=INVALID_FIELD)
    return user


def _required_group(raw: Mapping[str, Any], key: str) -> GroupRef:
    group = _group(_mapping(raw, key))
    if group is None:
        raise DecodeError(f"payload missing field {key!r}", reason=INVALID_FIELD)
    return group


def _operator_id(raw: Mapping[str, Any], key: str = "operator") -> Optional[int]:
    value = raw.get(key)
    if isinstance(value, Mapping):
        return _int(value, "id")
    return _optional_int(raw, key)


# -- per-tag decoders --------------------------------------------------------


def _decode_message(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    # Sync messages (sent by the bot from another client) carry `subject`.
    sender = _user(_mapping(raw, "sender")) or _user(_mapping(raw, "subject"))
    if sender is None:
        raise DecodeError("message payload missing sender", reason=INVALID_FIELD)
    chain = _segments(raw, "messageChain")
    message_id = None
    time = None
    for segment in chain:
        if segment.get("type") == "Source":
            message_id = _optional_int(segment, "id")
            time = _optional_int(segment, "time")
            break
    return MessageReceived(
        event_id=event_id,
        message_type=tag,
        sender=sender,
        chain=chain,
        message_id=message_id,
        time=time,
    )


def _decode_bot_online(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return BotOnline(
        event_id=event_id,
        account_id=_int(raw, "qq"),
        relogin=tag == "BotReloginEvent",
    )


_OFFLINE_REASONS = {
    "BotOfflineEventActive": "active",
    "BotOfflineEventForce": "forced",
    "BotOfflineEventDropped": "dropped",
}


def _decode_bot_offline(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return BotOffline(
        event_id=event_id,
        account_id=_int(raw, "qq"),
        reason=_OFFLINE_REASONS[tag],
        title=_str(raw, "title"),
        message=_str(raw, "message"),
    )


def _decode_recall(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return MessageRecalled(
        event_id=event_id,
        author_id=_int(raw, "authorId"),
        message_id=_int(raw, "messageId"),
        time=_optional_int(raw, "time"),
        group=_group(_mapping(raw, "group")),
        operator_id=_operator_id(raw),
    )


def _decode_nudge(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    subject = _mapping(raw, "subject") or {}
    return Nudge(
        event_id=event_id,
        from_id=_int(raw, "fromId"),
        target_id=_int(raw, "target"),
        subject_kind=_str(subject, "kind") or "Friend",
        subject_id=_int(subject, "id", 0),
        action=_str(raw, "action"),
        suffix=_str(raw, "suffix"),
    )


def _decode_friend_request(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return FriendRequest(
        event_id=event_id,
        request_id=_int(raw, "eventId"),
        from_id=_int(raw, "fromId"),
        group_id=_int(raw, "groupId", 0),
        nick=_str(raw, "nick"),
        message=_str(raw, "message"),
    )


def _decode_group_invite(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return GroupInvite(
        event_id=event_id,
        request_id=_int(raw, "eventId"),
        from_id=_int(raw, "fromId"),
        group_id=_int(raw, "groupId"),
        group_name=_str(raw, "groupName"),
        nick=_str(raw, "nick"),
        message=_str(raw, "message"),
    )


def _decode_member_join_request(
    event_id: int, tag: str, raw: Mapping[str, Any]
) -> Event:
    return MemberJoinRequest(
        event_id=event_id,
        request_id=_int(raw, "eventId"),
        from_id=_int(raw, "fromId"),
        group_id=_int(raw, "groupId"),
        group_name=_str(raw, "groupName"),
        nick=_str(raw, "nick"),
        message=_str(raw, "message"),
        inviter_id=_optional_int(raw, "invitorId"),
    )


def _decode_friend_added(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return FriendAdded(
        event_id=event_id,
        friend=_required_user(raw, "friend"),
        from_stranger=bool(raw.get("stranger", False)),
    )


def _decode_friend_deleted(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return FriendDeleted(event_id=event_id, friend=_required_user(raw, "friend"))


def _decode_member_join(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return MemberJoin(
        event_id=event_id,
        member=_required_user(raw, "member"),
        inviter_id=_operator_id(raw, "invitor"),
    )


def _decode_member_leave(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return MemberLeave(
        event_id=event_id,
        member=_required_user(raw, "member"),
        kicked=tag == "MemberLeaveEventKick",
        operator_id=_operator_id(raw),
    )


def _decode_member_mute(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return MemberMuted(
        event_id=event_id,
        member=_required_user(raw, "member"),
        duration_seconds=_int(raw, "durationSeconds", 0),
        operator_id=_operator_id(raw),
    )


def _decode_member_unmute(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return MemberUnmuted(
        event_id=event_id,
        member=_required_user(raw, "member"),
        operator_id=_operator_id(raw),
    )


def _decode_bot_mute(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return BotMuted(
        event_id=event_id,
        operator=_required_user(raw, "operator"),
        duration_seconds=_int(raw, "durationSeconds", 0),
    )


def _decode_bot_unmute(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return BotUnmuted(event_id=event_id, operator=_required_user(raw, "operator"))


def _decode_bot_join_group(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return BotJoinedGroup(
        event_id=event_id,
        group=_required_group(raw, "group"),
        inviter_id=_operator_id(raw, "invitor"),
    )


_LEAVE_REASONS = {
    "BotLeaveEventActive": "active",
    "BotLeaveEventKick": "kicked",
    "BotLeaveEventDisband": "disband",
}


def _decode_bot_leave_group(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    return BotLeftGroup(
        event_id=event_id,
        group=_required_group(raw, "group"),
        reason=_LEAVE_REASONS[tag],
        operator_id=_operator_id(raw),
    )


def _decode_command(event_id: int, tag: str, raw: Mapping[str, Any]) -> Event:
    sender = _user(_mapping(raw, "member")) or _user(_mapping(raw, "friend"))
    return CommandExecuted(
        event_id=event_id,
        name=_str(raw, "name"),
        sender=sender,
        args=_segments(raw, "args"),
    )


_Decoder = Callable[[int, str, Mapping[str, Any]], Event]

_MESSAGE_TAGS = (
    "FriendMessage",
    "FriendSyncMessage",
    "GroupMessage",
    "GroupSyncMessage",
    "TempMessage",
    "TempSyncMessage",
    "StrangerMessage",
    "StrangerSyncMessage",
    "OtherClientMessage",
)

DECODERS: Dict[str, _Decoder] = {
    **{tag: _decode_message for tag in _MESSAGE_TAGS},
    "BotOnlineEvent": _decode_bot_online,
    "BotReloginEvent": _decode_bot_online,
    **{tag: _decode_bot_offline for tag in _OFFLINE_REASONS},
    "GroupRecallEvent": _decode_recall,
    "FriendRecallEvent": _decode_recall,
    "NudgeEvent": _decode_nudge,
    "NewFriendRequestEvent": _decode_friend_request,
    "BotInvitedJoinGroupRequestEvent": _decode_group_invite,
    "MemberJoinRequestEvent": _decode_member_join_request,
    "FriendAddEvent": _decode_friend_added,
    "FriendDeleteEvent": _decode_friend_deleted,
    "MemberJoinEvent": _decode_member_join,
    "MemberLeaveEventKick": _decode_member_leave,
    "MemberLeaveEventQuit": _decode_member_leave,
    "MemberMuteEvent": _decode_member_mute,
    "MemberUnmuteEvent": _decode_member_unmute,
    "BotMuteEvent": _decode_bot_mute,
    "BotUnmuteEvent": _decode_bot_unmute,
    "BotJoinGroupEvent": _decode_bot_join_group,
    **{tag: _decode_bot_leave_group for tag in _LEAVE_REASONS},
    "CommandExecutedEvent": _decode_command,
}


def extract_event_id(raw: Mapping[str, Any]) -> int:
    value = raw.get(EVENT_ID_KEY)
    if value is None:
        raise DecodeError("event payload has no event_id", reason=DecodeError.MISSING_ID)
    event_id = whole_number(value)
    if event_id is None:
        raise DecodeError(
            f"event_id must be an integer, got {value!r:.40}",
            reason=DecodeError.INVALID_ID,
        )
    if event_id < 0:
        raise DecodeError("event_id must be non-negative", reason=DecodeError.INVALID_ID)
    return event_id


def decode(raw: Any) -> Event:
    """Decode one raw payload (a mapping, or JSON text/bytes) into an Event."""

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(
                f"event payload is not valid UTF-8: {exc}",
                reason=DecodeError.INVALID_JSON,
            ) from exc
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (ValueError, RecursionError) as exc:
            raise DecodeError(
                f"event payload is not valid JSON: {exc}",
                reason=DecodeError.INVALID_JSON,
            ) from exc
    if not isinstance(raw, Mapping):
        raise DecodeError(
            "event payload must be a JSON object", reason=DecodeError.NOT_AN_OBJECT
        )
    event_id = extract_event_id(raw)
    tag = raw.get("type")
    decoder = DECODERS.get(tag) if isinstance(tag, str) else None
    if decoder is None:
        return Unknown(
            event_id=event_id,
            type=tag if isinstance(tag, str) else None,
            raw=MappingProxyType(dict(raw)),
        )
    return decoder(event_id, tag, raw)


def make_chain(*parts: Union[str, Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Build an outgoing message chain; plain strings become `Plain` segments."""

    chain: list[dict[str, Any]] = []
    for part in parts:
        if isinstance(part, str):
            chain.append({"type": "Plain", "text": part})
        else:
            chain.append(dict(part))
    return chain

