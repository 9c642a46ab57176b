from __future__ import annotations

import json

import pytest

from mahpy.core.exceptions import DecodeError
from mahpy.events import (
    BotLeftGroup,
    BotOffline,
    EventKind,
    FriendRequest,
    GroupRef,
    MemberLeave,
    MessageReceived,
    MessageRecalled,
    Nudge,
    Unknown,
    decode,
    make_chain,
)


def test_decode_friend_message(make_friend_message) -> None:
    event = decode(make_friend_message(7, "ping"))

    assert isinstance(event, MessageReceived)
    assert event.kind is EventKind.MESSAGE_RECEIVED
    assert event.event_id == 7
    assert event.sender.id == 42
    assert event.sender.name == "alice"
    assert event.message_id == 1007
    assert event.time == 1700000000
    assert event.text == "ping"
    assert not event.is_group


def test_decode_group_message_keeps_group_of_sender() -> None:
    event = decode(
        {
            "event_id": 3,
            "type": "GroupMessage",
            "sender": {
                "id": 5,
                "memberName": "bob",
                "permission": "MEMBER",
                "group": {"id": 900, "name": "devs", "permission": "ADMINISTRATOR"},
            },
            "messageChain": [{"type": "Plain", "text": "hi "}, {"type": "At", "target": 1}],
        }
    )

    assert isinstance(event, MessageReceived)
    assert event.is_group
    assert event.group == GroupRef(id=900, name="devs", permission="ADMINISTRATOR")
    assert event.text == "hi"
    assert event.message_id is None


def test_decode_sync_message_uses_subject_as_sender() -> None:
    event = decode(
        {
            "event_id": 4,
            "type": "FriendSyncMessage",
            "subject": {"id": 77, "nickname": "carol"},
            "messageChain": [],
        }
    )

    assert isinstance(event, MessageReceived)
    assert event.is_sync
    assert event.sender.id == 77


def test_decode_is_idempotent(make_friend_message) -> None:
    raw = make_friend_message(11, "same")

    assert decode(raw) == decode(raw)
    assert decode(json.dumps(raw)) == decode(raw.copy())


def test_unknown_kind_decodes_to_unknown() -> None:
    raw = {"event_id": 9, "type": "FutureEventKind", "anything": {"nested": [1, 2]}}

    event = decode(raw)

    assert isinstance(event, Unknown)
    assert event.kind is EventKind.UNKNOWN
    assert event.type == "FutureEventKind"
    assert event.raw == raw


def test_missing_type_tag_decodes_to_unknown() -> None:
    event = decode({"event_id": 1})

    assert isinstance(event, Unknown)
    assert event.type is None


def test_missing_event_id_fails_with_missing_id(make_friend_message) -> None:
    raw = make_friend_message(1)
    del raw["event_id"]

    with pytest.raises(DecodeError) as excinfo:
        decode(raw)

    assert excinfo.value.reason == DecodeError.MISSING_ID


@pytest.mark.parametrize("bad_id", ["abc", -1, True, 1.5j])
def test_invalid_event_id_fails_with_invalid_id(bad_id) -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode({"event_id": bad_id, "type": "BotOnlineEvent", "qq": 1})

    assert excinfo.value.reason == DecodeError.INVALID_ID


@pytest.mark.parametrize(
    "raw_id",
    ["1e400", "-1e400", "NaN", "1.9", "0.5", '"1.9"', '"12abc"', '"1_000"'],
)
def test_non_integral_event_ids_are_rejected(raw_id: str) -> None:
    body = f'{{"event_id": {raw_id}, "type": "FriendMessage"}}'.encode("utf-8")

    with pytest.raises(DecodeError) as excinfo:
        decode(body)

    assert excinfo.value.reason == DecodeError.INVALID_ID


@pytest.mark.parametrize("raw_id, expected", [("12", 12), (" 7 ", 7), (3.0, 3), (0, 0)])
def test_whole_number_event_ids_are_accepted(raw_id, expected: int) -> None:
    event = decode({"event_id": raw_id, "type": "BotOnlineEvent", "qq": 1})

    assert event.event_id == expected


def test_overflowing_payload_field_is_a_decode_error() -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode(b'{"event_id": 4, "type": "BotOnlineEvent", "qq": 1e400}')

    assert excinfo.value.reason == "invalid_field"


def test_invalid_utf8_body_is_rejected_as_invalid_json() -> None:
    body = b'{"event_id": 1, "type": "FriendMessage", "text": "\xff\xfe"}'

    with pytest.raises(DecodeError) as excinfo:
        decode(body)

    assert excinfo.value.reason == DecodeError.INVALID_JSON


def test_payload_containers_are_read_only(make_friend_message) -> None:
    message = decode(make_friend_message(1, "hi"))
    unknown = decode({"event_id": 2, "type": "FutureEventKind", "x": 1})

    with pytest.raises(TypeError):
        message.chain[1]["text"] = "changed"  # type: ignore[index]
    with pytest.raises(TypeError):
        unknown.raw["x"] = 2  # type: ignore[index]
    with pytest.raises(TypeError):
        hash(message)
    assert unknown == decode({"event_id": 2, "type": "FutureEventKind", "x": 1})


def test_non_object_and_invalid_json_payloads() -> None:
    with pytest.raises(DecodeError) as not_object:
        decode([1, 2, 3])
    with pytest.raises(DecodeError) as bad_json:
        decode(b"{not json")

    assert not_object.value.reason == DecodeError.NOT_AN_OBJECT
    assert bad_json.value.reason == DecodeError.INVALID_JSON


def test_malformed_known_kind_is_a_decode_error() -> None:
    with pytest.raises(DecodeError) as excinfo:
        decode({"event_id": 2, "type": "GroupRecallEvent", "messageId": 5})

    assert excinfo.value.reason == "invalid_field"


def test_request_event_keeps_server_request_id_apart_from_event_id() -> None:
    event = decode(
        {
            "event_id": 20,
            "type": "NewFriendRequestEvent",
            "eventId": 555,
            "fromId": 123,
            "groupId": 0,
            "nick": "dave",
            "message": "add me",
        }
    )

    assert event == FriendRequest(
        event_id=20, request_id=555, from_id=123, group_id=0, nick="dave", message="add me"
    )


def test_decode_variant_payloads() -> None:
    recalled = decode(
        {
            "event_id": 1,
            "type": "GroupRecallEvent",
            "authorId": 5,
            "messageId": 99,
            "time": 10,
            "group": {"id": 900, "name": "devs"},
            "operator": {"id": 6, "memberName": "mod"},
        }
    )
    nudge = decode(
        {
            "event_id": 2,
            "type": "NudgeEvent",
            "fromId": 5,
            "target": 10001,
            "subject": {"id": 900, "kind": "Group"},
            "action": "pokes",
        }
    )
    kicked = decode(
        {
            "event_id": 3,
            "type": "MemberLeaveEventKick",
            "member": {"id": 5, "memberName": "bob", "group": {"id": 900}},
            "operator": None,
        }
    )
    offline = decode({"event_id": 4, "type": "BotOfflineEventDropped", "qq": 10001})
    left = decode(
        {"event_id": 5, "type": "BotLeaveEventDisband", "group": {"id": 900}}
    )

    assert isinstance(recalled, MessageRecalled)
    assert recalled.operator_id == 6
    assert recalled.group is not None and recalled.group.id == 900
    assert isinstance(nudge, Nudge)
    assert (nudge.subject_kind, nudge.subject_id) == ("Group", 900)
    assert isinstance(kicked, MemberLeave)
    assert kicked.kicked and kicked.operator_id is None
    assert isinstance(offline, BotOffline) and offline.reason == "dropped"
    assert isinstance(left, BotLeftGroup) and left.reason == "disband"


def test_make_chain_turns_strings_into_plain_segments() -> None:
    chain = make_chain("hello", {"type": "Face", "faceId": 1})

    assert chain == [
        {"type": "Plain", "text": "hello"},
        {"type": "Face", "faceId": 1},
    ]
