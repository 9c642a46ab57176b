"""Outbound calls against the bot-control server's HTTP API.

`TransportClient` holds no state of its own besides the `Session` it is given.
Every call checks the session first, then maps failures onto
`TransportError` / `ProtocolError` / `RemoteError`. Nothing is retried here:
message sends in particular are not idempotent.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional, Sequence

from .core.envelope import request_json
from .core.exceptions import ProtocolError, RemoteError
from .core.logging_utils import log_event
from .events import FriendRequest, GroupInvite, MemberJoinRequest, make_chain
from .session import Session

logger = logging.getLogger(__name__)

SEND_PATHS = {
    "friend": "/sendFriendMessage",
    "group": "/sendGroupMessage",
    "temp": "/sendTempMessage",
    "other_client": "/sendOtherClientMessage",
}
MEDIA_TYPES = ("friend", "group", "temp")

# Operate codes accepted by the resp/* endpoints.
FRIEND_REQUEST_ACCEPT = 0
FRIEND_REQUEST_DECLINE = 1
FRIEND_REQUEST_DECLINE_AND_BLOCK = 2
MEMBER_JOIN_ACCEPT = 0
MEMBER_JOIN_DECLINE = 1
MEMBER_JOIN_IGNORE = 2
MEMBER_JOIN_DECLINE_AND_BLOCK = 3
MEMBER_JOIN_IGNORE_AND_BLOCK = 4
GROUP_INVITE_ACCEPT = 0
GROUP_INVITE_DECLINE = 1


def _data(payload: Any, path: str) -> Any:
    if not isinstance(payload, Mapping) or "data" not in payload:
        raise ProtocolError(f"response for {path} did not contain data")
    return payload["data"]


def _list_data(payload: Any, path: str) -> list[Any]:
    data = _data(payload, path)
    if not isinstance(data, list):
        raise ProtocolError(f"response for {path} must contain a list")
    return data


def _file_locator(file_id: str, path: Optional[str]) -> dict[str, Any]:
    """Address a group file by id, or by path when one is given; empty id means root."""

    if path is not None:
        if file_id:
            raise ValueError("pass either a file id or a path, not both")
        return {"path": path}
    return {"id": file_id} if file_id else {}


class TransportClient:
    def __init__(self, session: Session, *, ack_action: Optional[str] = None) -> None:
        self._session = session
        self._ack_action = ack_action

    @property
    def session(self) -> Session:
        return self._session

    async def _call(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
        files: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        headers = self._session.headers()
        try:
            return await request_json(
                self._session.http,
                method,
                path,
                json=json,
                params=params,
                headers=headers,
                data=data,
                files=files,
            )
        except RemoteError as exc:
            if exc.session_fatal:
                self._session.invalidate(f"code={exc.code} {exc.message}".strip())
            raise

    # -- core calls ----------------------------------------------------------

    async def send_message(
        self,
        target: int,
        chain: Sequence[Any],
        *,
        kind: str = "friend",
        group: Optional[int] = None,
        quote: Optional[int] = None,
    ) -> int:
        """Send a message chain and return the server-assigned message id."""

        path = SEND_PATHS.get(kind)
        if path is None:
            raise ValueError(f"unknown message kind: {kind!r}")
        body: dict[str, Any] = {"messageChain": make_chain(*chain)}
        if kind == "temp":
            if group is None:
                raise ValueError("temp messages need the group the member belongs to")
            body["qq"] = target
            body["group"] = group
        else:
            body["target"] = target
        if quote is not None:
            body["quote"] = quote
        payload = await self._call("POST", path, json=body)
        message_id = payload.get("messageId") if isinstance(payload, Mapping) else None
        if isinstance(message_id, bool) or not isinstance(message_id, int):
            raise ProtocolError(f"response for {path} did not contain a messageId")
        log_event(
            logger,
            logging.DEBUG,
            "transport.message.sent",
            kind=kind,
            target=target,
            message_id=message_id,
        )
        return message_id

    async def fetch_events(
        self, count: Optional[int] = None, offset: Optional[int] = None
    ) -> list[Any]:
        """Fetch (and consume) up to `count` pending raw event payloads."""

        params: dict[str, Any] = {}
        if count is not None:
            params["count"] = count
        if offset is not None:
            params["offset"] = offset
        payload = await self._call("GET", "/fetchMessage", params=params or None)
        return _list_data(payload, "/fetchMessage")

    async def peek_events(self, count: Optional[int] = None) -> list[Any]:
        params = {"count": count} if count is not None else None
        payload = await self._call("GET", "/peekMessage", params=params)
        return _list_data(payload, "/peekMessage")

    async def fetch_latest_events(self, count: Optional[int] = None) -> list[Any]:
        """Fetch (and consume) the newest pending events instead of the oldest."""

        params = {"count": count} if count is not None else None
        payload = await self._call("GET", "/fetchLatestMessage", params=params)
        return _list_data(payload, "/fetchLatestMessage")

    async def peek_latest_events(self, count: Optional[int] = None) -> list[Any]:
        params = {"count": count} if count is not None else None
        payload = await self._call("GET", "/peekLatestMessage", params=params)
        return _list_data(payload, "/peekLatestMessage")

    async def count_events(self) -> int:
        payload = await self._call("GET", "/countMessage")
        count = _data(payload, "/countMessage")
        if isinstance(count, bool) or not isinstance(count, int):
            raise ProtocolError("response for /countMessage must contain an integer")
        return count

    async def ack_events(self, ids: Iterable[int]) -> None:
        """Acknowledge consumed events so the server does not redeliver them.

        Without an ack action the server is assumed to consume events on fetch.
        """
        event_ids = list(ids)
        if not event_ids:
            return
        if self._ack_action is None:
            self._session.ensure_open()
            return
        await self._call(
            "POST",
            "/" + self._ack_action.lstrip("/"),
            json={"sessionKey": self._session.auth_key, "eventIds": event_ids},
        )

    async def call_action(
        self,
        name: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        method: str = "POST",
    ) -> Any:
        """Invoke any server action by name; returns `data` when present."""

        path = "/" + name.lstrip("/")
        method = method.upper()
        if method == "GET":
            payload = await self._call(method, path, params=params)
        else:
            payload = await self._call(method, path, json=dict(params or {}))
        if isinstance(payload, Mapping) and "data" in payload:
            return payload["data"]
        return payload

    # -- messages ------------------------------------------------------------

    async def message_from_id(self, message_id: int, target: int) -> Mapping[str, Any]:
        payload = await self._call(
            "GET", "/messageFromId", params={"messageId": message_id, "target": target}
        )
        data = _data(payload, "/messageFromId")
        if not isinstance(data, Mapping):
            raise ProtocolError("response for /messageFromId must contain an object")
        return data

    async def recall(self, message_id: int, target: int) -> None:
        await self._call(
            "POST", "/recall", json={"messageId": message_id, "target": target}
        )

    async def nudge(self, target: int, subject: int, kind: str = "Friend") -> None:
        await self._call(
            "POST",
            "/sendNudge",
            json={"target": target, "subject": subject, "kind": kind},
        )

    async def upload_image(
        self,
        media_type: str,
        *,
        url: Optional[str] = None,
        data: Optional[bytes] = None,
        filename: str = "image.png",
    ) -> Mapping[str, Any]:
        return await self._upload_media(
            "/uploadImage", "img", "imageId", media_type, url, data, filename
        )

    async def upload_voice(
        self,
        media_type: str,
        *,
        url: Optional[str] = None,
        data: Optional[bytes] = None,
        filename: str = "voice.amr",
    ) -> Mapping[str, Any]:
        return await self._upload_media(
            "/uploadVoice", "voice", "voiceId", media_type, url, data, filename
        )

    async def _upload_media(
        self,
        path: str,
        part: str,
        id_field: str,
        media_type: str,
        url: Optional[str],
        data: Optional[bytes],
        filename: str,
    ) -> Mapping[str, Any]:
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"unknown media type: {media_type!r}")
        if (url is None) == (data is None):
            raise ValueError("pass exactly one of url or data")
        form: dict[str, Any] = {"type": media_type}
        files = None
        if url is not None:
            form["url"] = url
        else:
            files = {part: (filename, data)}
        payload = await self._call("POST", path, data=form, files=files)
        if not isinstance(payload, Mapping) or id_field not in payload:
            raise ProtocolError(f"response for {path} did not contain an {id_field}")
        return payload

    async def roaming_messages(
        self,
        target: int,
        time_start: int,
        time_end: int,
        *,
        kind: str = "friend",
    ) -> list[Any]:
        """Return messages exchanged with `target` between two unix timestamps.

        `kind` selects whether `target` is a friend (`qq`) or a group.
        """
        if kind not in ("friend", "group"):
            raise ValueError(f"unknown roaming target kind: {kind!r}")
        body: dict[str, Any] = {"timeStart": time_start, "timeEnd": time_end}
        body["qq" if kind == "friend" else "group"] = target
        payload = await self._call("POST", "/roamingMessages", json=body)
        return _list_data(payload, "/roamingMessages")

    # -- info ----------------------------------------------------------------

    async def friend_list(self) -> list[Any]:
        return _list_data(await self._call("GET", "/friendList"), "/friendList")

    async def group_list(self) -> list[Any]:
        return _list_data(await self._call("GET", "/groupList"), "/groupList")

    async def member_list(self, group: int) -> list[Any]:
        payload = await self._call("GET", "/memberList", params={"target": group})
        return _list_data(payload, "/memberList")

    async def bot_profile(self) -> Mapping[str, Any]:
        return await self._call("GET", "/botProfile")

    async def session_info(self) -> Mapping[str, Any]:
        return _data(await self._call("GET", "/sessionInfo"), "/sessionInfo")

    async def friend_profile(self, friend: int) -> Mapping[str, Any]:
        return await self._call("GET", "/friendProfile", params={"target": friend})

    async def member_profile(self, group: int, member: int) -> Mapping[str, Any]:
        return await self._call(
            "GET", "/memberProfile", params={"target": group, "memberId": member}
        )

    async def user_profile(self, user: int) -> Mapping[str, Any]:
        return await self._call("GET", "/userProfile", params={"target": user})

    async def latest_member_list(
        self, group: int, members: Iterable[int] = ()
    ) -> list[Any]:
        """Like `member_list`, but refreshed from the server; narrowed to `members` when given."""

        params: dict[str, Any] = {"target": group}
        member_ids = list(members)
        if member_ids:
            params["memberIds"] = member_ids
        payload = await self._call("GET", "/latestMemberList", params=params)
        return _list_data(payload, "/latestMemberList")

    # -- group management ----------------------------------------------------

    async def mute(self, group: int, member: int, seconds: int) -> None:
        await self._call(
            "POST",
            "/mute",
            json={"target": group, "memberId": member, "time": seconds},
        )

    async def unmute(self, group: int, member: int) -> None:
        await self._call("POST", "/unmute", json={"target": group, "memberId": member})

    async def mute_all(self, group: int) -> None:
        await self._call("POST", "/muteAll", json={"target": group})

    async def unmute_all(self, group: int) -> None:
        await self._call("POST", "/unmuteAll", json={"target": group})

    async def kick(
        self, group: int, member: int, *, message: str = "", block: bool = False
    ) -> None:
        await self._call(
            "POST",
            "/kick",
            json={"target": group, "memberId": member, "msg": message, "block": block},
        )

    async def quit_group(self, group: int) -> None:
        await self._call("POST", "/quit", json={"target": group})

    async def delete_friend(self, friend: int) -> None:
        await self._call("POST", "/deleteFriend", json={"target": friend})

    async def set_essence(self, group: int, message_id: int) -> None:
        await self._call(
            "POST", "/setEssence", json={"target": group, "messageId": message_id}
        )

    async def group_config(self, group: int) -> Mapping[str, Any]:
        return await self._call("GET", "/groupConfig", params={"target": group})

    async def update_group_config(
        self,
        group: int,
        *,
        name: Optional[str] = None,
        allow_member_invite: Optional[bool] = None,
    ) -> None:
        """Change the given group settings; fields left as None are untouched."""

        config: dict[str, Any] = {}
        if name is not None:
            config["name"] = name
        if allow_member_invite is not None:
            config["allowMemberInvite"] = allow_member_invite
        await self._call("POST", "/groupConfig", json={"target": group, "config": config})

    async def member_info(self, group: int, member: int) -> Mapping[str, Any]:
        return await self._call(
            "GET", "/memberInfo", params={"target": group, "memberId": member}
        )

    async def update_member_info(
        self,
        group: int,
        member: int,
        *,
        name: Optional[str] = None,
        special_title: Optional[str] = None,
    ) -> None:
        info: dict[str, Any] = {}
        if name is not None:
            info["name"] = name
        if special_title is not None:
            info["specialTitle"] = special_title
        await self._call(
            "POST",
            "/memberInfo",
            json={"target": group, "memberId": member, "info": info},
        )

    async def set_member_admin(self, group: int, member: int, assign: bool = True) -> None:
        await self._call(
            "POST",
            "/memberAdmin",
            json={"target": group, "memberId": member, "assign": assign},
        )

    # -- group files ---------------------------------------------------------

    async def list_files(
        self,
        group: int,
        *,
        file_id: str = "",
        path: Optional[str] = None,
        offset: int = 0,
        size: Optional[int] = None,
        with_download_info: bool = False,
    ) -> list[Any]:
        """List a group directory. The root is listed when neither id nor path is given."""

        params = _file_locator(file_id, path)
        params["target"] = group
        if offset:
            params["offset"] = offset
        if size is not None:
            params["size"] = size
        if with_download_info:
            params["withDownloadInfo"] = "true"
        payload = await self._call("GET", "/file/list", params=params)
        return _list_data(payload, "/file/list")

    async def file_info(
        self,
        group: int,
        *,
        file_id: str = "",
        path: Optional[str] = None,
        with_download_info: bool = False,
    ) -> Mapping[str, Any]:
        params = _file_locator(file_id, path)
        params["target"] = group
        if with_download_info:
            params["withDownloadInfo"] = "true"
        return _data(await self._call("GET", "/file/info", params=params), "/file/info")

    async def make_directory(
        self,
        group: int,
        name: str,
        *,
        file_id: str = "",
        path: Optional[str] = None,
    ) -> Mapping[str, Any]:
        body = _file_locator(file_id, path)
        body.update({"target": group, "directoryName": name})
        return _data(await self._call("POST", "/file/mkdir", json=body), "/file/mkdir")

    async def upload_file(
        self, group: int, path: str, filename: str, data: bytes
    ) -> Mapping[str, Any]:
        """Upload `data` as `filename` into the group directory at `path`."""

        form = {"path": path, "type": "group", "target": str(group)}
        payload = await self._call(
            "POST", "/file/upload", data=form, files={"file": (filename, data)}
        )
        return _data(payload, "/file/upload")

    async def delete_file(
        self, group: int, *, file_id: str = "", path: Optional[str] = None
    ) -> None:
        body = _file_locator(file_id, path)
        body["target"] = group
        await self._call("POST", "/file/delete", json=body)

    async def move_file(
        self,
        group: int,
        *,
        file_id: str = "",
        path: Optional[str] = None,
        move_to: Optional[str] = None,
        move_to_path: Optional[str] = None,
    ) -> None:
        """Move a file into the directory named by id (`move_to`) or by path."""

        if (move_to is None) == (move_to_path is None):
            raise ValueError("pass exactly one of move_to or move_to_path")
        body = _file_locator(file_id, path)
        body["target"] = group
        if move_to is not None:
            body["moveTo"] = move_to
        else:
            body["moveToPath"] = move_to_path
        await self._call("POST", "/file/move", json=body)

    async def rename_file(
        self,
        group: int,
        new_name: str,
        *,
        file_id: str = "",
        path: Optional[str] = None,
    ) -> None:
        body = _file_locator(file_id, path)
        body.update({"target": group, "renameTo": new_name})
        await self._call("POST", "/file/rename", json=body)

    # -- console commands ----------------------------------------------------

    async def execute_command(self, *command: Any) -> None:
        await self._call("POST", "/cmd/execute", json={"command": make_chain(*command)})

    async def register_command(
        self,
        name: str,
        *,
        alias: Optional[Sequence[str]] = None,
        usage: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        body: dict[str, Any] = {"name": name}
        if alias is not None:
            body["alias"] = list(alias)
        if usage is not None:
            body["usage"] = usage
        if description is not None:
            body["description"] = description
        await self._call("POST", "/cmd/register", json=body)

    # -- announcements -------------------------------------------------------

    async def list_announcements(
        self, group: int, *, offset: int = 0, size: Optional[int] = None
    ) -> list[Any]:
        params: dict[str, Any] = {"id": group}
        if offset:
            params["offset"] = offset
        if size is not None:
            params["size"] = size
        return _list_data(await self._call("GET", "/anno/list", params=params), "/anno/list")

    async def publish_announcement(
        self,
        group: int,
        content: str,
        *,
        send_to_new_member: Optional[bool] = None,
        pinned: Optional[bool] = None,
        show_edit_card: Optional[bool] = None,
        show_popup: Optional[bool] = None,
        require_confirmation: Optional[bool] = None,
        image_url: Optional[str] = None,
        image_path: Optional[str] = None,
        image_base64: Optional[str] = None,
    ) -> Mapping[str, Any]:
        """Publish a group announcement and return the server's record of it.

        At most one of the image sources may be given.
        """
        images = {
            "imageUrl": image_url,
            "imagePath": image_path,
            "imageBase64": image_base64,
        }
        images = {key: value for key, value in images.items() if value is not None}
        if len(images) > 1:
            raise ValueError("pass at most one announcement image")
        flags = {
            "sendToNewMember": send_to_new_member,
            "pinned": pinned,
            "showEditCard": show_edit_card,
            "showPopup": show_popup,
            "requireConfirmation": require_confirmation,
        }
        body: dict[str, Any] = {"target": group, "content": content}
        body.update({key: value for key, value in flags.items() if value is not None})
        body.update(images)
        payload = await self._call("POST", "/anno/publish", json=body)
        return _data(payload, "/anno/publish")

    async def delete_announcement(self, group: int, announcement_id: str) -> None:
        await self._call("POST", "/anno/delete", json={"id": group, "fid": announcement_id})

    # -- request events ------------------------------------------------------

    async def _respond(
        self, path: str, request_id: int, from_id: int, group_id: int, operate: int, message: str
    ) -> None:
        await self._call(
            "POST",
            path,
            json={
                "eventId": request_id,
                "fromId": from_id,
                "groupId": group_id,
                "operate": operate,
                "message": message,
            },
        )

    async def respond_friend_request(
        self, request: FriendRequest, operate: int, message: str = ""
    ) -> None:
        await self._respond(
            "/resp/newFriendRequestEvent",
            request.request_id,
            request.from_id,
            request.group_id,
            operate,
            message,
        )

    async def respond_member_join_request(
        self, request: MemberJoinRequest, operate: int, message: str = ""
    ) -> None:
        await self._respond(
            "/resp/memberJoinRequestEvent",
            request.request_id,
            request.from_id,
            request.group_id,
            operate,
            message,
        )

    async def respond_group_invite(
        self, invite: GroupInvite, operate: int, message: str = ""
    ) -> None:
        await self._respond(
            "/resp/botInvitedJoinGroupRequestEvent",
            invite.request_id,
            invite.from_id,
            invite.group_id,
            operate,
            message,
        )
