"""Test harness configuration.

This repo uses a `src/` layout. In some developer environments an older
installed `mahpy` package can shadow the local sources.

Ensure tests always import the in-repo code.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Union

import httpx
import pytest

DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS = 30

FAKE_BASE_URL = "http://mah.test"
FAKE_ACCOUNT_ID = 10001
FAKE_SESSION_KEY = "SESSION-KEY"

Reply = Union[dict, list, httpx.Response, Exception, Callable[[httpx.Request], Any]]


def pytest_configure() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src_dir = repo_root / "src"
    src_path = str(src_dir)
    if sys.path[:1] != [src_path] and src_path not in sys.path:
        sys.path.insert(0, src_path)


def pytest_collection_modifyitems(
    session: pytest.Session, config: pytest.Config, items: list[pytest.Item]
) -> None:
    """
    Apply a default per-test timeout to non-integration tests.

    This relies on `pytest-timeout` when installed; if it isn't installed, the
    marker is inert but still documents the intent.
    """
    _ = session, config
    for item in items:
        if item.get_closest_marker("integration") is not None:
            continue
        item.add_marker(pytest.mark.timeout(DEFAULT_NON_INTEGRATION_TIMEOUT_SECONDS))


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeMahServer:
    """Scripted mirai-api-http server behind `httpx.MockTransport`.

    Replies are queued per (method, path); the last reply for a route repeats.
    A reply may be a JSON body (served with status 200), an `httpx.Response`,
    an exception to raise, or a callable taking the request.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Reply]] = {}

    def on(self, method: str, path: str, *replies: Reply) -> "FakeMahServer":
        self._routes.setdefault((method.upper(), path), []).extend(replies)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, text="no such route")
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(reply) and not isinstance(reply, httpx.Response):
            reply = reply(request)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=FAKE_BASE_URL + "/",
            transport=httpx.MockTransport(self.handler),
        )

    def session(self, *, account_id: int = FAKE_ACCOUNT_ID, auth_key: str = FAKE_SESSION_KEY):
        from mahpy.session import Session

        return Session(
            base_url=FAKE_BASE_URL,
            account_id=account_id,
            auth_key=auth_key,
            http=self.client(),
        )


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))


def friend_message(event_id: int, text: str = "hello", *, sender_id: int = 42) -> dict:
    return {
        "event_id": event_id,
        "type": "FriendMessage",
        "sender": {"id": sender_id, "nickname": "alice", "remark": ""},
        "messageChain": [
            {"type": "Source", "id": 1000 + event_id, "time": 1700000000},
            {"type": "Plain", "text": text},
        ],
    }


@pytest.fixture
def fake_server() -> FakeMahServer:
    return FakeMahServer()


@pytest.fixture
def body_of() -> Callable[[httpx.Request], Any]:
    return json_body


@pytest.fixture
def make_friend_message() -> Callable[..., dict]:
    return friend_message
