"""Authenticated session against the bot-control server.

A `Session` is created by `authenticate` (verify + bind) and ends with
`release`. Once released, or once the server rejects the session key, every
operation fails fast with `SessionClosed` without touching the network.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Mapping, Optional

import httpx

from .core.envelope import request_json
from .core.exceptions import (
    AUTH_FAILURE_CODES,
    AuthError,
    ProtocolError,
    RemoteError,
    SessionClosed,
)
from .core.logging_utils import log_event

logger = logging.getLogger(__name__)

SESSION_KEY_HEADER = "sessionKey"
DEFAULT_TIMEOUT_SECONDS = 10.0


class SessionState(str, Enum):
    OPEN = "open"
    RELEASED = "released"
    INVALID = "invalid"


def _build_client(base_url: str, timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url.rstrip("/") + "/", timeout=timeout)


class Session:
    def __init__(
        self,
        *,
        base_url: str,
        account_id: int,
        auth_key: str,
        http: httpx.AsyncClient,
        owns_http: bool = True,
    ) -> None:
        self._base_url = base_url
        self._account_id = account_id
        self._auth_key = auth_key
        self._http = http
        self._owns_http = owns_http
        self._state = SessionState.OPEN
        self._invalid_reason: Optional[str] = None
        self._release_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def account_id(self) -> int:
        return self._account_id

    @property
    def auth_key(self) -> str:
        return self._auth_key

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SessionState.OPEN

    def __repr__(self) -> str:
        return (
            f"Session(base_url={self._base_url!r}, account_id={self._account_id}, "
            f"state={self._state.value})"
        )

    def ensure_open(self) -> None:
        if self._state is SessionState.RELEASED:
            raise SessionClosed(f"session for account {self._account_id} was released")
        if self._state is SessionState.INVALID:
            raise SessionClosed(
                f"session for account {self._account_id} was rejected by the server "
                f"({self._invalid_reason or 'invalid'}); authenticate again"
            )

    def headers(self) -> dict[str, str]:
        self.ensure_open()
        return {SESSION_KEY_HEADER: self._auth_key}

    def invalidate(self, reason: str) -> None:
        if self._state is not SessionState.OPEN:
            return
        self._state = SessionState.INVALID
        self._invalid_reason = reason
        log_event(
            logger,
            logging.WARNING,
            "session.invalidated",
            account_id=self._account_id,
            reason=reason,
        )

    async def release(self) -> None:
        """Tell the server the session is done. Calling it again is a no-op."""

        async with self._release_lock:
            if self._state is SessionState.RELEASED:
                return
            if self._state is SessionState.OPEN:
                try:
                    await request_json(
                        self._http,
                        "POST",
                        "/release",
                        json={"sessionKey": self._auth_key, "qq": self._account_id},
                        headers={SESSION_KEY_HEADER: self._auth_key},
                    )
                except RemoteError as exc:
                    if not exc.session_fatal:
                        raise
                    # Already gone on the server side; nothing left to release.
                    log_event(
                        logger,
                        logging.INFO,
                        "session.release.already_invalid",
                        account_id=self._account_id,
                        code=exc.code,
                    )
            self._state = SessionState.RELEASED
            log_event(
                logger, logging.INFO, "session.released", account_id=self._account_id
            )
            if self._owns_http:
                await self._http.aclose()

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.release()


def _auth_error(exc: RemoteError, step: str) -> Exception:
    if exc.code in AUTH_FAILURE_CODES:
        return AuthError(f"{step} rejected: {exc.message or exc}", code=exc.code)
    return exc


async def authenticate(
    base_url: str,
    verify_key: Optional[str],
    account_id: int,
    *,
    http: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Session:
    """Run the verify/bind handshake and return an open `Session`.

    Raises `AuthError` when the server rejects the verify key or does not know
    the bot account, `TransportError` on network failures.
    """
    owns_http = http is None
    client = http if http is not None else _build_client(base_url, timeout)
    try:
        try:
            verified = await request_json(
                client, "POST", "/verify", json={"verifyKey": verify_key or ""}
            )
        except RemoteError as exc:
            raise _auth_error(exc, "verify") from exc
        auth_key = verified.get("session") if isinstance(verified, Mapping) else None
        if not isinstance(auth_key, str) or not auth_key:
            raise ProtocolError("verify response did not contain a session key")
        try:
            await request_json(
                client,
                "POST",
                "/bind",
                json={"sessionKey": auth_key, "qq": account_id},
                headers={SESSION_KEY_HEADER: auth_key},
            )
        except RemoteError as exc:
            raise _auth_error(exc, "bind") from exc
    except BaseException:
        if owns_http:
            await client.aclose()
        raise

    log_event(
        logger,
        logging.INFO,
        "session.authenticated",
        account_id=account_id,
        base_url=base_url,
    )
    return Session(
        base_url=base_url,
        account_id=account_id,
        auth_key=auth_key,
        http=client,
        owns_http=owns_http,
    )


async def about(
    base_url: str,
    *,
    http: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> dict[str, Any]:
    """Unauthenticated server info (`GET /about`), e.g. `{"version": "2.10.0"}`."""

    if http is not None:
        payload = await request_json(http, "GET", "/about")
    else:
        async with _build_client(base_url, timeout) as client:
            payload = await request_json(client, "GET", "/about")
    data = payload.get("data") if isinstance(payload, Mapping) else None
    if not isinstance(data, Mapping):
        raise ProtocolError("about response did not contain a data object")
    return dict(data)


async def bot_list(
    base_url: str,
    *,
    http: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> list[int]:
    """Accounts logged in on the server (`GET /botList`); needs no session."""

    if http is not None:
        payload = await request_json(http, "GET", "/botList")
    else:
        async with _build_client(base_url, timeout) as client:
            payload = await request_json(client, "GET", "/botList")
    data = payload.get("data") if isinstance(payload, Mapping) else None
    if not isinstance(data, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in data
    ):
        raise ProtocolError("botList response did not contain a list of accounts")
    return list(data)
