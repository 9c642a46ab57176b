"""Event delivery through HTTP callbacks pushed by the server.

The listener is a small FastAPI app served by uvicorn on a socket bound in
`start()`, so a port conflict is reported to the caller of `start()` instead
of surfacing later from a background task.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import logging
import socket
from typing import Any, Iterator, Mapping, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.config import WebhookConfig
from ..core.exceptions import AdapterStartError, DecodeError, DispatcherClosed
from ..core.logging_utils import log_event
from ..dispatcher import Dispatcher
from ..events import decode
from .base import (
    AdapterHandle,
    AdapterState,
    FatalCallback,
    accept_unless_stopped,
    drain_timeout_seconds,
)

SECRET_HEADER = "X-Mah-Secret"
SIGNATURE_HEADER = "X-Mah-Signature"
SIGNATURE_SCHEME = "sha256"
STARTUP_POLL_SECONDS = 0.01


def sign_body(secret: str, body: bytes) -> str:
    """Value for the signature header: `sha256=<hex hmac of the raw body>`."""

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_SCHEME}={digest}"


def check_secret(headers: Mapping[str, str], body: bytes, secret: str) -> Optional[int]:
    """Return None when the request carries valid credentials, else 401 or 403."""

    provided = headers.get(SECRET_HEADER)
    signature = headers.get(SIGNATURE_HEADER)
    if provided is None and signature is None:
        return 401
    if provided is not None and hmac.compare_digest(
        provided.encode("utf-8"), secret.encode("utf-8")
    ):
        return None
    if signature is not None:
        scheme, _, digest = signature.strip().partition("=")
        if scheme.lower() == SIGNATURE_SCHEME and digest:
            expected = sign_body(secret, body).partition("=")[2]
            if hmac.compare_digest(expected, digest.lower()):
                return None
    return 403


def _is_json(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


def _error(status_code: int, reason: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": reason})


def _bind_socket(address: str, port: int) -> socket.socket:
    family = socket.AF_INET6 if ":" in address else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((address, port))
        sock.listen(128)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


class _ListenerServer(uvicorn.Server):
    # Signals belong to the application, not to the embedded listener.
    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def build_webhook_app(adapter: "WebhookAdapter") -> FastAPI:
    app = FastAPI(openapi_url=None, docs_url=None, redoc_url=None)

    @app.post(adapter.config.path)
    async def receive_event(request: Request) -> JSONResponse:
        return await adapter.handle_request(request)

    return app


class WebhookAdapter:
    def __init__(
        self,
        config: Optional[WebhookConfig] = None,
        *,
        on_fatal: Optional[FatalCallback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config or WebhookConfig()
        self._on_fatal = on_fatal
        self._logger = logger or logging.getLogger(__name__)
        self._port = self._config.bind_port
        self._handle: Optional[AdapterHandle] = None
        self._dispatcher: Optional[Dispatcher] = None
        self._server: Optional[_ListenerServer] = None
        self._serve_task: Optional[asyncio.Task[None]] = None
        self._watch_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._inflight = 0
        self._inflight_idle = asyncio.Event()
        self._inflight_idle.set()
        self._stop_lock = asyncio.Lock()

    @property
    def config(self) -> WebhookConfig:
        return self._config

    @property
    def port(self) -> int:
        """Bound port (differs from the configured one when that was 0)."""
        return self._port

    @property
    def url(self) -> str:
        host = self._config.bind_address
        if ":" in host:
            host = f"[{host}]"
        return f"http://{host}:{self._port}{self._config.path}"

    @property
    def source(self) -> str:
        return f"webhook:{self._config.bind_address}:{self._port}{self._config.path}"

    @property
    def state(self) -> AdapterState:
        if self._handle is None:
            return AdapterState.IDLE
        return self._handle.state

    @property
    def handle(self) -> Optional[AdapterHandle]:
        return self._handle

    async def start(self, dispatcher: Dispatcher) -> AdapterHandle:
        """Bind the listener and begin accepting events.

        Raises `AdapterStartError` when the address cannot be bound.
        """
        if self.state in (AdapterState.RUNNING, AdapterState.STOPPING):
            raise RuntimeError(f"adapter {self.source} is already running")
        address = self._config.bind_address
        try:
            sock = _bind_socket(address, self._config.bind_port)
        except OSError as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "webhook.bind_failed",
                bind_address=address,
                bind_port=self._config.bind_port,
                exc=exc,
            )
            raise AdapterStartError(
                f"cannot bind webhook listener to {address}:{self._config.bind_port}: {exc}"
            ) from exc
        self._port = sock.getsockname()[1]
        self._dispatcher = dispatcher
        self._stop_event = asyncio.Event()
        handle = AdapterHandle(self.source, on_fatal=self._on_fatal, logger=self._logger)
        self._handle = handle

        server = _ListenerServer(
            uvicorn.Config(
                build_webhook_app(self),
                lifespan="off",
                log_config=None,
                access_log=False,
            )
        )
        serve_task = asyncio.create_task(server.serve(sockets=[sock]))
        while not server.started:
            if serve_task.done():
                sock.close()
                exc = serve_task.exception() if not serve_task.cancelled() else None
                raise AdapterStartError(
                    f"webhook listener on {self.url} failed to start: {exc}"
                ) from exc
            await asyncio.sleep(STARTUP_POLL_SECONDS)
        self._server = server
        self._serve_task = serve_task
        handle.set_state(AdapterState.RUNNING)
        self._watch_task = asyncio.create_task(self._watch_server(handle, serve_task))
        log_event(
            self._logger,
            logging.INFO,
            "webhook.started",
            source=self.source,
            url=self.url,
            secret_required=self._config.shared_secret is not None,
        )
        return handle

    async def stop(self) -> None:
        """Refuse new requests, finish in-flight ones, close the listener."""

        async with self._stop_lock:
            handle = self._handle
            if handle is None or handle.done:
                return
            handle.set_state(AdapterState.STOPPING)
            self._stop_event.set()
            await self._inflight_idle.wait()
            await self._close_listener()
            if self._watch_task is not None and not self._watch_task.done():
                self._watch_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._watch_task
            await self._finish(handle)

    async def _close_listener(self) -> None:
        server = self._server
        serve_task = self._serve_task
        if server is None or serve_task is None:
            return
        server.should_exit = True
        try:
            await serve_task
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "webhook.listener.close_failed",
                source=self.source,
                exc=exc,
            )

    async def _finish(self, handle: AdapterHandle) -> None:
        drained = True
        if self._dispatcher is not None:
            drained = await self._dispatcher.close_source(
                self.source,
                drain_timeout=drain_timeout_seconds(self._config.drain_timeout_ms),
            )
        handle.set_state(AdapterState.STOPPED)
        log_event(
            self._logger,
            logging.INFO,
            "webhook.stopped",
            source=self.source,
            drained=drained,
            fatal=handle.fatal_error is not None,
        )

    async def _watch_server(self, handle: AdapterHandle, serve_task: asyncio.Task) -> None:
        try:
            await asyncio.shield(serve_task)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error: BaseException = exc
        else:
            error = AdapterStartError("webhook listener exited unexpectedly")
        if handle.state is not AdapterState.RUNNING:
            return
        handle.set_state(AdapterState.STOPPING)
        self._stop_event.set()
        await handle.fail(error)
        await self._finish(handle)

    async def handle_request(self, request: Request) -> Any:
        dispatcher = self._dispatcher
        if self.state is not AdapterState.RUNNING or dispatcher is None:
            return _error(503, "stopping")
        if not _is_json(request.headers.get("content-type", "")):
            return _error(415, "unsupported_media_type")
        body = await self._read_body(request)
        if body is None:
            return _error(413, "payload_too_large")
        secret = self._config.shared_secret
        if secret is not None:
            status_code = check_secret(request.headers, body, secret)
            if status_code is not None:
                reason = "missing_secret" if status_code == 401 else "invalid_secret"
                log_event(
                    self._logger,
                    logging.WARNING,
                    "webhook.request.unauthorized",
                    source=self.source,
                    status=status_code,
                    client=request.client.host if request.client else None,
                )
                return _error(status_code, reason)
        try:
            event = decode(body)
        except DecodeError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "webhook.event.decode_failed",
                source=self.source,
                reason=exc.reason,
                exc=exc,
            )
            return _error(400, exc.reason)

        self._inflight += 1
        self._inflight_idle.clear()
        try:
            result = await accept_unless_stopped(
                dispatcher, event, source=self.source, stop_event=self._stop_event
            )
        except DispatcherClosed:
            result = None
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._inflight_idle.set()
        if result is None:
            return _error(503, "stopping")
        return JSONResponse(
            status_code=200,
            content={
                "status": "accepted" if result.accepted else "duplicate",
                "event_id": result.event_id,
            },
        )

    async def _read_body(self, request: Request) -> Optional[bytes]:
        """Read the request body, or return None once it exceeds `max_body_bytes`."""

        limit = self._config.max_body_bytes
        declared = request.headers.get("content-length")
        if declared is not None and declared.strip().isdigit() and int(declared) > limit:
            return None
        chunks: list[bytes] = []
        size = 0
        async for chunk in request.stream():
            size += len(chunk)
            if size > limit:
                return None
            chunks.append(chunk)
        return b"".join(chunks)
