"""Event delivery by polling the server's fetch endpoint."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

from ..core.config import PollingConfig
from ..core.exceptions import (
    DecodeError,
    DispatcherClosed,
    MahError,
    ProtocolError,
    RemoteError,
    SessionClosed,
)
from ..core.logging_utils import log_event
from ..core.retry import backoff_retrying
from ..dispatcher import Dispatcher
from ..events import decode
from ..transport import TransportClient
from .base import (
    AdapterHandle,
    AdapterState,
    FatalCallback,
    accept_unless_stopped,
    drain_timeout_seconds,
)


class _StopRequested(Exception):
    pass


class PollingAdapter:
    """Fetch, decode, dispatch and acknowledge events in a loop.

    One fetch is in flight at a time. A failed fetch with a transient error is
    retried with exponential backoff forever; a rejected session stops the
    adapter and is reported through the handle and `on_fatal`.
    """

    def __init__(
        self,
        transport: TransportClient,
        config: Optional[PollingConfig] = None,
        *,
        on_fatal: Optional[FatalCallback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._transport = transport
        self._config = config or PollingConfig()
        self._on_fatal = on_fatal
        self._logger = logger or logging.getLogger(__name__)
        session = transport.session
        self._source = f"poll:{session.base_url.rstrip('/')}#{session.account_id}"
        self._handle: Optional[AdapterHandle] = None
        self._dispatcher: Optional[Dispatcher] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def source(self) -> str:
        return self._source

    @property
    def state(self) -> AdapterState:
        if self._handle is None:
            return AdapterState.IDLE
        return self._handle.state

    @property
    def handle(self) -> Optional[AdapterHandle]:
        return self._handle

    async def start(self, dispatcher: Dispatcher) -> AdapterHandle:
        if self.state in (AdapterState.RUNNING, AdapterState.STOPPING):
            raise RuntimeError(f"adapter {self._source} is already running")
        self._transport.session.ensure_open()
        self._dispatcher = dispatcher
        self._stop_event = asyncio.Event()
        handle = AdapterHandle(self._source, on_fatal=self._on_fatal, logger=self._logger)
        self._handle = handle
        handle.set_state(AdapterState.RUNNING)
        self._task = asyncio.create_task(self._run(handle, dispatcher))
        return handle

    async def stop(self, *, timeout: Optional[float] = None) -> None:
        """Stop polling.

        Waits for the in-flight fetch or accept step; handlers still running
        are waited for up to `drain_timeout_ms`. With `timeout` (seconds) the
        loop is cancelled if it has not finished in time.
        """
        handle = self._handle
        task = self._task
        if handle is None or task is None or handle.done:
            return
        handle.set_state(AdapterState.STOPPING)
        self._stop_event.set()
        if timeout is None:
            await asyncio.shield(task)
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _pause(self, seconds: float) -> None:
        """Sleep for `seconds`, or raise `_StopRequested` as soon as stop() is called."""

        if self._stop_event.is_set():
            raise _StopRequested()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise _StopRequested()

    async def _fetch(self) -> Sequence[Any]:
        config = self._config
        retrying = backoff_retrying(
            initial_seconds=config.backoff_initial_ms / 1000.0,
            max_seconds=config.backoff_max_ms / 1000.0,
            logger=self._logger,
            event="polling.fetch.retry",
            sleep=self._pause,
        )
        async for attempt in retrying:
            with attempt:
                if self._stop_event.is_set():
                    raise _StopRequested()
                return await self._transport.fetch_events(config.max_batch_size)
        return []

    async def _run(self, handle: AdapterHandle, dispatcher: Dispatcher) -> None:
        interval = self._config.poll_interval_ms / 1000.0
        log_event(
            self._logger,
            logging.INFO,
            "polling.started",
            source=self._source,
            poll_interval_ms=self._config.poll_interval_ms,
            max_batch_size=self._config.max_batch_size,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    batch = await self._fetch()
                except _StopRequested:
                    break
                except RemoteError as exc:
                    if exc.session_fatal:
                        await handle.fail(exc)
                        break
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "polling.fetch.rejected",
                        source=self._source,
                        code=exc.code,
                        exc=exc,
                    )
                    batch = None
                except SessionClosed as exc:
                    await handle.fail(exc)
                    break
                except ProtocolError as exc:
                    log_event(
                        self._logger,
                        logging.WARNING,
                        "polling.fetch.malformed",
                        source=self._source,
                        exc=exc,
                    )
                    batch = None

                if batch:
                    fatal = await self._process_batch(batch, handle, dispatcher)
                    if fatal:
                        break
                    full = (
                        self._config.max_batch_size is not None
                        and len(batch) >= self._config.max_batch_size
                    )
                    if full:
                        continue
                try:
                    await self._pause(interval)
                except _StopRequested:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log_event(
                self._logger,
                logging.ERROR,
                "polling.crashed",
                source=self._source,
                exc=exc,
            )
            await handle.fail(exc)
        finally:
            await self._shutdown(handle, dispatcher)

    async def _process_batch(
        self,
        batch: Sequence[Any],
        handle: AdapterHandle,
        dispatcher: Dispatcher,
    ) -> bool:
        """Decode, forward and ack one batch. Returns True on a fatal error."""

        accepted: list[int] = []
        for index, raw in enumerate(batch):
            try:
                event = decode(raw)
            except DecodeError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "polling.event.decode_failed",
                    source=self._source,
                    reason=exc.reason,
                    exc=exc,
                )
                continue
            try:
                result = await accept_unless_stopped(
                    dispatcher, event, source=self._source, stop_event=self._stop_event
                )
            except DispatcherClosed as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "polling.dispatcher.closed",
                    source=self._source,
                    exc=exc,
                )
                result = None
            if result is None:
                log_event(
                    self._logger,
                    logging.INFO,
                    "polling.batch.abandoned",
                    source=self._source,
                    unaccepted=len(batch) - index,
                )
                break
            accepted.append(event.event_id)

        if not accepted:
            return False
        try:
            await self._transport.ack_events(accepted)
        except RemoteError as exc:
            if exc.session_fatal:
                await handle.fail(exc)
                return True
            self._log_ack_failure(accepted, exc)
        except SessionClosed as exc:
            await handle.fail(exc)
            return True
        except MahError as exc:
            self._log_ack_failure(accepted, exc)
        return False

    def _log_ack_failure(self, event_ids: list[int], exc: BaseException) -> None:
        log_event(
            self._logger,
            logging.WARNING,
            "polling.ack.failed",
            source=self._source,
            event_ids=event_ids,
            exc=exc,
        )

    async def _shutdown(self, handle: AdapterHandle, dispatcher: Dispatcher) -> None:
        handle.set_state(AdapterState.STOPPING)
        drained = await dispatcher.close_source(
            self._source,
            drain_timeout=drain_timeout_seconds(self._config.drain_timeout_ms),
        )
        handle.set_state(AdapterState.STOPPED)
        log_event(
            self._logger,
            logging.INFO,
            "polling.stopped",
            source=self._source,
            drained=drained,
            fatal=handle.fatal_error is not None,
        )
