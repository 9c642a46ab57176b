"""Contract shared by the polling and webhook adapters.

Adapters do not inherit from a common base. Each one composes its own loop or
listener with an `AdapterHandle`, which tracks the run state and carries the
terminal signal (normal stop or fatal error) back to the application.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Optional,
    Protocol,
    Union,
    runtime_checkable,
)

from ..core.logging_utils import log_event

if TYPE_CHECKING:
    from ..dispatcher import Dispatcher, DispatchResult
    from ..events import Event

FatalCallback = Callable[[BaseException], Union[None, Awaitable[None]]]


class AdapterState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


class AdapterHandle:
    """Lifecycle view of one adapter run.

    `await handle.wait()` resolves once the adapter is STOPPED and returns the
    fatal error that stopped it, or None after a regular `stop()`.
    """

    def __init__(
        self,
        source: str,
        *,
        on_fatal: Optional[FatalCallback] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._source = source
        self._on_fatal = on_fatal
        self._logger = logger or logging.getLogger(__name__)
        self._state = AdapterState.IDLE
        self._fatal_error: Optional[BaseException] = None
        self._stopped = asyncio.Event()

    @property
    def source(self) -> str:
        return self._source

    @property
    def state(self) -> AdapterState:
        return self._state

    @property
    def fatal_error(self) -> Optional[BaseException]:
        return self._fatal_error

    @property
    def done(self) -> bool:
        return self._stopped.is_set()

    async def wait(self) -> Optional[BaseException]:
        await self._stopped.wait()
        return self._fatal_error

    def set_state(self, state: AdapterState) -> None:
        if self._state is state or self._state is AdapterState.STOPPED:
            return
        previous = self._state
        self._state = state
        log_event(
            self._logger,
            logging.INFO,
            "adapter.state",
            source=self._source,
            previous=previous.value,
            state=state.value,
        )
        if state is AdapterState.STOPPED:
            self._stopped.set()

    async def fail(self, exc: BaseException) -> None:
        """Record a fatal error and notify `on_fatal`; the caller stops the run."""

        if self._fatal_error is not None:
            return
        self._fatal_error = exc
        log_event(
            self._logger,
            logging.ERROR,
            "adapter.fatal",
            source=self._source,
            exc=exc,
        )
        if self._on_fatal is None:
            return
        try:
            result = self._on_fatal(exc)
            if inspect.isawaitable(result):
                await result
        except Exception as callback_exc:
            log_event(
                self._logger,
                logging.WARNING,
                "adapter.on_fatal.failed",
                source=self._source,
                exc=callback_exc,
            )


@runtime_checkable
class Adapter(Protocol):
    """Event-delivery mechanism feeding a Dispatcher."""

    @property
    def source(self) -> str:
        """Stable id of the event source this adapter feeds."""

    @property
    def state(self) -> AdapterState:
        """Current run state."""

    async def start(self, dispatcher: "Dispatcher") -> AdapterHandle:
        """Begin delivering events to `dispatcher`."""

    async def stop(self) -> None:
        """Stop intake and return once the adapter is STOPPED."""


def drain_timeout_seconds(drain_timeout_ms: Optional[int]) -> Optional[float]:
    if drain_timeout_ms is None:
        return None
    return max(drain_timeout_ms, 0) / 1000.0


async def accept_unless_stopped(
    dispatcher: "Dispatcher",
    event: "Event",
    *,
    source: str,
    stop_event: asyncio.Event,
) -> Optional["DispatchResult"]:
    """Forward `event`, giving up (returning None) if `stop_event` fires first.

    An accept still waiting for queue capacity when the adapter stops is
    cancelled, so nothing is enqueued after `stop()` is invoked.
    """
    if stop_event.is_set():
        return None
    accept_task = asyncio.ensure_future(dispatcher.accept(event, source=source))
    stop_task = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait(
            {accept_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        stop_task.cancel()
    if not accept_task.done():
        accept_task.cancel()
        try:
            await accept_task
        except asyncio.CancelledError:
            return None
    return accept_task.result()
