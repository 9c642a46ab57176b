"""In-process fan-out of decoded events to registered handlers.

Each event source (a polling session, a webhook listener) gets its own ordered
queue and worker task, created lazily on the first accepted event. A source
never has more than one event in flight, so handlers observe that source's
events in arrival order; different sources drain in parallel.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    Optional,
    Set,
    Union,
)

from .core.exceptions import DispatcherClosed
from .core.logging_utils import log_event
from .events import Event, EventKind

STATUS_QUEUED = "queued"
STATUS_DUPLICATE = "duplicate"
DEFAULT_QUEUE_CAPACITY = 64

HandlerCallback = Callable[[Event], Union[None, Awaitable[None]]]
KindSpec = Union[EventKind, str, type]


def _normalize_kind(kind: KindSpec) -> EventKind:
    if isinstance(kind, EventKind):
        return kind
    if isinstance(kind, type):
        value = getattr(kind, "kind", None)
        if isinstance(value, EventKind):
            return value
        raise TypeError(f"{kind.__name__} is not an event type")
    if isinstance(kind, str):
        return EventKind(kind)
    raise TypeError(f"unsupported event kind filter: {kind!r}")


@dataclass(frozen=True)
class HandlerRegistration:
    """A callback plus the event kinds it wants; no kinds means every kind."""

    callback: HandlerCallback
    kinds: frozenset

    def matches(self, event: Event) -> bool:
        return not self.kinds or event.kind in self.kinds

    @property
    def name(self) -> str:
        return getattr(self.callback, "__qualname__", None) or repr(self.callback)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of `Dispatcher.accept`."""

    status: str
    event_id: int
    source: str
    pending: int = 0

    @property
    def accepted(self) -> bool:
        return self.status == STATUS_QUEUED


class _SourceQueue:
    def __init__(self, source: str, capacity: int, dedupe_window: int) -> None:
        self.source = source
        self.items: Deque[Event] = deque()
        # Counts queued plus in-flight events.
        self.slots = asyncio.Semaphore(capacity)
        self.closed = False
        self.worker: Optional[asyncio.Task[None]] = None
        self.drained = asyncio.Event()
        self.drained.set()
        self.recent_ids: Deque[int] = deque(maxlen=dedupe_window or None)
        self.recent_set: Set[int] = set()
        self.dedupe_window = dedupe_window

    def seen(self, event_id: int) -> bool:
        return self.dedupe_window > 0 and event_id in self.recent_set

    def remember(self, event_id: int) -> None:
        if self.dedupe_window <= 0:
            return
        if len(self.recent_ids) == self.recent_ids.maxlen:
            self.recent_set.discard(self.recent_ids[0])
        self.recent_ids.append(event_id)
        self.recent_set.add(event_id)


class Dispatcher:
    """Routes events to handlers with per-source ordering and backpressure."""

    def __init__(
        self,
        *,
        queue_capacity: int = DEFAULT_QUEUE_CAPACITY,
        dedupe_window: int = 0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be >= 1")
        if dedupe_window < 0:
            raise ValueError("dedupe_window must be >= 0")
        self._logger = logger or logging.getLogger(__name__)
        self._queue_capacity = queue_capacity
        self._dedupe_window = dedupe_window
        self._registrations: list[HandlerRegistration] = []
        self._sources: Dict[str, _SourceQueue] = {}
        # Closed queues whose worker is still draining, keyed by source.
        self._closing: Dict[str, _SourceQueue] = {}
        self._workers: Set[asyncio.Task[None]] = set()
        self._idle_event = asyncio.Event()
        self._idle_event.set()
        self._closed = False

    @property
    def registrations(self) -> tuple[HandlerRegistration, ...]:
        return tuple(self._registrations)

    @property
    def closed(self) -> bool:
        return self._closed

    def register(self, callback: HandlerCallback, *kinds: KindSpec) -> HandlerRegistration:
        """Add a handler for `kinds` (every kind when none are given).

        Registrations are append-only for the dispatcher's lifetime. Callbacks
        may be plain functions or coroutine functions.
        """
        if not callable(callback):
            raise TypeError("handler callback must be callable")
        registration = HandlerRegistration(
            callback=callback,
            kinds=frozenset(_normalize_kind(kind) for kind in kinds),
        )
        self._registrations.append(registration)
        log_event(
            self._logger,
            logging.DEBUG,
            "dispatcher.handler.registered",
            handler=registration.name,
            kinds=sorted(kind.value for kind in registration.kinds),
        )
        return registration

    def on(self, *kinds: KindSpec) -> Callable[[HandlerCallback], HandlerCallback]:
        def decorator(callback: HandlerCallback) -> HandlerCallback:
            self.register(callback, *kinds)
            return callback

        return decorator

    def pending(self, source: str) -> int:
        state = self._sources.get(source)
        return len(state.items) if state is not None else 0

    async def accept(self, event: Event, *, source: str) -> DispatchResult:
        """Enqueue `event` on `source`'s ordered queue.

        Returns once the event is enqueued, not when its handlers finish.
        Suspends while the source already holds `queue_capacity` queued or
        in-flight events, and while a previously closed queue for the same
        source is still draining.
        """
        if self._closed:
            raise DispatcherClosed("dispatcher is closed")
        state = self._sources.get(source)
        while state is None:
            previous = self._closing.get(source)
            if previous is None:
                state = _SourceQueue(source, self._queue_capacity, self._dedupe_window)
                self._sources[source] = state
                break
            await previous.drained.wait()
            if self._closing.get(source) is previous:
                del self._closing[source]
            if self._closed:
                raise DispatcherClosed("dispatcher is closed")
            state = self._sources.get(source)
        if state.closed:
            raise DispatcherClosed(f"source {source!r} is closed")
        if state.seen(event.event_id):
            log_event(
                self._logger,
                logging.INFO,
                "dispatcher.event.duplicate",
                source=source,
                event_id=event.event_id,
            )
            return DispatchResult(
                status=STATUS_DUPLICATE, event_id=event.event_id, source=source
            )

        await state.slots.acquire()
        if state.closed or self._closed:
            state.slots.release()
            raise DispatcherClosed(f"source {source!r} closed while waiting")
        if state.seen(event.event_id):
            state.slots.release()
            return DispatchResult(
                status=STATUS_DUPLICATE, event_id=event.event_id, source=source
            )
        state.remember(event.event_id)
        state.items.append(event)
        state.drained.clear()
        self._idle_event.clear()
        if state.worker is None:
            worker = asyncio.create_task(self._drain_source(state))
            state.worker = worker
            self._workers.add(worker)
        pending = len(state.items)
        log_event(
            self._logger,
            logging.DEBUG,
            "dispatcher.event.queued",
            source=source,
            event_id=event.event_id,
            kind=event.kind.value,
            pending=pending,
        )
        return DispatchResult(
            status=STATUS_QUEUED, event_id=event.event_id, source=source, pending=pending
        )

    async def close_source(
        self, source: str, *, drain_timeout: Optional[float] = 0
    ) -> bool:
        """Stop accepting events for `source` and tear its queue down.

        `drain_timeout` is in seconds: `0` returns immediately, `None` waits
        until every accepted event of the source has been dispatched. Events
        still queued when the wait ends keep draining in the background; a
        later `accept` on the same source waits for them so ordering holds.
        Returns True when the source was fully drained.
        """
        state = self._sources.pop(source, None)
        if state is None:
            return True
        state.closed = True
        if not state.drained.is_set():
            self._closing[source] = state
        drained = await self._wait_drained(state, drain_timeout)
        log_event(
            self._logger,
            logging.INFO,
            "dispatcher.source.closed",
            source=source,
            drained=drained,
            pending=len(state.items),
        )
        return drained

    async def wait_idle(self) -> None:
        """Wait until no source has queued or in-flight events."""

        await self._idle_event.wait()

    async def aclose(self, *, drain_timeout: Optional[float] = None) -> None:
        """Close every source, wait up to `drain_timeout`, cancel the rest."""

        if self._closed:
            return
        self._closed = True
        sources = list(self._sources.values())
        self._sources.clear()
        for state in sources:
            state.closed = True
        if drain_timeout is None:
            await self.wait_idle()
        elif drain_timeout > 0:
            try:
                await asyncio.wait_for(self.wait_idle(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                pass
        workers = [task for task in self._workers if not task.done()]
        for task in workers:
            task.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        log_event(
            self._logger,
            logging.INFO,
            "dispatcher.closed",
            cancelled_workers=len(workers),
        )

    async def _wait_drained(
        self, state: _SourceQueue, timeout: Optional[float]
    ) -> bool:
        if state.drained.is_set():
            return True
        if timeout is None:
            await state.drained.wait()
            return True
        if timeout <= 0:
            return False
        try:
            await asyncio.wait_for(state.drained.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _drain_source(self, state: _SourceQueue) -> None:
        try:
            while state.items:
                event = state.items.popleft()
                try:
                    await self._dispatch(event, state.source)
                finally:
                    state.slots.release()
        finally:
            # Only non-empty when the worker was cancelled; hand the abandoned
            # slots back so blocked accepts wake up and see the closed queue.
            abandoned = len(state.items)
            state.items.clear()
            for _ in range(abandoned):
                state.slots.release()
            state.worker = None
            state.drained.set()
            if self._closing.get(state.source) is state:
                del self._closing[state.source]
            self._workers.discard(asyncio.current_task())  # type: ignore[arg-type]
            if not self._workers:
                self._idle_event.set()

    async def _dispatch(self, event: Event, source: str) -> None:
        matching = registrations_for(self._registrations, event)
        if not matching:
            log_event(
                self._logger,
                logging.DEBUG,
                "dispatcher.event.unhandled",
                source=source,
                event_id=event.event_id,
                kind=event.kind.value,
            )
            return
        await asyncio.gather(
            *(self._run_handler(reg, event, source) for reg in matching)
        )

    async def _run_handler(
        self, registration: HandlerRegistration, event: Event, source: str
    ) -> None:
        try:
            result: Any = registration.callback(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "dispatcher.handler.failed",
                source=source,
                event_id=event.event_id,
                kind=event.kind.value,
                handler=registration.name,
                exc=exc,
            )


def registrations_for(
    registrations: Iterable[HandlerRegistration], event: Event
) -> list[HandlerRegistration]:
    """Return the registrations whose filter matches `event`, in order."""

    return [reg for reg in registrations if reg.matches(event)]
