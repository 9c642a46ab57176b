from __future__ import annotations

import asyncio

import pytest

from mahpy.core.exceptions import DispatcherClosed
from mahpy.dispatcher import STATUS_DUPLICATE, STATUS_QUEUED, Dispatcher
from mahpy.events import BotOnline, EventKind, MessageReceived, UserRef, decode


def _message(event_id: int, text: str = "hello") -> MessageReceived:
    return MessageReceived(
        event_id=event_id,
        message_type="FriendMessage",
        sender=UserRef(id=42, name="alice"),
        chain=({"type": "Plain", "text": text},),
    )


def _online(event_id: int) -> BotOnline:
    return BotOnline(event_id=event_id, account_id=10001)


@pytest.mark.anyio
async def test_dispatcher_preserves_per_source_order() -> None:
    dispatcher = Dispatcher()
    observed: list[int] = []

    @dispatcher.on(MessageReceived)
    async def handler(event) -> None:
        await asyncio.sleep(0.001 * (5 - event.event_id % 5))
        observed.append(event.event_id)

    for event_id in range(1, 11):
        await dispatcher.accept(_message(event_id), source="poll:a")
    await dispatcher.wait_idle()

    assert observed == list(range(1, 11))


@pytest.mark.anyio
async def test_accept_returns_before_handlers_finish() -> None:
    dispatcher = Dispatcher()
    release = asyncio.Event()
    finished: list[int] = []

    async def handler(event) -> None:
        await release.wait()
        finished.append(event.event_id)

    dispatcher.register(handler)
    result = await dispatcher.accept(_message(1), source="s")

    assert result.status == STATUS_QUEUED
    assert result.accepted
    assert result.event_id == 1
    assert finished == []
    release.set()
    await dispatcher.wait_idle()
    assert finished == [1]


@pytest.mark.anyio
async def test_handler_failure_is_isolated() -> None:
    dispatcher = Dispatcher()
    observed: list[int] = []

    def always_fails(event) -> None:
        raise RuntimeError(f"boom {event.event_id}")

    async def records(event) -> None:
        observed.append(event.event_id)

    dispatcher.register(always_fails, EventKind.MESSAGE_RECEIVED)
    dispatcher.register(records, EventKind.MESSAGE_RECEIVED)

    for event_id in (1, 2, 3):
        await dispatcher.accept(_message(event_id), source="s")
    await dispatcher.wait_idle()

    assert observed == [1, 2, 3]


@pytest.mark.anyio
async def test_filters_select_matching_handlers() -> None:
    dispatcher = Dispatcher()
    seen: dict[str, list[int]] = {"messages": [], "online": [], "all": [], "unknown": []}

    dispatcher.register(lambda e: seen["messages"].append(e.event_id), MessageReceived)
    dispatcher.register(lambda e: seen["online"].append(e.event_id), "bot_online")
    dispatcher.register(lambda e: seen["all"].append(e.event_id))
    dispatcher.register(lambda e: seen["unknown"].append(e.event_id), EventKind.UNKNOWN)

    await dispatcher.accept(_message(1), source="s")
    await dispatcher.accept(_online(2), source="s")
    await dispatcher.accept(decode({"event_id": 3, "type": "FutureEventKind"}), source="s")
    await dispatcher.wait_idle()

    assert seen == {"messages": [1], "online": [2], "all": [1, 2, 3], "unknown": [3]}


def test_register_rejects_non_event_filters() -> None:
    dispatcher = Dispatcher()

    with pytest.raises(TypeError):
        dispatcher.register(lambda e: None, int)
    with pytest.raises(ValueError):
        dispatcher.register(lambda e: None, "not_a_kind")
    assert dispatcher.registrations == ()


@pytest.mark.anyio
async def test_backpressure_blocks_same_source_only() -> None:
    dispatcher = Dispatcher(queue_capacity=1)
    release = asyncio.Event()
    started = asyncio.Event()

    async def blocking(event) -> None:
        if event.event_id == 1:
            started.set()
            await release.wait()

    dispatcher.register(blocking)
    await dispatcher.accept(_message(1), source="a")
    await started.wait()

    second = asyncio.create_task(dispatcher.accept(_message(2), source="a"))
    await asyncio.sleep(0.05)
    assert not second.done()

    other = await asyncio.wait_for(dispatcher.accept(_message(3), source="b"), timeout=1)
    assert other.status == STATUS_QUEUED
    assert not second.done()

    release.set()
    result = await asyncio.wait_for(second, timeout=1)
    assert result.status == STATUS_QUEUED
    await dispatcher.wait_idle()


@pytest.mark.anyio
async def test_sources_drain_in_parallel() -> None:
    dispatcher = Dispatcher()
    release_a = asyncio.Event()
    observed: list[str] = []

    async def handler(event) -> None:
        if event.event_id == 1:
            await release_a.wait()
        observed.append(f"{event.event_id}")

    dispatcher.register(handler)
    await dispatcher.accept(_message(1), source="a")
    await dispatcher.accept(_message(2), source="b")
    await asyncio.sleep(0.02)

    assert observed == ["2"]
    release_a.set()
    await dispatcher.wait_idle()
    assert observed == ["2", "1"]


@pytest.mark.anyio
async def test_dedupe_window_drops_redelivered_ids() -> None:
    dispatcher = Dispatcher(dedupe_window=2)
    observed: list[int] = []
    dispatcher.register(lambda e: observed.append(e.event_id))

    statuses = []
    for event_id in (1, 2, 1, 3, 1):
        result = await dispatcher.accept(_message(event_id), source="s")
        statuses.append(result.status)
    duplicate_elsewhere = await dispatcher.accept(_message(3), source="other")
    await dispatcher.wait_idle()

    assert statuses == [
        STATUS_QUEUED,
        STATUS_QUEUED,
        STATUS_DUPLICATE,
        STATUS_QUEUED,
        STATUS_QUEUED,
    ]
    assert duplicate_elsewhere.status == STATUS_QUEUED
    assert observed.count(1) == 2


@pytest.mark.anyio
async def test_close_source_rejects_blocked_and_new_accepts() -> None:
    dispatcher = Dispatcher(queue_capacity=1)
    release = asyncio.Event()

    async def blocking(event) -> None:
        await release.wait()

    dispatcher.register(blocking)
    await dispatcher.accept(_message(1), source="s")
    waiting = asyncio.create_task(dispatcher.accept(_message(2), source="s"))
    await asyncio.sleep(0.01)

    drained = await dispatcher.close_source("s", drain_timeout=0)
    assert drained is False

    release.set()
    with pytest.raises(DispatcherClosed):
        await asyncio.wait_for(waiting, timeout=1)
    await dispatcher.wait_idle()


@pytest.mark.anyio
async def test_close_source_waits_for_drain_when_asked() -> None:
    dispatcher = Dispatcher()
    observed: list[int] = []

    async def slow(event) -> None:
        await asyncio.sleep(0.02)
        observed.append(event.event_id)

    dispatcher.register(slow)
    for event_id in (1, 2):
        await dispatcher.accept(_message(event_id), source="s")

    assert await dispatcher.close_source("s", drain_timeout=None) is True
    assert observed == [1, 2]
    # A torn-down source starts fresh on the next accept.
    result = await dispatcher.accept(_message(3), source="s")
    assert result.status == STATUS_QUEUED
    await dispatcher.wait_idle()


@pytest.mark.anyio
async def test_aclose_cancels_stuck_handlers_and_rejects_accepts() -> None:
    dispatcher = Dispatcher()
    cancelled = asyncio.Event()

    async def stuck(event) -> None:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    dispatcher.register(stuck)
    await dispatcher.accept(_message(1), source="s")
    await asyncio.sleep(0)

    await dispatcher.aclose(drain_timeout=0.01)

    assert cancelled.is_set()
    with pytest.raises(DispatcherClosed):
        await dispatcher.accept(_message(2), source="s")


@pytest.mark.anyio
async def test_reopened_source_waits_for_previous_queue_to_drain() -> None:
    dispatcher = Dispatcher()
    release = asyncio.Event()
    observed: list[int] = []

    async def handler(event) -> None:
        if event.event_id == 1:
            await release.wait()
        observed.append(event.event_id)

    dispatcher.register(handler)
    await dispatcher.accept(_message(1), source="s")
    await asyncio.sleep(0)
    assert await dispatcher.close_source("s", drain_timeout=0) is False

    reopened = asyncio.create_task(dispatcher.accept(_message(2), source="s"))
    await asyncio.sleep(0.02)
    assert not reopened.done()
    assert observed == []

    release.set()
    result = await asyncio.wait_for(reopened, timeout=1)
    await dispatcher.wait_idle()

    assert result.status == STATUS_QUEUED
    assert observed == [1, 2]


@pytest.mark.anyio
async def test_aclose_wakes_accepts_blocked_on_a_full_source() -> None:
    dispatcher = Dispatcher(queue_capacity=2)

    async def stuck(event) -> None:
        await asyncio.Event().wait()

    dispatcher.register(stuck)
    await dispatcher.accept(_message(1), source="s")
    await dispatcher.accept(_message(2), source="s")
    blocked = [
        asyncio.create_task(dispatcher.accept(_message(event_id), source="s"))
        for event_id in (3, 4)
    ]
    await asyncio.sleep(0.01)
    assert not any(task.done() for task in blocked)

    await dispatcher.aclose(drain_timeout=0)

    for task in blocked:
        with pytest.raises(DispatcherClosed):
            await asyncio.wait_for(task, timeout=1)
