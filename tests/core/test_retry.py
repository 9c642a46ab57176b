from __future__ import annotations

import pytest

from mahpy.core.exceptions import PermanentError, TransientError
from mahpy.core.retry import backoff_retrying


@pytest.mark.anyio
async def test_backoff_doubles_until_capped() -> None:
    delays: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    attempts = 0

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts <= 5:
            raise TransientError("try again")
        return "ok"

    result = None
    async for attempt in backoff_retrying(
        initial_seconds=0.5, max_seconds=3.0, sleep=fake_sleep
    ):
        with attempt:
            result = await flaky()

    assert result == "ok"
    assert delays == pytest.approx([0.5, 1.0, 2.0, 3.0, 3.0])


@pytest.mark.anyio
async def test_permanent_errors_are_not_retried() -> None:
    calls = 0

    async def fake_sleep(seconds: float) -> None:
        raise AssertionError("should not sleep")

    with pytest.raises(PermanentError):
        async for attempt in backoff_retrying(
            initial_seconds=0.1, max_seconds=1.0, sleep=fake_sleep
        ):
            with attempt:
                calls += 1
                raise PermanentError("nope")

    assert calls == 1
