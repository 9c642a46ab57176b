from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_never,
    wait_exponential,
)

from .exceptions import TransientError
from .logging_utils import log_event

SleepFn = Callable[[float], Awaitable[Any]]


def backoff_retrying(
    *,
    initial_seconds: float,
    max_seconds: float,
    logger: Optional[logging.Logger] = None,
    event: str = "retry.backoff",
    sleep: SleepFn = asyncio.sleep,
) -> AsyncRetrying:
    """
    Build an unbounded retry loop for transient errors with exponential backoff.

    The first retry waits `initial_seconds`, each following retry doubles the
    wait, capped at `max_seconds`. Non-transient errors are re-raised as-is.

    Args:
        initial_seconds: Delay before the first retry.
        max_seconds: Upper bound for any single delay.
        logger: Logger receiving one structured event per scheduled retry.
        event: Name of the structured log event.
        sleep: Awaitable sleep used between attempts (injectable so callers can
            make the wait interruptible).
    """
    log = logger or logging.getLogger(__name__)

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        log_event(
            log,
            logging.WARNING,
            event,
            attempt=retry_state.attempt_number,
            delay_seconds=delay,
            exc=exc,
        )

    return AsyncRetrying(
        stop=stop_never,
        wait=wait_exponential(multiplier=initial_seconds, max=max_seconds, exp_base=2),
        retry=retry_if_exception_type(TransientError),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )
