"""
Bounded readiness polling.

Fixed interval, single deadline, no backoff. A probe that raises counts as
"not ready yet"; only the deadline is fatal.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from .exceptions import PollTimeoutError

logger = logging.getLogger("claw_pilot.poll")


async def poll_until_ready(
    probe: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float,
    label: str = "probe",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Call ``probe`` every ``interval`` seconds until it returns True.

    Raises:
        PollTimeoutError: ``timeout`` elapsed without a True result.
    """
    retrying = AsyncRetrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda ready: not ready) | retry_if_exception_type(Exception),
        sleep=sleep,
    )
    try:
        async for attempt in retrying:
            with attempt:
                ready = await probe()
            state = attempt.retry_state
            if state.outcome.failed:
                logger.debug("%s attempt %d raised: %s", label, state.attempt_number, state.outcome.exception())
            else:
                state.set_result(ready)
                logger.debug("%s attempt %d: ready=%s", label, state.attempt_number, ready)
    except RetryError as e:
        raise PollTimeoutError(f"{label} not ready after {timeout}s") from e
