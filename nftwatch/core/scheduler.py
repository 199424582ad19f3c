"""Periodic task runner with external stop signaling.

Replaces self-rescheduling poll loops: each PeriodicTask calls its step
coroutine, then waits for the interval (or until the stop event is set).
The stop event is checked once per iteration; an in-flight step always
runs to completion.

Exceptions escaping a step are NOT swallowed. Steps handle their own
expected failures; anything else kills the task so the orchestrator can
exit the process instead of running with a silently dead loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable  # noqa: TC003 (used at runtime in __init__)

from nftwatch.utils.logger import get_logger

logger = get_logger("scheduler")


class PeriodicTask:
    """Run `step` every `interval_s` seconds until `stop_event` is set.

    Args:
        name: Task name (for logs).
        step: Coroutine function executed once per iteration.
        interval_s: Seconds between iterations.
        stop_event: Shared shutdown signal.
        subtract_elapsed: Sleep `interval_s - elapsed` (floor 0) instead of
            the full interval, so iterations start on a fixed cadence.
    """

    def __init__(
        self,
        name: str,
        step: Callable[[], Awaitable[object]],
        interval_s: float,
        stop_event: asyncio.Event,
        subtract_elapsed: bool = False,
    ) -> None:
        self.name = name
        self._step = step
        self._interval_s = interval_s
        self._stop_event = stop_event
        self._subtract_elapsed = subtract_elapsed
        self.iterations = 0

    async def run(self) -> None:
        logger.info("periodic_task_started", task=self.name, interval_s=self._interval_s)
        while not self._stop_event.is_set():
            started = time.monotonic()
            await self._step()
            self.iterations += 1

            delay = self._interval_s
            if self._subtract_elapsed:
                delay = max(0.0, self._interval_s - (time.monotonic() - started))
            await sleep_or_stop(delay, self._stop_event)
        logger.info("periodic_task_stopped", task=self.name, iterations=self.iterations)


async def sleep_or_stop(delay_s: float, stop_event: asyncio.Event) -> bool:
    """Sleep up to `delay_s`; return True if the stop event fired meanwhile."""
    if delay_s > 0:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=delay_s)
    return stop_event.is_set()
