"""Adaptive request-rate limiter for batched REST polling.

Keeps a short rolling window of observed throughput (requests per millisecond).
Before the next batch, the caller reports the batch it just finished and gets
back how long to sleep so the overall speed converges to the target budget:

    current = mean(window ∪ {requests / elapsed_ms})
    target  = requests_per_minute / 60000
    delay   = (current / target) * elapsed_ms - elapsed_ms

A non-positive delay means no sleep is needed.
"""

from __future__ import annotations

from collections import deque

from nftwatch.utils.logger import get_logger

logger = get_logger("rate_limiter")

MS_PER_MINUTE = 60_000


class RateLimiter:
    """Rolling-window throughput tracker.

    Args:
        requests_per_minute: Target outbound budget.
        window_size: Number of recent speed samples averaged.
    """

    def __init__(self, requests_per_minute: int, window_size: int = 10) -> None:
        if requests_per_minute <= 0:
            raise ValueError("requests_per_minute must be positive")
        self._target_speed = requests_per_minute / MS_PER_MINUTE
        self._speeds: deque[float] = deque(maxlen=window_size)

    @property
    def target_speed(self) -> float:
        """Target speed in requests per millisecond."""
        return self._target_speed

    @property
    def average_speed(self) -> float:
        if not self._speeds:
            return 0.0
        return sum(self._speeds) / len(self._speeds)

    def record(self, speed: float) -> None:
        """Record an observed speed sample (requests per millisecond)."""
        self._speeds.append(speed)

    def compute_delay_ms(self, requests: int, elapsed_ms: float) -> float:
        """Return the delay in ms to apply after a batch, and record the sample.

        Args:
            requests: Requests issued in the batch just completed.
            elapsed_ms: Wall time the batch took.
        """
        elapsed_ms = max(elapsed_ms, 1.0)
        sample = requests / elapsed_ms
        samples = [*self._speeds, sample]
        current_speed = sum(samples) / len(samples)
        self._speeds.append(sample)

        delay = (current_speed / self._target_speed) * elapsed_ms - elapsed_ms
        if delay <= 0:
            return 0.0
        logger.debug(
            "rate_limit_delay",
            current_speed=round(current_speed, 5),
            target_speed=round(self._target_speed, 5),
            delay_ms=round(delay),
        )
        return delay
