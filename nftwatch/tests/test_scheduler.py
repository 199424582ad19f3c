"""Tests for PeriodicTask and sleep_or_stop."""

from __future__ import annotations

import asyncio

import pytest

from nftwatch.core.scheduler import PeriodicTask, sleep_or_stop


class TestPeriodicTask:
    async def test_runs_until_stopped(self) -> None:
        stop = asyncio.Event()
        calls = []

        async def step() -> None:
            calls.append(1)
            if len(calls) == 3:
                stop.set()

        task = PeriodicTask("test", step, interval_s=0.01, stop_event=stop)
        await asyncio.wait_for(task.run(), timeout=2)

        assert task.iterations == 3
        assert len(calls) == 3

    async def test_stop_interrupts_sleep(self) -> None:
        """A long interval does not delay shutdown."""
        stop = asyncio.Event()

        async def step() -> None:
            stop.set()

        task = PeriodicTask("test", step, interval_s=3600, stop_event=stop)
        await asyncio.wait_for(task.run(), timeout=2)
        assert task.iterations == 1

    async def test_step_exception_propagates(self) -> None:
        stop = asyncio.Event()

        async def step() -> None:
            raise RuntimeError("boom")

        task = PeriodicTask("test", step, interval_s=0.01, stop_event=stop)
        with pytest.raises(RuntimeError, match="boom"):
            await task.run()

    async def test_not_started_when_already_stopped(self) -> None:
        stop = asyncio.Event()
        stop.set()
        calls = []

        async def step() -> None:
            calls.append(1)

        await PeriodicTask("test", step, interval_s=0.01, stop_event=stop).run()
        assert calls == []


class TestSleepOrStop:
    async def test_returns_false_after_full_sleep(self) -> None:
        assert await sleep_or_stop(0.01, asyncio.Event()) is False

    async def test_returns_true_when_stopped(self) -> None:
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, stop.set)
        assert await asyncio.wait_for(sleep_or_stop(60, stop), timeout=2) is True

    async def test_zero_delay(self) -> None:
        assert await sleep_or_stop(0, asyncio.Event()) is False
