"""Notification worker: one shard of the watcher population.

Entry point: python -m nftwatch --role shard

Every poll:
  1. refresh (shard_id, total_shards) from the assignment row for this
     instance name (HOSTNAME),
  2. read events logged since the previous poll with their watchers,
  3. keep this shard's watchers that pass their preferences,
  4. hand each surviving (event, watchers) pair to the delivery callable.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Awaitable, Callable  # noqa: TC003 (used at runtime in __init__)
from datetime import UTC, datetime, timedelta

from nftwatch.config.settings import NftWatchConfig, get_config
from nftwatch.core.events import WatchedEvent
from nftwatch.core.repository import Repository, ResultKind
from nftwatch.core.scheduler import PeriodicTask
from nftwatch.core.sharding import PreferenceFilter, ShardRouter, select_watchers
from nftwatch.main import default_watcher_settings
from nftwatch.utils.db import dispose_engine, get_session_factory
from nftwatch.utils.logger import get_logger

logger = get_logger("shard_worker")


async def log_delivery(watched: WatchedEvent) -> None:
    """Default delivery: log the notification instead of sending it."""
    event = watched.event
    logger.info(
        "notification",
        event_type=event.event_type.value,
        marketplace=event.marketplace.value,
        collection=event.collection,
        token_id=event.token_id,
        price=str(event.price) if event.price is not None else None,
        watchers=[w.id for w in watched.watchers],
    )


class ShardWorker:
    """Polls the event log and delivers this shard's notifications.

    Args:
        repository: Event log / watcher / shard assignment queries.
        deliver: Async callable receiving each WatchedEvent.
        instance_name: Key of this worker's shard assignment row.
        router: Initial shard assignment (static fallback).
        preferences: Per-watcher preference rules.
        recency_window_s: Look-back for the very first poll.
    """

    def __init__(
        self,
        repository: Repository,
        deliver: Callable[[WatchedEvent], Awaitable[object]] = log_delivery,
        instance_name: str = "",
        router: ShardRouter | None = None,
        preferences: PreferenceFilter | None = None,
        recency_window_s: float = 60,
    ) -> None:
        self._repo = repository
        self._deliver = deliver
        self._instance_name = instance_name
        self.router = router or ShardRouter()
        self._preferences = preferences or PreferenceFilter()
        self._recency_window = timedelta(seconds=recency_window_s)
        self._cutoff: datetime | None = None
        # Event ids returned by the previous successful read
        self._seen: set[int] = set()
        self.delivered = 0

    async def refresh_assignment(self) -> None:
        if not self._instance_name:
            return
        result = await self._repo.get_shard_assignment(self._instance_name)
        if result.ok:
            self.router.update(result.value)
        elif result.kind is ResultKind.MISSING_ROW:
            logger.debug("shard_assignment_missing", instance=self._instance_name)

    async def poll_once(self) -> int:
        """One poll. Returns the number of deliveries.

        The read window starts at the time the previous successful read was
        issued, so it overlaps events committed while that read was running.
        Ids returned by the previous read are skipped.
        """
        read_started = datetime.now(UTC)
        if self._cutoff is None:
            self._cutoff = read_started - self._recency_window
        cutoff = self._cutoff
        await self.refresh_assignment()

        result = await self._repo.get_watched_events(cutoff)
        if not result.ok:
            # Cutoff is kept so the next poll covers this window again
            logger.warning("watched_events_unavailable", kind=result.kind.value)
            return 0

        fresh = [w for w in result.value if w.event.id not in self._seen]
        self._seen = {w.event.id for w in result.value if w.event.id is not None}
        self._cutoff = read_started

        selected = select_watchers(fresh, self.router, self._preferences, cutoff)
        for watched in selected:
            await self._deliver(watched)
        self.delivered += len(selected)
        if selected:
            logger.info(
                "shard_poll_delivered",
                shard_id=self.router.shard_id,
                total_shards=self.router.total_shards,
                events=len(result.value),
                deliveries=len(selected),
            )
        return len(selected)


class ShardOrchestrator:
    """Process wrapper around ShardWorker: signals, polling loop, exit status."""

    def __init__(
        self,
        config: NftWatchConfig | None = None,
        deliver: Callable[[WatchedEvent], Awaitable[object]] = log_delivery,
    ) -> None:
        self._config = config or get_config()
        self._deliver = deliver
        self._shutdown_event = asyncio.Event()

    async def start(self) -> int:
        config = self._config
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)

        worker = ShardWorker(
            Repository(get_session_factory(), default_watcher_settings(config)),
            deliver=self._deliver,
            instance_name=config.instance_name,
            router=ShardRouter(config.shard_id, config.total_shards),
            preferences=PreferenceFilter(config.preferences.stale_minutes),
            recency_window_s=config.preferences.recency_window_s,
        )
        logger.info(
            "shard_worker_starting",
            instance=config.instance_name,
            shard_id=config.shard_id,
            total_shards=config.total_shards,
        )
        task = PeriodicTask(
            "shard_poll",
            worker.poll_once,
            config.polling.shard_poll_interval_s,
            self._shutdown_event,
            subtract_elapsed=True,
        )
        status = 0
        try:
            await task.run()
        except Exception:
            logger.exception("shard_worker_crashed")
            status = 1
        finally:
            with contextlib.suppress(asyncio.CancelledError):
                await dispose_engine()
        logger.info("shard_worker_stopped", delivered=worker.delivered, status=status)
        return status

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("signal_received", signal=sig.name)
        self._shutdown_event.set()
