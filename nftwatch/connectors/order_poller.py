"""LooksRare order-book poller: floor/offer batches and the order-event feed.

Two independent loops share one client:
  - poll_orders_once(): for every collection in CollectionsToPoll, fetch the
    best ask and best collection bid. Collections are processed in batches
    (concurrently within a batch); between batches the RateLimiter decides
    how long to wait. Best asks are emitted as listing events flagged
    is_new_floor, best bids as offer events flagged is_highest_offer.
  - poll_feed_once(): page the LIST / OFFER / CANCEL_LIST / CANCEL_OFFER
    feeds newest-first, drop ids seen on the previous poll and orders
    that already expired, emit the rest oldest-first.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable  # noqa: TC003 (used at runtime in __init__)
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from nftwatch.connectors.looksrare_client import EVENT_TYPES
from nftwatch.core.normalizer import from_feed_event, from_order
from nftwatch.core.scheduler import sleep_or_stop
from nftwatch.utils.logger import get_logger

if TYPE_CHECKING:
    from nftwatch.connectors.looksrare_client import FeedEvent, LooksRareClient
    from nftwatch.core.events import NFTEvent
    from nftwatch.core.rate_limiter import RateLimiter
    from nftwatch.core.state import CollectionsToPoll

logger = get_logger("order_poller")

# Requests issued per collection in one order poll (floor + collection offer)
REQUESTS_PER_COLLECTION = 2


class OrderPoller:
    """Batch poller over a changing collection set.

    Args:
        client: LooksRare REST client.
        collections: Externally maintained set of collections to poll.
        on_event: Coroutine receiving every emitted NFTEvent.
        rate_limiter: Shared throughput governor.
        stop_event: Shutdown signal, checked between batches.
        batch_size: Collections per concurrent batch.
        events_page_size: Page size the client requests from the feed.
        events_max_pages: Maximum feed pages walked per category per poll.
    """

    def __init__(
        self,
        client: LooksRareClient,
        collections: CollectionsToPoll,
        on_event: Callable[[NFTEvent], Awaitable[object]],
        rate_limiter: RateLimiter,
        stop_event: asyncio.Event,
        batch_size: int = 40,
        events_page_size: int = 150,
        events_max_pages: int = 3,
    ) -> None:
        self._client = client
        self._collections = collections
        self._on_event = on_event
        self._rate_limiter = rate_limiter
        self._stop_event = stop_event
        self._batch_size = batch_size
        self._events_page_size = events_page_size
        self._events_max_pages = events_max_pages
        self._seen: dict[str, set[int]] = {t: set() for t in EVENT_TYPES}

    # ------------------------------------------------------------------
    # Floor / offer polling
    # ------------------------------------------------------------------

    async def _poll_collection(self, collection: str) -> list[NFTEvent]:
        floors, offers = await asyncio.gather(
            self._client.get_collection_floor(collection),
            self._client.get_collection_offers(collection),
        )
        events = []
        if floors:
            events.append(from_order(floors[0], is_new_floor=True))
        if offers:
            events.append(from_order(offers[0], is_highest_offer=True))
        return events

    async def poll_orders_once(self) -> int:
        """One pass over all collections. Returns the number of emitted events."""
        collections = self._collections.snapshot()
        emitted = 0
        batches = 0
        for start in range(0, len(collections), self._batch_size):
            batch = collections[start : start + self._batch_size]
            started = time.monotonic()
            results = await asyncio.gather(*(self._poll_collection(c) for c in batch))
            elapsed_ms = (time.monotonic() - started) * 1000
            batches += 1

            for events in results:
                for event in events:
                    await self._on_event(event)
                    emitted += 1

            if start + self._batch_size >= len(collections):
                break
            delay_ms = self._rate_limiter.compute_delay_ms(
                REQUESTS_PER_COLLECTION * len(batch), elapsed_ms
            )
            if await sleep_or_stop(delay_ms / 1000, self._stop_event):
                break

        logger.info(
            "order_poll_complete",
            collections=len(collections),
            batches=batches,
            events=emitted,
        )
        return emitted

    # ------------------------------------------------------------------
    # Event feed polling
    # ------------------------------------------------------------------

    async def _fetch_new_feed_events(self, event_type: str) -> list[FeedEvent]:
        previous = self._seen[event_type]
        current: set[int] = set()
        fresh: list[FeedEvent] = []
        cursor: int | None = None

        for _ in range(self._events_max_pages):
            page = await self._client.get_events(event_type, cursor)
            if not page:
                break
            reached_seen = False
            for feed_event in page:
                current.add(feed_event.id)
                if feed_event.id in previous:
                    reached_seen = True
                else:
                    fresh.append(feed_event)
            if reached_seen or len(page) < self._events_page_size:
                break
            cursor = page[-1].id

        # An empty (failed) poll keeps the previous window for the next dedup
        if current:
            self._seen[event_type] = current
        return fresh

    async def poll_feed_once(self) -> int:
        """One pass over every feed category. Returns the number of emitted events."""
        now = datetime.now(UTC)
        emitted = 0
        for event_type in EVENT_TYPES:
            fresh = await self._fetch_new_feed_events(event_type)
            expired = 0
            for feed_event in reversed(fresh):
                if feed_event.order is not None and feed_event.order.is_expired(now):
                    expired += 1
                    continue
                event = from_feed_event(feed_event)
                if event is None:
                    continue
                await self._on_event(event)
                emitted += 1
            logger.debug(
                "feed_category_polled", type=event_type, fresh=len(fresh), expired=expired
            )
        return emitted
