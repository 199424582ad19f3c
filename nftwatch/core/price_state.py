"""Floor / highest-offer reconciliation for incoming events.

Interface contract:
  - handle_event(event) → DbResult of persisting the (possibly re-stamped) event
  - compute_floor_difference(price, floor) → float in [-1e9, 1e9]

Rules:
  - listing replaces the cached floor if there is none (or the zero
    sentinel), it is cheaper, the cached entry expired, or it is a polled
    authoritative floor (is_new_floor) for a different order.
  - offer replaces the cached highest offer if there is none, it is higher,
    the cached entry expired, or it already arrives flagged is_highest_offer.
    Only the winner is persisted with is_highest_offer=True.
  - cancelOrder / acceptOffer / acceptAsk whose order hash backs a cached
    floor or offer forces an authoritative re-query; the best remaining
    order (or the zero sentinel) overwrites the cache.

Each collection has its own asyncio.Lock; a recompute never blocks other
collections.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from nftwatch.core.events import (
    EPOCH,
    CollectionFloor,
    EventType,
    Marketplace,
    NFTEvent,
    Offer,
    OrderType,
)
from nftwatch.utils.logger import get_logger

if TYPE_CHECKING:
    from nftwatch.connectors.looksrare_client import LooksRareClient, LooksRareOrder
    from nftwatch.core.repository import DbResult, Repository

logger = get_logger("price_state")

MAX_FLOOR_DIFFERENCE = 1e9


def compute_floor_difference(price: Decimal, floor: Decimal) -> float:
    """Relative distance of `price` from `floor`, clamped.

    +1 when the floor is zero, -1 when the price is zero.
    """
    if floor == 0:
        return 1.0
    if price == 0:
        return -1.0
    diff = float((price - floor) / floor)
    return max(-MAX_FLOOR_DIFFERENCE, min(MAX_FLOOR_DIFFERENCE, diff))


def _empty_floor(collection: str) -> CollectionFloor:
    return CollectionFloor(
        collection=collection, price=Decimal(0), marketplace=Marketplace.LOOKSRARE
    )


def _empty_offer(collection: str, token_id: str) -> Offer:
    return Offer(
        collection=collection,
        token_id=token_id,
        price=Decimal(0),
        marketplace=Marketplace.LOOKSRARE,
    )


def _best_valid(orders: list[LooksRareOrder], now: datetime) -> LooksRareOrder | None:
    return next((o for o in orders if not o.is_expired(now)), None)


class PriceStateStore:
    """Applies events to cached price state, then appends them to the event log.

    Args:
        repository: Persistence surface holding floors, offers and events.
        order_source: Authoritative order-book queries used for forced recompute.
    """

    def __init__(self, repository: Repository, order_source: LooksRareClient) -> None:
        self._repo = repository
        self._orders = order_source
        self._locks: dict[str, asyncio.Lock] = {}
        self.recomputes = 0

    def _lock(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = self._locks[collection] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_event(self, event: NFTEvent) -> DbResult:
        if event.collection is None:
            if event.event_type is EventType.CANCEL_ORDER and event.order_hash:
                await self._invalidate_by_order_hash(event.order_hash, event.order_type)
            return await self._repo.add_event(event)

        async with self._lock(event.collection):
            event = await self._apply(event, event.collection)
        return await self._repo.add_event(event)

    async def _apply(self, event: NFTEvent, collection: str) -> NFTEvent:
        now = datetime.now(UTC)
        floor = await self._current_floor(collection)
        stamped = event

        if event.event_type is EventType.LISTING:
            await self._apply_listing(event, collection, floor, now)
        elif event.event_type is EventType.OFFER:
            stamped = await self._apply_offer(event, collection, now)
        elif event.event_type is EventType.ACCEPT_ASK:
            await self._invalidate_floor(event, floor, now)
        elif event.event_type is EventType.ACCEPT_OFFER:
            await self._invalidate_offers(event, collection, now)
        elif event.event_type is EventType.CANCEL_ORDER:
            if event.order_type in (None, OrderType.LISTING):
                await self._invalidate_floor(event, floor, now)
            if event.order_type in (None, OrderType.OFFER):
                await self._invalidate_offers(event, collection, now)

        if stamped.price is not None and floor is not None:
            stamped = stamped.with_changes(
                collection_floor=floor.price,
                floor_difference=compute_floor_difference(stamped.price, floor.price),
            )
        return stamped

    # ------------------------------------------------------------------
    # Floor
    # ------------------------------------------------------------------

    async def _current_floor(self, collection: str) -> CollectionFloor | None:
        result = await self._repo.get_collection_floor(collection)
        return result.value if result.ok else None

    @staticmethod
    def _supersedes_floor(event: NFTEvent, floor: CollectionFloor | None, now: datetime) -> bool:
        if event.price is None or event.is_expired(now):
            return False
        if floor is None or floor.is_empty:
            return True
        if floor.order_hash is not None and event.order_hash == floor.order_hash:
            return False
        if event.is_new_floor or floor.is_expired(now):
            return True
        return event.price < floor.price

    async def _apply_listing(
        self, event: NFTEvent, collection: str, floor: CollectionFloor | None, now: datetime
    ) -> None:
        price = event.price
        if price is None or not self._supersedes_floor(event, floor, now):
            return
        new_floor = CollectionFloor(
            collection=collection,
            price=price,
            marketplace=event.marketplace,
            order_hash=event.order_hash,
            ends_at=event.ends_at or EPOCH,
        )
        await self._repo.set_collection_floor(new_floor)
        logger.debug(
            "floor_updated",
            collection=collection,
            price=str(price),
            previous=str(floor.price) if floor else None,
        )

    async def _invalidate_floor(
        self, event: NFTEvent, floor: CollectionFloor | None, now: datetime
    ) -> None:
        if floor is None or not event.order_hash or floor.order_hash != event.order_hash:
            return
        await self._recompute_floor(floor.collection, now)

    async def _recompute_floor(self, collection: str, now: datetime) -> CollectionFloor:
        self.recomputes += 1
        best = _best_valid(await self._orders.get_collection_floor(collection), now)
        if best is None:
            new_floor = _empty_floor(collection)
        else:
            new_floor = CollectionFloor(
                collection=collection,
                price=best.price,
                marketplace=Marketplace.LOOKSRARE,
                order_hash=best.hash,
                ends_at=best.end_time,
            )
        await self._repo.set_collection_floor(new_floor)
        logger.info(
            "floor_recomputed",
            collection=collection,
            price=str(new_floor.price),
            order_hash=new_floor.order_hash,
        )
        return new_floor

    # ------------------------------------------------------------------
    # Offers
    # ------------------------------------------------------------------

    async def _apply_offer(self, event: NFTEvent, collection: str, now: datetime) -> NFTEvent:
        price = event.price
        if price is None or event.is_expired(now):
            return event.with_changes(is_highest_offer=False)

        token_id = event.token_id or ""
        result = await self._repo.get_offer(collection, token_id)
        current: Offer | None = result.value if result.ok else None
        if current is not None and not current.is_empty:
            wins = event.is_highest_offer or current.is_expired(now) or price > current.price
            if not wins:
                return event.with_changes(is_highest_offer=False)

        await self._repo.set_offer(
            Offer(
                collection=collection,
                token_id=token_id,
                price=price,
                marketplace=event.marketplace,
                order_hash=event.order_hash,
                ends_at=event.ends_at or EPOCH,
            )
        )
        return event.with_changes(is_highest_offer=True)

    async def _invalidate_offers(self, event: NFTEvent, collection: str, now: datetime) -> None:
        if not event.order_hash:
            return
        token_ids = [event.token_id, ""] if event.token_id else [""]
        for token_id in token_ids:
            result = await self._repo.get_offer(collection, token_id)
            if result.ok and result.value.order_hash == event.order_hash:
                await self._recompute_offer(collection, token_id, now)

    async def _recompute_offer(self, collection: str, token_id: str, now: datetime) -> Offer:
        self.recomputes += 1
        best = _best_valid(await self._orders.get_highest_offers(collection, token_id or None), now)
        if best is None:
            offer = _empty_offer(collection, token_id)
        else:
            offer = Offer(
                collection=collection,
                token_id=token_id,
                price=best.price,
                marketplace=Marketplace.LOOKSRARE,
                order_hash=best.hash,
                ends_at=best.end_time,
            )
        await self._repo.set_offer(offer)
        logger.info(
            "offer_recomputed",
            collection=collection,
            token_id=token_id,
            price=str(offer.price),
            order_hash=offer.order_hash,
        )
        return offer

    # ------------------------------------------------------------------
    # Collection-less cancels
    # ------------------------------------------------------------------

    async def _invalidate_by_order_hash(
        self, order_hash: str, order_type: OrderType | None
    ) -> None:
        now = datetime.now(UTC)
        if order_type in (None, OrderType.LISTING):
            floors = await self._repo.find_floor_by_order_hash(order_hash)
            for floor in floors.value if floors.ok else []:
                async with self._lock(floor.collection):
                    await self._recompute_floor(floor.collection, now)
        if order_type in (None, OrderType.OFFER):
            offers = await self._repo.find_offers_by_order_hash(order_hash)
            for offer in offers.value if offers.ok else []:
                async with self._lock(offer.collection):
                    await self._recompute_offer(offer.collection, offer.token_id, now)
