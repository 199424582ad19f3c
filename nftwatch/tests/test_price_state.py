"""Tests for floor / highest-offer reconciliation.

Runs against an in-memory SQLite repository; the authoritative order book
is a mock.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from nftwatch.connectors.looksrare_client import LooksRareOrder
from nftwatch.core.events import (
    CollectionFloor,
    EventType,
    Marketplace,
    NFTEvent,
    Offer,
    OrderType,
)
from nftwatch.core.price_state import (
    MAX_FLOOR_DIFFERENCE,
    PriceStateStore,
    compute_floor_difference,
)
from nftwatch.core.repository import Repository, ResultKind

FUTURE = datetime.now(UTC) + timedelta(days=7)
PAST = datetime.now(UTC) - timedelta(days=1)
SELLER = "0x1111111111111111111111111111111111111111"


def _listing(collection: str, price: str, order_hash: str, **changes: object) -> NFTEvent:
    event = NFTEvent(
        event_type=EventType.LISTING,
        marketplace=Marketplace.LOOKSRARE,
        order_hash=order_hash,
        collection=collection,
        token_id="1",
        seller=SELLER,
        price=Decimal(price),
        ends_at=FUTURE,
    )
    return event.with_changes(**changes)


def _offer(collection: str, price: str, order_hash: str, token_id: str | None = None) -> NFTEvent:
    return NFTEvent(
        event_type=EventType.OFFER,
        marketplace=Marketplace.LOOKSRARE,
        order_hash=order_hash,
        collection=collection,
        token_id=token_id,
        buyer=SELLER,
        price=Decimal(price),
        ends_at=FUTURE,
    )


def _book_order(collection: str, price: str, order_hash: str, is_ask: bool) -> LooksRareOrder:
    return LooksRareOrder(
        hash=order_hash,
        collection=collection,
        token_id="9" if is_ask else None,
        is_order_ask=is_ask,
        signer=SELLER,
        strategy="0xs",
        price=Decimal(price),
        amount=1,
        start_time=datetime.now(UTC),
        end_time=FUTURE,
    )


@pytest.fixture
def order_source() -> MagicMock:
    mock = MagicMock()
    mock.get_collection_floor = AsyncMock(return_value=[])
    mock.get_highest_offers = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def store(repository: Repository, order_source: MagicMock) -> PriceStateStore:
    return PriceStateStore(repository, order_source)


async def _seed_floor(
    repository: Repository,
    collection: str,
    price: str,
    order_hash: str,
    ends_at: datetime = FUTURE,
) -> None:
    await repository.set_collection_floor(
        CollectionFloor(
            collection=collection,
            price=Decimal(price),
            marketplace=Marketplace.LOOKSRARE,
            order_hash=order_hash,
            ends_at=ends_at,
        )
    )


async def _floor_price(repository: Repository, collection: str) -> Decimal:
    result = await repository.get_collection_floor(collection)
    assert result.ok
    return result.value.price


# ---------------------------------------------------------------------------
# compute_floor_difference
# ---------------------------------------------------------------------------


class TestFloorDifference:
    def test_relative_difference(self) -> None:
        assert compute_floor_difference(Decimal("0.8"), Decimal("1")) == pytest.approx(-0.2)
        assert compute_floor_difference(Decimal("1.5"), Decimal("1")) == pytest.approx(0.5)

    def test_zero_floor(self) -> None:
        assert compute_floor_difference(Decimal(5), Decimal(0)) == 1.0

    def test_zero_price(self) -> None:
        assert compute_floor_difference(Decimal(0), Decimal(5)) == -1.0

    def test_clamped(self) -> None:
        diff = compute_floor_difference(Decimal(10) ** 30, Decimal("0.000000001"))
        assert diff == MAX_FLOOR_DIFFERENCE


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------


class TestListings:
    async def test_first_listing_sets_floor(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        result = await store.handle_event(_listing(collection, "1.0", "0xa"))

        assert result.ok
        assert result.value.collection_floor is None  # no prior floor
        assert await _floor_price(repository, collection) == Decimal("1.0")

    async def test_cheaper_listing_replaces(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")

        result = await store.handle_event(_listing(collection, "0.8", "0xb"))

        assert await _floor_price(repository, collection) == Decimal("0.8")
        # stamped against the floor in force before the listing
        assert result.value.collection_floor == Decimal("1.0")
        assert result.value.floor_difference == pytest.approx(-0.2)

    async def test_pricier_listing_ignored(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")

        result = await store.handle_event(_listing(collection, "1.5", "0xb"))

        assert await _floor_price(repository, collection) == Decimal("1.0")
        assert result.value.floor_difference == pytest.approx(0.5)

    async def test_expired_floor_replaced(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa", ends_at=PAST)

        await store.handle_event(_listing(collection, "1.5", "0xb"))

        assert await _floor_price(repository, collection) == Decimal("1.5")

    async def test_empty_sentinel_replaced(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "0", "")

        await store.handle_event(_listing(collection, "3", "0xb"))

        assert await _floor_price(repository, collection) == Decimal("3")

    async def test_polled_floor_is_authoritative(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")

        await store.handle_event(_listing(collection, "1.2", "0xb", is_new_floor=True))

        assert await _floor_price(repository, collection) == Decimal("1.2")

    async def test_same_order_not_reapplied(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")

        await store.handle_event(_listing(collection, "1.0", "0xa", is_new_floor=True))

        result = await repository.get_collection_floor(collection)
        assert result.value.order_hash == "0xa"
        assert result.value.price == Decimal("1.0")

    async def test_expired_listing_ignored(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")

        await store.handle_event(_listing(collection, "0.5", "0xb", ends_at=PAST))

        assert await _floor_price(repository, collection) == Decimal("1.0")

    async def test_duplicate_listing(self, store: PriceStateStore, collection: str) -> None:
        event = _listing(collection, "1.0", "0xa")
        await store.handle_event(event)
        result = await store.handle_event(event)
        assert result.kind is ResultKind.ALREADY_EXISTS


# ---------------------------------------------------------------------------
# Offers
# ---------------------------------------------------------------------------


class TestOffers:
    async def test_higher_offer_wins(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        first = await store.handle_event(_offer(collection, "1.0", "0x1"))
        lower = await store.handle_event(_offer(collection, "0.8", "0x2"))
        higher = await store.handle_event(_offer(collection, "1.2", "0x3"))

        assert first.value.is_highest_offer is True
        assert lower.value.is_highest_offer is False
        assert higher.value.is_highest_offer is True
        current = await repository.get_offer(collection, "")
        assert current.value.price == Decimal("1.2")
        assert current.value.order_hash == "0x3"

    async def test_lower_offer_replaces_expired_offer(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await repository.set_offer(
            Offer(
                collection=collection,
                token_id="",
                price=Decimal("5.0"),
                marketplace=Marketplace.LOOKSRARE,
                order_hash="0xstale",
                ends_at=PAST,
            )
        )

        result = await store.handle_event(_offer(collection, "0.5", "0x1"))

        assert result.value.is_highest_offer is True
        current = (await repository.get_offer(collection, "")).value
        assert current.price == Decimal("0.5")
        assert current.order_hash == "0x1"

    async def test_lower_offer_loses_to_live_offer(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await repository.set_offer(
            Offer(
                collection=collection,
                token_id="",
                price=Decimal("5.0"),
                marketplace=Marketplace.LOOKSRARE,
                order_hash="0xlive",
                ends_at=FUTURE,
            )
        )

        result = await store.handle_event(_offer(collection, "0.5", "0x1"))

        assert result.value.is_highest_offer is False
        current = (await repository.get_offer(collection, "")).value
        assert current.price == Decimal("5.0")
        assert current.order_hash == "0xlive"

    async def test_token_offers_tracked_separately(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await store.handle_event(_offer(collection, "1.0", "0x1"))
        result = await store.handle_event(_offer(collection, "0.5", "0x2", token_id="7"))

        assert result.value.is_highest_offer is True
        assert (await repository.get_offer(collection, "7")).value.price == Decimal("0.5")
        assert (await repository.get_offer(collection, "")).value.price == Decimal("1.0")

    async def test_offer_stamped_with_floor(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "2.0", "0xa")

        result = await store.handle_event(_offer(collection, "1.5", "0x1"))

        assert result.value.collection_floor == Decimal("2.0")
        assert result.value.floor_difference == pytest.approx(-0.25)


# ---------------------------------------------------------------------------
# Forced recompute
# ---------------------------------------------------------------------------


class TestRecompute:
    async def test_accepted_floor_order_refetched(
        self,
        store: PriceStateStore,
        repository: Repository,
        order_source: MagicMock,
        collection: str,
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")
        order_source.get_collection_floor.return_value = [
            _book_order(collection, "1.4", "0xnext", is_ask=True)
        ]
        sale = NFTEvent(
            event_type=EventType.ACCEPT_ASK,
            marketplace=Marketplace.LOOKSRARE,
            transaction_hash="0x" + "ee" * 32,
            order_hash="0xa",
            collection=collection,
            token_id="1",
            price=Decimal("1.0"),
        )

        await store.handle_event(sale)

        floor = (await repository.get_collection_floor(collection)).value
        assert floor.price == Decimal("1.4")
        assert floor.order_hash == "0xnext"
        assert store.recomputes == 1

    async def test_unrelated_sale_keeps_floor(
        self,
        store: PriceStateStore,
        repository: Repository,
        order_source: MagicMock,
        collection: str,
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")
        sale = NFTEvent(
            event_type=EventType.ACCEPT_ASK,
            marketplace=Marketplace.OPENSEA,
            transaction_hash="0x" + "ee" * 32,
            order_hash="0xother",
            collection=collection,
            token_id="1",
        )

        await store.handle_event(sale)

        order_source.get_collection_floor.assert_not_awaited()
        assert await _floor_price(repository, collection) == Decimal("1.0")

    async def test_empty_book_stores_sentinel(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")
        cancel = NFTEvent(
            event_type=EventType.CANCEL_ORDER,
            marketplace=Marketplace.LOOKSRARE,
            order_hash="0xa",
            collection=collection,
            order_type=OrderType.LISTING,
        )

        await store.handle_event(cancel)

        floor = (await repository.get_collection_floor(collection)).value
        assert floor.is_empty
        assert floor.order_hash is None

    async def test_accepted_offer_refetched(
        self,
        store: PriceStateStore,
        repository: Repository,
        order_source: MagicMock,
        collection: str,
    ) -> None:
        await repository.set_offer(
            Offer(
                collection=collection,
                token_id="",
                price=Decimal("0.9"),
                marketplace=Marketplace.LOOKSRARE,
                order_hash="0xbid",
                ends_at=FUTURE,
            )
        )
        order_source.get_highest_offers.return_value = [
            _book_order(collection, "0.7", "0xbid2", is_ask=False)
        ]
        sale = NFTEvent(
            event_type=EventType.ACCEPT_OFFER,
            marketplace=Marketplace.LOOKSRARE,
            transaction_hash="0x" + "ff" * 32,
            order_hash="0xbid",
            collection=collection,
            token_id="5",
        )

        await store.handle_event(sale)

        offer = (await repository.get_offer(collection, "")).value
        assert offer.price == Decimal("0.7")
        assert offer.order_hash == "0xbid2"
        order_source.get_highest_offers.assert_awaited_once_with(collection, None)

    async def test_collectionless_cancel_resolved_by_hash(
        self,
        store: PriceStateStore,
        repository: Repository,
        order_source: MagicMock,
        collection: str,
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")
        order_source.get_collection_floor.return_value = [
            _book_order(collection, "1.1", "0xnext", is_ask=True)
        ]
        cancel = NFTEvent(
            event_type=EventType.CANCEL_ORDER,
            marketplace=Marketplace.OPENSEA,
            transaction_hash="0x" + "cc" * 32,
            order_hash="0xa",
        )

        result = await store.handle_event(cancel)

        assert result.ok
        order_source.get_collection_floor.assert_awaited_once_with(collection)
        assert await _floor_price(repository, collection) == Decimal("1.1")

    async def test_expired_book_orders_skipped(
        self,
        store: PriceStateStore,
        repository: Repository,
        order_source: MagicMock,
        collection: str,
    ) -> None:
        await _seed_floor(repository, collection, "1.0", "0xa")
        stale = _book_order(collection, "0.5", "0xstale", is_ask=True)
        order_source.get_collection_floor.return_value = [
            LooksRareOrder(**{**stale.__dict__, "end_time": PAST}),
            _book_order(collection, "1.3", "0xlive", is_ask=True),
        ]
        cancel = NFTEvent(
            event_type=EventType.CANCEL_ORDER,
            marketplace=Marketplace.LOOKSRARE,
            order_hash="0xa",
            collection=collection,
        )

        await store.handle_event(cancel)

        assert await _floor_price(repository, collection) == Decimal("1.3")


class TestLocking:
    def test_lock_per_collection(self, store: PriceStateStore) -> None:
        assert store._lock("0xaa") is store._lock("0xaa")
        assert store._lock("0xaa") is not store._lock("0xbb")

    async def test_concurrent_listings_serialized(
        self, store: PriceStateStore, repository: Repository, collection: str
    ) -> None:
        events = [_listing(collection, str(p), f"0x{p}") for p in (5, 3, 4, 2, 6)]

        await asyncio.gather(*(store.handle_event(e) for e in events))

        assert await _floor_price(repository, collection) == Decimal("2")
