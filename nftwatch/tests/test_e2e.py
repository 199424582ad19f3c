"""End-to-end: on-chain sale of the floor order → floor re-fetched → watcher notified.

Real parser, transfer resolver, price state and repository (in-memory SQLite);
only the JSON-RPC node and the LooksRare order book are mocked.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from nftwatch.connectors import abi
from nftwatch.connectors.log_listener import LogListener
from nftwatch.connectors.looksrare_client import LooksRareOrder
from nftwatch.connectors.marketplaces import LooksRareParser
from nftwatch.connectors.transfer_resolver import TransferResolver
from nftwatch.core.events import (
    CollectionFloor,
    EventType,
    Marketplace,
    WatchedEvent,
    WatcherType,
)
from nftwatch.core.price_state import PriceStateStore
from nftwatch.core.repository import Repository
from nftwatch.core.sharding import ShardRouter
from nftwatch.core.state import BlockTimestampCache
from nftwatch.main_shard import ShardWorker

LOOKSRARE = "0x59728544b08ab483533076417fbbb2fd0b17ce3a"
COLLECTION = "0x0000000000000000000000000000000000000abc"
SELLER = "0x1111111111111111111111111111111111111111"
BUYER = "0x2222222222222222222222222222222222222222"
FLOOR_ORDER = "0x" + "cd" * 32
TX_HASH = "0x" + "ab" * 32
BLOCK = 15_000_000


def _w(value: int | str) -> str:
    if isinstance(value, int):
        return abi.uint_word(value)
    return abi.strip_hex(value).rjust(64, "0")


def _taker_bid() -> dict[str, Any]:
    data = [FLOOR_ORDER, 1, "0x0", COLLECTION, 42, 1, 10**18]
    return {
        "address": LOOKSRARE,
        "topics": [
            abi.event_topic(LooksRareParser.settlement_events[1]),
            "0x" + _w(BUYER),
            "0x" + _w(SELLER),
            "0x" + _w(0),
        ],
        "data": "0x" + "".join(_w(v) for v in data),
        "transactionHash": TX_HASH,
        "blockNumber": hex(BLOCK),
        "logIndex": hex(1),
    }


def _erc721_transfer() -> dict[str, Any]:
    return {
        "address": COLLECTION,
        "topics": [abi.TRANSFER_TOPIC, "0x" + _w(SELLER), "0x" + _w(BUYER), "0x" + _w(42)],
        "data": "0x",
        "transactionHash": TX_HASH,
        "blockNumber": hex(BLOCK),
        "logIndex": hex(0),
    }


async def test_floor_sale_refreshes_floor_and_notifies(repository: Repository) -> None:
    # Watcher on the buyer's wallet
    user = await repository.create_user(0)
    await repository.create_watcher(user.value, WatcherType.WALLET, BUYER)

    # Cached floor is backed by the order that is about to be filled
    await repository.set_collection_floor(
        CollectionFloor(
            collection=COLLECTION,
            price=Decimal("1"),
            marketplace=Marketplace.LOOKSRARE,
            order_hash=FLOOR_ORDER,
            ends_at=datetime.now(UTC) + timedelta(days=1),
        )
    )

    rpc = MagicMock()
    rpc.get_transaction_receipt = AsyncMock(
        return_value={
            "from": BUYER,
            "gasUsed": hex(150_000),
            "logs": [_erc721_transfer(), _taker_bid()],
        }
    )
    rpc.get_block_timestamp = AsyncMock(return_value=int(datetime.now(UTC).timestamp()))
    rpc.eth_call = AsyncMock(return_value="0x")

    order_book = MagicMock()
    order_book.get_collection_floor = AsyncMock(
        return_value=[
            LooksRareOrder(
                hash="0xnext",
                collection=COLLECTION,
                token_id="77",
                is_order_ask=True,
                signer=SELLER,
                strategy="0xs",
                price=Decimal("1.3"),
                amount=1,
                start_time=datetime.now(UTC),
                end_time=datetime.now(UTC) + timedelta(days=3),
            )
        ]
    )
    order_book.get_highest_offers = AsyncMock(return_value=[])
    price_state = PriceStateStore(repository, order_book)

    listener = LogListener(
        rpc,
        [LooksRareParser(LOOKSRARE)],
        TransferResolver(rpc),
        BlockTimestampCache(),
        price_state.handle_event,
        asyncio.Event(),
    )

    event = await listener.process_log(listener._parsers[0], _taker_bid())

    # Settlement decoded and joined with the receipt's transfer
    assert event is not None
    assert event.event_type == EventType.ACCEPT_ASK
    assert event.buyer == BUYER
    assert event.seller == SELLER
    assert event.token_id == "42"

    # The filled order no longer backs the floor: re-fetched from the order book
    order_book.get_collection_floor.assert_awaited_once_with(COLLECTION)
    floor = (await repository.get_collection_floor(COLLECTION)).value
    assert floor.price == Decimal("1.3")
    assert floor.order_hash == "0xnext"

    # The stored sale is stamped against the floor it consumed, and reaches the watcher
    delivered: list[WatchedEvent] = []

    async def deliver(watched: WatchedEvent) -> None:
        delivered.append(watched)

    worker = ShardWorker(repository, deliver=deliver, router=ShardRouter(0, 1))
    assert await worker.poll_once() == 1
    stored = delivered[0].event
    assert stored.collection_floor == Decimal("1")
    assert stored.floor_difference == 0.0
    assert [w.address for w in delivered[0].watchers] == [BUYER]
