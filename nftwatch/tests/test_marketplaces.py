"""Tests for per-marketplace settlement / cancellation parsers.

Logs are hand-encoded ABI payloads; no RPC involved.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from nftwatch.connectors import abi
from nftwatch.connectors.marketplaces import (
    FoundationParser,
    LooksRareParser,
    RaribleParser,
    ScanDirection,
    SeaportParser,
    X2Y2Parser,
    build_parsers,
)
from nftwatch.core.events import EventType, Marketplace, TokenStandard

ETH = 10**18
TX_HASH = "0x" + "ab" * 32
ORDER_HASH = "0x" + "cd" * 32
COLLECTION = "0xbc4ca0eda7647a8ab7c2061c2e118a18a936f13d"
WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
ALICE = "0x1111111111111111111111111111111111111111"
BOB = "0x2222222222222222222222222222222222222222"
FEE = "0x3333333333333333333333333333333333333333"


# ---------------------------------------------------------------------------
# ABI helpers
# ---------------------------------------------------------------------------


def _w(value: int | str) -> str:
    """One 32-byte word: ints are uint256, 0x-strings are left-padded addresses/hashes."""
    if isinstance(value, int):
        return abi.uint_word(value)
    return abi.strip_hex(value).rjust(64, "0")


def _data(*words: int | str) -> str:
    return "0x" + "".join(_w(w) for w in words)


def _topic(value: int | str) -> str:
    return "0x" + _w(value)


def _log(address: str, signature: str, topics: list[Any], data: str) -> dict[str, Any]:
    return {
        "address": address,
        "topics": [abi.event_topic(signature), *(_topic(t) for t in topics)],
        "data": data,
        "transactionHash": TX_HASH,
        "blockNumber": hex(15_000_000),
        "logIndex": hex(7),
    }


# ---------------------------------------------------------------------------
# Seaport
# ---------------------------------------------------------------------------

SEAPORT = "0x00000000006c3852cbef3e08e8df289169ede581"


def _seaport_fulfilled(offer: list[tuple], consideration: list[tuple]) -> dict[str, Any]:
    offer_offset = 4 * 32
    consideration_offset = offer_offset + (1 + 4 * len(offer)) * 32
    words: list[int | str] = [ORDER_HASH, BOB, offer_offset, consideration_offset]
    words.append(len(offer))
    for item in offer:
        words.extend(item)
    words.append(len(consideration))
    for item in consideration:
        words.extend(item)
    return _log(SEAPORT, SeaportParser.settlement_events[0], [ALICE, FEE], _data(*words))


class TestSeaportParser:
    def test_listing_filled_is_accept_ask(self) -> None:
        """NFT in the offer items: recipient buys from the offerer."""
        log = _seaport_fulfilled(
            offer=[(2, COLLECTION, 42, 1)],
            consideration=[
                (0, "0x0", 0, 95 * ETH // 100, ALICE),
                (0, "0x0", 0, 5 * ETH // 100, FEE),
            ],
        )
        trade = SeaportParser(SEAPORT).parse_settlement(log)

        assert trade is not None
        assert trade.event_type == EventType.ACCEPT_ASK
        assert trade.buyer == BOB
        assert trade.seller == ALICE
        assert trade.price == Decimal(1)
        assert trade.collection == COLLECTION
        assert trade.token_id == "42"
        assert trade.standard == TokenStandard.ERC721
        assert trade.order_hash == ORDER_HASH

    def test_bid_accepted_is_accept_offer(self) -> None:
        """ERC20 in the offer items: the offerer buys, the recipient sells."""
        log = _seaport_fulfilled(
            offer=[(1, WETH, 0, 2 * ETH)],
            consideration=[
                (3, COLLECTION, 7, 5, ALICE),
                (1, WETH, 0, ETH // 20, FEE),
            ],
        )
        trade = SeaportParser(SEAPORT).parse_settlement(log)

        assert trade is not None
        assert trade.event_type == EventType.ACCEPT_OFFER
        assert trade.buyer == ALICE
        assert trade.seller == BOB
        assert trade.price == Decimal(2)
        assert trade.token_id == "7"
        assert trade.amount == 5
        assert trade.standard == TokenStandard.ERC1155

    def test_scans_forward(self) -> None:
        assert SeaportParser(SEAPORT).scan_direction is ScanDirection.FORWARD

    def test_cancellation(self) -> None:
        parser = SeaportParser(SEAPORT)
        log = _log(SEAPORT, SeaportParser.cancellation_events[0], [ALICE, FEE], _data(ORDER_HASH))

        assert parser.handles(log)
        assert parser.is_cancellation(log)
        cancel = parser.parse_cancellation(log)
        assert cancel is not None
        assert cancel.order_hash == ORDER_HASH
        assert cancel.maker == ALICE
        assert cancel.marketplace == Marketplace.OPENSEA

    def test_truncated_data_returns_none(self) -> None:
        log = _log(SEAPORT, SeaportParser.settlement_events[0], [ALICE, FEE], _data(ORDER_HASH))
        assert SeaportParser(SEAPORT).parse_settlement(log) is None


# ---------------------------------------------------------------------------
# LooksRare
# ---------------------------------------------------------------------------

LOOKSRARE = "0x59728544b08ab483533076417fbbb2fd0b17ce3a"


def _looksrare_log(signature: str) -> dict[str, Any]:
    # topics: taker, maker, strategy; data: hash, nonce, currency, collection, id, amount, price
    return _log(
        LOOKSRARE,
        signature,
        [BOB, ALICE, FEE],
        _data(ORDER_HASH, 3, WETH, COLLECTION, 42, 1, 3 * ETH // 2),
    )


class TestLooksRareParser:
    def test_taker_bid_is_accept_ask(self) -> None:
        trade = LooksRareParser(LOOKSRARE).parse_settlement(
            _looksrare_log(LooksRareParser.settlement_events[1])
        )
        assert trade is not None
        assert trade.event_type == EventType.ACCEPT_ASK
        assert trade.buyer == BOB
        assert trade.seller == ALICE
        assert trade.price == Decimal("1.5")
        assert trade.collection == COLLECTION
        assert trade.token_id == "42"

    def test_taker_ask_is_accept_offer(self) -> None:
        trade = LooksRareParser(LOOKSRARE).parse_settlement(
            _looksrare_log(LooksRareParser.settlement_events[0])
        )
        assert trade is not None
        assert trade.event_type == EventType.ACCEPT_OFFER
        assert trade.buyer == ALICE
        assert trade.seller == BOB

    def test_scans_backward(self) -> None:
        assert LooksRareParser(LOOKSRARE).scan_direction is ScanDirection.BACKWARD

    def test_cancel_all_orders_has_no_hash(self) -> None:
        log = _log(LOOKSRARE, "CancelAllOrders(address,uint256)", [ALICE], _data(10))
        cancel = LooksRareParser(LOOKSRARE).parse_cancellation(log)
        assert cancel is not None
        assert cancel.order_hash is None
        assert cancel.maker == ALICE

    def test_ignores_other_contracts(self) -> None:
        log = _looksrare_log(LooksRareParser.settlement_events[1])
        log["address"] = SEAPORT
        assert not LooksRareParser(LOOKSRARE).handles(log)


# ---------------------------------------------------------------------------
# X2Y2
# ---------------------------------------------------------------------------

X2Y2 = "0x74312363e45dcaba76c59ec49a7aa8a65a67eed3"


def _x2y2_log(intent: int) -> dict[str, Any]:
    item_offset = 11 * 32
    head = [ALICE, BOB, 1, 2, intent, 1, 1_700_000_000, WETH, 13 * 32, item_offset, 14 * 32]
    return _log(
        X2Y2, X2Y2Parser.settlement_events[0], [ORDER_HASH], _data(*head, 4 * ETH, 64, 0)
    )


class TestX2Y2Parser:
    def test_sell_intent_is_accept_ask(self) -> None:
        trade = X2Y2Parser(X2Y2).parse_settlement(_x2y2_log(intent=1))
        assert trade is not None
        assert trade.event_type == EventType.ACCEPT_ASK
        assert trade.buyer == BOB
        assert trade.seller == ALICE
        assert trade.price == Decimal(4)
        assert trade.order_hash == ORDER_HASH

    def test_buy_intent_is_accept_offer(self) -> None:
        trade = X2Y2Parser(X2Y2).parse_settlement(_x2y2_log(intent=3))
        assert trade is not None
        assert trade.event_type == EventType.ACCEPT_OFFER
        assert trade.buyer == ALICE
        assert trade.seller == BOB

    def test_cancel(self) -> None:
        log = _log(X2Y2, "EvCancel(bytes32)", [ORDER_HASH], "0x")
        cancel = X2Y2Parser(X2Y2).parse_cancellation(log)
        assert cancel is not None
        assert cancel.order_hash == ORDER_HASH


# ---------------------------------------------------------------------------
# Rarible
# ---------------------------------------------------------------------------

RARIBLE = "0x9757f2d2b135150bbeb65308d4a91804107cd8d6"
ETH_ASSET_CLASS = "aaaebeba".ljust(64, "0")
ERC721_ASSET_CLASS = "73ad2146".ljust(64, "0")


def _rarible_log(left_class: str) -> dict[str, Any]:
    left_hash = ORDER_HASH
    right_hash = "0x" + "ef" * 32
    head = [left_hash, right_hash, ALICE, BOB, 5 * ETH, 1, 8 * 32, 10 * 32]
    data = "0x" + "".join(_w(w) for w in head) + left_class + _w(64) + ERC721_ASSET_CLASS + _w(64)
    return _log(RARIBLE, RaribleParser.settlement_events[0], [], data)


class TestRaribleParser:
    def test_currency_left_is_accept_offer(self) -> None:
        trade = RaribleParser(RARIBLE).parse_settlement(_rarible_log(ETH_ASSET_CLASS))
        assert trade is not None
        assert trade.event_type == EventType.ACCEPT_OFFER
        assert trade.buyer == ALICE
        assert trade.seller == BOB
        assert trade.price == Decimal(1) / Decimal(ETH)
        assert trade.order_hash == ORDER_HASH

    def test_nft_left_is_accept_ask(self) -> None:
        trade = RaribleParser(RARIBLE).parse_settlement(_rarible_log(ERC721_ASSET_CLASS))
        assert trade is not None
        assert trade.event_type == EventType.ACCEPT_ASK
        assert trade.buyer == BOB
        assert trade.seller == ALICE
        assert trade.price == Decimal(5)


# ---------------------------------------------------------------------------
# Foundation
# ---------------------------------------------------------------------------

FOUNDATION = "0xcda72070e455bb31c7690a170224ce43623d0b6f"


class TestFoundationParser:
    def test_finalized_is_settle_auction(self) -> None:
        """Price is the sum of protocol fee, creator fee and seller revenue."""
        log = _log(
            FOUNDATION,
            FoundationParser.settlement_events[0],
            [99, ALICE, BOB],
            _data(ETH // 20, ETH // 10, 17 * ETH // 20),
        )
        trade = FoundationParser(FOUNDATION).parse_settlement(log)

        assert trade is not None
        assert trade.event_type == EventType.SETTLE_AUCTION
        assert trade.marketplace == Marketplace.FOUNDATION
        assert trade.seller == ALICE
        assert trade.buyer == BOB
        assert trade.price == Decimal(1)
        assert trade.expects_transfer

    def test_bid_placed_skips_transfer(self) -> None:
        log = _log(
            FOUNDATION,
            FoundationParser.settlement_events[1],
            [99, BOB],
            _data(2 * ETH, 1_700_000_000),
        )
        trade = FoundationParser(FOUNDATION).parse_settlement(log)

        assert trade is not None
        assert trade.event_type == EventType.PLACE_BID
        assert trade.buyer == BOB
        assert trade.price == Decimal(2)
        assert trade.ends_at is not None
        assert int(trade.ends_at.timestamp()) == 1_700_000_000
        assert not trade.expects_transfer

    def test_created_carries_token(self) -> None:
        log = _log(
            FOUNDATION,
            FoundationParser.settlement_events[2],
            [ALICE, COLLECTION, 42],
            _data(86400, 900, ETH, 99),
        )
        trade = FoundationParser(FOUNDATION).parse_settlement(log)

        assert trade is not None
        assert trade.event_type == EventType.CREATE_AUCTION
        assert trade.seller == ALICE
        assert trade.collection == COLLECTION
        assert trade.token_id == "42"
        assert trade.price == Decimal(1)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


class TestBuildParsers:
    def test_only_enabled_marketplaces(self) -> None:
        parsers = build_parsers(
            {"openSea": SEAPORT, "looksRare": LOOKSRARE, "x2y2": X2Y2},
            ["openSea", "x2y2"],
        )
        assert [p.marketplace for p in parsers] == [Marketplace.OPENSEA, Marketplace.X2Y2]
        assert parsers[1].address == X2Y2

    def test_topics_cover_settlement_and_cancellation(self) -> None:
        parser = LooksRareParser(LOOKSRARE)
        assert len(parser.topics) == 4
        assert all(t.startswith("0x") and len(t) == 66 for t in parser.topics)
