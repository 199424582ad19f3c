"""Per-marketplace settlement / cancellation log parsers.

Each parser owns one settlement contract and knows:
  - which event topics to subscribe to,
  - the direction to scan the receipt for the NFT transfer log,
  - how to map the marketplace's maker/taker arguments onto buyer/seller
    and acceptOffer/acceptAsk.

Role mapping:

| Marketplace | Event                 | Type           | Buyer      | Seller     |
|-------------|-----------------------|----------------|------------|------------|
| openSea     | OrderFulfilled, NFT   | acceptAsk      | recipient  | offerer    |
|             | in offer items        |                |            |            |
| openSea     | OrderFulfilled, ERC20 | acceptOffer    | offerer    | recipient  |
|             | in offer items        |                |            |            |
| looksRare   | TakerAsk              | acceptOffer    | maker      | taker      |
| looksRare   | TakerBid              | acceptAsk      | taker      | maker      |
| x2y2        | EvInventory intent=3  | acceptOffer    | maker      | taker      |
| x2y2        | EvInventory other     | acceptAsk      | taker      | maker      |
| rarible     | Match, left=ETH/ERC20 | acceptOffer    | leftMaker  | rightMaker |
| rarible     | Match, left=NFT       | acceptAsk      | rightMaker | leftMaker  |
| foundation  | AuctionFinalized      | settleAuction  | bidder     | seller     |
| foundation  | AuctionBidPlaced      | placeBid       | bidder     | –          |
| foundation  | AuctionCreated        | createAuction  | –          | seller     |
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from nftwatch.connectors import abi
from nftwatch.core.events import (
    EventType,
    Marketplace,
    OrderType,
    TokenStandard,
    wei_to_eth,
)
from nftwatch.utils.logger import get_logger

logger = get_logger("marketplaces")


class ScanDirection(Enum):
    FORWARD = 1
    BACKWARD = -1


@dataclass(frozen=True)
class RawTrade:
    """Marketplace-specific settlement decoded from one log."""

    marketplace: Marketplace
    event_type: EventType
    transaction_hash: str
    block_number: int
    log_index: int
    order_hash: str | None = None
    buyer: str | None = None
    seller: str | None = None
    price: Decimal | None = None
    amount: int | None = None
    collection: str | None = None
    token_id: str | None = None
    standard: TokenStandard | None = None
    ends_at: datetime | None = None
    # Bids on an escrowed auction move no NFT; skip the transfer scan
    expects_transfer: bool = True


@dataclass(frozen=True)
class RawCancel:
    """Order cancellation decoded from one log."""

    marketplace: Marketplace
    transaction_hash: str
    block_number: int
    log_index: int
    order_hash: str | None = None
    maker: str | None = None
    collection: str | None = None
    token_id: str | None = None
    order_type: OrderType | None = None


def _log_position(log: dict[str, Any]) -> tuple[str, int, int]:
    return (
        log["transactionHash"].lower(),
        abi.hex_to_int(log.get("blockNumber")),
        abi.hex_to_int(log.get("logIndex")),
    )


# ================================================================
# Base parser
# ================================================================


class MarketplaceParser:
    """Common subscription + dispatch logic. Subclasses fill in the decoding."""

    marketplace: Marketplace
    scan_direction: ScanDirection = ScanDirection.BACKWARD
    settlement_events: tuple[str, ...] = ()
    cancellation_events: tuple[str, ...] = ()

    def __init__(self, address: str) -> None:
        self.address = address.lower()
        self._settlement_topics = {abi.event_topic(s): s for s in self.settlement_events}
        self._cancellation_topics = {abi.event_topic(s): s for s in self.cancellation_events}

    @property
    def topics(self) -> list[str]:
        """All topic0 values to subscribe to (settlement + cancellation)."""
        return [*self._settlement_topics, *self._cancellation_topics]

    def handles(self, log: dict[str, Any]) -> bool:
        return (log.get("address") or "").lower() == self.address and (
            abi.topic(log, 0) in self._settlement_topics
            or abi.topic(log, 0) in self._cancellation_topics
        )

    def is_cancellation(self, log: dict[str, Any]) -> bool:
        return abi.topic(log, 0) in self._cancellation_topics

    def event_name(self, log: dict[str, Any]) -> str:
        topic0 = abi.topic(log, 0) or ""
        signature = self._settlement_topics.get(topic0) or self._cancellation_topics.get(topic0, "")
        return signature.split("(", 1)[0]

    def parse_settlement(self, log: dict[str, Any]) -> RawTrade | None:
        """Decode a settlement log. Returns None if the payload is malformed."""
        try:
            return self._parse_settlement(log)
        except (ValueError, IndexError, TypeError, KeyError) as e:
            logger.warning(
                "settlement_parse_error",
                marketplace=self.marketplace.value,
                tx_hash=log.get("transactionHash"),
                error=str(e),
            )
            return None

    def parse_cancellation(self, log: dict[str, Any]) -> RawCancel | None:
        """Decode a cancellation log. Returns None if the payload is malformed."""
        try:
            return self._parse_cancellation(log)
        except (ValueError, IndexError, TypeError, KeyError) as e:
            logger.warning(
                "cancellation_parse_error",
                marketplace=self.marketplace.value,
                tx_hash=log.get("transactionHash"),
                error=str(e),
            )
            return None

    def _parse_settlement(self, log: dict[str, Any]) -> RawTrade | None:
        raise NotImplementedError

    def _parse_cancellation(self, log: dict[str, Any]) -> RawCancel | None:
        raise NotImplementedError

    def _cancel(self, log: dict[str, Any], **fields: Any) -> RawCancel:
        tx_hash, block_number, log_index = _log_position(log)
        return RawCancel(
            marketplace=self.marketplace,
            transaction_hash=tx_hash,
            block_number=block_number,
            log_index=log_index,
            **fields,
        )

    def _trade(self, log: dict[str, Any], **fields: Any) -> RawTrade:
        tx_hash, block_number, log_index = _log_position(log)
        return RawTrade(
            marketplace=self.marketplace,
            transaction_hash=tx_hash,
            block_number=block_number,
            log_index=log_index,
            **fields,
        )


# ================================================================
# OpenSea (Seaport)
# ================================================================

# Seaport ItemType
_NATIVE, _ERC20, _ERC721, _ERC1155, _ERC721_CRITERIA, _ERC1155_CRITERIA = range(6)
_CURRENCY_ITEMS = (_NATIVE, _ERC20)


@dataclass(frozen=True)
class SeaportItem:
    item_type: int
    token: str
    identifier: int
    amount: int

    @property
    def is_nft(self) -> bool:
        return self.item_type >= _ERC721

    @property
    def standard(self) -> TokenStandard:
        if self.item_type in (_ERC1155, _ERC1155_CRITERIA):
            return TokenStandard.ERC1155
        return TokenStandard.ERC721


def _seaport_items(data: str, byte_offset: int, words_per_item: int) -> list[SeaportItem]:
    base = byte_offset // 32
    count = abi.to_int(abi.word(data, base))
    items = []
    for i in range(count):
        start = base + 1 + i * words_per_item
        items.append(
            SeaportItem(
                item_type=abi.to_int(abi.word(data, start)),
                token=abi.to_address(abi.word(data, start + 1)),
                identifier=abi.to_int(abi.word(data, start + 2)),
                amount=abi.to_int(abi.word(data, start + 3)),
            )
        )
    return items


class SeaportParser(MarketplaceParser):
    """Seaport emits OrderFulfilled before the transfers it triggers: scan forward."""

    marketplace = Marketplace.OPENSEA
    scan_direction = ScanDirection.FORWARD
    settlement_events = (
        "OrderFulfilled(bytes32,address,address,address,"
        "(uint8,address,uint256,uint256)[],(uint8,address,uint256,uint256,address)[])",
    )
    cancellation_events = ("OrderCancelled(bytes32,address,address)",)

    def _parse_settlement(self, log: dict[str, Any]) -> RawTrade | None:
        data = log["data"]
        offerer = abi.to_address(log["topics"][1])
        order_hash = abi.to_bytes32(abi.word(data, 0))
        recipient = abi.to_address(abi.word(data, 1))
        offer = _seaport_items(data, abi.to_int(abi.word(data, 2)), 4)
        consideration = _seaport_items(data, abi.to_int(abi.word(data, 3)), 5)

        offered_nfts = [item for item in offer if item.is_nft]
        if offered_nfts:
            # Listing filled: the offerer sold the NFT, paid in consideration
            nft = offered_nfts[0]
            event_type = EventType.ACCEPT_ASK
            buyer, seller = recipient, offerer
            price_wei = sum(i.amount for i in consideration if i.item_type in _CURRENCY_ITEMS)
        else:
            # Bid accepted: the offerer paid ERC20 and receives the NFT
            received = [item for item in consideration if item.is_nft]
            if not received:
                logger.debug("seaport_no_nft_item", tx_hash=log.get("transactionHash"))
                return None
            nft = received[0]
            event_type = EventType.ACCEPT_OFFER
            buyer, seller = offerer, recipient
            price_wei = sum(i.amount for i in offer if i.item_type in _CURRENCY_ITEMS)

        return self._trade(
            log,
            event_type=event_type,
            order_hash=order_hash,
            buyer=buyer,
            seller=seller,
            price=wei_to_eth(price_wei),
            amount=nft.amount,
            collection=nft.token,
            token_id=str(nft.identifier),
            standard=nft.standard,
        )

    def _parse_cancellation(self, log: dict[str, Any]) -> RawCancel | None:
        return self._cancel(
            log,
            order_hash=abi.to_bytes32(abi.word(log["data"], 0)),
            maker=abi.to_address(log["topics"][1]),
        )


# ================================================================
# LooksRare
# ================================================================


class LooksRareParser(MarketplaceParser):
    marketplace = Marketplace.LOOKSRARE
    settlement_events = (
        "TakerAsk(bytes32,uint256,address,address,address,address,address,uint256,uint256,uint256)",
        "TakerBid(bytes32,uint256,address,address,address,address,address,uint256,uint256,uint256)",
    )
    cancellation_events = (
        "CancelMultipleOrders(address,uint256[])",
        "CancelAllOrders(address,uint256)",
    )

    def _parse_settlement(self, log: dict[str, Any]) -> RawTrade | None:
        # topics: taker, maker, strategy
        # data: orderHash, orderNonce, currency, collection, tokenId, amount, price
        data = log["data"]
        taker = abi.to_address(log["topics"][1])
        maker = abi.to_address(log["topics"][2])
        if self.event_name(log) == "TakerAsk":
            # Taker sells into the maker's bid
            event_type, buyer, seller = EventType.ACCEPT_OFFER, maker, taker
        else:
            event_type, buyer, seller = EventType.ACCEPT_ASK, taker, maker
        return self._trade(
            log,
            event_type=event_type,
            order_hash=abi.to_bytes32(abi.word(data, 0)),
            buyer=buyer,
            seller=seller,
            collection=abi.to_address(abi.word(data, 3)),
            token_id=str(abi.to_int(abi.word(data, 4))),
            amount=abi.to_int(abi.word(data, 5)),
            price=wei_to_eth(abi.to_int(abi.word(data, 6))),
        )

    def _parse_cancellation(self, log: dict[str, Any]) -> RawCancel | None:
        # Nonce-based cancels carry no order hash
        return self._cancel(log, maker=abi.to_address(log["topics"][1]))


# ================================================================
# X2Y2
# ================================================================

_X2Y2_INTENT_BUY = 3


class X2Y2Parser(MarketplaceParser):
    marketplace = Marketplace.X2Y2
    settlement_events = (
        "EvInventory(bytes32,address,address,uint256,uint256,uint256,uint256,uint256,address,"
        "bytes,(uint256,bytes),(uint8,uint256,uint256,uint256,bytes32,address,bytes,uint256,"
        "uint256,uint256,(uint256,address)[]))",
    )
    cancellation_events = ("EvCancel(bytes32)",)

    def _parse_settlement(self, log: dict[str, Any]) -> RawTrade | None:
        # head: maker, taker, orderSalt, settleSalt, intent, delegateType, deadline,
        # currency, dataMask offset, item offset, detail offset
        data = log["data"]
        maker = abi.to_address(abi.word(data, 0))
        taker = abi.to_address(abi.word(data, 1))
        intent = abi.to_int(abi.word(data, 4))
        item_offset = abi.to_int(abi.word(data, 9))
        price_wei = abi.to_int(abi.word_at(data, item_offset))

        if intent == _X2Y2_INTENT_BUY:
            event_type, buyer, seller = EventType.ACCEPT_OFFER, maker, taker
        else:
            event_type, buyer, seller = EventType.ACCEPT_ASK, taker, maker
        return self._trade(
            log,
            event_type=event_type,
            order_hash=abi.to_bytes32(log["topics"][1]),
            buyer=buyer,
            seller=seller,
            price=wei_to_eth(price_wei),
        )

    def _parse_cancellation(self, log: dict[str, Any]) -> RawCancel | None:
        return self._cancel(log, order_hash=abi.to_bytes32(log["topics"][1]))


# ================================================================
# Rarible
# ================================================================

# bytes4(keccak256("ETH")), bytes4(keccak256("ERC20"))
_RARIBLE_CURRENCY_CLASSES = ("aaaebeba", "8ae85d84")


class RaribleParser(MarketplaceParser):
    marketplace = Marketplace.RARIBLE
    settlement_events = (
        "Match(bytes32,bytes32,address,address,uint256,uint256,(bytes4,bytes),(bytes4,bytes))",
    )
    cancellation_events = ("Cancel(bytes32,address,(bytes4,bytes),(bytes4,bytes))",)

    def _parse_settlement(self, log: dict[str, Any]) -> RawTrade | None:
        # head: leftHash, rightHash, leftMaker, rightMaker, newLeftFill, newRightFill,
        # leftAsset offset, rightAsset offset
        data = log["data"]
        left_maker = abi.to_address(abi.word(data, 2))
        right_maker = abi.to_address(abi.word(data, 3))
        new_left_fill = abi.to_int(abi.word(data, 4))
        new_right_fill = abi.to_int(abi.word(data, 5))
        left_asset_class = abi.word_at(data, abi.to_int(abi.word(data, 6)))[:8]

        if left_asset_class in _RARIBLE_CURRENCY_CLASSES:
            # Left order pays currency: a bid was matched
            event_type = EventType.ACCEPT_OFFER
            buyer, seller = left_maker, right_maker
            price_wei, amount = new_right_fill, new_left_fill
        else:
            event_type = EventType.ACCEPT_ASK
            buyer, seller = right_maker, left_maker
            price_wei, amount = new_left_fill, new_right_fill
        return self._trade(
            log,
            event_type=event_type,
            order_hash=abi.to_bytes32(abi.word(data, 0)),
            buyer=buyer,
            seller=seller,
            price=wei_to_eth(price_wei),
            amount=amount,
        )

    def _parse_cancellation(self, log: dict[str, Any]) -> RawCancel | None:
        data = log["data"]
        return self._cancel(
            log,
            order_hash=abi.to_bytes32(abi.word(data, 0)),
            maker=abi.to_address(abi.word(data, 1)),
        )


# ================================================================
# Foundation
# ================================================================


class FoundationParser(MarketplaceParser):
    """Reserve auctions. Auctions have no order hash; they are keyed by auction id."""

    marketplace = Marketplace.FOUNDATION
    settlement_events = (
        "ReserveAuctionFinalized(uint256,address,address,uint256,uint256,uint256)",
        "ReserveAuctionBidPlaced(uint256,address,uint256,uint256)",
        "ReserveAuctionCreated(address,address,uint256,uint256,uint256,uint256,uint256)",
    )
    cancellation_events = ("ReserveAuctionCanceled(uint256)",)

    def _parse_settlement(self, log: dict[str, Any]) -> RawTrade | None:
        topics, data = log["topics"], log["data"]
        name = self.event_name(log)

        if name == "ReserveAuctionFinalized":
            # topics: auctionId, seller, bidder; data: f8nFee, creatorFee, ownerRev
            total = sum(abi.to_int(abi.word(data, i)) for i in range(3))
            return self._trade(
                log,
                event_type=EventType.SETTLE_AUCTION,
                seller=abi.to_address(topics[2]),
                buyer=abi.to_address(topics[3]),
                price=wei_to_eth(total),
            )

        if name == "ReserveAuctionBidPlaced":
            # topics: auctionId, bidder; data: amount, endTime
            return self._trade(
                log,
                event_type=EventType.PLACE_BID,
                buyer=abi.to_address(topics[2]),
                price=wei_to_eth(abi.to_int(abi.word(data, 0))),
                ends_at=datetime.fromtimestamp(abi.to_int(abi.word(data, 1)), tz=UTC),
                expects_transfer=False,
            )

        # ReserveAuctionCreated; topics: seller, nftContract, tokenId
        # data: duration, extensionDuration, reservePrice, auctionId
        return self._trade(
            log,
            event_type=EventType.CREATE_AUCTION,
            seller=abi.to_address(topics[1]),
            collection=abi.to_address(topics[2]),
            token_id=str(abi.to_int(abi.strip_hex(topics[3]))),
            price=wei_to_eth(abi.to_int(abi.word(data, 2))),
        )

    def _parse_cancellation(self, log: dict[str, Any]) -> RawCancel | None:
        return self._cancel(log)


PARSER_TYPES: dict[Marketplace, type[MarketplaceParser]] = {
    Marketplace.OPENSEA: SeaportParser,
    Marketplace.LOOKSRARE: LooksRareParser,
    Marketplace.X2Y2: X2Y2Parser,
    Marketplace.RARIBLE: RaribleParser,
    Marketplace.FOUNDATION: FoundationParser,
}


def build_parsers(addresses: dict[str, str], enabled: list[str]) -> list[MarketplaceParser]:
    """Instantiate one parser per enabled marketplace.

    Args:
        addresses: Marketplace id → settlement contract address.
        enabled: Allow-listed marketplace ids.
    """
    parsers: list[MarketplaceParser] = []
    for marketplace_id in enabled:
        marketplace = Marketplace(marketplace_id)
        parsers.append(PARSER_TYPES[marketplace](addresses[marketplace_id]))
    return parsers
