"""Canonical NFT event model and watcher types.

Everything downstream of the parsers and the REST poller speaks NFTEvent.
Addresses are always lower-cased hex strings; prices are Decimal ether.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
WEI_PER_ETH = Decimal(10) ** 18


class EventType(str, Enum):
    OFFER = "offer"
    LISTING = "listing"
    ACCEPT_OFFER = "acceptOffer"
    ACCEPT_ASK = "acceptAsk"
    CANCEL_ORDER = "cancelOrder"
    CREATE_AUCTION = "createAuction"
    SETTLE_AUCTION = "settleAuction"
    PLACE_BID = "placeBid"


class Marketplace(str, Enum):
    OPENSEA = "openSea"
    LOOKSRARE = "looksRare"
    X2Y2 = "x2y2"
    RARIBLE = "rarible"
    FOUNDATION = "foundation"


class Blockchain(str, Enum):
    ETHEREUM = "ethereum"


class TokenStandard(str, Enum):
    ERC721 = "ERC-721"
    ERC1155 = "ERC-1155"


class OrderType(str, Enum):
    LISTING = "listing"
    OFFER = "offer"


class WatcherType(str, Enum):
    WALLET = "wallet"
    SERVER = "server"
    COLLECTION = "collection"


def wei_to_eth(value: int | str) -> Decimal:
    """Convert an integer wei amount (or its decimal string) to ether."""
    return Decimal(int(value)) / WEI_PER_ETH


def normalize_address(address: str | None) -> str | None:
    """Lower-case an address, stripping 32-byte log padding if present."""
    if not address:
        return None
    address = address.lower()
    if len(address) == 66 and address.startswith("0x000000000000000000000000"):
        return "0x" + address[26:]
    return address


# ================================================================
# NFTEvent
# ================================================================


@dataclass(frozen=True)
class NFTEvent:
    """Immutable, marketplace-agnostic record of one trading action."""

    event_type: EventType
    marketplace: Marketplace
    blockchain: Blockchain = Blockchain.ETHEREUM
    transaction_hash: str | None = None
    order_hash: str | None = None
    collection: str | None = None
    token_id: str | None = None  # None means collection-wide
    standard: TokenStandard | None = None
    buyer: str | None = None
    seller: str | None = None
    initiator: str | None = None
    intermediary: str | None = None
    price: Decimal | None = None
    gas: int | None = None
    amount: int | None = None
    metadata_uri: str | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None
    is_highest_offer: bool = False
    collection_floor: Decimal | None = None
    floor_difference: float | None = None
    order_type: OrderType | None = None
    # Transient: a polled best listing, authoritative for the floor. Not persisted.
    is_new_floor: bool = False
    id: int | None = None
    created_at: datetime | None = None

    def with_changes(self, **changes: Any) -> NFTEvent:
        return replace(self, **changes)

    @property
    def token_key(self) -> str | None:
        """'collection/tokenId' key used by watcher token sets."""
        if self.collection is None or self.token_id is None:
            return None
        return f"{self.collection}/{self.token_id}"

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.ends_at is None:
            return False
        return self.ends_at < (now or datetime.now(UTC))


# ================================================================
# Price state
# ================================================================


@dataclass(frozen=True)
class CollectionFloor:
    """Cheapest currently-valid listing for a collection."""

    collection: str
    price: Decimal
    marketplace: Marketplace
    order_hash: str | None = None
    ends_at: datetime = EPOCH
    created_at: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return self.price == 0

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.ends_at < (now or datetime.now(UTC))


@dataclass(frozen=True)
class Offer:
    """Current highest offer for a (collection, token) pair.

    token_id == "" denotes a collection-wide offer.
    """

    collection: str
    token_id: str
    price: Decimal
    marketplace: Marketplace
    order_hash: str | None = None
    ends_at: datetime = EPOCH
    created_at: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return self.price == 0

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.ends_at < (now or datetime.now(UTC))


# ================================================================
# Watchers
# ================================================================


@dataclass(frozen=True)
class WatcherSettings:
    """Effective notification preferences (own → account → defaults)."""

    max_offer_floor_difference: float
    allowed_marketplaces: frozenset[str]
    allowed_events: frozenset[str]


@dataclass
class Watcher:
    """A stored subscription plus its effective preferences."""

    id: int
    user_id: int
    subscriber_id: int
    type: WatcherType
    address: str
    settings: WatcherSettings
    nickname: str | None = None
    channel_id: str | None = None
    tokens: set[str] = field(default_factory=set)
    synced_at: datetime | None = None

    def covers(self, event: NFTEvent) -> bool:
        """True if the tracked token set covers the event's token or collection."""
        if event.collection is None:
            return False
        if event.token_id is None:
            prefix = f"{event.collection}/"
            return any(token.startswith(prefix) for token in self.tokens)
        return event.token_key in self.tokens

    def is_party(self, event: NFTEvent) -> bool:
        return self.address in (event.buyer, event.seller, event.initiator)


@dataclass
class WatchedEvent:
    """An event extended with the watchers it concerns (delivery contract)."""

    event: NFTEvent
    watchers: list[Watcher] = field(default_factory=list)


@dataclass(frozen=True)
class ShardAssignment:
    shard_id: int
    total_shards: int
    instance_name: str
