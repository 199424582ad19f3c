"""Pure shape adapters from marketplace payloads to NFTEvent.

No business logic lives here: decisions about roles and event types are made
by the marketplace parsers / REST client; price-state decisions are made by
the price state store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from nftwatch.core.events import (
    Blockchain,
    EventType,
    Marketplace,
    NFTEvent,
    OrderType,
    TokenStandard,
    normalize_address,
)

if TYPE_CHECKING:
    from nftwatch.connectors.looksrare_client import FeedEvent, LooksRareOrder
    from nftwatch.connectors.marketplaces import RawCancel, RawTrade
    from nftwatch.connectors.transfer_resolver import TransferInfo


@dataclass(frozen=True)
class ReceiptContext:
    """Per-transaction facts shared by every event derived from one receipt."""

    initiator: str | None
    gas: int | None
    timestamp: datetime


_FEED_TYPES: dict[str, tuple[EventType, OrderType | None]] = {
    "LIST": (EventType.LISTING, None),
    "OFFER": (EventType.OFFER, None),
    "CANCEL_LIST": (EventType.CANCEL_ORDER, OrderType.LISTING),
    "CANCEL_OFFER": (EventType.CANCEL_ORDER, OrderType.OFFER),
}


def from_trade(
    raw: RawTrade,
    transfer: TransferInfo | None,
    receipt: ReceiptContext,
    blockchain: Blockchain = Blockchain.ETHEREUM,
) -> NFTEvent:
    """On-chain settlement + (optional) resolved transfer → NFTEvent."""
    buyer = normalize_address(raw.buyer)
    collection = raw.collection
    token_id = raw.token_id
    standard = raw.standard
    intermediary = None
    metadata_uri = None
    if transfer is not None:
        collection = collection or transfer.collection
        token_id = token_id or transfer.token_id
        standard = standard or transfer.standard
        metadata_uri = transfer.metadata_uri
        intermediary = transfer.intermediary
        if intermediary is not None and buyer in (None, intermediary):
            buyer = transfer.to_address

    return NFTEvent(
        event_type=raw.event_type,
        marketplace=raw.marketplace,
        blockchain=blockchain,
        transaction_hash=raw.transaction_hash,
        order_hash=raw.order_hash,
        collection=normalize_address(collection),
        token_id=token_id,
        standard=standard,
        buyer=buyer,
        seller=normalize_address(raw.seller),
        initiator=normalize_address(receipt.initiator),
        intermediary=intermediary,
        price=raw.price,
        gas=receipt.gas,
        amount=raw.amount,
        metadata_uri=metadata_uri,
        starts_at=receipt.timestamp,
        ends_at=raw.ends_at,
    )


def from_cancel(
    raw: RawCancel,
    receipt: ReceiptContext,
    blockchain: Blockchain = Blockchain.ETHEREUM,
) -> NFTEvent:
    return NFTEvent(
        event_type=EventType.CANCEL_ORDER,
        marketplace=raw.marketplace,
        blockchain=blockchain,
        transaction_hash=raw.transaction_hash,
        order_hash=raw.order_hash,
        collection=normalize_address(raw.collection),
        token_id=raw.token_id,
        initiator=normalize_address(receipt.initiator or raw.maker),
        gas=receipt.gas,
        starts_at=receipt.timestamp,
        order_type=raw.order_type,
    )


def from_order(
    order: LooksRareOrder,
    *,
    is_new_floor: bool = False,
    is_highest_offer: bool = False,
    blockchain: Blockchain = Blockchain.ETHEREUM,
) -> NFTEvent:
    """Polled order-book entry → listing (ask) or offer (bid) event."""
    signer = normalize_address(order.signer)
    return NFTEvent(
        event_type=EventType.LISTING if order.is_order_ask else EventType.OFFER,
        marketplace=Marketplace.LOOKSRARE,
        blockchain=blockchain,
        order_hash=order.hash,
        collection=normalize_address(order.collection),
        token_id=order.token_id,
        standard=TokenStandard.ERC721,
        seller=signer if order.is_order_ask else None,
        buyer=None if order.is_order_ask else signer,
        price=order.price,
        amount=order.amount,
        starts_at=order.start_time,
        ends_at=order.end_time,
        is_new_floor=is_new_floor,
        is_highest_offer=is_highest_offer,
    )


def from_feed_event(
    feed_event: FeedEvent, blockchain: Blockchain = Blockchain.ETHEREUM
) -> NFTEvent | None:
    """Order-event feed entry → NFTEvent. Unknown types or order-less entries yield None."""
    mapping = _FEED_TYPES.get(feed_event.type)
    order = feed_event.order
    if mapping is None or order is None:
        return None
    event_type, order_type = mapping
    signer = normalize_address(order.signer)
    return NFTEvent(
        event_type=event_type,
        marketplace=Marketplace.LOOKSRARE,
        blockchain=blockchain,
        transaction_hash=feed_event.transaction_hash,
        order_hash=order.hash,
        collection=normalize_address(order.collection or feed_event.collection),
        token_id=order.token_id,
        standard=TokenStandard.ERC721,
        seller=signer if order.is_order_ask else None,
        buyer=None if order.is_order_ask else signer,
        initiator=normalize_address(feed_event.from_address),
        price=order.price,
        amount=order.amount,
        starts_at=order.start_time,
        ends_at=order.end_time,
        order_type=order_type,
    )
