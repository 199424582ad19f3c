"""LooksRare order-book REST connector.

Interface contract:
  - get_collection_floor(collection) → list[LooksRareOrder]  (cheapest ask first)
  - get_collection_offers(collection) → list[LooksRareOrder] (highest collection bid first)
  - get_highest_offers(collection, token_id) → list[LooksRareOrder]
  - get_events(event_type, cursor) → list[FeedEvent]

Responses are `{success, data}` or `{success: false, message}`. The message
"Too Many Requests" is the rate-limit signal: sleep a random short interval
and retry. Transport timeouts / resets are retried the same way with a longer
backoff. After the retry budget every public call returns [] instead of
raising, so a single bad call never stops a poll loop.

Auth: X-Looks-Api-Key header (LOOKSRARE_API_KEY env var), optional.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import aiohttp

from nftwatch.core.errors import NftWatchError
from nftwatch.core.events import wei_to_eth
from nftwatch.utils.logger import get_logger

logger = get_logger("looksrare")

BASE_URL = "https://api.looksrare.org"
MAX_RETRIES = 3
RATE_LIMIT_MESSAGE = "Too Many Requests"

# Execution strategies
STRATEGY_STANDARD_SALE_FIXED_PRICE = "0x56244bb70cbd3ea9dc8007399f61dfc065190031"
STRATEGY_COLLECTION_BID = "0x86f909f70813cdb1bc733f4d97dc6b03b8e7e8f3"

EVENT_TYPES = ("LIST", "OFFER", "CANCEL_LIST", "CANCEL_OFFER")


# ================================================================
# Data models
# ================================================================


@dataclass(frozen=True)
class LooksRareOrder:
    """One maker order from /api/v1/orders (price already in ether)."""

    hash: str
    collection: str
    token_id: str | None  # None for collection-wide bids
    is_order_ask: bool
    signer: str
    strategy: str
    price: Decimal
    amount: int
    start_time: datetime
    end_time: datetime
    status: str = "VALID"

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.end_time < (now or datetime.now(UTC))


@dataclass(frozen=True)
class FeedEvent:
    """One entry of the /api/v1/events change feed."""

    id: int
    type: str
    collection: str | None
    from_address: str | None
    transaction_hash: str | None
    created_at: datetime | None
    order: LooksRareOrder | None


# ================================================================
# Error types
# ================================================================


class LooksRareError(NftWatchError):
    """Base error for LooksRare API calls."""


class LooksRareRateLimitError(LooksRareError):
    """`Too Many Requests` response."""


# ================================================================
# Client
# ================================================================


class LooksRareClient:
    """Async LooksRare API client.

    Args:
        base_url: API root (mainnet or testnet).
        api_key: Optional X-Looks-Api-Key value.
        session: Optional shared aiohttp session.
        max_retries: Retries after the first attempt.
        rate_limit_backoff_s: Upper bound of the random sleep after a rate limit.
        transport_backoff_s: Upper bound of the random sleep after a timeout/reset.
        events_page_size: pagination[first] for the events feed.
    """

    def __init__(
        self,
        base_url: str = BASE_URL,
        api_key: str = "",
        session: aiohttp.ClientSession | None = None,
        max_retries: int = MAX_RETRIES,
        rate_limit_backoff_s: float = 5.0,
        transport_backoff_s: float = 30.0,
        events_page_size: int = 150,
        timeout_seconds: int = 30,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._session = session
        self._owns_session = session is None
        self._max_retries = max_retries
        self._rate_limit_backoff_s = rate_limit_backoff_s
        self._transport_backoff_s = transport_backoff_s
        self._events_page_size = events_page_size
        self._timeout_seconds = timeout_seconds
        self.request_count = 0

        logger.info("looksrare_client_init", base_url=self._base_url, has_key=bool(api_key))

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info("looksrare_client_closed", requests=self.request_count)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _request_once(self, path: str, params: list[tuple[str, str]]) -> Any:
        """One GET call.

        Raises:
            LooksRareRateLimitError: On the rate-limit signal.
            LooksRareError: On any other unsuccessful response.
        """
        session = await self._get_session()
        headers: dict[str, str] = {}
        if self._api_key:
            headers["X-Looks-Api-Key"] = self._api_key

        self.request_count += 1
        async with session.get(f"{self._base_url}{path}", params=params, headers=headers) as resp:
            try:
                payload = await resp.json(content_type=None)
            except ValueError as e:
                if resp.status == 429:
                    raise LooksRareRateLimitError(RATE_LIMIT_MESSAGE) from e
                raise LooksRareError(f"Invalid JSON (status {resp.status})") from e

        if not isinstance(payload, dict):
            raise LooksRareError(f"Unexpected payload type {type(payload).__name__}")
        if payload.get("success") is True:
            return payload.get("data")
        message = payload.get("message") or ""
        if message == RATE_LIMIT_MESSAGE or resp.status == 429:
            raise LooksRareRateLimitError(message or RATE_LIMIT_MESSAGE)
        raise LooksRareError(f"status {resp.status}: {message[:200]}")

    async def _request(self, path: str, params: list[tuple[str, str]]) -> Any:
        """GET with bounded randomized retries. Returns [] when everything fails."""
        for attempt in range(self._max_retries + 1):
            retries_left = attempt < self._max_retries
            try:
                data = await self._request_once(path, params)
                return data if data is not None else []
            except LooksRareRateLimitError:
                logger.warning("looksrare_rate_limited", path=path, attempt=attempt + 1)
                if retries_left:
                    await asyncio.sleep(random.random() * self._rate_limit_backoff_s)
            except (aiohttp.ClientError, TimeoutError) as e:
                logger.warning(
                    "looksrare_network_error", path=path, error=str(e), attempt=attempt + 1
                )
                if retries_left:
                    await asyncio.sleep(random.random() * self._transport_backoff_s)
            except LooksRareError as e:
                logger.warning("looksrare_request_failed", path=path, error=str(e))
                return []

        logger.warning("looksrare_retries_exhausted", path=path, retries=self._max_retries)
        return []

    # ------------------------------------------------------------------
    # Public API: order book
    # ------------------------------------------------------------------

    async def _get_orders(self, params: list[tuple[str, str]]) -> list[LooksRareOrder]:
        data = await self._request("/api/v1/orders", params)
        orders = (self._parse_order(raw) for raw in data if isinstance(raw, dict))
        return [o for o in orders if o is not None]

    async def get_collection_floor(self, collection: str, first: int = 1) -> list[LooksRareOrder]:
        """Cheapest valid fixed-price asks for a collection, ascending by price."""
        return await self._get_orders(
            [
                ("isOrderAsk", "true"),
                ("collection", collection),
                ("strategy", STRATEGY_STANDARD_SALE_FIXED_PRICE),
                ("pagination[first]", str(first)),
                ("status[]", "VALID"),
                ("sort", "PRICE_ASC"),
            ]
        )

    async def get_collection_offers(self, collection: str, first: int = 1) -> list[LooksRareOrder]:
        """Highest valid collection-wide bids, descending by price."""
        return await self._get_orders(
            [
                ("isOrderAsk", "false"),
                ("collection", collection),
                ("strategy", STRATEGY_COLLECTION_BID),
                ("pagination[first]", str(first)),
                ("status[]", "VALID"),
                ("sort", "PRICE_DESC"),
            ]
        )

    async def get_highest_offers(
        self, collection: str, token_id: str | None = None, first: int = 1
    ) -> list[LooksRareOrder]:
        """Highest valid bids on one token, or collection-wide when token_id is None/""."""
        if not token_id:
            return await self.get_collection_offers(collection, first=first)
        return await self._get_orders(
            [
                ("isOrderAsk", "false"),
                ("collection", collection),
                ("tokenId", token_id),
                ("pagination[first]", str(first)),
                ("status[]", "VALID"),
                ("sort", "PRICE_DESC"),
            ]
        )

    # ------------------------------------------------------------------
    # Public API: change feed
    # ------------------------------------------------------------------

    async def get_events(self, event_type: str, cursor: int | None = None) -> list[FeedEvent]:
        """One page of the order-event feed, newest first.

        Args:
            event_type: LIST, OFFER, CANCEL_LIST or CANCEL_OFFER.
            cursor: Event id to page back from (exclusive).
        """
        params = [("type", event_type), ("pagination[first]", str(self._events_page_size))]
        if cursor is not None:
            params.append(("pagination[cursor]", str(cursor)))
        data = await self._request("/api/v1/events", params)
        events = (self._parse_event(raw) for raw in data if isinstance(raw, dict))
        return [e for e in events if e is not None]

    # ------------------------------------------------------------------
    # Parsers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_order(raw: dict[str, Any]) -> LooksRareOrder | None:
        try:
            strategy = (raw.get("strategy") or "").lower()
            token_id = raw.get("tokenId")
            if strategy == STRATEGY_COLLECTION_BID or token_id is None:
                token_id = None
            return LooksRareOrder(
                hash=raw["hash"].lower(),
                collection=raw["collectionAddress"].lower(),
                token_id=str(token_id) if token_id is not None else None,
                is_order_ask=bool(raw["isOrderAsk"]),
                signer=raw["signer"].lower(),
                strategy=strategy,
                price=wei_to_eth(raw["price"]),
                amount=_safe_int(raw.get("amount"), 1),
                start_time=_from_timestamp(raw.get("startTime")),
                end_time=_from_timestamp(raw.get("endTime")),
                status=raw.get("status") or "VALID",
            )
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            logger.debug("looksrare_order_parse_error", error=str(e))
            return None

    @classmethod
    def _parse_event(cls, raw: dict[str, Any]) -> FeedEvent | None:
        try:
            event_id = int(raw["id"])
        except (KeyError, ValueError, TypeError):
            return None
        order = raw.get("order")
        collection = raw.get("collection") or {}
        return FeedEvent(
            id=event_id,
            type=raw.get("type") or "",
            collection=(collection.get("address") or "").lower() or None,
            from_address=(raw.get("from") or "").lower() or None,
            transaction_hash=(raw.get("hash") or "").lower() or None,
            created_at=_parse_iso(raw.get("createdAt")),
            order=cls._parse_order(order) if isinstance(order, dict) else None,
        )


def _safe_int(val: Any, default: int = 0) -> int:
    if val is None:
        return default
    try:
        return int(val)
    except (ValueError, TypeError):
        return default


def _from_timestamp(val: Any) -> datetime:
    return datetime.fromtimestamp(_safe_int(val), tz=UTC)


def _parse_iso(val: Any) -> datetime | None:
    if not val:
        return None
    try:
        return datetime.fromisoformat(str(val).replace("Z", "+00:00"))
    except ValueError:
        return None
