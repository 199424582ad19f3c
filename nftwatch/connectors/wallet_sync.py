"""Wallet token sync: refresh wallet watchers' tokens and the collections to poll.

Interface contract:
  - OwnershipClient.get_wallet_tokens(address) → set["collection/tokenId"] | None
  - WalletSync.run_once() → number of wallets refreshed

A wallet is re-fetched when it was never synced or its last sync is older
than `resync_after_s`. If the ownership API fails, the watcher keeps its
previous tokens. Afterwards CollectionsToPoll is replaced with every
collection held by a wallet watcher plus every collection watcher's address.

Auth: X-API-Key header (MORALIS_API_KEY env var).
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import aiohttp

from nftwatch.core.events import WatcherType
from nftwatch.utils.logger import get_logger

if TYPE_CHECKING:
    from nftwatch.core.repository import Repository
    from nftwatch.core.state import CollectionsToPoll

logger = get_logger("wallet_sync")

BASE_URL = "https://deep-index.moralis.io/api/v2"
MAX_RETRIES = 3
MAX_PAGES = 20


class OwnershipClient:
    """NFT ownership API client (Moralis-compatible)."""

    def __init__(
        self,
        base_url: str = BASE_URL,
        api_key: str = "",
        chain: str = "eth",
        session: aiohttp.ClientSession | None = None,
        max_retries: int = MAX_RETRIES,
        page_limit: int = 100,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._chain = chain
        self._session = session
        self._owns_session = session is None
        self._max_retries = max_retries
        self._page_limit = page_limit

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def _get_page(self, address: str, cursor: str | None) -> dict[str, Any] | None:
        session = await self._get_session()
        params = {"chain": self._chain, "format": "decimal", "limit": str(self._page_limit)}
        if cursor:
            params["cursor"] = cursor
        headers = {"X-API-Key": self._api_key} if self._api_key else {}

        for attempt in range(self._max_retries):
            try:
                async with session.get(
                    f"{self._base_url}/{address}/nft", params=params, headers=headers
                ) as resp:
                    if resp.status == 429:
                        logger.warning("ownership_rate_limited", attempt=attempt + 1)
                        await asyncio.sleep(2**attempt)
                        continue
                    if resp.status != 200:
                        logger.warning("ownership_http_error", status=resp.status, address=address)
                        return None
                    return await resp.json(content_type=None)
            except (aiohttp.ClientError, TimeoutError) as e:
                logger.warning("ownership_network_error", error=str(e), attempt=attempt + 1)
                await asyncio.sleep(2**attempt)
        return None

    async def get_wallet_tokens(self, address: str) -> set[str] | None:
        """All NFTs held by `address`, or None if the lookup failed."""
        tokens: set[str] = set()
        cursor: str | None = None
        for _ in range(MAX_PAGES):
            page = await self._get_page(address, cursor)
            if page is None:
                return None
            for item in page.get("result") or []:
                collection = (item.get("token_address") or "").lower()
                token_id = item.get("token_id")
                if collection and token_id is not None:
                    tokens.add(f"{collection}/{token_id}")
            cursor = page.get("cursor")
            if not cursor:
                break
        return tokens


class WalletSync:
    """Periodic job keeping wallet tokens and the poll set current.

    Args:
        repository: Watcher persistence.
        client: Ownership API client.
        collections: Poll set shared with the order poller.
        resync_after_s: Minimum age of a wallet's last sync before re-fetching.
    """

    def __init__(
        self,
        repository: Repository,
        client: OwnershipClient,
        collections: CollectionsToPoll,
        resync_after_s: float = 300,
    ) -> None:
        self._repo = repository
        self._client = client
        self._collections = collections
        self._resync_after = timedelta(seconds=resync_after_s)

    async def run_once(self) -> int:
        result = await self._repo.get_all_watchers()
        if not result.ok:
            logger.warning("wallet_sync_watchers_unavailable", kind=result.kind.value)
            return 0

        now = datetime.now(UTC)
        refreshed = 0
        collections: set[str] = set()
        for watcher in result.value:
            if watcher.type is WatcherType.COLLECTION:
                collections.add(watcher.address)
                continue
            if watcher.type is not WatcherType.WALLET:
                continue

            tokens = watcher.tokens
            if watcher.synced_at is None or now - watcher.synced_at > self._resync_after:
                fetched = await self._client.get_wallet_tokens(watcher.address)
                if fetched is None:
                    logger.warning("wallet_tokens_unavailable", watcher_id=watcher.id)
                else:
                    tokens = fetched
                    await self._repo.set_watcher_tokens(watcher.id, tokens)
                    refreshed += 1
            collections.update(token.split("/", 1)[0] for token in tokens)

        self._collections.replace(collections)
        logger.info("wallet_sync_complete", refreshed=refreshed, collections=len(collections))
        return refreshed
