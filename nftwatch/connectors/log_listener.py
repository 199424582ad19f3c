"""On-chain log listener: one subscription per marketplace contract.

Each subscription tails its contract with eth_getLogs from its own last
processed block to the current head (the first poll starts at the head).
Matching logs go into one asyncio.Queue; a pool of consumers resolves the
receipt, block timestamp and NFT transfer for each log and hands the
normalized event to `on_event`.

Degradation:
  - receipt unavailable → nothing emitted, warning logged
  - block timestamp lookup fails → wall-clock time
  - no transfer found → event emitted without transfer fields, warning logged
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable  # noqa: TC003 (used at runtime in __init__)
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from nftwatch.connectors import abi
from nftwatch.connectors.rpc_client import RpcError
from nftwatch.core.events import Blockchain
from nftwatch.core.normalizer import ReceiptContext, from_cancel, from_trade
from nftwatch.core.scheduler import PeriodicTask
from nftwatch.utils.logger import get_logger

if TYPE_CHECKING:
    from nftwatch.connectors.marketplaces import MarketplaceParser
    from nftwatch.connectors.rpc_client import RpcClient
    from nftwatch.connectors.transfer_resolver import TransferResolver
    from nftwatch.core.events import NFTEvent
    from nftwatch.core.state import BlockTimestampCache

logger = get_logger("log_listener")


class LogListener:
    """Subscriptions + consumer pool feeding normalized events downstream.

    Args:
        rpc: JSON-RPC client.
        parsers: One parser per subscribed marketplace contract.
        resolver: Receipt transfer scanner / metadata reader.
        block_cache: Shared block timestamp cache.
        on_event: Coroutine receiving every normalized NFTEvent.
        stop_event: Shutdown signal.
        poll_interval_s: Seconds between eth_getLogs polls.
        max_concurrent: Number of consumer tasks.
    """

    def __init__(
        self,
        rpc: RpcClient,
        parsers: list[MarketplaceParser],
        resolver: TransferResolver,
        block_cache: BlockTimestampCache,
        on_event: Callable[[NFTEvent], Awaitable[object]],
        stop_event: asyncio.Event,
        poll_interval_s: float = 12,
        max_concurrent: int = 8,
        blockchain: Blockchain = Blockchain.ETHEREUM,
    ) -> None:
        self._rpc = rpc
        self._parsers = parsers
        self._resolver = resolver
        self._block_cache = block_cache
        self._on_event = on_event
        self._stop_event = stop_event
        self._poll_interval_s = poll_interval_s
        self._max_concurrent = max_concurrent
        self._blockchain = blockchain
        self._queue: asyncio.Queue[tuple[MarketplaceParser, dict[str, Any]]] = asyncio.Queue()
        self._last_block: dict[str, int] = {}
        self.processed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def last_block(self, parser: MarketplaceParser) -> int | None:
        return self._last_block.get(parser.address)

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def poll_subscriptions_once(self) -> int:
        """Fetch new logs for every subscription. Returns the number queued."""
        try:
            head = await self._rpc.block_number()
        except RpcError as e:
            logger.warning("block_number_failed", error=str(e))
            return 0

        queued = 0
        for parser in self._parsers:
            last = self._last_block.get(parser.address)
            from_block = head if last is None else last + 1
            if from_block > head:
                continue
            try:
                logs = await self._rpc.get_logs(parser.address, [parser.topics], from_block, head)
            except RpcError as e:
                # Range is retried on the next poll
                logger.warning(
                    "get_logs_failed",
                    marketplace=parser.marketplace.value,
                    from_block=from_block,
                    to_block=head,
                    error=str(e),
                )
                continue
            self._last_block[parser.address] = head

            for log in logs:
                if log.get("removed") or not parser.handles(log):
                    continue
                self._queue.put_nowait((parser, log))
                queued += 1

        if queued:
            logger.debug("logs_queued", count=queued, head=head)
        return queued

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    async def _consume(self) -> None:
        while True:
            parser, log = await self._queue.get()
            try:
                await self.process_log(parser, log)
            finally:
                self._queue.task_done()

    async def _block_timestamp(self, block_number: int) -> datetime:
        cached = self._block_cache.get(block_number)
        if cached is None:
            try:
                cached = await self._rpc.get_block_timestamp(block_number)
            except RpcError as e:
                logger.warning("block_timestamp_failed", block=block_number, error=str(e))
                return datetime.now(UTC)
            self._block_cache.put(block_number, cached)
        return datetime.fromtimestamp(cached, tz=UTC)

    async def process_log(self, parser: MarketplaceParser, log: dict[str, Any]) -> NFTEvent | None:
        """Turn one raw log into an NFTEvent and emit it."""
        tx_hash = log.get("transactionHash")
        try:
            receipt = await self._rpc.get_transaction_receipt(tx_hash)  # type: ignore[arg-type]
        except RpcError as e:
            logger.warning("receipt_fetch_failed", tx_hash=tx_hash, error=str(e))
            receipt = None
        if not receipt:
            logger.warning(
                "receipt_missing", tx_hash=tx_hash, marketplace=parser.marketplace.value
            )
            return None

        context = ReceiptContext(
            initiator=receipt.get("from"),
            gas=abi.hex_to_int(receipt.get("gasUsed")),
            timestamp=await self._block_timestamp(abi.hex_to_int(log.get("blockNumber"))),
        )

        if parser.is_cancellation(log):
            cancel = parser.parse_cancellation(log)
            if cancel is None:
                return None
            event = from_cancel(cancel, context, self._blockchain)
        else:
            trade = parser.parse_settlement(log)
            if trade is None:
                return None
            transfer = None
            if trade.expects_transfer:
                transfer = await self._resolver.resolve(receipt, log, parser.scan_direction)
                if transfer is None:
                    logger.warning(
                        "transfer_not_found",
                        tx_hash=tx_hash,
                        marketplace=parser.marketplace.value,
                        log_event=parser.event_name(log),
                    )
            event = from_trade(trade, transfer, context, self._blockchain)

        await self._on_event(event)
        self.processed += 1
        return event

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Poll and consume until the stop event is set; queued logs are drained first."""
        logger.info(
            "log_listener_started",
            subscriptions=[p.marketplace.value for p in self._parsers],
            consumers=self._max_concurrent,
        )
        poller = PeriodicTask(
            "log_listener", self.poll_subscriptions_once, self._poll_interval_s, self._stop_event
        )
        tasks = [
            asyncio.create_task(poller.run(), name="log_listener_poll"),
            *(
                asyncio.create_task(self._consume(), name=f"log_consumer_{i}")
                for i in range(self._max_concurrent)
            ),
        ]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                task.result()
            await self._queue.join()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("log_listener_stopped", processed=self.processed)
