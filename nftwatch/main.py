"""Crawler orchestrator: ingestion, price-state reconciliation, wallet sync.

Entry point: python -m nftwatch --role crawler

Tasks:
- log_listener: on-chain subscriptions + consumer pool
- order_poller: LooksRare floor / collection-offer batches
- feed_poller: LooksRare order-event feed
- wallet_sync: wallet watcher tokens → collections to poll

Every event from every source goes through PriceStateStore.handle_event.
A crashed task is logged with its traceback, the remaining tasks are stopped
and start() returns exit status 1 so the supervisor restarts the process.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal

from sqlalchemy import text

from nftwatch.config.settings import ALL_EVENT_TYPES, NftWatchConfig, get_config
from nftwatch.connectors.log_listener import LogListener
from nftwatch.connectors.looksrare_client import LooksRareClient
from nftwatch.connectors.marketplaces import build_parsers
from nftwatch.connectors.order_poller import OrderPoller
from nftwatch.connectors.rpc_client import RpcClient
from nftwatch.connectors.transfer_resolver import TransferResolver
from nftwatch.connectors.wallet_sync import OwnershipClient, WalletSync
from nftwatch.core.errors import NftWatchError
from nftwatch.core.events import NFTEvent, WatcherSettings
from nftwatch.core.price_state import PriceStateStore
from nftwatch.core.rate_limiter import RateLimiter
from nftwatch.core.repository import Repository, ResultKind
from nftwatch.core.scheduler import PeriodicTask
from nftwatch.core.state import BlockTimestampCache, CollectionsToPoll
from nftwatch.utils.db import dispose_engine, get_session_factory, init_db
from nftwatch.utils.logger import get_logger

logger = get_logger("crawler")

# Seconds granted to in-flight iterations after a stop request
STOP_GRACE_S = 30


def default_watcher_settings(config: NftWatchConfig) -> WatcherSettings:
    """Global preference defaults: every enabled marketplace, every event type."""
    return WatcherSettings(
        max_offer_floor_difference=config.preferences.max_offer_floor_difference,
        allowed_marketplaces=frozenset(config.marketplaces.enabled),
        allowed_events=frozenset(ALL_EVENT_TYPES),
    )


class CrawlerOrchestrator:
    """Wires connectors, price state and persistence; supervises the tasks."""

    def __init__(self, config: NftWatchConfig | None = None) -> None:
        self._config = config or get_config()

        # Shutdown coordination
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._failed = False

        # Shared state
        self.collections = CollectionsToPoll()
        self.block_cache = BlockTimestampCache(self._config.chain.block_cache_size)

        # Components (initialized in start())
        self._rpc: RpcClient | None = None
        self._looksrare: LooksRareClient | None = None
        self._ownership: OwnershipClient | None = None
        self._repository: Repository | None = None
        self._price_state: PriceStateStore | None = None
        self._listener: LogListener | None = None
        self._poller: OrderPoller | None = None
        self._wallet_sync: WalletSync | None = None

        self.events_handled = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Run until a signal or a task failure. Returns the process exit status."""
        logger.info(
            "crawler_starting",
            network=self._config.chain.network,
            marketplaces=self._config.marketplaces.enabled,
        )
        self._install_signal_handlers()
        await self._init_components()
        self._start_tasks()
        logger.info("crawler_started", tasks=[t.get_name() for t in self._tasks])

        # Block until shutdown
        await self._shutdown_event.wait()
        await self.stop()
        return 1 if self._failed else 0

    async def stop(self) -> None:
        """Let in-flight iterations finish, cancel what is left, close sessions."""
        logger.info("crawler_stopping")
        self._shutdown_event.set()

        pending = [t for t in self._tasks if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=STOP_GRACE_S)
            for task in still_running:
                task.cancel()
            for task in still_running:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        for client in (self._rpc, self._looksrare, self._ownership):
            if client is not None:
                await client.close()
        await dispose_engine()
        logger.info("crawler_stopped", events_handled=self.events_handled, failed=self._failed)

    async def handle_event(self, event: NFTEvent) -> None:
        """Single sink for listener and poller events."""
        if self._price_state is None:
            raise NftWatchError("crawler components not initialized")
        result = await self._price_state.handle_event(event)
        self.events_handled += 1
        if result.kind is ResultKind.SUCCESS:
            logger.debug(
                "event_logged",
                event_type=event.event_type.value,
                marketplace=event.marketplace.value,
                collection=event.collection,
            )

    # ------------------------------------------------------------------
    # Signal handlers
    # ------------------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Component initialization
    # ------------------------------------------------------------------

    async def _init_components(self) -> None:
        config = self._config
        await self._init_db()

        self._rpc = RpcClient(config.eth_rpc_url, max_retries=config.chain.max_retries)
        self._looksrare = LooksRareClient(
            base_url=config.looksrare_url,
            api_key=config.looksrare_api_key,
            max_retries=config.looksrare.max_retries,
            rate_limit_backoff_s=config.looksrare.rate_limit_backoff_s,
            transport_backoff_s=config.looksrare.transport_backoff_s,
            events_page_size=config.looksrare.events_page_size,
            timeout_seconds=config.looksrare.timeout_seconds,
        )
        self._ownership = OwnershipClient(
            base_url=config.ownership.api_url,
            api_key=config.moralis_api_key,
            chain=config.ownership.chain,
            max_retries=config.ownership.max_retries,
            page_limit=config.ownership.page_limit,
        )

        self._repository = Repository(get_session_factory(), default_watcher_settings(config))
        self._price_state = PriceStateStore(self._repository, self._looksrare)

        contracts = config.marketplaces
        parsers = build_parsers(contracts.model_dump(), contracts.enabled)
        self._listener = LogListener(
            rpc=self._rpc,
            parsers=parsers,
            resolver=TransferResolver(self._rpc, aggregators=contracts.aggregators),
            block_cache=self.block_cache,
            on_event=self.handle_event,
            stop_event=self._shutdown_event,
            poll_interval_s=config.chain.log_poll_interval_s,
            max_concurrent=config.chain.max_concurrent_logs,
        )
        self._poller = OrderPoller(
            client=self._looksrare,
            collections=self.collections,
            on_event=self.handle_event,
            rate_limiter=RateLimiter(
                config.looksrare.requests_per_minute, config.looksrare.rate_window_size
            ),
            stop_event=self._shutdown_event,
            batch_size=config.looksrare.batch_size,
            events_page_size=config.looksrare.events_page_size,
            events_max_pages=config.looksrare.events_max_pages,
        )
        self._wallet_sync = WalletSync(
            self._repository,
            self._ownership,
            self.collections,
            resync_after_s=config.ownership.resync_after_s,
        )

    async def _init_db(self) -> None:
        await init_db()
        factory = get_session_factory()
        async with factory() as session:
            await session.execute(text("SELECT 1"))
        logger.info("database_connected")

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def _start_tasks(self) -> None:
        if self._listener is None or self._poller is None or self._wallet_sync is None:
            raise NftWatchError("crawler components not initialized")
        polling = self._config.polling
        runners = {
            "log_listener": self._listener.run(),
            "wallet_sync": PeriodicTask(
                "wallet_sync",
                self._wallet_sync.run_once,
                polling.wallet_sync_interval_s,
                self._shutdown_event,
            ).run(),
            "order_poller": PeriodicTask(
                "order_poller",
                self._poller.poll_orders_once,
                polling.order_batch_interval_s,
                self._shutdown_event,
            ).run(),
            "feed_poller": PeriodicTask(
                "feed_poller",
                self._poller.poll_feed_once,
                polling.event_feed_interval_s,
                self._shutdown_event,
                subtract_elapsed=True,
            ).run(),
        }
        for name, coro in runners.items():
            task = asyncio.create_task(coro, name=name)
            task.add_done_callback(self._on_task_done)
            self._tasks.append(task)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        logger.exception("task_crashed", task=task.get_name(), exc_info=exc)
        self._failed = True
        self._shutdown_event.set()
