"""Allow running as: python -m nftwatch

Usage:
  python -m nftwatch --role crawler   # Ingestion + price state (default)
  python -m nftwatch --role shard     # Notification worker for one shard
"""

import argparse
import asyncio
import sys

from nftwatch.config.settings import get_config
from nftwatch.utils.logger import setup_logging


def main() -> None:
    """CLI entry point with role routing."""
    parser = argparse.ArgumentParser(description="nftwatch NFT marketplace watcher")
    parser.add_argument(
        "--role",
        default="crawler",
        choices=["crawler", "shard"],
        help="Process role: crawler (ingestion) or shard (notification worker)",
    )
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL")
    args = parser.parse_args()

    config = get_config()
    setup_logging(
        log_level=args.log_level or config.log_level, json_output=config.mode != "dev"
    )

    if args.role == "shard":
        from nftwatch.main_shard import ShardOrchestrator

        status = asyncio.run(ShardOrchestrator().start())
    else:
        from nftwatch.main import CrawlerOrchestrator

        status = asyncio.run(CrawlerOrchestrator().start())
    sys.exit(status)


main()
