"""Watcher sharding and per-watcher preference filtering.

Every notification worker reads the full event stream and keeps only the
watchers of its own shard. Shard of a watcher = (subscriber_id >> 22) mod N,
i.e. the millisecond timestamp part of the subscriber's snowflake id, so the
assignment is stable for a fixed N and spreads evenly over sign-up time.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from nftwatch.core.events import EventType, WatchedEvent, WatcherType
from nftwatch.utils.logger import get_logger

if TYPE_CHECKING:
    from nftwatch.core.events import NFTEvent, ShardAssignment, Watcher

logger = get_logger("sharding")

SNOWFLAKE_TIMESTAMP_SHIFT = 22


def shard_for(subscriber_id: int, total_shards: int) -> int:
    if total_shards <= 0:
        raise ValueError("total_shards must be positive")
    return (subscriber_id >> SNOWFLAKE_TIMESTAMP_SHIFT) % total_shards


class ShardRouter:
    """Decides which watchers belong to this worker."""

    def __init__(self, shard_id: int = 0, total_shards: int = 1) -> None:
        self.shard_id = shard_id
        self.total_shards = total_shards

    def update(self, assignment: ShardAssignment) -> bool:
        """Apply a (possibly new) assignment. Returns True if it changed."""
        changed = (assignment.shard_id, assignment.total_shards) != (
            self.shard_id,
            self.total_shards,
        )
        if changed:
            logger.info(
                "shard_assignment_changed",
                shard_id=assignment.shard_id,
                total_shards=assignment.total_shards,
                previous_shard_id=self.shard_id,
                previous_total=self.total_shards,
            )
            self.shard_id = assignment.shard_id
            self.total_shards = assignment.total_shards
        return changed

    def owns(self, watcher: Watcher) -> bool:
        return shard_for(watcher.subscriber_id, self.total_shards) == self.shard_id


class PreferenceFilter:
    """Per (event, watcher) notification rules.

    Args:
        stale_minutes: Reject events whose on-chain / order start time lags
            the cutoff by more than this.
    """

    def __init__(self, stale_minutes: int = 10) -> None:
        self._stale = timedelta(minutes=stale_minutes)

    def rejection_reason(self, event: NFTEvent, watcher: Watcher, cutoff: datetime) -> str | None:
        """Why the watcher should not be notified, or None if it should."""
        if event.created_at is not None and event.created_at < cutoff:
            return "before_cutoff"
        if event.starts_at is not None and event.starts_at < cutoff - self._stale:
            return "stale"

        settings = watcher.settings
        if event.marketplace.value not in settings.allowed_marketplaces:
            return "marketplace_not_allowed"
        if event.event_type.value not in settings.allowed_events:
            return "event_not_allowed"

        is_wallet = watcher.type is WatcherType.WALLET
        if is_wallet and not watcher.is_party(event) and not watcher.covers(event):
            return "not_involved"

        if event.event_type is EventType.OFFER:
            if not event.is_highest_offer:
                return "not_highest_offer"
            floor = event.collection_floor
            if floor and event.price is not None and event.price < floor:
                below_pct = float(100 * (floor - event.price) / floor)
                if below_pct >= settings.max_offer_floor_difference:
                    return "too_far_below_floor"

        if event.event_type is EventType.LISTING and is_wallet and event.seller != watcher.address:
            return "not_seller"
        return None

    def is_allowed(self, event: NFTEvent, watcher: Watcher, cutoff: datetime) -> bool:
        return self.rejection_reason(event, watcher, cutoff) is None


def select_watchers(
    watched_events: list[WatchedEvent],
    router: ShardRouter,
    preferences: PreferenceFilter,
    cutoff: datetime,
) -> list[WatchedEvent]:
    """Keep this shard's watchers that pass their preferences; drop empty events."""
    selected = []
    for watched in watched_events:
        watchers = [
            w
            for w in watched.watchers
            if router.owns(w) and preferences.is_allowed(watched.event, w, cutoff)
        ]
        if watchers:
            selected.append(WatchedEvent(watched.event, watchers))
    return selected
